"""Durable document extraction jobs.

Rows in ``document_extractions`` move through
``pending -> processing -> {ready, failed, unsupported}``. ``failed`` rows
come back after the retry window; ``unsupported`` is terminal for that file
version. A successful extraction reindexes the document's chunks and resets
its insight state.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.ai_client import AIServiceClient
from app.core.config import CaseLinkSettings, DocumentExtractionSettings, settings
from app.core.database import async_session_maker
from app.database.models import Document, DocumentExtraction
from app.repositories.document_extraction_repository import (
    DocumentExtractionRepository,
    NEVER_RETRY_AT,
    insights_reset_values,
)
from app.repositories.document_repository import CaseRepository, DocumentRepository
from app.schemas.documents import (
    CaseDocumentMeta,
    CaseDocumentPreparation,
    CaseFragment,
    EnqueueResult,
    ExtractionState,
    JobRunResult,
)
from app.schemas.enums import ErrorCode, JobStatus
from app.services.documents.document_rag_service import DocumentRagService
from app.services.documents.text_chunker import normalize_whitespace
from app.services.storage_service import StorageService, get_storage_service
from app.utils.hashing import sha256_bytes, sha256_text
from app.utils.logging import get_logger

LOGGER = get_logger(__name__)

FILE_MISSING_WARNING = "Document file is missing in storage."


class DocumentExtractionService:
    """Queues documents for extraction and runs due extraction jobs.

    Each concurrently processed item uses its own session from
    ``session_factory``.
    """

    def __init__(
        self,
        ai_client: Optional[AIServiceClient] = None,
        storage: Optional[StorageService] = None,
        session_factory: Callable[[], AsyncSession] = async_session_maker,
        config: Optional[DocumentExtractionSettings] = None,
        case_link_config: Optional[CaseLinkSettings] = None,
        timeout: Optional[float] = None,
    ):
        self._ai_client = ai_client
        self._storage = storage
        self.session_factory = session_factory
        self.config = config or settings.extraction
        self.case_link_config = case_link_config or settings.case_link
        self.timeout = timeout if timeout is not None else settings.ai.request_timeout_seconds

    @property
    def ai_client(self) -> AIServiceClient:
        if self._ai_client is None:
            self._ai_client = AIServiceClient()
        return self._ai_client

    @property
    def storage(self) -> StorageService:
        if self._storage is None:
            self._storage = get_storage_service()
        return self._storage

    def _retry_at(self, now: datetime) -> datetime:
        return now + timedelta(minutes=self.config.retry_minutes)

    # Queueing

    async def upsert_queued(
        self,
        session: AsyncSession,
        document: Document,
        organization_id: UUID,
        now: datetime,
    ) -> bool:
        """Queue a document unless a ready extraction of the same bytes exists."""
        content = await self.storage.read_bytes(document.file_path)
        file_hash = sha256_bytes(content) if content is not None else None

        repo = DocumentExtractionRepository(session)
        existing = await repo.get_by_document_id(document.id)
        if (
            existing is not None
            and existing.status == JobStatus.READY
            and file_hash is not None
            and existing.file_hash == file_hash
        ):
            return False

        await repo.upsert_pending(
            document_id=document.id,
            case_id=document.case_id,
            organization_id=organization_id,
            file_hash=file_hash,
            now=now,
        )
        return True

    async def enqueue_document(self, document_id: UUID, organization_id: UUID) -> bool:
        """Queue one document for extraction.

        Returns:
            True if the document was queued, False if it was already extracted
            from identical bytes

        Raises:
            NotFoundError: If the document does not exist
            ForbiddenError: If the document belongs to another organization
        """
        async with self.session_factory() as session:
            document = await DocumentRepository(session).get_owned(document_id, organization_id)
            queued = await self.upsert_queued(
                session, document, organization_id, datetime.now(timezone.utc)
            )
            await session.commit()

        LOGGER.info(
            "Document extraction enqueue",
            extra={"document_id": str(document_id), "queued": queued}
        )
        return queued

    async def enqueue_case_documents(self, case_id: UUID, organization_id: UUID) -> EnqueueResult:
        """Queue every document of a case."""
        async with self.session_factory() as session:
            await CaseRepository(session).get_owned(case_id, organization_id)
            documents = await DocumentRepository(session).list_by_case(case_id)

            now = datetime.now(timezone.utc)
            queued = 0
            for document in documents:
                if await self.upsert_queued(session, document, organization_id, now):
                    queued += 1
            await session.commit()

        return EnqueueResult(documents=len(documents), queued=queued)

    # Read side

    @staticmethod
    def _to_state(row: DocumentExtraction) -> ExtractionState:
        return ExtractionState(
            document_id=row.document_id,
            status=row.status,
            extraction_method=row.extraction_method,
            error_code=row.error_code,
            warnings=list(row.warnings or []),
            insights_status=row.insights_status,
            insights_updated_at=row.insights_updated_at,
            updated_at=row.updated_at,
        )

    async def get_extraction_status(self, document_id: UUID, organization_id: UUID) -> ExtractionState:
        """Extraction state of a document; ``pending`` if it was never queued."""
        async with self.session_factory() as session:
            await DocumentRepository(session).get_owned(document_id, organization_id)
            row = await DocumentExtractionRepository(session).get_by_document_id(document_id)

        if row is None:
            return ExtractionState(document_id=document_id, status=JobStatus.PENDING)
        return self._to_state(row)

    async def get_case_extraction_map(
        self, case_id: UUID, organization_id: UUID
    ) -> Dict[UUID, ExtractionState]:
        """Extraction state of every queued document of a case, keyed by document id."""
        async with self.session_factory() as session:
            await CaseRepository(session).get_owned(case_id, organization_id)
            rows = await DocumentExtractionRepository(session).list_by_case(case_id, organization_id)

        return {row.document_id: self._to_state(row) for row in rows}

    async def prepare_case_fragments(
        self, case_id: UUID, organization_id: UUID
    ) -> CaseDocumentPreparation:
        """Queue a case's documents and return bounded text from ready extractions.

        Fragments respect the maximum number of documents, the per-document
        character budget and the total character budget.
        """
        queue_result = await self.enqueue_case_documents(case_id, organization_id)

        async with self.session_factory() as session:
            documents = await DocumentRepository(session).list_by_case(case_id)
            extractions = await DocumentExtractionRepository(session).list_by_document_ids(
                [document.id for document in documents]
            )

        by_document = {row.document_id: row for row in extractions}
        meta = CaseDocumentMeta(
            docs_considered=queue_result.documents,
            docs_queued=queue_result.queued,
        )
        ready_rows = []

        for document in documents:
            row = by_document.get(document.id)
            status = row.status if row is not None else JobStatus.PENDING
            if status == JobStatus.READY:
                meta.docs_ready += 1
                ready_rows.append((document, row))
            elif status == JobStatus.UNSUPPORTED:
                meta.docs_unsupported += 1
            elif status == JobStatus.FAILED:
                meta.docs_failed += 1
            else:
                meta.docs_pending += 1

        max_included = max(0, self.case_link_config.max_included)
        max_chars_per_doc = max(200, self.case_link_config.max_chars_per_doc)
        max_chars_total = max(max_chars_per_doc, self.case_link_config.total_max_chars)
        consumed = 0
        fragments: List[CaseFragment] = []

        for document, row in ready_rows:
            if len(fragments) >= max_included or consumed >= max_chars_total:
                break

            text = (row.extracted_text or "").strip()
            if not text:
                continue

            remaining = max_chars_total - consumed
            final_text = text[:max_chars_per_doc][:remaining].strip()
            if not final_text:
                continue

            fragments.append(
                CaseFragment(
                    fragment_id=f"doc:{document.id}",
                    text=final_text,
                    document_id=document.id,
                    document_name=document.original_name or document.file_name,
                )
            )
            consumed += len(final_text)

        return CaseDocumentPreparation(fragments=fragments, meta=meta)

    # Batch execution

    async def run_pending_extractions(self) -> JobRunResult:
        """Claim due extraction rows and process them in bounded batches."""
        if not self.config.enabled:
            return JobRunResult()

        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            rows = await DocumentExtractionRepository(session).claim_due_extractions(
                now=now,
                limit=self.config.batch_size,
                lease_until=now + timedelta(minutes=self.config.processing_lease_minutes),
            )
            await session.commit()

        result = JobRunResult(processed=len(rows))
        if not rows:
            return result

        concurrency = max(1, self.config.max_concurrency)
        for index in range(0, len(rows), concurrency):
            batch = rows[index:index + concurrency]
            outcomes = await asyncio.gather(*(self._process_extraction(row) for row in batch))
            for outcome in outcomes:
                if outcome == JobStatus.READY:
                    result.ready += 1
                elif outcome == JobStatus.UNSUPPORTED:
                    result.unsupported += 1
                else:
                    result.failed += 1

        LOGGER.info("Document extraction run finished", extra=result.model_dump())
        return result

    async def _process_extraction(self, row: DocumentExtraction) -> JobStatus:
        """Process one claimed row; never raises."""
        async with self.session_factory() as session:
            repo = DocumentExtractionRepository(session)
            now = datetime.now(timezone.utc)
            try:
                return await self._extract(session, repo, row, now)
            except Exception as e:
                error_code = ErrorCode.TIMEOUT if isinstance(e, asyncio.TimeoutError) else ErrorCode.SERVICE_ERROR
                message = str(e) or type(e).__name__
                LOGGER.error(
                    f"Document extraction processing failed: {message}",
                    exc_info=True,
                    extra={"extraction_id": str(row.id), "document_id": str(row.document_id)}
                )
                try:
                    await session.rollback()
                    await repo.apply(
                        row.id,
                        now,
                        status=JobStatus.FAILED,
                        error_code=error_code.value,
                        warnings=[message],
                        next_retry_at=self._retry_at(now),
                        insights_status=JobStatus.FAILED,
                        insights_error_code=error_code.value,
                        insights_warnings=[message],
                        insights_next_retry_at=self._retry_at(now),
                        insights_updated_at=now,
                    )
                    await session.commit()
                except Exception:
                    # The processing lease expires and the row is reclaimed.
                    LOGGER.error(
                        "Failed to record extraction failure",
                        exc_info=True,
                        extra={"extraction_id": str(row.id)}
                    )
                return JobStatus.FAILED

    async def _extract(
        self,
        session: AsyncSession,
        repo: DocumentExtractionRepository,
        row: DocumentExtraction,
        now: datetime,
    ) -> JobStatus:
        document = await DocumentRepository(session).get_by_id(row.document_id)
        content = await self.storage.read_bytes(document.file_path) if document else None

        if content is None:
            LOGGER.warning(
                "Document file missing; extraction will not be retried",
                extra={"extraction_id": str(row.id), "document_id": str(row.document_id)}
            )
            await repo.apply(
                row.id,
                now,
                status=JobStatus.FAILED,
                error_code=ErrorCode.FILE_MISSING.value,
                warnings=[FILE_MISSING_WARNING],
                next_retry_at=NEVER_RETRY_AT,
                insights_status=JobStatus.FAILED,
                insights_error_code=ErrorCode.FILE_MISSING.value,
                insights_warnings=[FILE_MISSING_WARNING],
                insights_next_retry_at=NEVER_RETRY_AT,
                insights_updated_at=now,
            )
            await session.commit()
            return JobStatus.FAILED

        file_hash = sha256_bytes(content)
        extraction = await asyncio.wait_for(
            self.ai_client.extract_document_content(
                content=content,
                file_name=document.original_name or document.file_name,
                content_type=document.mime_type,
            ),
            timeout=self.timeout,
        )

        if extraction.status == "ok":
            extracted_text = extraction.extracted_text or ""
            normalized_hash = extraction.normalized_text_hash or sha256_text(
                normalize_whitespace(extracted_text)
            )
            warnings = list(extraction.warnings)

            try:
                reindex = await DocumentRagService(session, self.ai_client).reindex_document(
                    row.organization_id, row.document_id, extracted_text
                )
                warnings.extend(reindex.warnings)
            except Exception as e:
                LOGGER.warning(
                    f"Chunk reindex failed after extraction: {str(e)}",
                    exc_info=True,
                    extra={"document_id": str(row.document_id)}
                )
                warnings.append("chunk_reindex_failed")

            await repo.apply(
                row.id,
                now,
                status=JobStatus.READY,
                file_hash=file_hash,
                extracted_text=extracted_text or None,
                normalized_text_hash=normalized_hash,
                extraction_method=extraction.extraction_method,
                ocr_provider_used=extraction.ocr_provider_used,
                error_code=extraction.error_code,
                warnings=warnings,
                next_retry_at=now,
                **insights_reset_values(now),
            )
            await session.commit()
            return JobStatus.READY

        unsupported = extraction.error_code == ErrorCode.UNSUPPORTED_FILE_TYPE.value
        status = JobStatus.UNSUPPORTED if unsupported else JobStatus.FAILED
        error_code = extraction.error_code or ErrorCode.EXTRACTION_ERROR.value
        retry_at = NEVER_RETRY_AT if unsupported else self._retry_at(now)

        await repo.apply(
            row.id,
            now,
            status=status,
            file_hash=file_hash,
            extracted_text=None,
            normalized_text_hash=None,
            extraction_method=extraction.extraction_method,
            ocr_provider_used=extraction.ocr_provider_used,
            error_code=error_code,
            warnings=list(extraction.warnings),
            next_retry_at=retry_at,
            insights_status=status,
            insights_summary=None,
            insights_highlights=[],
            insights_citations=[],
            insights_retrieval_meta=None,
            insights_case_context_hash=None,
            insights_source_text_hash=None,
            insights_error_code=error_code,
            insights_warnings=list(extraction.warnings),
            insights_next_retry_at=retry_at,
            insights_updated_at=now,
        )
        await session.commit()
        return status
