"""Durable case-aware document insight jobs.

Insight work runs only on rows whose extraction is ``ready``. Each attempt
retrieves the chunks most relevant to the case context, falls back to a
prefix of the extracted text when retrieval yields nothing, and asks the AI
service for a summary with highlights.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.ai_client import AIServiceClient
from app.core.config import DocumentInsightsSettings, settings
from app.core.database import async_session_maker
from app.database.models import Case, DocumentExtraction
from app.repositories.document_extraction_repository import (
    DocumentExtractionRepository,
    NEVER_RETRY_AT,
)
from app.repositories.document_repository import CaseRepository, DocumentRepository
from app.schemas.documents import (
    Citation,
    DEFAULT_INSIGHTS_METHOD,
    Highlight,
    InsightState,
    JobRunResult,
    QueueHealth,
    RetrievalMeta,
    RetrievalResult,
)
from app.schemas.enums import ErrorCode, JobStatus
from app.services.documents.document_chunk_service import clamp_top_k
from app.services.documents.document_extraction_service import DocumentExtractionService
from app.services.documents.document_rag_service import DocumentRagService
from app.services.documents.text_chunker import normalize_whitespace
from app.utils.hashing import sha256_text
from app.utils.logging import get_logger

LOGGER = get_logger(__name__)

CASE_MISSING_WARNING = "Case record is missing."
TEXT_MISSING_WARNING = "Document extraction text is missing."
RETRIEVAL_FAILED_WARNING = "retrieval_failed"
FALLBACK_WARNING = "retrieval_context_empty_used_source_prefix"


def build_case_context_text(case: Case) -> str:
    """Case context used as the retrieval query: ``title\\n\\ndescription``."""
    return f"{case.title}\n\n{case.description or ''}".strip()


def parse_highlights(items: List[dict]) -> List[Highlight]:
    """Coerce service highlights into typed models, dropping unusable entries."""
    highlights = []
    for item in items or []:
        if not isinstance(item, dict) or not item.get("snippet"):
            continue
        try:
            highlights.append(
                Highlight(
                    snippet=item["snippet"],
                    score=item.get("score", 0),
                    sentence_start=item.get("sentence_start", item.get("sentenceStart", 0)) or 0,
                    sentence_end=item.get("sentence_end", item.get("sentenceEnd", 0)) or 0,
                )
            )
        except PydanticValidationError:
            LOGGER.debug("Dropping malformed highlight", extra={"highlight": str(item)[:200]})
    return highlights


class DocumentInsightsService:
    """Runs insight jobs and exposes the insight read model."""

    def __init__(
        self,
        ai_client: Optional[AIServiceClient] = None,
        session_factory: Callable[[], AsyncSession] = async_session_maker,
        config: Optional[DocumentInsightsSettings] = None,
        extraction_service: Optional[DocumentExtractionService] = None,
        timeout: Optional[float] = None,
    ):
        self._ai_client = ai_client
        self.session_factory = session_factory
        self.config = config or settings.insights
        self.extraction_service = extraction_service or DocumentExtractionService(
            ai_client=ai_client, session_factory=session_factory
        )
        self.timeout = timeout if timeout is not None else settings.ai.request_timeout_seconds

    @property
    def ai_client(self) -> AIServiceClient:
        if self._ai_client is None:
            self._ai_client = AIServiceClient()
        return self._ai_client

    def _retry_at(self, now: datetime) -> datetime:
        return now + timedelta(minutes=self.config.retry_minutes)

    # Queueing and read side

    async def enqueue_document_insights(self, document_id: UUID, organization_id: UUID) -> None:
        """Make sure the document is extracted and reset its insights to ``pending``."""
        async with self.session_factory() as session:
            document = await DocumentRepository(session).get_owned(document_id, organization_id)
            now = datetime.now(timezone.utc)
            await self.extraction_service.upsert_queued(session, document, organization_id, now)
            await DocumentExtractionRepository(session).reset_insights(document_id, now)
            await session.commit()

    async def mark_case_insights_stale(self, case_id: UUID, organization_id: UUID) -> int:
        """Requeue insights of every ready document of a case after its context changed."""
        async with self.session_factory() as session:
            await CaseRepository(session).get_owned(case_id, organization_id)
            count = await DocumentExtractionRepository(session).mark_case_insights_pending(
                case_id, organization_id, datetime.now(timezone.utc)
            )
            await session.commit()
        return count

    async def refresh_stale_insights(self, case_id: UUID, organization_id: UUID) -> int:
        """Requeue ready insights generated against an older case context.

        Returns:
            Number of insights reset to ``pending``
        """
        async with self.session_factory() as session:
            case = await CaseRepository(session).get_owned(case_id, organization_id)
            context_hash = sha256_text(build_case_context_text(case))
            count = await DocumentExtractionRepository(session).mark_case_insights_pending(
                case_id,
                organization_id,
                datetime.now(timezone.utc),
                stale_against_hash=context_hash,
            )
            await session.commit()

        if count:
            LOGGER.info(
                "Stale document insights requeued",
                extra={"case_id": str(case_id), "count": count}
            )
        return count

    @staticmethod
    def _to_state(row: DocumentExtraction) -> InsightState:
        meta = row.insights_retrieval_meta
        return InsightState(
            status=row.insights_status,
            summary=row.insights_summary,
            highlights=parse_highlights(row.insights_highlights),
            citations=[Citation.model_validate(item) for item in row.insights_citations or []],
            retrieval_meta=RetrievalMeta.model_validate(meta) if meta else None,
            method=row.insights_method,
            error_code=row.insights_error_code,
            warnings=list(row.insights_warnings or []),
            updated_at=row.insights_updated_at,
        )

    async def get_document_insights(self, document_id: UUID, organization_id: UUID) -> InsightState:
        async with self.session_factory() as session:
            await DocumentRepository(session).get_owned(document_id, organization_id)
            row = await DocumentExtractionRepository(session).get_by_document_id(document_id)

        if row is None:
            return InsightState()
        return self._to_state(row)

    async def get_insights_queue_health(self, organization_id: UUID) -> QueueHealth:
        async with self.session_factory() as session:
            counts = await DocumentExtractionRepository(session).count_insights_by_status(organization_id)

        return QueueHealth(
            total=sum(counts.values()),
            **{status.value: count for status, count in counts.items()},
        )

    # Execution

    async def generate_insights_now(
        self, document_id: UUID, organization_id: UUID
    ) -> Optional[InsightState]:
        """Run one immediate insight attempt for interactive use.

        Returns:
            The resulting insight state, or None when the document has no
            ready extraction yet
        """
        await self.enqueue_document_insights(document_id, organization_id)

        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            repo = DocumentExtractionRepository(session)
            row = await repo.get_by_document_id(document_id)
            if row is None or row.status != JobStatus.READY:
                return None
            await repo.apply(
                row.id,
                now,
                insights_status=JobStatus.PROCESSING,
                insights_attempt_count=(row.insights_attempt_count or 0) + 1,
                insights_last_attempt_at=now,
                insights_next_retry_at=now + timedelta(minutes=self.config.processing_lease_minutes),
                insights_updated_at=now,
            )
            await session.commit()

        await self._process_insights(row)
        return await self.get_document_insights(document_id, organization_id)

    async def run_pending_insights(self) -> JobRunResult:
        """Claim due insight work and process it in bounded batches."""
        if not self.config.enabled:
            return JobRunResult()

        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            rows = await DocumentExtractionRepository(session).claim_due_insights(
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
            outcomes = await asyncio.gather(*(self._process_insights(row) for row in batch))
            for outcome in outcomes:
                if outcome == JobStatus.READY:
                    result.ready += 1
                else:
                    result.failed += 1

        LOGGER.info("Document insights run finished", extra=result.model_dump())
        return result

    async def _process_insights(self, row: DocumentExtraction) -> JobStatus:
        """Process one claimed row; never raises."""
        async with self.session_factory() as session:
            repo = DocumentExtractionRepository(session)
            now = datetime.now(timezone.utc)
            try:
                return await self._generate(session, repo, row, now)
            except Exception as e:
                message = str(e) or type(e).__name__
                LOGGER.error(
                    f"Document insights processing failed: {message}",
                    exc_info=True,
                    extra={"extraction_id": str(row.id), "document_id": str(row.document_id)}
                )
                try:
                    await session.rollback()
                    await repo.apply(
                        row.id,
                        now,
                        insights_status=JobStatus.FAILED,
                        insights_error_code=ErrorCode.INSIGHTS_SERVICE_ERROR.value,
                        insights_warnings=[message],
                        insights_next_retry_at=self._retry_at(now),
                        insights_updated_at=now,
                    )
                    await session.commit()
                except Exception:
                    LOGGER.error(
                        "Failed to record insights failure",
                        exc_info=True,
                        extra={"extraction_id": str(row.id)}
                    )
                return JobStatus.FAILED

    async def _retrieve(
        self, session: AsyncSession, row: DocumentExtraction, case_text: str, warnings: List[str]
    ) -> Optional[RetrievalResult]:
        try:
            return await DocumentRagService(session, self.ai_client).retrieve_relevant_chunks(
                organization_id=row.organization_id,
                document_id=row.document_id,
                query_text=case_text,
                top_k=self.config.top_k,
            )
        except Exception as e:
            LOGGER.warning(
                f"Insight retrieval failed; using source prefix: {str(e)}",
                exc_info=True,
                extra={"document_id": str(row.document_id)}
            )
            warnings.append(RETRIEVAL_FAILED_WARNING)
            return None

    async def _generate(
        self,
        session: AsyncSession,
        repo: DocumentExtractionRepository,
        row: DocumentExtraction,
        now: datetime,
    ) -> JobStatus:
        case = await CaseRepository(session).get_by_id(row.case_id)
        if case is None:
            await repo.apply(
                row.id,
                now,
                insights_status=JobStatus.FAILED,
                insights_error_code=ErrorCode.CASE_MISSING.value,
                insights_warnings=[CASE_MISSING_WARNING],
                insights_next_retry_at=self._retry_at(now),
                insights_updated_at=now,
            )
            await session.commit()
            return JobStatus.FAILED

        source_text = (row.extracted_text or "").strip()
        if not source_text:
            await repo.apply(
                row.id,
                now,
                insights_status=JobStatus.FAILED,
                insights_error_code=ErrorCode.EXTRACTED_TEXT_MISSING.value,
                insights_warnings=[TEXT_MISSING_WARNING],
                insights_next_retry_at=NEVER_RETRY_AT,
                insights_updated_at=now,
            )
            await session.commit()
            return JobStatus.FAILED

        case_text = build_case_context_text(case)
        case_context_hash = sha256_text(case_text)
        source_text_hash = row.normalized_text_hash or sha256_text(normalize_whitespace(source_text))

        warnings: List[str] = []
        retrieval = await self._retrieve(session, row, case_text, warnings)

        if retrieval is not None:
            citations = retrieval.citations
            retrieval_meta = retrieval.retrieval_meta
            context_text = retrieval.context_text
        else:
            citations = []
            retrieval_meta = RetrievalMeta(
                top_k_requested=clamp_top_k(self.config.top_k),
                query_chars=len(case_text),
                warnings=list(warnings),
            )
            context_text = ""

        if not context_text:
            warnings.append(FALLBACK_WARNING)
            context_text = source_text[:self.config.max_source_chars]

        common = {
            "insights_citations": citations,
            "insights_retrieval_meta": retrieval_meta,
            "insights_case_context_hash": case_context_hash,
            "insights_source_text_hash": source_text_hash,
            "insights_updated_at": now,
        }

        try:
            insights = await asyncio.wait_for(
                self.ai_client.generate_document_case_insights(
                    case_text=case_text,
                    document_text=context_text,
                    top_k=self.config.top_k,
                ),
                timeout=self.timeout,
            )
        except Exception as e:
            error_code = ErrorCode.TIMEOUT if isinstance(e, asyncio.TimeoutError) else ErrorCode.INSIGHTS_SERVICE_ERROR
            message = str(e) or type(e).__name__
            LOGGER.error(
                f"Insights service call failed: {message}",
                exc_info=True,
                extra={"extraction_id": str(row.id), "document_id": str(row.document_id)}
            )
            await repo.apply(
                row.id,
                now,
                insights_status=JobStatus.FAILED,
                insights_error_code=error_code.value,
                insights_warnings=warnings + [message],
                insights_next_retry_at=self._retry_at(now),
                **common,
            )
            await session.commit()
            return JobStatus.FAILED

        method = insights.method or DEFAULT_INSIGHTS_METHOD
        if insights.status == "ok":
            updated = await repo.apply(
                row.id,
                now,
                require_extraction_ready=True,
                insights_status=JobStatus.READY,
                insights_summary=insights.summary,
                insights_highlights=parse_highlights(insights.highlights),
                insights_method=method,
                insights_error_code=None,
                insights_warnings=warnings + list(insights.warnings),
                insights_next_retry_at=now,
                **common,
            )
            await session.commit()
            if not updated:
                LOGGER.info(
                    "Extraction was requeued during insight generation; result discarded",
                    extra={"document_id": str(row.document_id)}
                )
                return JobStatus.PENDING
            return JobStatus.READY

        await repo.apply(
            row.id,
            now,
            insights_status=JobStatus.FAILED,
            insights_summary=None,
            insights_highlights=[],
            insights_method=method,
            insights_error_code=insights.error_code or ErrorCode.INSIGHTS_ERROR.value,
            insights_warnings=warnings + list(insights.warnings),
            insights_next_retry_at=self._retry_at(now),
            **common,
        )
        await session.commit()
        return JobStatus.FAILED
