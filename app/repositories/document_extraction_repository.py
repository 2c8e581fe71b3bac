from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import select, update, func, or_
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import DocumentExtraction
from app.repositories.base_repository import BaseRepository
from app.schemas.enums import CLAIMABLE_JOB_STATUSES, JobStatus

# Retry time for terminal failures; explicit re-queue resets it to now.
NEVER_RETRY_AT = datetime(9999, 12, 31, tzinfo=timezone.utc)

JSON_COLUMNS = frozenset({
    "warnings",
    "insights_warnings",
    "insights_highlights",
    "insights_citations",
    "insights_retrieval_meta",
})


def _to_json(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    return value


def insights_reset_values(now: datetime) -> Dict[str, Any]:
    """Column values that put the insight state machine back to a fresh ``pending``."""
    return {
        "insights_status": JobStatus.PENDING,
        "insights_summary": None,
        "insights_highlights": [],
        "insights_citations": [],
        "insights_retrieval_meta": None,
        "insights_case_context_hash": None,
        "insights_source_text_hash": None,
        "insights_method": None,
        "insights_error_code": None,
        "insights_warnings": [],
        "insights_attempt_count": 0,
        "insights_last_attempt_at": None,
        "insights_next_retry_at": now,
        "insights_updated_at": None,
    }


class DocumentExtractionRepository(BaseRepository[DocumentExtraction]):
    """Repository for the durable extraction + insight job rows.

    Typed warnings, highlights, citations and retrieval metadata are dumped
    to JSON here and nowhere else.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(session, DocumentExtraction)

    async def get_by_document_id(self, document_id: UUID) -> Optional[DocumentExtraction]:
        try:
            query = select(DocumentExtraction).where(DocumentExtraction.document_id == document_id)
            result = await self.session.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error retrieving extraction for document {document_id}: {str(e)}",
                exc_info=True
            )
            raise

    async def list_by_case(self, case_id: UUID, organization_id: UUID) -> List[DocumentExtraction]:
        try:
            query = select(DocumentExtraction).where(
                DocumentExtraction.case_id == case_id,
                DocumentExtraction.organization_id == organization_id,
            )
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error listing extractions for case {case_id}: {str(e)}",
                exc_info=True
            )
            raise

    async def list_by_document_ids(self, document_ids: List[UUID]) -> List[DocumentExtraction]:
        if not document_ids:
            return []
        try:
            query = select(DocumentExtraction).where(DocumentExtraction.document_id.in_(document_ids))
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error listing extractions for {len(document_ids)} documents: {str(e)}",
                exc_info=True
            )
            raise

    async def upsert_pending(
        self,
        document_id: UUID,
        case_id: UUID,
        organization_id: UUID,
        file_hash: Optional[str],
        now: datetime,
    ) -> None:
        """Insert or reset a document's row to ``pending`` with zeroed attempts."""
        values: Dict[str, Any] = {
            "case_id": case_id,
            "organization_id": organization_id,
            "file_hash": file_hash,
            "status": JobStatus.PENDING,
            "extracted_text": None,
            "normalized_text_hash": None,
            "extraction_method": None,
            "ocr_provider_used": None,
            "error_code": None,
            "warnings": [],
            "attempt_count": 0,
            "last_attempt_at": None,
            "next_retry_at": now,
            "updated_at": now,
            **insights_reset_values(now),
        }

        stmt = insert(DocumentExtraction).values(document_id=document_id, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[DocumentExtraction.document_id],
            set_=values,
        )
        try:
            await self.session.execute(stmt)
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error queueing extraction for document {document_id}: {str(e)}",
                exc_info=True
            )
            raise

    async def apply(
        self,
        extraction_id: UUID,
        now: datetime,
        require_extraction_ready: bool = False,
        **values: Any,
    ) -> bool:
        """Write column values to one row, serializing typed JSON payloads.

        Args:
            extraction_id: Row to update
            now: Written to ``updated_at``
            require_extraction_ready: Only update while the extraction state
                is ``ready`` (guards insight results against a concurrent
                re-queue)
            **values: Column values

        Returns:
            True if a row was updated
        """
        payload = {
            key: _to_json(value) if key in JSON_COLUMNS else value
            for key, value in values.items()
        }
        payload["updated_at"] = now
        stmt = update(DocumentExtraction).where(DocumentExtraction.id == extraction_id)
        if require_extraction_ready:
            stmt = stmt.where(DocumentExtraction.status == JobStatus.READY)
        try:
            result = await self.session.execute(stmt.values(**payload))
            return bool(result.rowcount)
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error updating extraction {extraction_id}: {str(e)}",
                exc_info=True
            )
            raise

    async def claim_due_extractions(
        self, now: datetime, limit: int, lease_until: datetime
    ) -> List[DocumentExtraction]:
        """Atomically claim due extraction rows and flip them to ``processing``.

        Concurrent schedulers skip rows another transaction has locked, so a
        row is never claimed twice. The lease makes rows of a crashed worker
        claimable again once it expires.
        """
        due = (
            select(DocumentExtraction.id)
            .where(
                DocumentExtraction.status.in_(CLAIMABLE_JOB_STATUSES),
                DocumentExtraction.next_retry_at <= now,
            )
            .order_by(DocumentExtraction.next_retry_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(DocumentExtraction)
            .where(DocumentExtraction.id.in_(due))
            .values(
                status=JobStatus.PROCESSING,
                attempt_count=DocumentExtraction.attempt_count + 1,
                last_attempt_at=now,
                next_retry_at=lease_until,
                updated_at=now,
            )
            .returning(DocumentExtraction)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(f"Error claiming due extractions: {str(e)}", exc_info=True)
            raise

    async def claim_due_insights(
        self, now: datetime, limit: int, lease_until: datetime
    ) -> List[DocumentExtraction]:
        """Atomically claim due insight work on rows whose extraction is ``ready``."""
        due = (
            select(DocumentExtraction.id)
            .where(
                DocumentExtraction.status == JobStatus.READY,
                DocumentExtraction.insights_status.in_(CLAIMABLE_JOB_STATUSES),
                DocumentExtraction.insights_next_retry_at <= now,
            )
            .order_by(DocumentExtraction.insights_next_retry_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(DocumentExtraction)
            .where(DocumentExtraction.id.in_(due))
            .values(
                insights_status=JobStatus.PROCESSING,
                insights_attempt_count=DocumentExtraction.insights_attempt_count + 1,
                insights_last_attempt_at=now,
                insights_next_retry_at=lease_until,
                insights_updated_at=now,
                updated_at=now,
            )
            .returning(DocumentExtraction)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(f"Error claiming due insights: {str(e)}", exc_info=True)
            raise

    async def reset_insights(self, document_id: UUID, now: datetime) -> None:
        try:
            await self.session.execute(
                update(DocumentExtraction)
                .where(DocumentExtraction.document_id == document_id)
                .values(updated_at=now, **insights_reset_values(now))
            )
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error resetting insights for document {document_id}: {str(e)}",
                exc_info=True
            )
            raise

    async def mark_case_insights_pending(
        self,
        case_id: UUID,
        organization_id: UUID,
        now: datetime,
        stale_against_hash: Optional[str] = None,
    ) -> int:
        """Move insights of a case's ready extractions back to ``pending``.

        Args:
            case_id: Case scope
            organization_id: Organization scope
            now: Timestamp of the change
            stale_against_hash: When set, only ``ready`` insights whose stored
                case-context hash differs from it are reset

        Returns:
            Number of rows reset
        """
        query = update(DocumentExtraction).where(
            DocumentExtraction.case_id == case_id,
            DocumentExtraction.organization_id == organization_id,
            DocumentExtraction.status == JobStatus.READY,
        )
        if stale_against_hash is not None:
            query = query.where(
                DocumentExtraction.insights_status == JobStatus.READY,
                or_(
                    DocumentExtraction.insights_case_context_hash.is_(None),
                    DocumentExtraction.insights_case_context_hash != stale_against_hash,
                ),
            )
        query = query.values(
            insights_status=JobStatus.PENDING,
            insights_error_code=None,
            insights_warnings=[],
            insights_next_retry_at=now,
            updated_at=now,
        )
        try:
            result = await self.session.execute(query)
            return result.rowcount or 0
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error marking insights pending for case {case_id}: {str(e)}",
                exc_info=True
            )
            raise

    async def count_insights_by_status(self, organization_id: UUID) -> Dict[JobStatus, int]:
        try:
            query = (
                select(DocumentExtraction.insights_status, func.count())
                .where(DocumentExtraction.organization_id == organization_id)
                .group_by(DocumentExtraction.insights_status)
            )
            result = await self.session.execute(query)
            return {JobStatus(status): count for status, count in result.all()}
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error counting insights for organization {organization_id}: {str(e)}",
                exc_info=True
            )
            raise
