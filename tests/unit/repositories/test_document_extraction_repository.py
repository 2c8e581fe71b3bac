"""Unit tests for extraction row updates and claims."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql

from app.repositories.document_extraction_repository import (
    DocumentExtractionRepository,
    insights_reset_values,
)
from app.schemas.documents import Highlight, RetrievalMeta
from app.schemas.enums import JobStatus


def _compiled(session) -> str:
    statement = session.execute.await_args.args[0]
    return str(statement.compile(dialect=postgresql.dialect()))



def _claimed_statuses(session) -> set:
    params = session.execute.await_args.args[0].compile(dialect=postgresql.dialect()).params
    lists = [value for value in params.values() if isinstance(value, (list, tuple))]
    assert len(lists) == 1
    return {JobStatus(status) for status in lists[0]}

@pytest.fixture
def session(session_factory):
    session = session_factory()
    session.execute.return_value = MagicMock(rowcount=1)
    return session


class TestApply:

    @pytest.mark.asyncio
    async def test_typed_payloads_are_dumped_to_json(self, session):
        now = datetime.now(timezone.utc)

        updated = await DocumentExtractionRepository(session).apply(
            uuid4(),
            now,
            insights_status=JobStatus.READY,
            insights_highlights=[Highlight(snippet="Article 1", score=0.5)],
            insights_retrieval_meta=RetrievalMeta(top_k_requested=5),
        )

        assert updated is True
        params = session.execute.await_args.args[0].compile(dialect=postgresql.dialect()).params
        assert params["insights_highlights"] == [
            {"snippet": "Article 1", "score": 0.5, "sentence_start": 0, "sentence_end": 0}
        ]
        assert params["insights_retrieval_meta"]["top_k_requested"] == 5
        assert params["updated_at"] == now

    @pytest.mark.asyncio
    async def test_ready_guard_adds_status_predicate(self, session):
        await DocumentExtractionRepository(session).apply(
            uuid4(), datetime.now(timezone.utc), require_extraction_ready=True, insights_status=JobStatus.READY
        )

        assert "document_extractions.status =" in _compiled(session)

    @pytest.mark.asyncio
    async def test_no_row_updated(self, session):
        session.execute.return_value = MagicMock(rowcount=0)

        updated = await DocumentExtractionRepository(session).apply(uuid4(), datetime.now(timezone.utc))

        assert updated is False


class TestClaims:

    @pytest.mark.asyncio
    async def test_extraction_claim_skips_locked_rows(self, session):
        now = datetime.now(timezone.utc)
        session.execute.return_value = MagicMock()

        await DocumentExtractionRepository(session).claim_due_extractions(
            now=now, limit=10, lease_until=now + timedelta(minutes=15)
        )

        sql = _compiled(session)
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "RETURNING" in sql
        assert _claimed_statuses(session) == {JobStatus.PENDING, JobStatus.FAILED, JobStatus.PROCESSING}
        assert JobStatus.UNSUPPORTED not in _claimed_statuses(session)

    @pytest.mark.asyncio
    async def test_insights_claim_requires_ready_extraction(self, session):
        now = datetime.now(timezone.utc)
        session.execute.return_value = MagicMock()

        await DocumentExtractionRepository(session).claim_due_insights(
            now=now, limit=10, lease_until=now + timedelta(minutes=15)
        )

        sql = _compiled(session)
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "document_extractions.insights_status IN" in sql
        assert _claimed_statuses(session) == {JobStatus.PENDING, JobStatus.FAILED, JobStatus.PROCESSING}


class TestMarkCaseInsightsPending:

    @pytest.mark.asyncio
    async def test_resets_every_ready_extraction_of_the_case(self, session, organization_id):
        session.execute.return_value = MagicMock(rowcount=3)

        count = await DocumentExtractionRepository(session).mark_case_insights_pending(
            uuid4(), organization_id, datetime.now(timezone.utc)
        )

        assert count == 3
        sql = _compiled(session)
        assert "document_extractions.status =" in sql
        assert "insights_case_context_hash" not in sql

    @pytest.mark.asyncio
    async def test_stale_hash_limits_reset_to_other_contexts(self, session, organization_id):
        session.execute.return_value = MagicMock(rowcount=None)

        count = await DocumentExtractionRepository(session).mark_case_insights_pending(
            uuid4(), organization_id, datetime.now(timezone.utc), stale_against_hash="abc"
        )

        assert count == 0
        assert "document_extractions.insights_case_context_hash IS NULL" in _compiled(session)


def test_insights_reset_values_start_fresh():
    now = datetime.now(timezone.utc)

    values = insights_reset_values(now)

    assert values["insights_status"] == JobStatus.PENDING
    assert values["insights_attempt_count"] == 0
    assert values["insights_next_retry_at"] == now
    assert values["insights_highlights"] == []
