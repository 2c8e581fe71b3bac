"""Unit tests for the regulation monitor cycle."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from conftest import make_subscription

from app.core.config import settings
from app.core.exceptions import ConflictError
from app.schemas.enums import ChangeStatus, MonitorRunStatus, RegulationStatus
from app.schemas.regulations import ChangeDetectionResult, MonitorRunOptions
from app.services.regulations.regulation_monitor_service import (
    AUTO_CHANGE_SUMMARY,
    MAX_ERROR_MESSAGE_CHARS,
    MONITOR_CREATED_BY,
    RegulationMonitorService,
    group_subscriptions,
    next_check_at,
)
from app.utils.hashing import sha256_text

MODULE = "app.services.regulations.regulation_monitor_service"

NEW_TEXT = "Article 1. Licensed entities must report quarterly."


@pytest.fixture
def repos():
    with patch(f"{MODULE}.RegulationSubscriptionRepository") as subscription_cls, \
            patch(f"{MODULE}.RegulationVersionRepository") as version_cls, \
            patch(f"{MODULE}.RegulationRepository") as regulation_cls, \
            patch(f"{MODULE}.MonitorRunRepository") as run_cls:
        subscriptions = subscription_cls.return_value
        subscriptions.list_due = AsyncMock(return_value=[])
        subscriptions.mark_checked = AsyncMock()
        subscriptions.list_active_for_regulation = AsyncMock(return_value=[])

        versions = version_cls.return_value
        versions.get_latest = AsyncMock(return_value=None)
        versions.append = AsyncMock(
            side_effect=lambda **kwargs: SimpleNamespace(id=uuid4(), version_number=1, **kwargs)
        )

        regulations = regulation_cls.return_value
        regulations.set_status = AsyncMock()

        runs = run_cls.return_value
        runs.create = AsyncMock()
        runs.list_recent = AsyncMock(return_value=[])
        runs.get_last = AsyncMock(return_value=None)
        runs.count_by_status_since = AsyncMock(return_value={})

        yield MagicMock(subscriptions=subscriptions, versions=versions, regulations=regulations, runs=runs)


@pytest.fixture
def lock():
    lock = MagicMock()
    lock.try_acquire = AsyncMock(return_value=True)
    lock.release = AsyncMock()
    return lock


@pytest.fixture
def detector():
    detector = MagicMock()
    detector.fetch = AsyncMock(return_value=ChangeDetectionResult(status=ChangeStatus.UNCHANGED))
    return detector


@pytest.fixture
def notifications():
    service = MagicMock()
    service.notify_regulation_updated = AsyncMock(return_value=set())
    service.broadcast_regulation_updated = MagicMock()
    return service


@pytest.fixture
def monitor(lock, detector, notifications, session_factory):
    return RegulationMonitorService(
        lock=lock,
        detector=detector,
        notification_service=notifications,
        session_factory=session_factory,
        config=settings.monitor.model_copy(update={"max_concurrency": 2, "failure_retry_minutes": 30}),
    )


def _changed(text: str = NEW_TEXT) -> ChangeDetectionResult:
    return ChangeDetectionResult(
        status=ChangeStatus.CHANGED,
        text=text,
        raw_content="<p>raw</p>",
        content_hash=sha256_text(text),
        etag='"v2"',
    )


def _persisted_run(repos) -> dict:
    return repos.runs.create.await_args.kwargs


class TestHelpers:

    def test_group_subscriptions_by_regulation_and_url(self):
        regulation_id = uuid4()
        first = make_subscription(regulation_id=regulation_id)
        second = make_subscription(regulation_id=regulation_id)
        other_url = make_subscription(regulation_id=regulation_id, source_url="https://laws.example.gov/reg/1/ar")

        groups = group_subscriptions([first, other_url, second])

        assert len(groups) == 2
        assert groups[0].subscriptions == [first, second]
        assert groups[0].representative is first
        assert groups[1].subscriptions == [other_url]

    def test_next_check_at_minimum_one_hour(self):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert next_check_at(base, 0) == base + timedelta(hours=24)
        assert next_check_at(base, -3) == base + timedelta(hours=1)
        assert next_check_at(base, 6) == base + timedelta(hours=6)
        assert next_check_at(base, None) == base + timedelta(hours=24)


class TestRunDueSubscriptions:

    @pytest.mark.asyncio
    async def test_lock_held_elsewhere_records_skipped_run(self, monitor, lock, repos, detector):
        lock.try_acquire.return_value = False

        result = await monitor.run_due_subscriptions()

        assert result.model_dump() == {"scanned": 0, "changed": 0, "versions_created": 0, "failed": 0}
        run = _persisted_run(repos)
        assert run["status"] == MonitorRunStatus.SKIPPED
        assert run["scanned"] == 0
        repos.subscriptions.list_due.assert_not_awaited()
        detector.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_due_subscriptions_still_records_run(self, monitor, lock, repos):
        result = await monitor.run_due_subscriptions()

        assert result.scanned == 0
        assert _persisted_run(repos)["status"] == MonitorRunStatus.SUCCESS
        lock.release.assert_awaited_once_with(settings.monitor.advisory_lock_key)

    @pytest.mark.asyncio
    async def test_shared_source_is_fetched_once(self, monitor, repos, detector):
        regulation_id = uuid4()
        repos.subscriptions.list_due.return_value = [
            make_subscription(regulation_id=regulation_id, last_etag='"v1"'),
            make_subscription(regulation_id=regulation_id),
            make_subscription(),
        ]

        result = await monitor.run_due_subscriptions()

        assert result.scanned == 2
        assert detector.fetch.await_count == 2
        first_call = detector.fetch.await_args_list[0]
        assert first_call.kwargs["prior_etag"] == '"v1"'
        assert repos.subscriptions.mark_checked.await_count == 3

    @pytest.mark.asyncio
    async def test_change_creates_version_and_notifies_after_commit(
        self, monitor, repos, detector, notifications, session_factory
    ):
        regulation_id = uuid4()
        subscriptions = [make_subscription(regulation_id=regulation_id), make_subscription(regulation_id=regulation_id)]
        repos.subscriptions.list_due.return_value = subscriptions
        repos.subscriptions.list_active_for_regulation.return_value = subscriptions
        organization_id = uuid4()
        notifications.notify_regulation_updated.return_value = {organization_id}
        detector.fetch.return_value = _changed()

        committed_before_broadcast = []
        notifications.broadcast_regulation_updated.side_effect = (
            lambda *args, **kwargs: committed_before_broadcast.append(session_factory.sessions[-1].commit.await_count)
        )

        result = await monitor.run_due_subscriptions(MonitorRunOptions(trigger_source="manual"))

        assert result.scanned == 1
        assert result.changed == 1
        assert result.versions_created == 1
        assert result.failed == 0

        appended = repos.versions.append.await_args.kwargs
        assert appended["regulation_id"] == regulation_id
        assert appended["content"] == NEW_TEXT
        assert appended["content_hash"] == sha256_text(NEW_TEXT)
        assert appended["raw_html"] == "<p>raw</p>"
        assert appended["changes_summary"] == AUTO_CHANGE_SUMMARY
        assert appended["created_by"] == MONITOR_CREATED_BY

        assert repos.regulations.set_status.await_args.args[1] == RegulationStatus.AMENDED
        for call in repos.subscriptions.mark_checked.await_args_list:
            assert call.kwargs["content_hash"] == sha256_text(NEW_TEXT)
            assert call.kwargs["etag"] == '"v2"'

        notify = notifications.notify_regulation_updated.await_args.kwargs
        assert notify["version_number"] == 1
        assert notify["subscribers"] == subscriptions

        assert committed_before_broadcast == [1]
        broadcast = notifications.broadcast_regulation_updated.call_args
        assert broadcast.args[0] == {organization_id}
        assert broadcast.kwargs["version_number"] == 1

        run = _persisted_run(repos)
        assert run["status"] == MonitorRunStatus.SUCCESS
        assert run["trigger_source"] == "manual"
        assert run["versions_created"] == 1

    @pytest.mark.asyncio
    async def test_same_hash_as_latest_version_is_not_a_change(self, monitor, repos, detector, notifications):
        repos.subscriptions.list_due.return_value = [make_subscription()]
        repos.versions.get_latest.return_value = SimpleNamespace(content_hash=sha256_text(NEW_TEXT))
        detector.fetch.return_value = _changed()

        result = await monitor.run_due_subscriptions()

        assert result.changed == 0
        assert result.versions_created == 0
        repos.versions.append.assert_not_awaited()
        repos.subscriptions.mark_checked.assert_awaited_once()
        notifications.broadcast_regulation_updated.assert_not_called()

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing_but_the_run(self, monitor, repos, detector, notifications, session_factory):
        repos.subscriptions.list_due.return_value = [make_subscription()]
        detector.fetch.return_value = _changed()

        result = await monitor.run_due_subscriptions(MonitorRunOptions(dry_run=True))

        assert result.changed == 1
        assert result.versions_created == 0
        repos.versions.append.assert_not_awaited()
        repos.regulations.set_status.assert_not_awaited()
        repos.subscriptions.mark_checked.assert_not_awaited()
        notifications.notify_regulation_updated.assert_not_awaited()
        # only the run record is committed
        assert session_factory.commits == 1
        assert _persisted_run(repos)["dry_run"] is True

    @pytest.mark.asyncio
    async def test_fetch_error_schedules_retry(self, monitor, repos, detector):
        subscription = make_subscription(check_interval_hours=24)
        repos.subscriptions.list_due.return_value = [subscription]
        detector.fetch.return_value = ChangeDetectionResult(status=ChangeStatus.ERROR, error_code="timeout")

        result = await monitor.run_due_subscriptions()

        assert result.failed == 1
        call = repos.subscriptions.mark_checked.await_args
        assert call.args[0] == subscription.id
        assert call.kwargs["next_check_at"] - call.args[1] == timedelta(minutes=30)
        assert "etag" not in call.kwargs

    @pytest.mark.asyncio
    async def test_unchanged_schedules_next_interval(self, monitor, repos, detector):
        repos.subscriptions.list_due.return_value = [make_subscription(check_interval_hours=6)]
        detector.fetch.return_value = ChangeDetectionResult(status=ChangeStatus.UNCHANGED, etag='"v1"')

        result = await monitor.run_due_subscriptions()

        assert result.failed == 0
        call = repos.subscriptions.mark_checked.await_args
        assert call.kwargs["next_check_at"] - call.args[1] == timedelta(hours=6)
        assert call.kwargs["etag"] == '"v1"'
        assert call.kwargs["content_hash"] is None

    @pytest.mark.asyncio
    async def test_empty_changed_content_is_a_failure(self, monitor, repos, detector):
        repos.subscriptions.list_due.return_value = [make_subscription()]
        detector.fetch.return_value = ChangeDetectionResult(status=ChangeStatus.CHANGED, text="")

        result = await monitor.run_due_subscriptions()

        assert result.failed == 1
        repos.versions.append.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_group_exception_counts_as_failed_group(self, monitor, repos, detector, session_factory):
        repos.subscriptions.list_due.return_value = [make_subscription(), make_subscription()]
        repos.versions.append.side_effect = [ConflictError("Regulation version already exists"), SimpleNamespace(id=uuid4(), version_number=4)]
        detector.fetch.return_value = _changed()

        result = await monitor.run_due_subscriptions()

        assert result.scanned == 2
        assert result.failed == 1
        assert result.versions_created == 1
        assert any(session.rollback.await_count for session in session_factory.sessions)
        assert _persisted_run(repos)["status"] == MonitorRunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_missing_detector_fails_every_group(self, monitor, repos):
        monitor.detector = None
        repos.subscriptions.list_due.return_value = [make_subscription(), make_subscription()]

        result = await monitor.run_due_subscriptions()

        assert result.failed == 2
        repos.subscriptions.mark_checked.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_run_failure_is_recorded_and_reraised(self, monitor, lock, repos):
        repos.subscriptions.list_due.side_effect = RuntimeError("x" * 900)

        with pytest.raises(RuntimeError):
            await monitor.run_due_subscriptions()

        run = _persisted_run(repos)
        assert run["status"] == MonitorRunStatus.FAILED
        assert run["failed"] == 1
        assert len(run["error_message"]) == MAX_ERROR_MESSAGE_CHARS
        lock.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_run_persistence_error_keeps_original_error(self, monitor, repos):
        repos.subscriptions.list_due.side_effect = RuntimeError("database gone")
        repos.runs.create.side_effect = RuntimeError("still gone")

        with pytest.raises(RuntimeError, match="database gone"):
            await monitor.run_due_subscriptions()


class TestReadSide:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit, expected", [(0, 1), (20, 20), (500, 100)])
    async def test_recent_runs_limit_is_clamped(self, monitor, repos, limit, expected):
        await monitor.get_recent_runs(limit)

        repos.runs.list_recent.assert_awaited_once_with(expected)

    @pytest.mark.asyncio
    async def test_health_without_runs(self, monitor, repos):
        summary = await monitor.get_health_summary()

        assert summary.has_run is False
        assert summary.last_status is None

    @pytest.mark.asyncio
    async def test_health_with_last_run(self, monitor, repos):
        repos.runs.get_last.return_value = SimpleNamespace(
            started_at=datetime.now(timezone.utc) - timedelta(minutes=42),
            status=MonitorRunStatus.SUCCESS,
        )
        repos.runs.count_by_status_since.return_value = {
            MonitorRunStatus.SUCCESS: 10,
            MonitorRunStatus.FAILED: 2,
        }

        summary = await monitor.get_health_summary()

        assert summary.has_run is True
        assert summary.last_status == "success"
        assert summary.minutes_since_last_run == 42
        assert summary.successful_runs_24h == 10
        assert summary.failed_runs_24h == 2
