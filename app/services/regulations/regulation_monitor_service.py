"""Scheduled regulation change monitoring.

One monitor cycle runs at a time across the deployment. A cycle loads the
due subscriptions, groups them by ``(regulation_id, source_url)`` so each
source is fetched once, and turns detected content changes into new
regulation versions plus subscriber notifications.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.ai_client import AIServiceClient
from app.core.config import RegulationMonitorSettings, settings
from app.core.database import async_session_maker
from app.core.single_flight import SingleFlightLock
from app.database.models import RegulationMonitorRun, RegulationSubscription
from app.repositories.monitor_run_repository import MonitorRunRepository
from app.repositories.regulation_repository import (
    RegulationRepository,
    RegulationVersionRepository,
)
from app.repositories.regulation_subscription_repository import RegulationSubscriptionRepository
from app.schemas.enums import ChangeStatus, ErrorCode, MonitorRunStatus, RegulationStatus
from app.schemas.regulations import (
    ChangeDetectionResult,
    GroupOutcome,
    MonitorHealthSummary,
    MonitorRunOptions,
    MonitorRunResult,
    SubscriptionGroup,
)
from app.services.notification_service import NotificationService
from app.services.regulations.change_detector import ChangeDetector
from app.utils.logging import get_logger

LOGGER = get_logger(__name__)

AUTO_CHANGE_SUMMARY = "Detected automatic source content change."
MONITOR_CREATED_BY = "monitor_worker"
DEFAULT_CHECK_INTERVAL_HOURS = 24
MAX_ERROR_MESSAGE_CHARS = 500


def group_subscriptions(subscriptions: List[RegulationSubscription]) -> List[SubscriptionGroup]:
    """Group subscriptions by (regulation, source URL), keeping first-seen order."""
    groups: Dict[tuple, SubscriptionGroup] = {}
    for subscription in subscriptions:
        key = (subscription.regulation_id, subscription.source_url)
        if key not in groups:
            groups[key] = SubscriptionGroup(
                regulation_id=subscription.regulation_id,
                source_url=subscription.source_url,
            )
        groups[key].subscriptions.append(subscription)
    return list(groups.values())


def next_check_at(base: datetime, interval_hours: Optional[int]) -> datetime:
    """Next scheduled check; intervals below one hour are raised to one hour."""
    hours = max(1, interval_hours or DEFAULT_CHECK_INTERVAL_HOURS)
    return base + timedelta(hours=hours)


class RegulationMonitorService:
    """Runs monitor cycles and exposes the run history."""

    def __init__(
        self,
        lock: SingleFlightLock,
        detector: Optional[ChangeDetector] = None,
        notification_service: Optional[NotificationService] = None,
        session_factory: Callable[[], AsyncSession] = async_session_maker,
        config: Optional[RegulationMonitorSettings] = None,
    ):
        self.lock = lock
        self.config = config or settings.monitor
        self.notification_service = notification_service or NotificationService()
        self.session_factory = session_factory

        if detector is None and settings.ai_service_url:
            detector = ChangeDetector(AIServiceClient())
        elif detector is None:
            LOGGER.warning("AI_SERVICE_URL not configured - regulation content extraction is disabled")
        self.detector = detector

    def _retry_at(self, now: datetime) -> datetime:
        return now + timedelta(minutes=self.config.failure_retry_minutes)

    async def run_due_subscriptions(
        self, options: Optional[MonitorRunOptions] = None
    ) -> MonitorRunResult:
        """Run one monitor cycle.

        Args:
            options: Regulation filter, dry-run flag and trigger metadata

        Returns:
            Counts of scanned groups, changes, created versions and failures

        Raises:
            Exception: Any run-level failure, after a ``failed`` run is recorded
        """
        options = options or MonitorRunOptions()
        started_at = datetime.now(timezone.utc)
        lock_key = self.config.advisory_lock_key

        if not await self.lock.try_acquire(lock_key):
            LOGGER.info("Skipping regulation monitor run; advisory lock is already held")
            result = MonitorRunResult()
            await self._persist_run(options, started_at, MonitorRunStatus.SKIPPED, result)
            return result

        try:
            now = datetime.now(timezone.utc)
            async with self.session_factory() as session:
                due = await RegulationSubscriptionRepository(session).list_due(now, options.regulation_id)
            groups = group_subscriptions(due)

            result = MonitorRunResult(scanned=len(groups))
            concurrency = max(1, self.config.max_concurrency)
            for index in range(0, len(groups), concurrency):
                batch = groups[index:index + concurrency]
                outcomes = await asyncio.gather(
                    *(self._process_group(group, now, options.dry_run) for group in batch)
                )
                for outcome in outcomes:
                    if outcome.failed:
                        result.failed += 1
                    if outcome.changed:
                        result.changed += 1
                    if outcome.created_version:
                        result.versions_created += 1

            LOGGER.info(
                "Regulation monitor run finished",
                extra={
                    **result.model_dump(),
                    "dry_run": options.dry_run,
                    "duration_ms": int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000),
                }
            )
            await self._persist_run(options, started_at, MonitorRunStatus.SUCCESS, result)
            return result

        except Exception as e:
            LOGGER.error(f"Regulation monitor run failed: {str(e)}", exc_info=True)
            await self._persist_run(
                options,
                started_at,
                MonitorRunStatus.FAILED,
                MonitorRunResult(failed=1),
                error_message=(str(e) or type(e).__name__)[:MAX_ERROR_MESSAGE_CHARS],
            )
            raise

        finally:
            try:
                await self.lock.release(lock_key)
            except Exception:
                LOGGER.warning("Failed to release regulation monitor advisory lock", exc_info=True)

    async def _persist_run(
        self,
        options: MonitorRunOptions,
        started_at: datetime,
        status: MonitorRunStatus,
        result: MonitorRunResult,
        error_message: Optional[str] = None,
    ) -> None:
        try:
            async with self.session_factory() as session:
                await MonitorRunRepository(session).create(
                    started_at=started_at,
                    finished_at=datetime.now(timezone.utc),
                    status=status,
                    trigger_source=options.trigger_source,
                    triggered_by_user_id=options.triggered_by_user_id,
                    dry_run=options.dry_run,
                    scanned=result.scanned,
                    changed=result.changed,
                    versions_created=result.versions_created,
                    failed=result.failed,
                    error_message=error_message,
                )
                await session.commit()
        except Exception:
            LOGGER.error(
                "Failed to persist regulation monitor run",
                exc_info=True,
                extra={"status": status.value}
            )
            if status != MonitorRunStatus.FAILED:
                raise

    async def _mark_group_failed(
        self, repo: RegulationSubscriptionRepository, group: SubscriptionGroup, now: datetime
    ) -> None:
        retry_at = self._retry_at(now)
        for subscription in group.subscriptions:
            await repo.mark_checked(subscription.id, now, next_check_at=retry_at)

    async def _mark_group_checked(
        self,
        repo: RegulationSubscriptionRepository,
        group: SubscriptionGroup,
        now: datetime,
        etag: Optional[str],
        last_modified: Optional[datetime],
        content_hash: Optional[str] = None,
    ) -> None:
        for subscription in group.subscriptions:
            await repo.mark_checked(
                subscription.id,
                now,
                next_check_at=next_check_at(now, subscription.check_interval_hours),
                etag=etag,
                last_modified=last_modified,
                content_hash=content_hash,
            )

    async def _process_group(
        self, group: SubscriptionGroup, now: datetime, dry_run: bool
    ) -> GroupOutcome:
        log_context = {"regulation_id": str(group.regulation_id), "source_url": group.source_url}

        if self.detector is None:
            LOGGER.warning("Skipping regulation extraction - AI_SERVICE_URL not configured", extra=log_context)
            return GroupOutcome(failed=True)

        representative = group.representative
        detection = await self.detector.fetch(
            group.source_url,
            prior_etag=representative.last_etag,
            prior_last_modified=representative.last_modified,
            prior_content_hash=representative.last_content_hash,
        )

        async with self.session_factory() as session:
            try:
                return await self._apply_detection(session, group, detection, now, dry_run)
            except Exception as e:
                await session.rollback()
                LOGGER.error(
                    f"Regulation monitor group failed: {str(e)}",
                    exc_info=True,
                    extra=log_context
                )
                return GroupOutcome(failed=True)

    async def _apply_detection(
        self,
        session: AsyncSession,
        group: SubscriptionGroup,
        detection: ChangeDetectionResult,
        now: datetime,
        dry_run: bool,
    ) -> GroupOutcome:
        subscriptions = RegulationSubscriptionRepository(session)

        if detection.status == ChangeStatus.ERROR:
            if not dry_run:
                await self._mark_group_failed(subscriptions, group, now)
                await session.commit()
            return GroupOutcome(failed=True)

        if detection.status == ChangeStatus.UNCHANGED:
            if not dry_run:
                await self._mark_group_checked(
                    subscriptions, group, now, detection.etag, detection.last_modified
                )
                await session.commit()
            return GroupOutcome()

        if not detection.text:
            LOGGER.warning(
                "Regulation source returned empty content",
                extra={
                    "regulation_id": str(group.regulation_id),
                    "source_url": group.source_url,
                    "error_code": detection.error_code or ErrorCode.EMPTY_CONTENT.value,
                }
            )
            if not dry_run:
                await self._mark_group_failed(subscriptions, group, now)
                await session.commit()
            return GroupOutcome(failed=True)

        versions = RegulationVersionRepository(session)
        latest = await versions.get_latest(group.regulation_id)
        changed = latest is None or latest.content_hash != detection.content_hash

        if not dry_run:
            await self._mark_group_checked(
                subscriptions,
                group,
                now,
                detection.etag,
                detection.last_modified,
                content_hash=detection.content_hash,
            )

        if not changed:
            if not dry_run:
                await session.commit()
            return GroupOutcome()

        if dry_run:
            return GroupOutcome(changed=True)

        version = await versions.append(
            regulation_id=group.regulation_id,
            content=detection.text,
            content_hash=detection.content_hash,
            raw_html=detection.raw_content,
            changes_summary=AUTO_CHANGE_SUMMARY,
            created_by=MONITOR_CREATED_BY,
            fetched_at=now,
        )
        await RegulationRepository(session).set_status(group.regulation_id, RegulationStatus.AMENDED, now)

        subscribers = await subscriptions.list_active_for_regulation(group.regulation_id)
        organization_ids = await self.notification_service.notify_regulation_updated(
            session,
            regulation_id=group.regulation_id,
            version_number=version.version_number,
            subscribers=subscribers,
            now=now,
        )
        await session.commit()

        LOGGER.info(
            "Regulation version created",
            extra={
                "regulation_id": str(group.regulation_id),
                "version_number": version.version_number,
                "notified_organizations": len(organization_ids),
            }
        )
        self.notification_service.broadcast_regulation_updated(
            organization_ids,
            regulation_id=group.regulation_id,
            version_id=version.id,
            version_number=version.version_number,
            detected_at=now,
        )
        return GroupOutcome(changed=True, created_version=True)

    async def get_recent_runs(self, limit: int = 20) -> List[RegulationMonitorRun]:
        """Most recent runs first; ``limit`` is clamped to [1, 100]."""
        safe_limit = max(1, min(100, limit))
        async with self.session_factory() as session:
            return await MonitorRunRepository(session).list_recent(safe_limit)

    async def get_health_summary(self) -> MonitorHealthSummary:
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            repo = MonitorRunRepository(session)
            last = await repo.get_last()
            counts = await repo.count_by_status_since(now - timedelta(hours=24))

        failed_runs = counts.get(MonitorRunStatus.FAILED, 0)
        successful_runs = counts.get(MonitorRunStatus.SUCCESS, 0)
        if last is None:
            return MonitorHealthSummary(
                has_run=False,
                failed_runs_24h=failed_runs,
                successful_runs_24h=successful_runs,
            )

        return MonitorHealthSummary(
            has_run=True,
            last_run_at=last.started_at,
            last_status=last.status.value,
            minutes_since_last_run=int((now - last.started_at).total_seconds() // 60),
            failed_runs_24h=failed_runs,
            successful_runs_24h=successful_runs,
        )
