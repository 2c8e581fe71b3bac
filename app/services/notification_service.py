"""Notification fan-out for regulation updates."""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.repositories.notification_repository import NotificationRepository
from app.schemas.enums import NotificationType
from app.services.event_broadcaster import OrgEventBroadcaster
from app.utils.logging import get_logger

LOGGER = get_logger(__name__)

REGULATION_UPDATED_EVENT = "regulation-updated"


class NotificationService:
    """Writes user notifications and pushes best-effort real-time events."""

    def __init__(self, broadcaster: Optional[OrgEventBroadcaster] = None):
        self.broadcaster = broadcaster

    async def notify_many(self, session: AsyncSession, rows: List[dict]) -> int:
        """Insert notification rows with one batched statement."""
        return await NotificationRepository(session).insert_many(rows)

    def broadcast(self, organization_id: UUID, event: str, data: Dict) -> None:
        """Push a real-time event; failures are logged and never raised."""
        if self.broadcaster is None:
            return
        try:
            self.broadcaster.broadcast(organization_id, event, data)
        except Exception as e:
            LOGGER.warning(
                f"Broadcast failed: {str(e)}",
                exc_info=True,
                extra={"organization_id": str(organization_id), "event": event}
            )

    async def notify_regulation_updated(
        self,
        session: AsyncSession,
        regulation_id: UUID,
        version_number: int,
        subscribers: Iterable,
        now: datetime,
    ) -> Set[UUID]:
        """Insert one notification per (user, organization) pair about a new version.

        Args:
            session: Session of the caller's transaction
            regulation_id: Updated regulation
            version_number: Number of the new version
            subscribers: Active subscriptions of the regulation
            now: Detection time

        Returns:
            Organizations that were notified
        """
        unique: Dict[tuple, object] = {}
        for subscriber in subscribers:
            unique[(subscriber.user_id, subscriber.organization_id)] = subscriber

        if not unique:
            return set()

        rows = [
            {
                "user_id": user_id,
                "organization_id": organization_id,
                "type": NotificationType.REGULATION_UPDATE,
                "title": f"Regulation #{regulation_id} updated",
                "message": f"A new version (v{version_number}) was detected for a subscribed regulation.",
                "related_regulation_id": regulation_id,
                "created_at": now,
            }
            for user_id, organization_id in unique
        ]
        await self.notify_many(session, rows)
        return {organization_id for _, organization_id in unique}

    def broadcast_regulation_updated(
        self,
        organization_ids: Iterable[UUID],
        regulation_id: UUID,
        version_id: UUID,
        version_number: int,
        detected_at: datetime,
    ) -> None:
        """Send one ``regulation-updated`` event per organization."""
        payload = {
            "regulationId": str(regulation_id),
            "versionId": str(version_id),
            "versionNumber": version_number,
            "detectedAt": detected_at.isoformat(),
        }
        for organization_id in set(organization_ids):
            self.broadcast(organization_id, REGULATION_UPDATED_EVENT, payload)
