import asyncio
import json
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, Set
from uuid import UUID

from pydantic import BaseModel, Field

from app.utils.logging import get_logger

LOGGER = get_logger(__name__)


class OrgEvent(BaseModel):
    event: str
    organization_id: UUID
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict


class OrgEventBroadcaster:
    """Fans real-time events out to per-organization SSE subscribers.

    Broadcasting is best-effort: a full subscriber queue drops the event for
    that subscriber only.
    """

    def __init__(self, queue_size: int = 100, heartbeat_interval: float = 15.0):
        self.queue_size = queue_size
        self.heartbeat_interval = heartbeat_interval
        self._subscribers: Dict[UUID, Set[asyncio.Queue]] = {}

    def subscribe(self, organization_id: UUID) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(organization_id, set()).add(queue)
        return queue

    def unsubscribe(self, organization_id: UUID, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(organization_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[organization_id]

    def subscriber_count(self, organization_id: UUID) -> int:
        return len(self._subscribers.get(organization_id, ()))

    def broadcast(self, organization_id: UUID, event: str, data: Dict) -> int:
        """Queue an event for every subscriber of an organization.

        Returns:
            Number of subscribers the event was delivered to
        """
        message = self._format_sse(OrgEvent(event=event, organization_id=organization_id, data=data))
        delivered = 0
        for queue in list(self._subscribers.get(organization_id, ())):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                LOGGER.warning(
                    "Dropping event for slow subscriber",
                    extra={"organization_id": str(organization_id), "event": event}
                )
        return delivered

    async def stream(self, organization_id: UUID) -> AsyncGenerator[str, None]:
        """Stream SSE messages for one organization until cancelled."""
        queue = self.subscribe(organization_id)
        try:
            while True:
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=self.heartbeat_interval)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield message
        except asyncio.CancelledError:
            LOGGER.info(f"SSE connection cancelled for organization {organization_id}")
            raise
        finally:
            self.unsubscribe(organization_id, queue)

    def _format_sse(self, event: OrgEvent) -> str:
        """Format an OrgEvent as a raw SSE message."""
        data = event.model_dump(mode="json")
        return f"event: {event.event}\ndata: {json.dumps(data)}\n\n"


broadcaster = OrgEventBroadcaster()
