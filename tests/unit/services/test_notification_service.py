"""Unit tests for notification fan-out and the organization event broadcaster."""

import asyncio
import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from app.schemas.enums import NotificationType
from app.services.event_broadcaster import OrgEventBroadcaster
from app.services.notification_service import REGULATION_UPDATED_EVENT, NotificationService


@pytest.fixture
def notification_repo():
    with patch("app.services.notification_service.NotificationRepository") as repo_cls:
        repo = repo_cls.return_value
        repo.insert_many = AsyncMock(side_effect=lambda rows: len(rows))
        yield repo


class TestNotifyRegulationUpdated:

    @pytest.mark.asyncio
    async def test_one_row_per_user_and_organization(self, notification_repo, session_factory):
        user_id, organization_id, other_org = uuid4(), uuid4(), uuid4()
        regulation_id = uuid4()
        subscribers = [
            SimpleNamespace(user_id=user_id, organization_id=organization_id),
            SimpleNamespace(user_id=user_id, organization_id=organization_id),
            SimpleNamespace(user_id=user_id, organization_id=other_org),
        ]
        now = datetime.now(timezone.utc)

        notified = await NotificationService().notify_regulation_updated(
            session_factory(),
            regulation_id=regulation_id,
            version_number=3,
            subscribers=subscribers,
            now=now,
        )

        assert notified == {organization_id, other_org}
        rows = notification_repo.insert_many.await_args.args[0]
        assert len(rows) == 2
        assert rows[0]["type"] == NotificationType.REGULATION_UPDATE
        assert rows[0]["related_regulation_id"] == regulation_id
        assert "v3" in rows[0]["message"]
        assert rows[0]["created_at"] == now

    @pytest.mark.asyncio
    async def test_no_subscribers_writes_nothing(self, notification_repo, session_factory):
        notified = await NotificationService().notify_regulation_updated(
            session_factory(), uuid4(), 1, [], datetime.now(timezone.utc)
        )

        assert notified == set()
        notification_repo.insert_many.assert_not_awaited()


class TestBroadcast:

    def test_one_event_per_organization(self):
        broadcaster = MagicMock()
        service = NotificationService(broadcaster)
        org_a, org_b = uuid4(), uuid4()
        regulation_id, version_id = uuid4(), uuid4()
        detected_at = datetime(2024, 5, 1, tzinfo=timezone.utc)

        service.broadcast_regulation_updated([org_a, org_b, org_a], regulation_id, version_id, 2, detected_at)

        assert broadcaster.broadcast.call_count == 2
        _, event, payload = broadcaster.broadcast.call_args.args
        assert event == REGULATION_UPDATED_EVENT
        assert payload == {
            "regulationId": str(regulation_id),
            "versionId": str(version_id),
            "versionNumber": 2,
            "detectedAt": detected_at.isoformat(),
        }

    def test_broadcast_failures_are_swallowed(self):
        broadcaster = MagicMock()
        broadcaster.broadcast.side_effect = RuntimeError("subscriber gone")

        NotificationService(broadcaster).broadcast(uuid4(), "regulation-updated", {})

    def test_without_broadcaster_is_noop(self):
        NotificationService().broadcast(uuid4(), "regulation-updated", {})


class TestOrgEventBroadcaster:

    def test_delivers_only_to_the_organization(self):
        broadcaster = OrgEventBroadcaster()
        org_a, org_b = uuid4(), uuid4()
        queue_a = broadcaster.subscribe(org_a)
        queue_b = broadcaster.subscribe(org_b)

        delivered = broadcaster.broadcast(org_a, "regulation-updated", {"versionNumber": 2})

        assert delivered == 1
        assert queue_b.empty()
        message = queue_a.get_nowait()
        assert message.startswith("event: regulation-updated\n")
        data = json.loads(message.split("data: ", 1)[1])
        assert data["organization_id"] == str(org_a)
        assert data["data"] == {"versionNumber": 2}

    def test_full_queue_drops_event(self):
        broadcaster = OrgEventBroadcaster(queue_size=1)
        organization_id = uuid4()
        broadcaster.subscribe(organization_id)

        assert broadcaster.broadcast(organization_id, "e", {}) == 1
        assert broadcaster.broadcast(organization_id, "e", {}) == 0

    def test_unsubscribe_removes_empty_organization(self):
        broadcaster = OrgEventBroadcaster()
        organization_id = uuid4()
        queue = broadcaster.subscribe(organization_id)

        broadcaster.unsubscribe(organization_id, queue)

        assert broadcaster.subscriber_count(organization_id) == 0
        assert broadcaster.broadcast(organization_id, "e", {}) == 0

    @pytest.mark.asyncio
    async def test_stream_sends_keep_alive_and_events(self):
        broadcaster = OrgEventBroadcaster(heartbeat_interval=0.01)
        organization_id = uuid4()
        stream = broadcaster.stream(organization_id)

        assert await stream.__anext__() == ": keep-alive\n\n"
        broadcaster.broadcast(organization_id, "regulation-updated", {})
        message = await asyncio.wait_for(stream.__anext__(), timeout=1)
        assert message.startswith("event: regulation-updated")

        await stream.aclose()
        assert broadcaster.subscriber_count(organization_id) == 0
