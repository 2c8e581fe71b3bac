"""Regulation monitoring schemas."""

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from app.schemas.enums import ChangeStatus


class ChangeDetectionResult(BaseModel):
    """Outcome of one conditional fetch of a regulation source."""

    status: ChangeStatus
    text: str | None = None
    raw_content: str | None = None
    content_hash: str | None = None
    etag: str | None = None
    last_modified: datetime | None = None
    error_code: str | None = None
    warnings: list[str] = Field(default_factory=list)


class MonitorRunOptions(BaseModel):
    regulation_id: UUID | None = None
    dry_run: bool = False
    trigger_source: str = "worker"
    triggered_by_user_id: UUID | None = None


class MonitorRunResult(BaseModel):
    scanned: int = 0
    changed: int = 0
    versions_created: int = 0
    failed: int = 0


class MonitorHealthSummary(BaseModel):
    has_run: bool
    last_run_at: datetime | None = None
    last_status: str | None = None
    minutes_since_last_run: int | None = None
    failed_runs_24h: int = 0
    successful_runs_24h: int = 0


@dataclass
class SubscriptionGroup:
    """Due subscriptions sharing one (regulation, source URL) pair."""

    regulation_id: UUID
    source_url: str
    subscriptions: list = field(default_factory=list)

    @property
    def representative(self):
        return self.subscriptions[0]


@dataclass
class GroupOutcome:
    changed: bool = False
    created_version: bool = False
    failed: bool = False
