"""Closed status vocabularies shared by models, repositories and services."""

from enum import Enum


class JobStatus(str, Enum):
    """Lifecycle of a durable document job (extraction or insights)."""

    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"
    UNSUPPORTED = "unsupported"


# Rows in these states are picked up by the batch claim once their retry time elapses.
CLAIMABLE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.FAILED, JobStatus.PROCESSING)


class ChangeStatus(str, Enum):
    """Outcome of a single change-detection fetch."""

    UNCHANGED = "unchanged"
    CHANGED = "changed"
    ERROR = "error"


class MonitorRunStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RegulationStatus(str, Enum):
    ACTIVE = "active"
    AMENDED = "amended"
    REPEALED = "repealed"
    DRAFT = "draft"


class NotificationType(str, Enum):
    AI_SUGGESTION = "ai_suggestion"
    REGULATION_UPDATE = "regulation_update"
    CASE_UPDATE = "case_update"
    SYSTEM = "system"


class ErrorCode(str, Enum):
    """Error codes persisted on job rows and exposed read-only to callers."""

    FILE_MISSING = "file_missing"
    CASE_MISSING = "case_missing"
    SERVICE_ERROR = "service_error"
    EXTRACTION_ERROR = "extraction_error"
    UNSUPPORTED_FILE_TYPE = "unsupported_file_type"
    EXTRACTED_TEXT_MISSING = "extracted_text_missing"
    INSIGHTS_ERROR = "insights_error"
    INSIGHTS_SERVICE_ERROR = "insights_service_error"
    TIMEOUT = "timeout"
    EMPTY_CONTENT = "empty_content"
