from .enums import (
    ChangeStatus,
    ErrorCode,
    JobStatus,
    MonitorRunStatus,
    NotificationType,
    RegulationStatus,
)

__all__ = [
    "ChangeStatus",
    "ErrorCode",
    "JobStatus",
    "MonitorRunStatus",
    "NotificationType",
    "RegulationStatus",
]
