"""Repository layer modules."""

from app.repositories.document_chunk_repository import DocumentChunkRepository
from app.repositories.document_extraction_repository import DocumentExtractionRepository
from app.repositories.document_repository import CaseRepository, DocumentRepository
from app.repositories.monitor_run_repository import MonitorRunRepository
from app.repositories.notification_repository import NotificationRepository
from app.repositories.regulation_repository import (
    RegulationRepository,
    RegulationVersionRepository,
)
from app.repositories.regulation_subscription_repository import (
    RegulationSubscriptionRepository,
)

__all__ = [
    "CaseRepository",
    "DocumentChunkRepository",
    "DocumentExtractionRepository",
    "DocumentRepository",
    "MonitorRunRepository",
    "NotificationRepository",
    "RegulationRepository",
    "RegulationSubscriptionRepository",
    "RegulationVersionRepository",
]
