"""SQLAlchemy models for the monitoring and document pipeline."""

from app.database.models import (
    DOCUMENT_CHUNK_EMBEDDING_DIMENSION,
    Case,
    Document,
    DocumentChunk,
    DocumentExtraction,
    Notification,
    Regulation,
    RegulationMonitorRun,
    RegulationSubscription,
    RegulationVersion,
)

__all__ = [
    "DOCUMENT_CHUNK_EMBEDDING_DIMENSION",
    "Case",
    "Document",
    "DocumentChunk",
    "DocumentExtraction",
    "Notification",
    "Regulation",
    "RegulationMonitorRun",
    "RegulationSubscription",
    "RegulationVersion",
]
