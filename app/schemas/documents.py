"""
Document Intelligence Schema Definitions

Typed models for the document extraction, chunking, retrieval and insight
pipeline:
- Chunk payloads written to the vector chunk store
- Retrieval results (citations + retrieval metadata)
- Job runner results and read models exposed to the API layer

Warnings, highlights, citations and retrieval metadata stay typed in process
and are only dumped to JSON by the repositories.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from app.schemas.enums import JobStatus

RETRIEVAL_STRATEGY = "pgvector_cosine_document_scope_v1"
DEFAULT_INSIGHTS_METHOD = "embedding_extractive_v1"


class ChunkMetadata(BaseModel):
    """Character offsets of a chunk inside the normalized document text."""

    char_start: int = Field(ge=0)
    char_end: int = Field(ge=0)


class ChunkInput(BaseModel):
    """A chunk to persist for a document."""

    chunk_index: int
    content: str
    content_lang: str | None = None
    token_count: int | None = None
    embedding: list[float] | None = None
    metadata: ChunkMetadata | None = None


class RetrievedChunk(BaseModel):
    """A stored chunk returned by similarity search."""

    id: UUID
    organization_id: UUID
    document_id: UUID
    chunk_index: int
    content: str
    content_lang: str | None = None
    token_count: int | None = None
    metadata: dict = Field(default_factory=dict)
    similarity: float


class Citation(BaseModel):
    """A retrieved chunk cited as evidence for an insight."""

    chunk_id: UUID
    chunk_index: int
    similarity: float
    snippet: str
    content_lang: str | None = None
    token_count: int | None = None
    metadata: dict = Field(default_factory=dict)

    @classmethod
    def from_chunk(cls, chunk: RetrievedChunk) -> "Citation":
        return cls(
            chunk_id=chunk.id,
            chunk_index=chunk.chunk_index,
            similarity=chunk.similarity,
            snippet=chunk.content,
            content_lang=chunk.content_lang,
            token_count=chunk.token_count,
            metadata=chunk.metadata,
        )


class Highlight(BaseModel):
    """Extractive highlight returned by the summarization contract."""

    snippet: str
    score: float = 0.0
    sentence_start: int = 0
    sentence_end: int = 0

    @field_validator("score", mode="before")
    @classmethod
    def _coerce_score(cls, value):
        try:
            return float(value or 0)
        except (TypeError, ValueError):
            return 0.0


class RetrievalMeta(BaseModel):
    """Diagnostics describing how the insight context was assembled."""

    strategy: str = RETRIEVAL_STRATEGY
    top_k_requested: int
    top_k_returned: int = 0
    query_chars: int = 0
    context_chars: int = 0
    embedding_dimension: int | None = None
    warnings: list[str] = Field(default_factory=list)


class ReindexResult(BaseModel):
    """Outcome of re-chunking and re-embedding one document."""

    chunks_persisted: int = 0
    embedded_chunks: int = 0
    embedding_dimension: int | None = None
    warnings: list[str] = Field(default_factory=list)


class RetrievalResult(BaseModel):
    """Document-ordered context text plus citations."""

    context_text: str = ""
    citations: list[Citation] = Field(default_factory=list)
    retrieval_meta: RetrievalMeta


class JobRunResult(BaseModel):
    """Counters returned by a batch job run."""

    processed: int = 0
    ready: int = 0
    failed: int = 0
    unsupported: int = 0


class EnqueueResult(BaseModel):
    documents: int = 0
    queued: int = 0


class ExtractionState(BaseModel):
    """Read model of a document's extraction state."""

    document_id: UUID | None = None
    status: JobStatus = JobStatus.PENDING
    extraction_method: str | None = None
    error_code: str | None = None
    warnings: list[str] = Field(default_factory=list)
    insights_status: JobStatus | None = None
    insights_updated_at: datetime | None = None
    updated_at: datetime | None = None


class InsightState(BaseModel):
    """Read model of a document's insight state."""

    status: JobStatus = JobStatus.PENDING
    summary: str | None = None
    highlights: list[Highlight] = Field(default_factory=list)
    citations: list[Citation] = Field(default_factory=list)
    retrieval_meta: RetrievalMeta | None = None
    method: str | None = None
    error_code: str | None = None
    warnings: list[str] = Field(default_factory=list)
    updated_at: datetime | None = None


class QueueHealth(BaseModel):
    """Insight row counts per status for one organization."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    ready: int = 0
    failed: int = 0
    unsupported: int = 0


class CaseFragment(BaseModel):
    """Bounded slice of a ready document attached to case-level AI requests."""

    fragment_id: str
    text: str
    source: str = "document"
    document_id: UUID
    document_name: str


class CaseDocumentMeta(BaseModel):
    docs_considered: int = 0
    docs_queued: int = 0
    docs_ready: int = 0
    docs_pending: int = 0
    docs_failed: int = 0
    docs_unsupported: int = 0


class CaseDocumentPreparation(BaseModel):
    fragments: list[CaseFragment] = Field(default_factory=list)
    meta: CaseDocumentMeta = Field(default_factory=CaseDocumentMeta)
