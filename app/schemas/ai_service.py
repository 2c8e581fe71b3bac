"""
AI Service Contract Models

Pydantic models for the JSON responses of the external AI/extraction
microservice. Only the fields the pipeline consumes are declared; unknown
fields are ignored.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class _ServiceResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")


class EmbeddingResponse(_ServiceResponse):
    """Response of ``POST /embed/``."""

    embeddings: list[list[float] | None] = Field(default_factory=list)
    dimension: int | None = None


class RegulationExtractResponse(_ServiceResponse):
    """Response of ``POST /regulations/extract``."""

    status: Literal["ok", "not_modified", "error"]
    extracted_text: str | None = None
    normalized_text_hash: str | None = None
    etag: str | None = None
    last_modified: str | None = None
    raw_html: str | None = None
    warnings: list[str] = Field(default_factory=list)
    error_code: str | None = None


class DocumentExtractResponse(_ServiceResponse):
    """Response of ``POST /documents/extract``."""

    status: Literal["ok", "error"]
    extracted_text: str | None = None
    normalized_text_hash: str | None = None
    extraction_method: str = "unknown"
    ocr_provider_used: str | None = None
    warnings: list[str] = Field(default_factory=list)
    error_code: str | None = None


class CaseInsightsResponse(_ServiceResponse):
    """Response of ``POST /documents/case-insights``."""

    status: Literal["ok", "error"]
    summary: str | None = None
    highlights: list[dict] = Field(default_factory=list)
    method: str | None = None
    warnings: list[str] = Field(default_factory=list)
    error_code: str | None = None
