"""Chunking + embedding orchestration and similarity retrieval for one document."""

import asyncio
import math
from typing import List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.ai_client import AIServiceClient
from app.core.config import settings
from app.database.models import DOCUMENT_CHUNK_EMBEDDING_DIMENSION
from app.schemas.ai_service import EmbeddingResponse
from app.schemas.documents import (
    Citation,
    ReindexResult,
    RetrievalMeta,
    RetrievalResult,
    RETRIEVAL_STRATEGY,
)
from app.services.documents.document_chunk_service import DocumentChunkService, clamp_top_k
from app.services.documents.text_chunker import TextChunker
from app.utils.logging import get_logger

LOGGER = get_logger(__name__)


def sanitize_embedding(
    embedding: Optional[List[float]], warnings: List[str], label: str
) -> Optional[List[float]]:
    """Return the embedding if usable, otherwise record a warning and return None."""
    if not embedding:
        warnings.append(f"{label}_missing_embedding")
        return None
    if len(embedding) != DOCUMENT_CHUNK_EMBEDDING_DIMENSION:
        warnings.append(
            f"{label}_dimension_mismatch:{len(embedding)}!={DOCUMENT_CHUNK_EMBEDDING_DIMENSION}"
        )
        return None
    if any(value is None or not math.isfinite(value) for value in embedding):
        warnings.append(f"{label}_invalid_embedding_values")
        return None
    return embedding


def build_chunker() -> TextChunker:
    return TextChunker(
        chunk_chars=settings.rag.chunk_chars,
        overlap_chars=settings.rag.chunk_overlap_chars,
        max_chunks=settings.rag.max_chunks,
    )


class DocumentRagService:
    """Builds and queries a document's embedded chunk set.

    Embedding problems never raise: they degrade into warnings and chunks
    stored without a vector.
    """

    def __init__(
        self,
        session: AsyncSession,
        ai_client: AIServiceClient,
        chunker: Optional[TextChunker] = None,
        chunk_service: Optional[DocumentChunkService] = None,
        timeout: Optional[float] = None,
    ):
        self.session = session
        self.ai_client = ai_client
        self.chunker = chunker or build_chunker()
        self.chunk_service = chunk_service or DocumentChunkService(session)
        self.timeout = timeout if timeout is not None else settings.ai.request_timeout_seconds

    async def reindex_document(
        self, organization_id: UUID, document_id: UUID, source_text: str
    ) -> ReindexResult:
        """Re-chunk and re-embed a document, replacing its stored chunks.

        Args:
            organization_id: Owning organization
            document_id: Document to reindex
            source_text: Extracted document text

        Returns:
            Counts and warnings of the reindex
        """
        warnings: List[str] = []
        chunk_inputs = self.chunker.split(source_text)

        if not chunk_inputs:
            await self.chunk_service.reindex(organization_id, document_id, [])
            return ReindexResult(warnings=["source_text_empty_or_not_chunkable"])

        embedding_response: Optional[EmbeddingResponse] = None
        try:
            embedding_response = await asyncio.wait_for(
                self.ai_client.generate_embeddings([chunk.content for chunk in chunk_inputs]),
                timeout=self.timeout,
            )
        except Exception as e:
            LOGGER.error(
                f"Document chunk embedding generation failed: {str(e)}",
                exc_info=True,
                extra={
                    "document_id": str(document_id),
                    "organization_id": str(organization_id),
                }
            )
            warnings.append("embedding_generation_failed")

        generated = embedding_response.embeddings if embedding_response else []
        detected_dimension = None
        if embedding_response:
            detected_dimension = embedding_response.dimension or (
                len(generated[0]) if generated and generated[0] else None
            )

        if generated and len(generated) != len(chunk_inputs):
            warnings.append(f"embedding_count_mismatch:{len(generated)}!={len(chunk_inputs)}")

        embedded_chunks = 0
        indexed_chunks = []
        for index, chunk in enumerate(chunk_inputs):
            vector = generated[index] if index < len(generated) else None
            embedding = sanitize_embedding(vector, warnings, f"chunk_{index}")
            if embedding is not None:
                embedded_chunks += 1
            indexed_chunks.append(chunk.model_copy(update={"embedding": embedding}))

        persisted = await self.chunk_service.reindex(organization_id, document_id, indexed_chunks)

        return ReindexResult(
            chunks_persisted=len(persisted),
            embedded_chunks=embedded_chunks,
            embedding_dimension=detected_dimension,
            warnings=warnings,
        )

    async def retrieve_relevant_chunks(
        self,
        organization_id: UUID,
        document_id: UUID,
        query_text: str,
        top_k: int,
    ) -> RetrievalResult:
        """Retrieve the chunks most similar to the query, assembled in document order.

        An unavailable query embedding yields an empty context with a warning.
        """
        top_k = clamp_top_k(top_k)
        warnings: List[str] = []

        def meta(**values) -> RetrievalMeta:
            return RetrievalMeta(
                strategy=RETRIEVAL_STRATEGY,
                top_k_requested=top_k,
                query_chars=len(query_text),
                warnings=warnings,
                **values,
            )

        try:
            query_embedding = await asyncio.wait_for(
                self.ai_client.generate_embedding(query_text),
                timeout=self.timeout,
            )
        except Exception as e:
            LOGGER.error(
                f"RAG query embedding generation failed: {str(e)}",
                exc_info=True,
                extra={
                    "document_id": str(document_id),
                    "organization_id": str(organization_id),
                }
            )
            warnings.append("query_embedding_generation_failed")
            return RetrievalResult(retrieval_meta=meta())

        valid_embedding = sanitize_embedding(query_embedding, warnings, "query")
        if valid_embedding is None:
            return RetrievalResult(
                retrieval_meta=meta(embedding_dimension=len(query_embedding or []) or None)
            )

        rows = await self.chunk_service.retrieve_top_k(
            organization_id=organization_id,
            embedding=valid_embedding,
            top_k=top_k,
            document_id=document_id,
        )

        if not rows:
            warnings.append("no_vector_chunks_returned")

        context_text = "\n\n".join(
            chunk.content for chunk in sorted(rows, key=lambda chunk: chunk.chunk_index)
        ).strip()

        return RetrievalResult(
            context_text=context_text,
            citations=[Citation.from_chunk(row) for row in rows],
            retrieval_meta=meta(
                top_k_returned=len(rows),
                context_chars=len(context_text),
                embedding_dimension=len(valid_embedding),
            ),
        )
