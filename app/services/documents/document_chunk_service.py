"""Vector chunk store with organization-scoped writes and similarity search."""

import math
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ConflictError, ValidationError
from app.database.models import DOCUMENT_CHUNK_EMBEDDING_DIMENSION, DocumentChunk
from app.repositories.document_chunk_repository import DocumentChunkRepository
from app.repositories.document_repository import DocumentRepository
from app.schemas.documents import ChunkInput, RetrievedChunk
from app.utils.logging import get_logger

LOGGER = get_logger(__name__)

MAX_TOP_K = 100


def clamp_top_k(top_k: int) -> int:
    return max(1, min(MAX_TOP_K, int(math.floor(top_k))))


def validate_embedding(embedding: Sequence[float], label: str = "Chunk") -> List[float]:
    """Check dimensionality and finiteness of an embedding.

    Raises:
        ValidationError: If the vector has the wrong size or non-finite values
    """
    if len(embedding) != DOCUMENT_CHUNK_EMBEDDING_DIMENSION:
        raise ValidationError(
            f"{label} embedding must have {DOCUMENT_CHUNK_EMBEDDING_DIMENSION} dimensions"
        )
    values = []
    for value in embedding:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise ValidationError(f"{label} embedding contains invalid values")
        values.append(float(value))
    return values


class DocumentChunkService:
    """Reads and writes a document's chunk set.

    Writes are flushed inside the caller's transaction; the caller commits.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.chunk_repo = DocumentChunkRepository(session)
        self.document_repo = DocumentRepository(session)

    async def _assert_document_org_access(self, document_id: UUID, organization_id: UUID) -> None:
        await self.document_repo.get_owned(document_id, organization_id)

    def _ensure_chunk_payload(self, chunks: List[ChunkInput]) -> List[ChunkInput]:
        """Validate a chunk payload before any write.

        Raises:
            ValidationError: Negative index, empty content or invalid embedding
            ConflictError: Duplicate chunk indices in the payload
        """
        seen_indexes = set()

        for chunk in chunks:
            if chunk.chunk_index < 0:
                raise ValidationError("chunk_index must be a non-negative integer")
            if not chunk.content or not chunk.content.strip():
                raise ValidationError("Chunk content cannot be empty")
            if chunk.chunk_index in seen_indexes:
                raise ConflictError("Duplicate chunk_index values in request payload")
            seen_indexes.add(chunk.chunk_index)

            if chunk.embedding is not None:
                validate_embedding(chunk.embedding)

        return chunks

    def _to_rows(
        self, organization_id: UUID, document_id: UUID, chunks: List[ChunkInput]
    ) -> List[dict]:
        return [
            {
                "organization_id": organization_id,
                "document_id": document_id,
                "chunk_index": chunk.chunk_index,
                "content": chunk.content,
                "content_lang": chunk.content_lang,
                "token_count": chunk.token_count,
                "embedding": chunk.embedding,
                "chunk_metadata": chunk.metadata.model_dump() if chunk.metadata else {},
            }
            for chunk in chunks
        ]

    async def insert_chunks(
        self, organization_id: UUID, document_id: UUID, chunks: List[ChunkInput]
    ) -> List[DocumentChunk]:
        """Add chunks to a document without touching existing ones.

        Raises:
            ConflictError: If a chunk index already exists for the document
        """
        await self._assert_document_org_access(document_id, organization_id)
        self._ensure_chunk_payload(chunks)

        if not chunks:
            return []

        try:
            async with self.session.begin_nested():
                return await self.chunk_repo.bulk_insert(
                    self._to_rows(organization_id, document_id, chunks)
                )
        except IntegrityError as e:
            raise ConflictError("Chunk index already exists for this document", e) from e

    async def delete_chunks(self, organization_id: UUID, document_id: UUID) -> int:
        """Delete a document's chunks and return how many were removed."""
        await self._assert_document_org_access(document_id, organization_id)
        return await self.chunk_repo.delete_for_document(organization_id, document_id)

    async def reindex(
        self, organization_id: UUID, document_id: UUID, chunks: List[ChunkInput]
    ) -> List[DocumentChunk]:
        """Replace a document's chunk set atomically.

        Delete and insert run inside one savepoint; if either fails the prior
        chunk set is left untouched.

        Raises:
            NotFoundError: If the document does not exist
            ForbiddenError: If the document belongs to another organization
            ValidationError: If the payload is invalid
            ConflictError: On duplicate chunk indices
        """
        await self._assert_document_org_access(document_id, organization_id)
        self._ensure_chunk_payload(chunks)

        try:
            async with self.session.begin_nested():
                deleted = await self.chunk_repo.delete_for_document(organization_id, document_id)
                persisted = await self.chunk_repo.bulk_insert(
                    self._to_rows(organization_id, document_id, chunks)
                )
        except IntegrityError as e:
            raise ConflictError("Chunk index already exists for this document", e) from e

        LOGGER.info(
            "Document chunks reindexed",
            extra={
                "document_id": str(document_id),
                "deleted": deleted,
                "inserted": len(persisted),
            }
        )
        return persisted

    async def retrieve_top_k(
        self,
        organization_id: UUID,
        embedding: Sequence[float],
        top_k: int = 5,
        document_id: Optional[UUID] = None,
    ) -> List[RetrievedChunk]:
        """Nearest chunks by cosine distance, optionally scoped to one document.

        Raises:
            ValidationError: If the query embedding is invalid
        """
        top_k = clamp_top_k(top_k)

        if document_id is not None:
            await self._assert_document_org_access(document_id, organization_id)

        query_vector = validate_embedding(embedding, label="Query")
        rows = await self.chunk_repo.search_top_k(
            organization_id=organization_id,
            embedding=query_vector,
            top_k=top_k,
            document_id=document_id,
        )

        return [
            RetrievedChunk(
                id=chunk.id,
                organization_id=chunk.organization_id,
                document_id=chunk.document_id,
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                content_lang=chunk.content_lang,
                token_count=chunk.token_count,
                metadata=chunk.chunk_metadata or {},
                similarity=similarity,
            )
            for chunk, similarity in rows
        ]
