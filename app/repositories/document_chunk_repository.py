from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.repositories.base_repository import BaseRepository
from app.database.models import DocumentChunk


class DocumentChunkRepository(BaseRepository[DocumentChunk]):
    """Repository for document chunks and pgvector similarity search."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with the DocumentChunk model."""
        super().__init__(session, DocumentChunk)

    async def list_for_document(
        self, organization_id: UUID, document_id: UUID
    ) -> List[DocumentChunk]:
        """Get a document's chunks in index order."""
        try:
            query = (
                select(DocumentChunk)
                .where(
                    DocumentChunk.organization_id == organization_id,
                    DocumentChunk.document_id == document_id,
                )
                .order_by(DocumentChunk.chunk_index)
            )
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error listing chunks for document {document_id}: {str(e)}",
                exc_info=True
            )
            raise

    async def bulk_insert(self, rows: List[dict]) -> List[DocumentChunk]:
        """Insert chunk rows and flush.

        Args:
            rows: Column values for each new chunk

        Returns:
            The persisted chunks
        """
        if not rows:
            return []

        try:
            chunks = [DocumentChunk(**row) for row in rows]
            self.session.add_all(chunks)
            await self.session.flush()
            return chunks
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error inserting {len(rows)} document chunks: {str(e)}",
                exc_info=True
            )
            raise

    async def delete_for_document(self, organization_id: UUID, document_id: UUID) -> int:
        """Delete all chunks of a document.

        Returns:
            Number of deleted chunks
        """
        try:
            stmt = (
                delete(DocumentChunk)
                .where(
                    DocumentChunk.organization_id == organization_id,
                    DocumentChunk.document_id == document_id,
                )
                .returning(DocumentChunk.id)
            )
            result = await self.session.execute(stmt)
            return len(result.all())
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error deleting chunks for document {document_id}: {str(e)}",
                exc_info=True
            )
            raise

    async def search_top_k(
        self,
        organization_id: UUID,
        embedding: List[float],
        top_k: int,
        document_id: Optional[UUID] = None,
    ) -> List[Tuple[DocumentChunk, float]]:
        """Nearest chunks by cosine distance.

        Only chunks with an embedding take part in the search.

        Args:
            organization_id: Organization scope
            embedding: Query vector
            top_k: Maximum number of rows
            document_id: Optional document scope

        Returns:
            (chunk, similarity) tuples ordered by ascending distance, where
            similarity is ``1 - cosine_distance``
        """
        distance_expr = DocumentChunk.embedding.cosine_distance(embedding)

        query = (
            select(DocumentChunk, (1 - distance_expr).label("similarity"))
            .where(
                DocumentChunk.organization_id == organization_id,
                DocumentChunk.embedding.is_not(None),
            )
        )
        if document_id is not None:
            query = query.where(DocumentChunk.document_id == document_id)

        query = query.order_by(distance_expr).limit(top_k)

        try:
            result = await self.session.execute(query)
            return [(row[0], float(row[1] or 0)) for row in result.all()]
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error running similarity search: {str(e)}",
                exc_info=True
            )
            raise
