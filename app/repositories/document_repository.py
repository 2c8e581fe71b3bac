"""Repository for cases and their uploaded documents."""

from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from app.core.exceptions import ForbiddenError, NotFoundError
from app.database.models import Case, Document
from app.repositories.base_repository import BaseRepository


class CaseRepository(BaseRepository[Case]):
    """Read access to cases, scoped by organization."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Case)

    async def get_owned(self, case_id: UUID, organization_id: UUID) -> Case:
        """Get a case, verifying it belongs to the organization.

        Raises:
            NotFoundError: If the case does not exist
            ForbiddenError: If the case belongs to another organization
        """
        case = await self.get_by_id(case_id)
        if case is None:
            raise NotFoundError("Case")
        if case.organization_id != organization_id:
            raise ForbiddenError("Access denied to this case")
        return case


class DocumentRepository(BaseRepository[Document]):
    """Read access to case documents with organization ownership checks."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Document)

    async def get_with_case(self, document_id: UUID) -> Optional[Document]:
        """Get a document with its parent case eagerly loaded."""
        try:
            query = (
                select(Document)
                .options(joinedload(Document.case))
                .where(Document.id == document_id)
            )
            result = await self.session.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error retrieving document {document_id} with case: {str(e)}",
                exc_info=True
            )
            raise

    async def get_owned(self, document_id: UUID, organization_id: UUID) -> Document:
        """Get a document, verifying its case belongs to the organization.

        Raises:
            NotFoundError: If the document does not exist
            ForbiddenError: If the document's case belongs to another organization
        """
        document = await self.get_with_case(document_id)
        if document is None:
            raise NotFoundError("Document")
        if document.case.organization_id != organization_id:
            raise ForbiddenError("Access denied to this document")
        return document

    async def list_by_case(self, case_id: UUID) -> List[Document]:
        """List a case's documents, newest first."""
        try:
            query = (
                select(Document)
                .where(Document.case_id == case_id)
                .order_by(Document.created_at.desc())
            )
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error listing documents for case {case_id}: {str(e)}",
                exc_info=True
            )
            raise
