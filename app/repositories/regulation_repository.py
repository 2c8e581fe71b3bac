from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ConflictError
from app.database.models import Regulation, RegulationVersion
from app.repositories.base_repository import BaseRepository
from app.schemas.enums import RegulationStatus


class RegulationRepository(BaseRepository[Regulation]):
    def __init__(self, session: AsyncSession):
        super().__init__(session, Regulation)

    async def set_status(self, regulation_id: UUID, status: RegulationStatus, now: datetime) -> None:
        try:
            await self.session.execute(
                update(Regulation)
                .where(Regulation.id == regulation_id)
                .values(status=status, updated_at=now)
            )
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error updating status of regulation {regulation_id}: {str(e)}",
                exc_info=True
            )
            raise


class RegulationVersionRepository(BaseRepository[RegulationVersion]):
    """Append-only ledger of regulation content versions."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, RegulationVersion)

    async def get_latest(self, regulation_id: UUID) -> Optional[RegulationVersion]:
        """Get the highest-numbered version of a regulation."""
        try:
            query = (
                select(RegulationVersion)
                .where(RegulationVersion.regulation_id == regulation_id)
                .order_by(RegulationVersion.version_number.desc())
                .limit(1)
            )
            result = await self.session.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error retrieving latest version of regulation {regulation_id}: {str(e)}",
                exc_info=True
            )
            raise

    async def list_for_regulation(self, regulation_id: UUID) -> List[RegulationVersion]:
        try:
            query = (
                select(RegulationVersion)
                .where(RegulationVersion.regulation_id == regulation_id)
                .order_by(RegulationVersion.version_number)
            )
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error listing versions of regulation {regulation_id}: {str(e)}",
                exc_info=True
            )
            raise

    async def append(
        self,
        regulation_id: UUID,
        content: str,
        content_hash: str,
        raw_html: Optional[str],
        changes_summary: str,
        created_by: str,
        fetched_at: datetime,
    ) -> RegulationVersion:
        """Insert the next version (prior max + 1).

        Raises:
            ConflictError: If a concurrent writer took the same version number
        """
        try:
            current_max = await self.session.scalar(
                select(func.max(RegulationVersion.version_number))
                .where(RegulationVersion.regulation_id == regulation_id)
            )
            version = RegulationVersion(
                regulation_id=regulation_id,
                version_number=(current_max or 0) + 1,
                content=content,
                content_hash=content_hash,
                raw_html=raw_html,
                changes_summary=changes_summary,
                created_by=created_by,
                fetched_at=fetched_at,
            )
            self.session.add(version)
            await self.session.flush()
            return version
        except IntegrityError as e:
            self.logger.warning(
                f"Version number conflict for regulation {regulation_id}",
                extra={"error": str(e)}
            )
            raise ConflictError("Regulation version already exists", e) from e
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error appending version of regulation {regulation_id}: {str(e)}",
                exc_info=True
            )
            raise
