from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import RegulationSubscription
from app.repositories.base_repository import BaseRepository


class RegulationSubscriptionRepository(BaseRepository[RegulationSubscription]):
    """Monitor-side access to regulation subscriptions."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, RegulationSubscription)

    async def list_due(
        self, now: datetime, regulation_id: Optional[UUID] = None
    ) -> List[RegulationSubscription]:
        """Active subscriptions whose next check has elapsed.

        Ordered by next check time, then regulation.
        """
        query = select(RegulationSubscription).where(
            RegulationSubscription.is_active.is_(True),
            RegulationSubscription.next_check_at <= now,
        )
        if regulation_id is not None:
            query = query.where(RegulationSubscription.regulation_id == regulation_id)
        query = query.order_by(
            RegulationSubscription.next_check_at,
            RegulationSubscription.regulation_id,
        )
        try:
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing due subscriptions: {str(e)}", exc_info=True)
            raise

    async def list_active_for_regulation(self, regulation_id: UUID) -> List[RegulationSubscription]:
        try:
            query = select(RegulationSubscription).where(
                RegulationSubscription.regulation_id == regulation_id,
                RegulationSubscription.is_active.is_(True),
            )
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error listing subscribers of regulation {regulation_id}: {str(e)}",
                exc_info=True
            )
            raise

    async def mark_checked(
        self,
        subscription_id: UUID,
        now: datetime,
        next_check_at: datetime,
        etag: Optional[str] = None,
        last_modified: Optional[datetime] = None,
        content_hash: Optional[str] = None,
    ) -> None:
        """Record a check; cache validators are only overwritten when given."""
        values = {
            "last_checked_at": now,
            "next_check_at": next_check_at,
            "updated_at": now,
        }
        if etag is not None:
            values["last_etag"] = etag
        if last_modified is not None:
            values["last_modified"] = last_modified
        if content_hash is not None:
            values["last_content_hash"] = content_hash

        try:
            await self.session.execute(
                update(RegulationSubscription)
                .where(RegulationSubscription.id == subscription_id)
                .values(**values)
            )
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error updating subscription {subscription_id}: {str(e)}",
                exc_info=True
            )
            raise
