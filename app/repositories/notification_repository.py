from typing import List

from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import Notification
from app.repositories.base_repository import BaseRepository


class NotificationRepository(BaseRepository[Notification]):
    def __init__(self, session: AsyncSession):
        super().__init__(session, Notification)

    async def insert_many(self, rows: List[dict]) -> int:
        """Insert notification rows in a single statement.

        Returns:
            Number of rows inserted
        """
        if not rows:
            return 0
        try:
            await self.session.execute(insert(Notification), rows)
            return len(rows)
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error inserting {len(rows)} notifications: {str(e)}",
                exc_info=True
            )
            raise
