from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import RegulationMonitorRun
from app.repositories.base_repository import BaseRepository
from app.schemas.enums import MonitorRunStatus


class MonitorRunRepository(BaseRepository[RegulationMonitorRun]):
    """Audit trail of regulation monitor executions."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, RegulationMonitorRun)

    async def list_recent(self, limit: int) -> List[RegulationMonitorRun]:
        try:
            query = (
                select(RegulationMonitorRun)
                .order_by(RegulationMonitorRun.started_at.desc())
                .limit(limit)
            )
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing monitor runs: {str(e)}", exc_info=True)
            raise

    async def get_last(self) -> Optional[RegulationMonitorRun]:
        runs = await self.list_recent(1)
        return runs[0] if runs else None

    async def count_by_status_since(self, since: datetime) -> Dict[MonitorRunStatus, int]:
        try:
            query = (
                select(RegulationMonitorRun.status, func.count())
                .where(RegulationMonitorRun.started_at >= since)
                .group_by(RegulationMonitorRun.status)
            )
            result = await self.session.execute(query)
            return {MonitorRunStatus(status): count for status, count in result.all()}
        except SQLAlchemyError as e:
            self.logger.error(f"Error counting monitor runs: {str(e)}", exc_info=True)
            raise
