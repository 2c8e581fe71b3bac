"""Deployment-wide single-flight locks."""

from typing import Optional, Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from app.utils.logging import get_logger

LOGGER = get_logger(__name__)


class SingleFlightLock(Protocol):
    """Non-blocking mutual exclusion keyed by an integer."""

    async def try_acquire(self, key: int) -> bool:
        ...

    async def release(self, key: int) -> None:
        ...


class PostgresAdvisoryLock:
    """Session-level PostgreSQL advisory lock.

    Advisory locks belong to the database session that took them, so the
    lock is held on a dedicated connection checked out in ``try_acquire``
    and returned to the pool in ``release``. If the process dies the
    connection closes and PostgreSQL drops the lock.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._connections: dict[int, AsyncConnection] = {}

    async def try_acquire(self, key: int) -> bool:
        if key in self._connections:
            return False

        conn = await self.engine.connect()
        try:
            acquired = await conn.scalar(
                text("SELECT pg_try_advisory_lock(:key)"), {"key": key}
            )
        except Exception:
            await conn.close()
            raise

        if not acquired:
            await conn.close()
            return False

        self._connections[key] = conn
        LOGGER.debug("Advisory lock acquired", extra={"lock_key": key})
        return True

    async def release(self, key: int) -> None:
        conn: Optional[AsyncConnection] = self._connections.pop(key, None)
        if conn is None:
            return

        try:
            await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
            await conn.commit()
            LOGGER.debug("Advisory lock released", extra={"lock_key": key})
        finally:
            await conn.close()
