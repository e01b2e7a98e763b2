"""
Catalog-wide advisory lock for dbconverge.

Only one apply may run against a target schema at a time. The lock is a
session-level PostgreSQL advisory lock held on a dedicated connection for the
duration of the run.
"""

import asyncio
import hashlib
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import asyncpg

from .connection import ConnectionPool
from ..exceptions import DatabaseError, LockError


logger = logging.getLogger(__name__)


def default_lock_key(database: str, schema: str) -> int:
    """Stable signed 64-bit key derived from ``database:schema``."""
    digest = hashlib.blake2b(f"{database}:{schema}".encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class CatalogLock:
    """Advisory lock guarding one target schema."""

    def __init__(
        self,
        pool: ConnectionPool,
        key: int,
        timeout_seconds: float = 30.0,
        poll_interval: float = 0.5,
    ):
        self.pool = pool
        self.key = key
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[asyncpg.Connection]:
        """
        Acquire the lock, yield the connection holding it, release on exit.

        Raises:
            LockError: if the lock is not acquired within the timeout
        """
        async with self.pool.acquire() as conn:
            await self._acquire(conn)
            try:
                yield conn
            finally:
                await self._release(conn)

    async def _acquire(self, conn: asyncpg.Connection) -> None:
        deadline = time.monotonic() + self.timeout_seconds
        attempt = 0
        while True:
            attempt += 1
            try:
                acquired = await conn.fetchval("SELECT pg_try_advisory_lock($1)", self.key)
            except asyncpg.PostgresError as e:
                raise DatabaseError(
                    "Failed to request catalog lock", {"lock_key": self.key}, e
                ) from e

            if acquired:
                logger.info(f"Acquired catalog lock {self.key} (attempt {attempt})")
                return
            if time.monotonic() >= deadline:
                logger.error(f"Timed out waiting for catalog lock {self.key}")
                raise LockError(self.key, self.timeout_seconds)

            logger.debug(f"Catalog lock {self.key} busy, retrying in {self.poll_interval}s")
            await asyncio.sleep(self.poll_interval)

    async def _release(self, conn: asyncpg.Connection) -> None:
        try:
            await conn.fetchval("SELECT pg_advisory_unlock($1)", self.key)
            logger.info(f"Released catalog lock {self.key}")
        except asyncpg.PostgresError as e:
            # the lock dies with the session anyway
            logger.warning(f"Failed to release catalog lock {self.key}: {e}")

    async def is_locked(self, conn: Optional[asyncpg.Connection] = None) -> bool:
        """Check whether any session currently holds the lock."""
        query = """
            SELECT EXISTS (
                SELECT 1 FROM pg_locks
                WHERE locktype = 'advisory'
                AND granted
                AND ((classid::bigint << 32) | objid::bigint) = $1
            )
        """
        if conn is None:
            return bool(await self.pool.fetchval(query, self.key))
        return bool(await conn.fetchval(query, self.key))
