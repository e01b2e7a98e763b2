"""
Applied-schema marker for dbconverge.

Keeps one row per target schema in ``<metadata_schema>.<marker_table>``
recording the fingerprint of the last fully applied logical schema, so that a
run whose declarations have not changed can stop before introspecting.
"""

import logging
from typing import Any, Dict, Optional

import asyncpg

from .ddl import quote_ident
from ..database.connection import ConnectionPool
from ..exceptions import DatabaseError


logger = logging.getLogger(__name__)


class MetadataManager:
    """Manages the dbconverge metadata schema and marker table."""

    def __init__(
        self,
        pool: ConnectionPool,
        metadata_schema: str = "dbconverge_meta",
        marker_table: str = "applied_schema",
    ):
        self.pool = pool
        self.metadata_schema = metadata_schema
        self.marker_table = marker_table

    @property
    def qualified_table(self) -> str:
        return f"{quote_ident(self.metadata_schema)}.{quote_ident(self.marker_table)}"

    def _marker_table_ddl(self) -> str:
        """Get DDL for the marker table."""
        return f"""
        CREATE TABLE IF NOT EXISTS {self.qualified_table} (
            target_schema VARCHAR(255) PRIMARY KEY,
            schema_hash VARCHAR(64) NOT NULL,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """

    async def ensure_schema(self, schema: str, conn: asyncpg.Connection) -> None:
        """Create a schema if it does not exist."""
        try:
            await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {quote_ident(schema)}")
        except asyncpg.PostgresError as e:
            raise DatabaseError(f"Failed to create schema '{schema}'", {"schema": schema}, e) from e

    async def ensure_marker_table(self, conn: Optional[asyncpg.Connection] = None) -> None:
        """Create the metadata schema and marker table if they don't exist."""
        if conn is None:
            async with self.pool.acquire() as conn:
                return await self.ensure_marker_table(conn)

        await self.ensure_schema(self.metadata_schema, conn)
        try:
            await conn.execute(self._marker_table_ddl())
            logger.debug(f"Marker table {self.metadata_schema}.{self.marker_table} ready")
        except asyncpg.PostgresError as e:
            logger.error(f"Failed to create marker table: {e}")
            raise DatabaseError(
                "Failed to create marker table",
                {"table": f"{self.metadata_schema}.{self.marker_table}"},
                e,
            ) from e

    async def get_marker(
        self, target_schema: str, conn: Optional[asyncpg.Connection] = None
    ) -> Optional[Dict[str, Any]]:
        """Return ``{schema_hash, applied_at}`` for the target schema, if recorded."""
        if conn is None:
            async with self.pool.acquire() as conn:
                return await self.get_marker(target_schema, conn)

        exists = await conn.fetchval(
            "SELECT to_regclass($1) IS NOT NULL", self.qualified_table
        )
        if not exists:
            return None

        row = await conn.fetchrow(
            f"SELECT schema_hash, applied_at FROM {self.qualified_table} "
            "WHERE target_schema = $1",
            target_schema,
        )
        if row is None:
            return None
        return {"schema_hash": row["schema_hash"], "applied_at": row["applied_at"]}

    async def get_applied_hash(
        self, target_schema: str, conn: Optional[asyncpg.Connection] = None
    ) -> Optional[str]:
        marker = await self.get_marker(target_schema, conn)
        return marker["schema_hash"] if marker else None

    async def record_applied_hash(
        self,
        target_schema: str,
        schema_hash: str,
        conn: Optional[asyncpg.Connection] = None,
    ) -> None:
        """Upsert the marker row after a fully successful apply."""
        if conn is None:
            async with self.pool.acquire() as conn:
                return await self.record_applied_hash(target_schema, schema_hash, conn)

        await conn.execute(
            f"""
            INSERT INTO {self.qualified_table} (target_schema, schema_hash, applied_at)
            VALUES ($1, $2, NOW())
            ON CONFLICT (target_schema)
            DO UPDATE SET schema_hash = EXCLUDED.schema_hash, applied_at = EXCLUDED.applied_at
            """,
            target_schema,
            schema_hash,
        )
        logger.info(f"Recorded applied schema hash {schema_hash[:12]} for '{target_schema}'")

    async def clear_marker(
        self, target_schema: str, conn: Optional[asyncpg.Connection] = None
    ) -> None:
        """Forget the recorded hash so the next apply runs in full."""
        if conn is None:
            async with self.pool.acquire() as conn:
                return await self.clear_marker(target_schema, conn)

        await conn.execute(
            f"DELETE FROM {self.qualified_table} WHERE target_schema = $1", target_schema
        )
