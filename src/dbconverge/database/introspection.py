"""
Live schema introspection for dbconverge.

Reads PostgreSQL catalog metadata for one schema and normalizes it into the
shared object model, folding store-specific representations (identity
columns, unsigned checks, on-update triggers, tsvector GIN indexes) back into
the attributes they were rendered from.
"""

import logging
import re
from dataclasses import replace
from typing import Dict, List, Optional

import asyncpg

from .connection import ConnectionPool
from ..schema.ddl import ON_UPDATE_SUFFIX, UNSIGNED_SUFFIX
from ..schema.model import (
    CheckConstraint,
    ColumnDecl,
    ColumnType,
    ForeignKey,
    IndexDecl,
    IndexKind,
    LiveSchema,
    OnDelete,
    PrimaryKey,
    TableDecl,
    TypeKind,
    UniqueKey,
    normalize_default,
)
from ..exceptions import DatabaseError


logger = logging.getLogger(__name__)


# Every query takes the schema as $1 and an optional table name as $2.
TABLES_QUERY = """
    SELECT
        c.relname AS table_name,
        obj_description(c.oid, 'pg_class') AS comment
    FROM pg_class c
    JOIN pg_namespace n ON n.oid = c.relnamespace
    WHERE n.nspname = $1
    AND c.relkind IN ('r', 'p')
    AND ($2::text IS NULL OR c.relname = $2)
    ORDER BY c.relname
"""

COLUMNS_QUERY = """
    SELECT
        c.table_name,
        c.column_name,
        c.data_type,
        c.udt_name,
        c.is_nullable,
        c.column_default,
        c.character_maximum_length,
        c.numeric_precision,
        c.numeric_scale,
        c.is_identity,
        col_description(
            format('%I.%I', c.table_schema, c.table_name)::regclass,
            c.ordinal_position::int
        ) AS comment
    FROM information_schema.columns c
    WHERE c.table_schema = $1
    AND ($2::text IS NULL OR c.table_name = $2)
    ORDER BY c.table_name, c.ordinal_position
"""

# Indexes that back a primary key / unique constraint are reported as constraints.
INDEXES_QUERY = """
    SELECT
        t.relname AS table_name,
        i.relname AS index_name,
        am.amname AS method,
        ARRAY(
            SELECT pg_get_indexdef(ix.indexrelid, k, true)
            FROM generate_series(1, ix.indnatts) AS k
            ORDER BY k
        ) AS expressions
    FROM pg_index ix
    JOIN pg_class i ON i.oid = ix.indexrelid
    JOIN pg_class t ON t.oid = ix.indrelid
    JOIN pg_namespace n ON n.oid = t.relnamespace
    JOIN pg_am am ON am.oid = i.relam
    WHERE n.nspname = $1
    AND ($2::text IS NULL OR t.relname = $2)
    AND NOT EXISTS (
        SELECT 1 FROM pg_constraint con
        WHERE con.conindid = ix.indexrelid
        AND con.conrelid = ix.indrelid
        AND con.contype IN ('p', 'u', 'x')
    )
    ORDER BY t.relname, i.relname
"""

CONSTRAINTS_QUERY = """
    SELECT
        t.relname AS table_name,
        con.conname AS constraint_name,
        con.contype AS constraint_type,
        ARRAY(
            SELECT a.attname
            FROM unnest(con.conkey) WITH ORDINALITY AS k(attnum, ord)
            JOIN pg_attribute a ON a.attrelid = con.conrelid AND a.attnum = k.attnum
            ORDER BY k.ord
        ) AS columns,
        rt.relname AS referenced_table,
        ARRAY(
            SELECT a.attname
            FROM unnest(con.confkey) WITH ORDINALITY AS k(attnum, ord)
            JOIN pg_attribute a ON a.attrelid = con.confrelid AND a.attnum = k.attnum
            ORDER BY k.ord
        ) AS referenced_columns,
        con.confdeltype AS on_delete,
        pg_get_constraintdef(con.oid, true) AS definition
    FROM pg_constraint con
    JOIN pg_class t ON t.oid = con.conrelid
    JOIN pg_namespace n ON n.oid = t.relnamespace
    LEFT JOIN pg_class rt ON rt.oid = con.confrelid
    WHERE n.nspname = $1
    AND ($2::text IS NULL OR t.relname = $2)
    AND con.contype IN ('p', 'u', 'f', 'c')
    ORDER BY t.relname, con.conname
"""

TRIGGERS_QUERY = """
    SELECT
        c.relname AS table_name,
        tg.tgname AS trigger_name
    FROM pg_trigger tg
    JOIN pg_class c ON c.oid = tg.tgrelid
    JOIN pg_namespace n ON n.oid = c.relnamespace
    WHERE n.nspname = $1
    AND ($2::text IS NULL OR c.relname = $2)
    AND NOT tg.tgisinternal
    ORDER BY c.relname, tg.tgname
"""

_SIMPLE_TYPES = {
    "smallint": TypeKind.SMALLINT,
    "integer": TypeKind.INTEGER,
    "bigint": TypeKind.BIGINT,
    "boolean": TypeKind.BOOLEAN,
    "real": TypeKind.REAL,
    "double precision": TypeKind.DOUBLE,
    "text": TypeKind.TEXT,
    "date": TypeKind.DATE,
    "time without time zone": TypeKind.TIME,
    "timestamp without time zone": TypeKind.TIMESTAMP,
    "timestamp with time zone": TypeKind.TIMESTAMPTZ,
    "json": TypeKind.JSON,
    "jsonb": TypeKind.JSONB,
    "bytea": TypeKind.BLOB,
    "uuid": TypeKind.UUID,
}

_ON_DELETE_CODES = {
    "a": OnDelete.NO_ACTION,
    "r": OnDelete.RESTRICT,
    "c": OnDelete.CASCADE,
    "n": OnDelete.SET_NULL,
    "d": OnDelete.SET_DEFAULT,
}

_TSVECTOR_RE = re.compile(r"^to_tsvector\('[^']*'(?:::regconfig)?,\s*(.+)\)$", re.IGNORECASE)


def _unquote(identifier: str) -> str:
    if len(identifier) >= 2 and identifier.startswith('"') and identifier.endswith('"'):
        return identifier[1:-1].replace('""', '"')
    return identifier


def parse_column_type(row) -> ColumnType:
    """Map an information_schema.columns row onto a logical type."""
    data_type = row["data_type"]
    kind = _SIMPLE_TYPES.get(data_type)
    if kind is not None:
        return ColumnType(kind)
    if data_type == "numeric":
        return ColumnType(
            TypeKind.DECIMAL,
            precision=row["numeric_precision"],
            scale=row["numeric_scale"] if row["numeric_precision"] is not None else None,
        )
    if data_type == "character varying":
        return ColumnType(TypeKind.VARCHAR, length=row["character_maximum_length"])
    if data_type == "character":
        return ColumnType(TypeKind.CHAR, length=row["character_maximum_length"])
    raw = row["udt_name"] if data_type in ("USER-DEFINED", "ARRAY") else data_type
    return ColumnType(TypeKind.OTHER, raw=raw)


def parse_column(row) -> ColumnDecl:
    data_type = parse_column_type(row)
    raw_default = row["column_default"]
    is_sequence = bool(raw_default) and raw_default.lower().startswith("nextval(")
    return ColumnDecl(
        name=row["column_name"],
        data_type=data_type,
        nullable=row["is_nullable"] == "YES",
        default=normalize_default(raw_default, data_type.kind),
        auto_increment=row["is_identity"] == "YES" or is_sequence,
        comment=row["comment"],
    )


def parse_index(row) -> IndexDecl:
    expressions = list(row["expressions"])
    if row["method"] == "gin":
        matches = [_TSVECTOR_RE.match(e) for e in expressions]
        if matches and all(matches):
            return IndexDecl(
                row["index_name"],
                tuple(_unquote(m.group(1).strip()) for m in matches),
                IndexKind.FULLTEXT,
            )
    return IndexDecl(row["index_name"], tuple(_unquote(e) for e in expressions))


def parse_constraint(row):
    name = row["constraint_name"]
    columns = tuple(row["columns"])
    kind = row["constraint_type"]
    if kind == "p":
        return PrimaryKey(name, columns)
    if kind == "u":
        return UniqueKey(name, columns)
    if kind == "f":
        return ForeignKey(
            name,
            column=columns[0],
            referenced_table=row["referenced_table"],
            referenced_column=row["referenced_columns"][0],
            on_delete=_ON_DELETE_CODES.get(row["on_delete"], OnDelete.NO_ACTION),
        )
    definition = row["definition"]
    if definition.upper().startswith("CHECK "):
        definition = definition[len("CHECK "):]
    return CheckConstraint(name, definition)


class SchemaIntrospector:
    """Reads the live structure of one PostgreSQL schema."""

    def __init__(self, pool: ConnectionPool, schema: str = "public"):
        self.pool = pool
        self.schema = schema

    async def snapshot(self, conn: Optional[asyncpg.Connection] = None) -> LiveSchema:
        """Introspect every table in the target schema."""
        if conn is None:
            async with self.pool.acquire() as conn:
                return await self.snapshot(conn)

        tables = await self._load(conn, None)
        logger.info(f"Introspected {len(tables)} tables in schema '{self.schema}'")
        return LiveSchema(tables=tables)

    async def describe_table(
        self, conn: asyncpg.Connection, table: str
    ) -> Optional[TableDecl]:
        """Introspect one table; None when it does not exist."""
        tables = await self._load(conn, table)
        return tables.get(table)

    async def list_tables(self, conn: Optional[asyncpg.Connection] = None) -> List[str]:
        if conn is None:
            async with self.pool.acquire() as conn:
                return await self.list_tables(conn)
        rows = await self._fetch(conn, TABLES_QUERY, None)
        return [row["table_name"] for row in rows]

    async def _fetch(self, conn: asyncpg.Connection, query: str, table: Optional[str]):
        try:
            return await conn.fetch(query, self.schema, table)
        except asyncpg.PostgresError as e:
            logger.error(f"Error introspecting schema '{self.schema}': {e}")
            raise DatabaseError(
                f"Failed to introspect schema '{self.schema}'",
                {"schema": self.schema, "table": table},
                e,
            ) from e

    async def _load(
        self, conn: asyncpg.Connection, table: Optional[str]
    ) -> Dict[str, TableDecl]:
        tables: Dict[str, TableDecl] = {}
        for row in await self._fetch(conn, TABLES_QUERY, table):
            tables[row["table_name"]] = TableDecl(
                name=row["table_name"], comment=row["comment"]
            )

        for row in await self._fetch(conn, COLUMNS_QUERY, table):
            target = tables.get(row["table_name"])
            if target is not None:
                column = parse_column(row)
                target.columns[column.name] = column

        for row in await self._fetch(conn, INDEXES_QUERY, table):
            target = tables.get(row["table_name"])
            if target is not None:
                index = parse_index(row)
                target.indexes[index.name] = index

        for row in await self._fetch(conn, CONSTRAINTS_QUERY, table):
            target = tables.get(row["table_name"])
            if target is None:
                continue
            constraint = parse_constraint(row)
            column = self._unsigned_column(target, constraint)
            if column is not None:
                target.columns[column] = replace(target.columns[column], unsigned=True)
            else:
                target.constraints[constraint.name] = constraint

        for row in await self._fetch(conn, TRIGGERS_QUERY, table):
            target = tables.get(row["table_name"])
            name = row["trigger_name"]
            if target is None or not name.endswith(ON_UPDATE_SUFFIX):
                continue
            column = name[: -len(ON_UPDATE_SUFFIX)]
            if column in target.columns:
                target.columns[column] = replace(target.columns[column], on_update_auto=True)

        return tables

    @staticmethod
    def _unsigned_column(table: TableDecl, constraint) -> Optional[str]:
        """Column whose unsigned flag this check constraint represents, if any."""
        if not isinstance(constraint, CheckConstraint):
            return None
        prefix = f"{table.name}_"
        name = constraint.name
        if not (name.startswith(prefix) and name.endswith(UNSIGNED_SUFFIX)):
            return None
        column = name[len(prefix): -len(UNSIGNED_SUFFIX)]
        return column if column in table.columns else None
