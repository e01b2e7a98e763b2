"""
Pytest configuration and shared fixtures for dbconverge tests.

The in-memory catalog stands in for PostgreSQL: it holds a live schema,
answers introspection from it and applies operations to it, so the
reconciler can be exercised end to end without a database.
"""

from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Set
from unittest.mock import MagicMock

import asyncpg
import pytest

from dbconverge.config import ReconcileConfig
from dbconverge.schema.ddl import PostgresDialect
from dbconverge.schema.executor import OperationMode, PlanExecutor
from dbconverge.schema.ledger import InMemoryWhitelistStore, OwnershipLedger
from dbconverge.schema.model import (
    ColumnDecl,
    ColumnType,
    ForeignKey,
    IndexDecl,
    LiveSchema,
    ModuleContribution,
    OnDelete,
    PrimaryKey,
    TableDecl,
    TypeKind,
)
from dbconverge.schema.reconciler import SchemaReconciler


# ============================================================================
# Declaration builders
# ============================================================================

def int_column(name: str, **kwargs) -> ColumnDecl:
    return ColumnDecl(name, ColumnType(TypeKind.INTEGER), **kwargs)


def varchar_column(name: str, length: int = 255, **kwargs) -> ColumnDecl:
    return ColumnDecl(name, ColumnType(TypeKind.VARCHAR, length=length), **kwargs)


def make_table(name: str, columns=(), indexes=(), constraints=(), comment=None) -> TableDecl:
    return TableDecl(
        name=name,
        columns={c.name: c for c in columns},
        indexes={i.name: i for i in indexes},
        constraints={c.name: c for c in constraints},
        comment=comment,
    )


def make_contribution(module: str, *tables: TableDecl, version: str = "1.0.0") -> ModuleContribution:
    return ModuleContribution(module=module, tables={t.name: t for t in tables}, version=version)


def id_table(name: str, *extra_columns: ColumnDecl, **kwargs) -> TableDecl:
    """Table with an auto-increment ``id`` primary key."""
    return make_table(
        name,
        columns=[int_column("id", nullable=False, auto_increment=True), *extra_columns],
        constraints=[PrimaryKey(f"{name}_pkey", ("id",)), *kwargs.pop("constraints", ())],
        **kwargs,
    )


@pytest.fixture
def sales_order_contribution() -> ModuleContribution:
    """A module declaring sales_order with a status column and index."""
    return make_contribution(
        "sales",
        id_table(
            "sales_order",
            varchar_column("status", 32, nullable=False),
            indexes=[IndexDecl("sales_order_status_idx", ("status",))],
        ),
    )


@pytest.fixture
def catalog_contribution() -> ModuleContribution:
    """A module declaring product referencing store."""
    return make_contribution(
        "catalog",
        id_table("store", varchar_column("code", 32, nullable=False)),
        id_table(
            "product",
            int_column("store_id", nullable=False),
            constraints=[
                ForeignKey("product_store_fk", "store_id", "store", "id", OnDelete.CASCADE)
            ],
        ),
    )


# ============================================================================
# In-memory database
# ============================================================================

class FakeTransaction:
    """Restores the catalog's live schema when the block raises."""

    def __init__(self, catalog: "InMemoryCatalog"):
        self.catalog = catalog
        self._saved: Optional[LiveSchema] = None

    async def __aenter__(self):
        self._saved = self.catalog.live.copy()
        self.catalog.transactions += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.catalog.live = self._saved
            self.catalog.rollbacks += 1
        return False


class FakeConnection:
    """Records executed SQL; supports transactions."""

    def __init__(self, catalog: "InMemoryCatalog"):
        self.catalog = catalog

    async def execute(self, sql: str, *args):
        self.catalog.statements.append(sql)
        return "OK"

    async def fetchval(self, sql: str, *args):
        return None

    def transaction(self):
        return FakeTransaction(self.catalog)


class FakePool:
    def __init__(self, catalog: "InMemoryCatalog"):
        self.catalog = catalog
        self.config = MagicMock()
        self.config.database = "testdb"

    async def test_connection(self, schema=None):
        exists = schema in self.catalog.metadata.schemas
        return {"database": "testdb", "user": "test", "version": "16.0", "schema_exists": exists}

    @asynccontextmanager
    async def acquire(self):
        yield FakeConnection(self.catalog)


class FakeIntrospector:
    """Answers introspection from the catalog's live schema."""

    def __init__(self, catalog: "InMemoryCatalog"):
        self.catalog = catalog

    async def snapshot(self, conn=None) -> LiveSchema:
        return self.catalog.live.copy()

    async def describe_table(self, conn, table: str) -> Optional[TableDecl]:
        current = self.catalog.live.tables.get(table)
        return current.copy() if current is not None else None


class FakeLock:
    def __init__(self, catalog: "InMemoryCatalog"):
        self.catalog = catalog
        self.acquisitions = 0

    @asynccontextmanager
    async def hold(self):
        self.acquisitions += 1
        yield FakeConnection(self.catalog)

    async def is_locked(self, conn=None) -> bool:
        return False


class FakeMetadata:
    """Marker rows kept in a dict."""

    def __init__(self):
        self.markers: Dict[str, str] = {}
        self.schemas: Set[str] = set()
        self.ensured = 0

    async def ensure_schema(self, schema, conn=None):
        self.schemas.add(schema)

    async def ensure_marker_table(self, conn=None):
        self.ensured += 1

    async def get_marker(self, target_schema, conn=None):
        if target_schema not in self.markers:
            return None
        return {"schema_hash": self.markers[target_schema], "applied_at": "now"}

    async def get_applied_hash(self, target_schema, conn=None):
        return self.markers.get(target_schema)

    async def record_applied_hash(self, target_schema, schema_hash, conn=None):
        self.markers[target_schema] = schema_hash

    async def clear_marker(self, target_schema, conn=None):
        self.markers.pop(target_schema, None)


class CatalogExecutor(PlanExecutor):
    """Plan executor that applies operations to the in-memory catalog."""

    def __init__(self, catalog: "InMemoryCatalog", mode: OperationMode, transactional_ddl=True):
        super().__init__(
            catalog.pool,
            catalog.introspector,
            PostgresDialect("public"),
            mode,
            transactional_ddl=transactional_ddl,
        )
        self.catalog = catalog

    async def _apply_operation(self, conn, operation, statements):
        self.catalog.applied.append(str(operation))
        if str(operation) in self.catalog.fail_on:
            raise asyncpg.PostgresError(f"simulated failure of {operation}")
        operation.apply_to(self.catalog.live)


class InMemoryCatalog:
    """Live schema plus fakes for every store collaborator."""

    def __init__(self, live: Optional[LiveSchema] = None):
        self.live = live or LiveSchema()
        self.statements: List[str] = []
        self.applied: List[str] = []
        self.fail_on: Set[str] = set()
        self.transactions = 0
        self.rollbacks = 0
        self.pool = FakePool(self)
        self.introspector = FakeIntrospector(self)
        self.lock = FakeLock(self)
        self.metadata = FakeMetadata()

    def add_table(self, table: TableDecl) -> None:
        self.live.tables[table.name] = table.copy()

    def executor(self, mode: OperationMode = OperationMode.APPLY, **kwargs) -> CatalogExecutor:
        return CatalogExecutor(self, mode, **kwargs)

    def reconciler(
        self,
        ledger: OwnershipLedger,
        mode: OperationMode = OperationMode.APPLY,
        config: Optional[ReconcileConfig] = None,
        **kwargs,
    ) -> SchemaReconciler:
        return SchemaReconciler(
            self.pool,
            ledger,
            config or ReconcileConfig(),
            introspector=self.introspector,
            lock=self.lock,
            metadata=self.metadata,
            executor=self.executor(mode, **kwargs),
            mode=mode,
        )


@pytest.fixture
def catalog() -> InMemoryCatalog:
    """Empty in-memory database."""
    return InMemoryCatalog()


@pytest.fixture
def whitelist_store() -> InMemoryWhitelistStore:
    return InMemoryWhitelistStore()


@pytest.fixture
def ledger(whitelist_store) -> OwnershipLedger:
    """Empty ownership ledger backed by an in-memory store."""
    return OwnershipLedger(whitelist_store)
