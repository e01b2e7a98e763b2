"""
Plan execution for dbconverge.

Runs an ordered plan against the live database one execution unit at a time.
A unit is a run of consecutive operations on one table and is applied in a
single transaction when transactional DDL is enabled. Every operation re-checks
the live table first and skips itself when its effect is already present, so
an interrupted run can simply be repeated.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

import asyncpg

from .ddl import PostgresDialect
from .operations import SchemaOperation
from .orderer import ExecutionPlan
from ..database.connection import ConnectionPool
from ..database.introspection import SchemaIntrospector
from ..exceptions import DbconvergeError, ExecutionError


logger = logging.getLogger(__name__)


class OperationMode(str, Enum):
    """Plan execution modes."""

    APPLY = "apply"
    DRY_RUN = "dry_run"  # Generate SQL but don't execute


class OperationOutcome(str, Enum):
    """What happened to one operation."""

    PENDING = "pending"
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    SKIPPED = "skipped"


class ReconciliationStatus(str, Enum):
    """Status of a table or of a whole run."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


_DONE = (OperationOutcome.APPLIED, OperationOutcome.ALREADY_APPLIED)


@dataclass
class OperationResult:
    """Execution record of one operation."""

    operation: SchemaOperation
    outcome: OperationOutcome = OperationOutcome.PENDING
    sql: List[str] = field(default_factory=list)
    error: Optional[str] = None
    execution_time_ms: Optional[float] = None

    @property
    def is_done(self) -> bool:
        return self.outcome in _DONE


@dataclass
class TableResult:
    """Outcome of every operation on one table."""

    table: str
    operations: List[OperationResult] = field(default_factory=list)

    @property
    def status(self) -> ReconciliationStatus:
        outcomes = [r.outcome for r in self.operations]
        if all(o in _DONE or o == OperationOutcome.PENDING for o in outcomes):
            return ReconciliationStatus.SUCCESS
        done = any(o in _DONE for o in outcomes)
        if OperationOutcome.FAILED in outcomes:
            return ReconciliationStatus.PARTIAL if done else ReconciliationStatus.FAILED
        return ReconciliationStatus.PARTIAL if done else ReconciliationStatus.SKIPPED

    @property
    def errors(self) -> List[str]:
        return [r.error for r in self.operations if r.error]

    @property
    def successful_changes(self) -> int:
        return sum(1 for r in self.operations if r.outcome == OperationOutcome.APPLIED)

    @property
    def failed_changes(self) -> int:
        return sum(1 for r in self.operations if r.outcome == OperationOutcome.FAILED)


@dataclass
class ExecutionReport:
    """Result of executing a plan."""

    mode: OperationMode
    results: List[OperationResult] = field(default_factory=list)
    execution_time_ms: float = 0.0

    @property
    def table_results(self) -> Dict[str, TableResult]:
        tables: Dict[str, TableResult] = {}
        for result in self.results:
            table = result.operation.table
            tables.setdefault(table, TableResult(table)).operations.append(result)
        return tables

    @property
    def status(self) -> ReconciliationStatus:
        statuses = [t.status for t in self.table_results.values()]
        if all(s == ReconciliationStatus.SUCCESS for s in statuses):
            return ReconciliationStatus.SUCCESS
        if not any(r.is_done for r in self.results):
            return ReconciliationStatus.FAILED
        return ReconciliationStatus.PARTIAL

    @property
    def is_complete(self) -> bool:
        return self.status == ReconciliationStatus.SUCCESS

    @property
    def sql(self) -> List[str]:
        statements = []
        for result in self.results:
            statements.extend(result.sql)
        return statements

    def outcome_of(self, operation: SchemaOperation) -> OperationOutcome:
        for result in self.results:
            if result.operation is operation:
                return result.outcome
        raise ValueError(f"{operation} was not executed")


class PlanExecutor:
    """Applies ordered plans, unit by unit, with idempotence checks."""

    def __init__(
        self,
        pool: ConnectionPool,
        introspector: SchemaIntrospector,
        dialect: PostgresDialect,
        mode: OperationMode = OperationMode.APPLY,
        statement_timeout: int = 300,
        transactional_ddl: bool = True,
    ):
        self.pool = pool
        self.introspector = introspector
        self.dialect = dialect
        self.mode = mode
        self.statement_timeout = statement_timeout
        self.transactional_ddl = transactional_ddl

    async def execute(self, plan: ExecutionPlan) -> ExecutionReport:
        """
        Execute a plan.

        A failing operation rolls back its unit and skips the rest of its
        table plus everything that depends on it; independent tables continue.
        """
        start_time = time.time()
        report = ExecutionReport(
            mode=self.mode,
            results=[OperationResult(op) for op in plan.operations],
        )

        if self.mode == OperationMode.DRY_RUN:
            for result in report.results:
                result.sql = self.dialect.render(result.operation)
                logger.info(f"DRY RUN: Would execute {result.operation}")
                for sql in result.sql:
                    logger.debug(f"SQL: {sql}")
            return report

        blocked: Set[int] = set()
        failed_tables: Set[str] = set()

        async with self.pool.acquire() as conn:
            await conn.execute(f"SET statement_timeout = '{self.statement_timeout}s'")

            for unit in self.build_units(plan):
                table = plan.operations[unit[0]].table
                runnable = [
                    p for p in unit if p not in blocked and table not in failed_tables
                ]
                if not runnable:
                    continue

                failed_at = await self._execute_unit(conn, report, runnable)
                if failed_at is None:
                    continue

                failed_tables.add(table)
                unsatisfied = {
                    p for p, r in enumerate(report.results)
                    if r.operation.table == table and not r.is_done
                }
                for position in unsatisfied:
                    blocked |= plan.dependents_of(position)

        for result in report.results:
            if result.outcome == OperationOutcome.PENDING:
                result.outcome = OperationOutcome.SKIPPED

        report.execution_time_ms = (time.time() - start_time) * 1000
        for table, table_result in report.table_results.items():
            logger.info(f"Table {table}: {table_result.status.value}")
        logger.info(
            f"Plan execution completed: {report.status.value} "
            f"({report.execution_time_ms:.1f}ms)"
        )
        return report

    @staticmethod
    def build_units(plan: ExecutionPlan) -> List[List[int]]:
        """Group consecutive positions that touch the same table."""
        units: List[List[int]] = []
        for position, operation in enumerate(plan.operations):
            if units and plan.operations[units[-1][0]].table == operation.table:
                units[-1].append(position)
            else:
                units.append([position])
        return units

    async def _execute_unit(
        self, conn: asyncpg.Connection, report: ExecutionReport, positions: List[int]
    ) -> Optional[int]:
        """Run one unit; return the failing position, if any."""
        current = positions[0]
        try:
            if self.transactional_ddl:
                async with conn.transaction():
                    for current in positions:
                        await self._run(conn, report.results[current])
            else:
                for current in positions:
                    await self._run(conn, report.results[current])
        except ExecutionError as e:
            failed = report.results[current]
            failed.outcome = OperationOutcome.FAILED
            failed.error = str(e.cause or e)
            logger.error(f"Failed to execute {failed.operation}: {failed.error}")

            if self.transactional_ddl:
                for position in positions:
                    result = report.results[position]
                    if result.outcome == OperationOutcome.APPLIED:
                        result.outcome = OperationOutcome.ROLLED_BACK
                        logger.warning(f"Rolled back {result.operation}")
            return current
        return None

    async def _run(self, conn: asyncpg.Connection, result: OperationResult) -> None:
        operation = result.operation
        try:
            live_table = await self.introspector.describe_table(conn, operation.table)
            if operation.is_applied(live_table):
                result.outcome = OperationOutcome.ALREADY_APPLIED
                logger.debug(f"Skipping {operation}: already applied")
                return

            result.sql = self.dialect.render(operation)
            start_time = time.time()
            await self._apply_operation(conn, operation, result.sql)
            result.execution_time_ms = (time.time() - start_time) * 1000
        except (asyncpg.PostgresError, DbconvergeError) as e:
            raise ExecutionError(operation, e) from e

        result.outcome = OperationOutcome.APPLIED
        logger.info(f"Applied {operation} ({result.execution_time_ms:.1f}ms)")

    async def _apply_operation(
        self, conn: asyncpg.Connection, operation: SchemaOperation, statements: List[str]
    ) -> None:
        for sql in statements:
            await conn.execute(sql)
