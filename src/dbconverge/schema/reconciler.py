"""
Schema reconciliation core logic for dbconverge.

Coordinates merging, diffing, ordering, execution, ledger upkeep and the
applied-schema marker so the live database converges on the declarations.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from .diff import DiffEngine, OwnershipViolation, validate_references, verify_resulting_schema
from .ddl import PostgresDialect
from .executor import (
    ExecutionReport,
    OperationMode,
    PlanExecutor,
    ReconciliationStatus,
    TableResult,
)
from .ledger import OwnershipLedger
from .merger import merge_contributions
from .metadata import MetadataManager
from .model import (
    ElementId,
    LiveSchema,
    LogicalSchema,
    ModuleContribution,
    SchemaSnapshot,
    schema_fingerprint,
)
from .operations import OperationType, SchemaOperation
from .orderer import DependencyOrderer, ExecutionPlan
from ..config import ReconcileConfig
from ..database.connection import ConnectionPool
from ..database.introspection import SchemaIntrospector
from ..database.locking import CatalogLock, default_lock_key


logger = logging.getLogger(__name__)


@dataclass
class ReconciliationPlan:
    """Ordered operations that converge a live schema on a logical one."""

    logical: LogicalSchema
    live: LiveSchema
    execution_plan: ExecutionPlan
    warnings: List[OwnershipViolation] = field(default_factory=list)
    schema_hash: str = ""

    @property
    def operations(self) -> List[SchemaOperation]:
        return self.execution_plan.operations

    @property
    def dependencies(self):
        return self.execution_plan.dependencies

    @property
    def is_empty(self) -> bool:
        return not self.operations

    def for_module(self, module: str, ledger: OwnershipLedger) -> List[SchemaOperation]:
        """Operations touching elements the module declares or has installed."""
        owned = set(self.logical.elements_of(module))
        entry = ledger.entry(module)
        if entry is not None:
            owned |= entry.installed_elements

        selected = []
        for operation in self.operations:
            if operation.element_id in owned:
                selected.append(operation)
            elif operation.op_type == OperationType.CREATE_TABLE and any(
                eid in owned for eid in operation.definition.element_ids()
            ):
                selected.append(operation)
        return selected


@dataclass
class ReconciliationResult:
    """Result of an apply run."""

    status: ReconciliationStatus
    plan: Optional[ReconciliationPlan] = None
    report: Optional[ExecutionReport] = None
    execution_time_ms: float = 0.0
    short_circuited: bool = False

    @property
    def warnings(self) -> List[OwnershipViolation]:
        return self.plan.warnings if self.plan else []

    @property
    def table_results(self) -> Dict[str, TableResult]:
        return self.report.table_results if self.report else {}


class SchemaReconciler:
    """
    Core schema reconciliation engine for dbconverge.

    Coordinates:
    - Contribution merging and reference validation
    - Diffing against the live schema through the ownership ledger
    - Dependency ordering and idempotent execution
    - Ledger and applied-schema marker upkeep
    """

    def __init__(
        self,
        pool: ConnectionPool,
        ledger: OwnershipLedger,
        config: Optional[ReconcileConfig] = None,
        introspector: Optional[SchemaIntrospector] = None,
        lock: Optional[CatalogLock] = None,
        metadata: Optional[MetadataManager] = None,
        executor: Optional[PlanExecutor] = None,
        mode: OperationMode = OperationMode.APPLY,
    ):
        self.pool = pool
        self.ledger = ledger
        self.config = config or ReconcileConfig()
        target = self.config.target_schema

        self.introspector = introspector or SchemaIntrospector(pool, target)
        self.metadata = metadata or MetadataManager(
            pool, self.config.metadata_schema, self.config.marker_table
        )
        if lock is None:
            key = self.config.lock_key
            if key is None:
                key = default_lock_key(pool.config.database, target)
            lock = CatalogLock(pool, key, self.config.lock_timeout)
        self.lock = lock
        self.executor = executor or PlanExecutor(
            pool,
            self.introspector,
            PostgresDialect(target),
            mode,
            self.config.statement_timeout,
            self.config.transactional_ddl,
        )
        self.diff_engine = DiffEngine(ledger)
        self.orderer = DependencyOrderer()

    @property
    def target_schema(self) -> str:
        return self.config.target_schema

    def prepare(
        self, contributions: Iterable[ModuleContribution], uninstall: Iterable[str] = ()
    ) -> Tuple[List[ModuleContribution], LogicalSchema]:
        """
        Merge and validate declarations; touches no database.

        Raises:
            SchemaConflictError: if contributions disagree
            ReferentialIntegrityError: if a declared reference has no target
        """
        removed = set(uninstall)
        active = [c for c in contributions if c.module not in removed]
        if removed:
            logger.info(f"Excluding uninstalled modules: {', '.join(sorted(removed))}")
        logical = merge_contributions(active)
        validate_references(logical)
        return active, logical

    def fingerprint(self, logical: LogicalSchema) -> str:
        """Hash of the logical schema plus the current ledger state."""
        return schema_fingerprint(logical, extra=self.ledger.to_dict())

    def build_plan(
        self,
        contributions: Iterable[ModuleContribution],
        live: LiveSchema,
        uninstall: Iterable[str] = (),
    ) -> ReconciliationPlan:
        """Compute the ordered plan against a given live schema (pure)."""
        _, logical = self.prepare(contributions, uninstall)
        return self._plan_against(logical, live)

    async def plan(
        self, contributions: Iterable[ModuleContribution], uninstall: Iterable[str] = ()
    ) -> ReconciliationPlan:
        """Compute the plan against the database; read-only, takes no lock."""
        _, logical = self.prepare(contributions, uninstall)
        live = await self.introspector.snapshot()
        return self._plan_against(logical, live)

    def _plan_against(self, logical: LogicalSchema, live: LiveSchema) -> ReconciliationPlan:
        diff = self.diff_engine.diff(logical, live)
        execution_plan = self.orderer.order(diff.operations, logical)
        verify_resulting_schema(live, execution_plan.operations, logical, self.ledger)
        plan = ReconciliationPlan(
            logical=logical,
            live=live,
            execution_plan=execution_plan,
            warnings=diff.warnings,
            schema_hash=self.fingerprint(logical),
        )
        logger.info(
            f"Plan for schema '{self.target_schema}': {len(plan.operations)} operations, "
            f"{len(plan.warnings)} warnings"
        )
        return plan

    async def apply(
        self,
        contributions: Iterable[ModuleContribution],
        uninstall: Iterable[str] = (),
        force: bool = False,
    ) -> ReconciliationResult:
        """
        Converge the database on the declarations.

        Fatal errors (conflicts, broken references, cycles, lock timeout) are
        raised before any DDL runs. Execution failures produce a partial result.
        """
        start_time = time.time()
        active, logical = self.prepare(contributions, uninstall)

        if self.executor.mode == OperationMode.DRY_RUN:
            live = await self.introspector.snapshot()
            plan = self._plan_against(logical, live)
            report = await self.executor.execute(plan.execution_plan)
            return self._result(report.status, start_time, plan, report)

        async with self.lock.hold() as conn:
            await self.metadata.ensure_marker_table(conn)
            await self.metadata.ensure_schema(self.target_schema, conn)

            if self.config.short_circuit and not force:
                applied_hash = await self.metadata.get_applied_hash(self.target_schema, conn)
                if applied_hash == self.fingerprint(logical):
                    logger.info(
                        f"Schema '{self.target_schema}' unchanged since last apply, skipping"
                    )
                    return self._result(
                        ReconciliationStatus.SUCCESS, start_time, short_circuited=True
                    )

            live = await self.introspector.snapshot(conn)
            plan = self._plan_against(logical, live)
            report = await self.executor.execute(plan.execution_plan)

            resulting = await self.introspector.snapshot(conn)
            self.update_ledger(active, logical, resulting)

            if report.is_complete:
                await self.metadata.record_applied_hash(
                    self.target_schema, self.fingerprint(logical), conn
                )
            else:
                await self.metadata.clear_marker(self.target_schema, conn)

        return self._result(report.status, start_time, plan, report)

    def update_ledger(
        self,
        contributions: List[ModuleContribution],
        logical: LogicalSchema,
        resulting: SchemaSnapshot,
    ) -> None:
        """
        Rewrite each module's whitelist entry from the post-run schema.

        A module keeps what it declares and what exists, plus previously
        installed elements nobody declares any more that still exist (their
        drop is outstanding). A module left with nothing is forgotten unless
        it still contributes.
        """
        present = set(resulting.elements())
        declared_anywhere = set(logical.ownership)
        contributing = {c.module: c for c in contributions}

        for module in sorted(set(contributing) | set(self.ledger.modules)):
            declared = set(logical.elements_of(module))
            previous = self.ledger.entry(module)
            previous_elements = set(previous.installed_elements) if previous else set()
            outstanding = (previous_elements - declared_anywhere) & present
            elements: FrozenSet[ElementId] = frozenset((declared & present) | outstanding)

            if module in contributing:
                version = contributing[module].version
                if previous is None or previous.installed_elements != elements or (
                    previous.version != version
                ):
                    self.ledger.record(module, version, elements)
            elif elements:
                if elements != previous.installed_elements:
                    self.ledger.record(module, previous.version, elements)
            else:
                self.ledger.forget(module)

    def _result(
        self,
        status: ReconciliationStatus,
        start_time: float,
        plan: Optional[ReconciliationPlan] = None,
        report: Optional[ExecutionReport] = None,
        short_circuited: bool = False,
    ) -> ReconciliationResult:
        result = ReconciliationResult(
            status=status,
            plan=plan,
            report=report,
            execution_time_ms=(time.time() - start_time) * 1000,
            short_circuited=short_circuited,
        )
        logger.info(
            f"Reconciliation completed for schema '{self.target_schema}': "
            f"{result.status.value} ({result.execution_time_ms:.1f}ms)"
        )
        return result

    async def status(self) -> Dict:
        """Ledger entries and the recorded marker for the target schema."""
        marker = await self.metadata.get_marker(self.target_schema)
        return {
            "target_schema": self.target_schema,
            "marker": marker,
            "modules": [entry.to_dict() for entry in self.ledger.entries()],
        }
