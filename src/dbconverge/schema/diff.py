"""
Diff engine for dbconverge.

Compares the merged logical schema against the live schema and proposes the
add/modify/drop operations that converge them. Every drop is gated by the
ownership ledger: an element no module has ever installed is reported as an
``OwnershipViolation`` warning and left alone.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .ledger import OwnershipLedger
from .model import (
    ElementId,
    ForeignKey,
    LiveSchema,
    LogicalSchema,
    PrimaryKey,
    SchemaSnapshot,
    TableDecl,
    UniqueKey,
)
from .operations import SchemaOperation, simulate
from ..exceptions import ReferentialIntegrityError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OwnershipViolation:
    """Warning: a live element the engine is not allowed to touch."""

    element_id: ElementId
    reason: str

    def __str__(self) -> str:
        return f"{self.element_id}: {self.reason}"


@dataclass
class DiffResult:
    """Unordered operations plus the warnings raised while computing them."""

    operations: List[SchemaOperation] = field(default_factory=list)
    warnings: List[OwnershipViolation] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.operations


def validate_references(logical: LogicalSchema) -> None:
    """
    Check that every column a key, index or foreign key mentions exists.

    Foreign key targets must be declared in the logical schema itself.

    Raises:
        ReferentialIntegrityError: for the first broken reference found
    """
    for table_name in sorted(logical.tables):
        table = logical.tables[table_name]
        for name in sorted(table.indexes):
            _require_columns(logical, table, ElementId.index(table_name, name),
                             table.indexes[name].columns)
        for name in sorted(table.constraints):
            constraint = table.constraints[name]
            element_id = ElementId.constraint(table_name, name)
            _require_columns(logical, table, element_id, constraint.columns)
            if isinstance(constraint, ForeignKey):
                target = logical.tables.get(constraint.referenced_table)
                if target is None:
                    raise ReferentialIntegrityError(
                        element_id,
                        f"referenced table '{constraint.referenced_table}' is not declared",
                        logical.owners(element_id),
                    )
                if constraint.referenced_column not in target.columns:
                    raise ReferentialIntegrityError(
                        element_id,
                        f"referenced column '{constraint.referenced_table}."
                        f"{constraint.referenced_column}' is not declared",
                        logical.owners(element_id),
                    )


def _require_columns(
    logical: LogicalSchema, table: TableDecl, element_id: ElementId, columns: Iterable[str]
) -> None:
    for column in columns:
        if column not in table.columns:
            raise ReferentialIntegrityError(
                element_id,
                f"column '{table.name}.{column}' is not declared",
                logical.owners(element_id),
            )


def verify_resulting_schema(
    live: SchemaSnapshot,
    operations: Iterable[SchemaOperation],
    logical: Optional[LogicalSchema] = None,
    ledger: Optional[OwnershipLedger] = None,
) -> SchemaSnapshot:
    """
    Simulate the plan on the live schema and check every foreign key target.

    The error names the modules owning the foreign key, its table or the
    vanished target, as recorded in ``logical`` and ``ledger``.

    Returns:
        The resulting schema

    Raises:
        ReferentialIntegrityError: if a foreign key would dangle after the plan
    """
    result = simulate(live, operations)
    for table_name in sorted(result.tables):
        for fk in result.tables[table_name].foreign_keys:
            target = result.tables.get(fk.referenced_table)
            if target is None or fk.referenced_column not in target.columns:
                element_id = ElementId.constraint(table_name, fk.name)
                related = [
                    element_id,
                    ElementId.for_table(table_name),
                    ElementId.for_table(fk.referenced_table),
                    ElementId.column(fk.referenced_table, fk.referenced_column),
                ]
                modules = set()
                for eid in related:
                    if logical is not None:
                        modules.update(logical.owners(eid))
                    if ledger is not None:
                        modules.update(ledger.owning_modules(eid))
                raise ReferentialIntegrityError(
                    element_id,
                    f"target {fk.referenced_table}.{fk.referenced_column} "
                    "does not exist in the resulting schema",
                    modules,
                )
    return result


class DiffEngine:
    """Computes converging operations, filtered through ownership rules."""

    def __init__(self, ledger: OwnershipLedger):
        self.ledger = ledger

    def diff(self, logical: LogicalSchema, live: LiveSchema) -> DiffResult:
        """
        Compare logical against live.

        Args:
            logical: Merged target schema
            live: Introspected current schema

        Returns:
            DiffResult with unordered operations and ownership warnings
        """
        result = DiffResult()
        unowned_fks = self._unowned_foreign_keys(live)

        for table_name in sorted(set(logical.tables) | set(live.tables)):
            target = logical.tables.get(table_name)
            current = live.tables.get(table_name)

            if current is None:
                result.operations.append(SchemaOperation.create_table(target))
            elif target is None:
                self._diff_removed_table(current, unowned_fks, result)
            else:
                self._diff_table(target, current, unowned_fks, result)

        for warning in result.warnings:
            logger.warning(f"Ownership violation: {warning}")
        logger.info(
            f"Diff produced {len(result.operations)} operations, "
            f"{len(result.warnings)} warnings"
        )
        return result

    def _unowned_foreign_keys(self, live: LiveSchema) -> Dict[ElementId, ForeignKey]:
        unowned = {}
        for table in live.tables.values():
            for fk in table.foreign_keys:
                element_id = ElementId.constraint(table.name, fk.name)
                if not self.ledger.is_owned(element_id):
                    unowned[element_id] = fk
        return unowned

    def _diff_removed_table(
        self,
        current: TableDecl,
        unowned_fks: Dict[ElementId, ForeignKey],
        result: DiffResult,
    ) -> None:
        table_id = current.element_id
        if not self.ledger.is_owned(table_id):
            result.warnings.append(
                OwnershipViolation(table_id, "not declared by any module and not whitelisted")
            )
            if not any(self.ledger.is_owned(eid) for eid in current.element_ids()):
                return
        else:
            unowned = [eid for eid in current.element_ids() if not self.ledger.is_owned(eid)]
            referrers = [
                eid for eid, fk in unowned_fks.items()
                if fk.referenced_table == current.name and eid.table != current.name
            ]
            if not unowned and not referrers:
                result.operations.append(SchemaOperation.drop_table(current))
                return
            blockers = ", ".join(str(e) for e in sorted(unowned + referrers))
            result.warnings.append(
                OwnershipViolation(table_id, f"drop withheld, would destroy {blockers}")
            )

        # the table stays; still remove whatever modules installed into it
        self._diff_table(
            TableDecl(name=current.name), current, unowned_fks, result, quiet=True
        )

    def _diff_table(
        self,
        target: TableDecl,
        current: TableDecl,
        unowned_fks: Dict[ElementId, ForeignKey],
        result: DiffResult,
        quiet: bool = False,
    ) -> None:
        name = target.name
        if target.comment is not None and target.comment != current.comment:
            result.operations.append(SchemaOperation.modify_table(target, current))

        for column_name in sorted(set(target.columns) | set(current.columns)):
            wanted = target.columns.get(column_name)
            live = current.columns.get(column_name)
            element_id = ElementId.column(name, column_name)
            if live is None:
                result.operations.append(SchemaOperation.add_column(name, wanted))
            elif wanted is None:
                if self._may_drop(element_id, result, quiet):
                    blockers = self._column_blockers(current, column_name, unowned_fks)
                    if blockers:
                        result.warnings.append(
                            OwnershipViolation(
                                element_id,
                                "drop withheld, would destroy "
                                + ", ".join(str(e) for e in blockers),
                            )
                        )
                    else:
                        result.operations.append(SchemaOperation.drop_column(name, live))
            elif wanted != live:
                result.operations.append(SchemaOperation.modify_column(name, wanted, live))

        for index_name in sorted(set(target.indexes) | set(current.indexes)):
            self._diff_element(
                ElementId.index(name, index_name),
                target.indexes.get(index_name),
                current.indexes.get(index_name),
                SchemaOperation.add_index,
                SchemaOperation.drop_index,
                result,
                quiet,
            )

        for constraint_name in sorted(set(target.constraints) | set(current.constraints)):
            element_id = ElementId.constraint(name, constraint_name)
            wanted = target.constraints.get(constraint_name)
            live = current.constraints.get(constraint_name)
            if live is not None and live != wanted and self.ledger.is_owned(element_id):
                # the store refuses to drop a key an unowned foreign key relies on
                referrers = self._key_referrers(name, live, unowned_fks)
                if referrers:
                    result.warnings.append(
                        OwnershipViolation(
                            element_id,
                            "drop withheld, would destroy "
                            + ", ".join(str(e) for e in referrers),
                        )
                    )
                    continue
            self._diff_element(
                element_id,
                wanted,
                live,
                SchemaOperation.add_constraint,
                SchemaOperation.drop_constraint,
                result,
                quiet,
            )

    def _diff_element(
        self, element_id, wanted, live, add, drop, result: DiffResult, quiet: bool = False
    ) -> None:
        """Indexes and constraints: add, drop, or recreate when the definition changed."""
        table = element_id.table
        if live is None:
            result.operations.append(add(table, wanted))
        elif wanted is None:
            if self._may_drop(element_id, result, quiet):
                result.operations.append(drop(table, live))
        elif wanted != live:
            if self.ledger.is_owned(element_id):
                result.operations.append(drop(table, live))
                result.operations.append(add(table, wanted))
            else:
                result.warnings.append(
                    OwnershipViolation(
                        element_id, f"live definition differs ({live}) and is not whitelisted"
                    )
                )

    def _may_drop(self, element_id: ElementId, result: DiffResult, quiet: bool = False) -> bool:
        if self.ledger.is_owned(element_id):
            return True
        if not quiet:
            result.warnings.append(
                OwnershipViolation(element_id, "not declared by any module and not whitelisted")
            )
        return False

    def _column_blockers(
        self,
        current: TableDecl,
        column: str,
        unowned_fks: Dict[ElementId, ForeignKey],
    ) -> List[ElementId]:
        """Unowned elements the store would drop along with the column."""
        blockers = []
        for name, index in current.indexes.items():
            element_id = ElementId.index(current.name, name)
            if column in index.columns and not self.ledger.is_owned(element_id):
                blockers.append(element_id)
        for name, constraint in current.constraints.items():
            element_id = ElementId.constraint(current.name, name)
            if column in constraint.columns and not self.ledger.is_owned(element_id):
                blockers.append(element_id)
        for element_id, fk in unowned_fks.items():
            if fk.referenced_table == current.name and fk.referenced_column == column:
                blockers.append(element_id)
        return sorted(set(blockers))

    @staticmethod
    def _key_referrers(
        table: str, constraint, unowned_fks: Dict[ElementId, ForeignKey]
    ) -> List[ElementId]:
        """Unowned foreign keys resting on a primary or unique key."""
        if not isinstance(constraint, (PrimaryKey, UniqueKey)):
            return []
        return sorted(
            element_id
            for element_id, fk in unowned_fks.items()
            if fk.referenced_table == table and fk.referenced_column in constraint.columns
        )


def diff_schemas(
    logical: LogicalSchema, live: LiveSchema, ledger: Optional[OwnershipLedger] = None
) -> DiffResult:
    """Convenience wrapper: validate references, then diff."""
    validate_references(logical)
    return DiffEngine(ledger or OwnershipLedger()).diff(logical, live)
