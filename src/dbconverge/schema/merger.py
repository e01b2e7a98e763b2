"""
Contribution merging for dbconverge.

Folds per-module declarations, in module sequence order, into one logical
schema. Identical duplicates become co-owned; any structural mismatch is a
fatal conflict.
"""

import logging
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Set

from .model import (
    ElementId,
    LogicalSchema,
    ModuleContribution,
    PrimaryKey,
    TableDecl,
)
from ..exceptions import SchemaConflictError


logger = logging.getLogger(__name__)


class ContributionMerger:
    """Stateful fold of module contributions into a logical schema."""

    def __init__(self):
        self._tables: Dict[str, TableDecl] = {}
        self._ownership: Dict[ElementId, Set[str]] = {}
        # first module to specify each element / table attribute
        self._sources: Dict[ElementId, str] = {}
        self._attribute_sources: Dict[tuple, str] = {}

    def add(self, contribution: ModuleContribution) -> None:
        """Merge one module's contribution."""
        module = contribution.module
        for table in contribution.tables.values():
            self._merge_table(module, table)
        logger.debug(
            f"Merged module '{module}' ({len(contribution.tables)} tables)"
        )

    def result(self) -> LogicalSchema:
        """Return the merged logical schema."""
        tables = {
            name: self._require_key_columns(table) for name, table in self._tables.items()
        }
        ownership = {eid: frozenset(owners) for eid, owners in self._ownership.items()}
        return LogicalSchema(tables=tables, ownership=ownership)

    @staticmethod
    def _require_key_columns(table: TableDecl) -> TableDecl:
        """Copy of the table with its primary key columns NOT NULL."""
        # the key may come from a module other than the one declaring the column
        table = table.copy()
        key = table.primary_key
        if key is not None:
            for name in key.columns:
                column = table.columns.get(name)
                if column is not None and column.nullable:
                    table.columns[name] = replace(column, nullable=False)
        return table

    def _merge_table(self, module: str, declared: TableDecl) -> None:
        table_id = declared.element_id
        merged = self._tables.get(declared.name)
        if merged is None:
            merged = TableDecl(name=declared.name)
            self._tables[declared.name] = merged
            self._sources[table_id] = module
        self._own(table_id, module)

        merged.engine = self._merge_attribute(
            table_id, "engine", merged.engine, declared.engine, module
        )
        merged.comment = self._merge_attribute(
            table_id, "comment", merged.comment, declared.comment, module
        )

        for name, column in declared.columns.items():
            self._merge_element(
                merged.columns, ElementId.column(declared.name, name), column, module
            )
        for name, index in declared.indexes.items():
            self._merge_element(
                merged.indexes, ElementId.index(declared.name, name), index, module
            )
        for name, constraint in declared.constraints.items():
            element_id = ElementId.constraint(declared.name, name)
            if isinstance(constraint, PrimaryKey):
                self._check_single_primary_key(merged, element_id, module)
            self._merge_element(merged.constraints, element_id, constraint, module)

    def _merge_attribute(
        self,
        table_id: ElementId,
        attribute: str,
        current: Optional[str],
        declared: Optional[str],
        module: str,
    ) -> Optional[str]:
        if declared is None:
            return current
        key = (table_id, attribute)
        if current is None:
            self._attribute_sources[key] = module
            return declared
        if current != declared:
            raise SchemaConflictError(
                table_id,
                self._attribute_sources[key],
                module,
                f"{attribute} {current!r} != {declared!r}",
            )
        return current

    def _merge_element(self, target: dict, element_id: ElementId, value, module: str) -> None:
        existing = target.get(element_id.name)
        if existing is None:
            target[element_id.name] = value
            self._sources[element_id] = module
        elif existing != value:
            raise SchemaConflictError(
                element_id,
                self._sources[element_id],
                module,
                f"{existing} != {value}",
            )
        self._own(element_id, module)

    def _check_single_primary_key(
        self, merged: TableDecl, element_id: ElementId, module: str
    ) -> None:
        current = merged.primary_key
        if current is not None and current.name != element_id.name:
            current_id = ElementId.constraint(merged.name, current.name)
            raise SchemaConflictError(
                current_id,
                self._sources[current_id],
                module,
                f"second primary key '{element_id.name}'",
            )

    def _own(self, element_id: ElementId, module: str) -> None:
        self._ownership.setdefault(element_id, set()).add(module)


def merge_contributions(contributions: Iterable[ModuleContribution]) -> LogicalSchema:
    """
    Merge an ordered list of module contributions into a logical schema.

    Args:
        contributions: Contributions in module sequence order

    Returns:
        LogicalSchema with ownership of every element

    Raises:
        SchemaConflictError: if two contributions disagree on one element
    """
    merger = ContributionMerger()
    modules: List[str] = []
    for contribution in contributions:
        merger.add(contribution)
        modules.append(contribution.module)

    logical = merger.result()
    logger.info(
        f"Merged {len(modules)} modules into {len(logical.tables)} tables "
        f"({len(logical.ownership)} elements)"
    )
    return logical
