"""
Dependency ordering for dbconverge operation plans.

Builds a prerequisite graph over operations (foreign keys across tables, a
fixed phase order within a table) and sorts it topologically, preferring to
stay on the current table so each table's operations form one contiguous run.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from .model import ElementId, ForeignKey, LogicalSchema, PrimaryKey, UniqueKey
from .operations import OperationType, SchemaOperation
from ..exceptions import CyclicDependencyError


logger = logging.getLogger(__name__)


class DependencyCycle(Exception):
    """Raised by the sort when some operations can never become ready."""

    def __init__(self, members: Iterable[int]):
        self.members = sorted(members)
        super().__init__(f"Dependency cycle among operations {self.members}")


@dataclass
class ExecutionPlan:
    """Ordered operations; ``dependencies[i]`` holds the positions i waits for."""

    operations: List[SchemaOperation] = field(default_factory=list)
    dependencies: Dict[int, Set[int]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.operations)

    def __iter__(self):
        return iter(self.operations)

    def dependents_of(self, position: int) -> Set[int]:
        """Every position that transitively depends on ``position``."""
        result: Set[int] = set()
        frontier = [position]
        while frontier:
            current = frontier.pop()
            for other, prereqs in self.dependencies.items():
                if current in prereqs and other not in result:
                    result.add(other)
                    frontier.append(other)
        return result

    def position_of(self, operation: SchemaOperation) -> int:
        for position, candidate in enumerate(self.operations):
            if candidate is operation:
                return position
        raise ValueError(f"{operation} is not part of this plan")


_KEY_TYPES = (PrimaryKey, UniqueKey)


class DependencyOrderer:
    """Topologically orders operations, splitting foreign keys out of cycles."""

    def order(
        self,
        operations: Iterable[SchemaOperation],
        logical: Optional[LogicalSchema] = None,
    ) -> ExecutionPlan:
        """
        Order operations for execution.

        ``logical`` only serves to name the owning modules when a cycle
        cannot be broken.

        Raises:
            CyclicDependencyError: if a cycle remains after splitting
        """
        ops = list(operations)
        while True:
            prereqs = self.build_dependencies(ops)
            try:
                order = self._sort(ops, prereqs)
                break
            except DependencyCycle as cycle:
                split = self._split_foreign_keys(ops, cycle.members)
                if split is None:
                    stuck = [ops[i] for i in cycle.members]
                    raise CyclicDependencyError(
                        {op.element_id for op in stuck}, self._owners(stuck, logical)
                    ) from cycle
                logger.info(
                    f"Split foreign keys out of {len(cycle.members)} operations "
                    "to break a dependency cycle"
                )
                ops = split

        position = {index: pos for pos, index in enumerate(order)}
        plan = ExecutionPlan(
            operations=[ops[i] for i in order],
            dependencies={
                position[i]: {position[p] for p in prereqs[i]} for i in order
            },
        )
        logger.debug(f"Ordered {len(plan)} operations")
        return plan

    def build_dependencies(self, ops: List[SchemaOperation]) -> Dict[int, Set[int]]:
        """Map each operation index to the indexes that must run before it."""
        prereqs: Dict[int, Set[int]] = {i: set() for i in range(len(ops))}

        for i, op in enumerate(ops):
            for j, other in enumerate(ops):
                if i != j and other.table == op.table and other.phase < op.phase:
                    prereqs[i].add(j)

        for i, op in enumerate(ops):
            is_drop = op.op_type in (
                OperationType.DROP_TABLE,
                OperationType.DROP_CONSTRAINT,
            )
            for fk in op.foreign_keys:
                for j, other in enumerate(ops):
                    if j == i or other.table != fk.referenced_table:
                        continue
                    if other.table == op.table and other.phase != op.phase:
                        # same table, already ordered by phase
                        continue
                    if is_drop and self._removes_target(other, fk):
                        prereqs[j].add(i)
                    elif not is_drop and self._provides_target(other, fk):
                        prereqs[i].add(j)
        return prereqs

    @staticmethod
    def _provides_target(op: SchemaOperation, fk: ForeignKey) -> bool:
        """Whether op creates something the foreign key needs."""
        if op.op_type == OperationType.CREATE_TABLE:
            return True
        if op.op_type in (OperationType.ADD_COLUMN, OperationType.MODIFY_COLUMN):
            return op.definition.name == fk.referenced_column
        if op.op_type == OperationType.ADD_CONSTRAINT:
            return (
                isinstance(op.definition, _KEY_TYPES)
                and fk.referenced_column in op.definition.columns
            )
        return False

    @staticmethod
    def _removes_target(op: SchemaOperation, fk: ForeignKey) -> bool:
        """Whether op removes or rewrites something the foreign key depends on."""
        if op.op_type == OperationType.DROP_TABLE:
            return True
        if op.op_type in (OperationType.DROP_COLUMN, OperationType.MODIFY_COLUMN):
            return op.definition.name == fk.referenced_column
        if op.op_type == OperationType.DROP_CONSTRAINT:
            return (
                isinstance(op.definition, _KEY_TYPES)
                and fk.referenced_column in op.definition.columns
            )
        return False

    @staticmethod
    def _owners(ops: List[SchemaOperation], logical: Optional[LogicalSchema]) -> Set[str]:
        modules: Set[str] = set()
        if logical is None:
            return modules
        for op in ops:
            modules.update(logical.owners(op.element_id))
            modules.update(logical.owners(ElementId.for_table(op.table)))
        return modules

    def _sort(self, ops: List[SchemaOperation], prereqs: Dict[int, Set[int]]) -> List[int]:
        """
        Kahn's algorithm; among ready operations prefer the current table,
        then the lowest (table, phase, name).
        """
        waiting = {i: set(p) for i, p in prereqs.items()}
        dependents: Dict[int, Set[int]] = {i: set() for i in waiting}
        for i, p in waiting.items():
            for j in p:
                dependents[j].add(i)

        ready = {i for i, p in waiting.items() if not p}
        order: List[int] = []
        current_table = None

        while ready:
            same_table = [i for i in ready if ops[i].table == current_table]
            pick = min(same_table or ready, key=lambda i: (ops[i].sort_key, i))
            ready.remove(pick)
            order.append(pick)
            current_table = ops[pick].table
            for dependent in dependents[pick]:
                waiting[dependent].discard(pick)
                if not waiting[dependent]:
                    ready.add(dependent)

        if len(order) < len(ops):
            raise DependencyCycle(set(waiting) - set(order))
        return order

    def _split_foreign_keys(self, ops: List[SchemaOperation], members: Iterable[int]):
        """
        Move foreign keys out of the cycle's CreateTable / DropTable operations.

        Returns the new operation list, or None when there is nothing to split.
        """
        members = set(members)
        result: List[SchemaOperation] = []
        changed = False
        for i, op in enumerate(ops):
            splittable = op.op_type in (
                OperationType.CREATE_TABLE,
                OperationType.DROP_TABLE,
            )
            if i not in members or not splittable or not op.foreign_keys:
                result.append(op)
                continue

            changed = True
            table = op.definition.without_foreign_keys()
            if op.op_type == OperationType.CREATE_TABLE:
                result.append(SchemaOperation.create_table(table))
                result.extend(
                    SchemaOperation.add_constraint(op.table, fk) for fk in op.foreign_keys
                )
            else:
                result.extend(
                    SchemaOperation.drop_constraint(op.table, fk) for fk in op.foreign_keys
                )
                result.append(SchemaOperation.drop_table(table))
        return result if changed else None


def order_operations(
    operations: Iterable[SchemaOperation], logical: Optional[LogicalSchema] = None
) -> ExecutionPlan:
    return DependencyOrderer().order(operations, logical)
