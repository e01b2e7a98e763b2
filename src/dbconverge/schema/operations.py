"""
Schema operations for dbconverge.

An operation is one structural change to one table. Operations know which
element they touch, whether a live table already reflects them (the
idempotence check run before every execution), and how to apply themselves to
an in-memory snapshot, which lets a plan be verified before anything runs.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Union

from .model import (
    ColumnDecl,
    ConstraintDecl,
    ElementDecl,
    ElementId,
    ForeignKey,
    IndexDecl,
    SchemaSnapshot,
    TableDecl,
)
from ..exceptions import SchemaError


class OperationType(str, Enum):
    """Types of schema operations."""

    CREATE_TABLE = "create_table"
    DROP_TABLE = "drop_table"
    MODIFY_TABLE = "modify_table"
    ADD_COLUMN = "add_column"
    MODIFY_COLUMN = "modify_column"
    DROP_COLUMN = "drop_column"
    ADD_INDEX = "add_index"
    DROP_INDEX = "drop_index"
    ADD_CONSTRAINT = "add_constraint"
    DROP_CONSTRAINT = "drop_constraint"

    @property
    def display_name(self) -> str:
        """CamelCase name, e.g. ``DropColumn``."""
        return "".join(part.title() for part in self.value.split("_"))


# Execution phase within one table; lower phases run first.
PHASES = {
    OperationType.DROP_CONSTRAINT: 0,
    OperationType.DROP_INDEX: 1,
    OperationType.DROP_COLUMN: 2,
    OperationType.DROP_TABLE: 3,
    OperationType.CREATE_TABLE: 4,
    OperationType.MODIFY_TABLE: 5,
    OperationType.MODIFY_COLUMN: 6,
    OperationType.ADD_COLUMN: 7,
    OperationType.ADD_INDEX: 8,
    OperationType.ADD_CONSTRAINT: 9,
}

DESTRUCTIVE_TYPES = frozenset(
    {
        OperationType.DROP_TABLE,
        OperationType.DROP_COLUMN,
        OperationType.DROP_INDEX,
        OperationType.DROP_CONSTRAINT,
    }
)

Definition = Union[TableDecl, ElementDecl]


@dataclass(frozen=True)
class SchemaOperation:
    """
    One structural change.

    ``definition`` is the target definition for creates/adds/modifies and the
    live definition for drops. ``previous`` is the live definition replaced by
    a modify.
    """

    op_type: OperationType
    table: str
    definition: Definition
    previous: Optional[Definition] = None

    @classmethod
    def create_table(cls, table: TableDecl) -> "SchemaOperation":
        return cls(OperationType.CREATE_TABLE, table.name, table)

    @classmethod
    def drop_table(cls, table: TableDecl) -> "SchemaOperation":
        return cls(OperationType.DROP_TABLE, table.name, table)

    @classmethod
    def modify_table(cls, table: TableDecl, previous: TableDecl) -> "SchemaOperation":
        return cls(OperationType.MODIFY_TABLE, table.name, table, previous)

    @classmethod
    def add_column(cls, table: str, column: ColumnDecl) -> "SchemaOperation":
        return cls(OperationType.ADD_COLUMN, table, column)

    @classmethod
    def modify_column(
        cls, table: str, column: ColumnDecl, previous: ColumnDecl
    ) -> "SchemaOperation":
        return cls(OperationType.MODIFY_COLUMN, table, column, previous)

    @classmethod
    def drop_column(cls, table: str, column: ColumnDecl) -> "SchemaOperation":
        return cls(OperationType.DROP_COLUMN, table, column)

    @classmethod
    def add_index(cls, table: str, index: IndexDecl) -> "SchemaOperation":
        return cls(OperationType.ADD_INDEX, table, index)

    @classmethod
    def drop_index(cls, table: str, index: IndexDecl) -> "SchemaOperation":
        return cls(OperationType.DROP_INDEX, table, index)

    @classmethod
    def add_constraint(cls, table: str, constraint: ConstraintDecl) -> "SchemaOperation":
        return cls(OperationType.ADD_CONSTRAINT, table, constraint)

    @classmethod
    def drop_constraint(cls, table: str, constraint: ConstraintDecl) -> "SchemaOperation":
        return cls(OperationType.DROP_CONSTRAINT, table, constraint)

    @property
    def element_id(self) -> ElementId:
        """Id of the element this operation creates, changes or removes."""
        if self.op_type in (
            OperationType.CREATE_TABLE,
            OperationType.DROP_TABLE,
            OperationType.MODIFY_TABLE,
        ):
            return ElementId.for_table(self.table)
        if self.op_type in (
            OperationType.ADD_COLUMN,
            OperationType.MODIFY_COLUMN,
            OperationType.DROP_COLUMN,
        ):
            return ElementId.column(self.table, self.definition.name)
        if self.op_type in (OperationType.ADD_INDEX, OperationType.DROP_INDEX):
            return ElementId.index(self.table, self.definition.name)
        return ElementId.constraint(self.table, self.definition.name)

    @property
    def phase(self) -> int:
        return PHASES[self.op_type]

    @property
    def is_destructive(self) -> bool:
        return self.op_type in DESTRUCTIVE_TYPES

    @property
    def sort_key(self) -> tuple:
        return (self.table, self.phase, self.element_id.name)

    @property
    def foreign_keys(self) -> List[ForeignKey]:
        """Foreign keys created or removed by this operation."""
        if self.op_type in (OperationType.CREATE_TABLE, OperationType.DROP_TABLE):
            return self.definition.foreign_keys
        if isinstance(self.definition, ForeignKey) and self.op_type in (
            OperationType.ADD_CONSTRAINT,
            OperationType.DROP_CONSTRAINT,
        ):
            return [self.definition]
        return []

    @property
    def description(self) -> str:
        if self.op_type == OperationType.MODIFY_COLUMN:
            return f"{self.previous} -> {self.definition}"
        if self.op_type == OperationType.MODIFY_TABLE:
            return f"comment {self.previous.comment!r} -> {self.definition.comment!r}"
        if isinstance(self.definition, TableDecl):
            return (
                f"{len(self.definition.columns)} columns, "
                f"{len(self.definition.indexes)} indexes, "
                f"{len(self.definition.constraints)} constraints"
            )
        return str(self.definition)

    def __str__(self) -> str:
        if self.element_id.is_table:
            return f"{self.op_type.display_name}({self.table})"
        return f"{self.op_type.display_name}({self.table}.{self.element_id.name})"

    def is_applied(self, live_table: Optional[TableDecl]) -> bool:
        """
        Check whether the live table already reflects this operation.

        Adds are satisfied by presence, drops by absence, modifies by equality.
        """
        if self.op_type == OperationType.CREATE_TABLE:
            return live_table is not None
        if self.op_type == OperationType.DROP_TABLE:
            return live_table is None
        if live_table is None:
            return self.is_destructive

        current = live_table.get_element(self.element_id)
        if self.op_type == OperationType.MODIFY_TABLE:
            return live_table.comment == self.definition.comment
        if self.op_type == OperationType.MODIFY_COLUMN:
            return current == self.definition
        if self.is_destructive:
            return current is None
        return current is not None

    def apply_to(self, snapshot: SchemaSnapshot) -> None:
        """Apply this operation to a snapshot in place."""
        if self.op_type == OperationType.CREATE_TABLE:
            if self.table in snapshot.tables:
                raise SchemaError(f"Table {self.table} already exists")
            snapshot.tables[self.table] = self.definition.copy()
            return
        if self.op_type == OperationType.DROP_TABLE:
            if snapshot.tables.pop(self.table, None) is None:
                raise SchemaError(f"Table {self.table} does not exist")
            return

        table = snapshot.tables.get(self.table)
        if table is None:
            raise SchemaError(f"Table {self.table} does not exist")

        name = self.element_id.name
        if self.op_type == OperationType.MODIFY_TABLE:
            table.comment = self.definition.comment
        elif self.op_type in (OperationType.ADD_COLUMN, OperationType.MODIFY_COLUMN):
            table.columns[name] = self.definition
        elif self.op_type == OperationType.DROP_COLUMN:
            _require(table.columns.pop(name, None), self.element_id)
            # the store drops single-table indexes and keys over the column
            table.indexes = {
                n: i for n, i in table.indexes.items() if name not in i.columns
            }
            table.constraints = {
                n: c for n, c in table.constraints.items() if name not in c.columns
            }
        elif self.op_type == OperationType.ADD_INDEX:
            table.indexes[name] = self.definition
        elif self.op_type == OperationType.DROP_INDEX:
            _require(table.indexes.pop(name, None), self.element_id)
        elif self.op_type == OperationType.ADD_CONSTRAINT:
            table.constraints[name] = self.definition
        elif self.op_type == OperationType.DROP_CONSTRAINT:
            _require(table.constraints.pop(name, None), self.element_id)


def _require(removed, element_id: ElementId) -> None:
    if removed is None:
        raise SchemaError(f"{element_id} does not exist")


def simulate(snapshot: SchemaSnapshot, operations: Iterable[SchemaOperation]) -> SchemaSnapshot:
    """Return the schema that results from applying operations to a snapshot."""
    result = snapshot.copy()
    for operation in operations:
        operation.apply_to(result)
    return result
