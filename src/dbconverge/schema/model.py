"""
Schema object model for dbconverge.

Typed, structurally comparable representation of tables, columns, indexes and
constraints. Declarations, the live introspector and the diff engine all speak
this model, so equality here is what decides conflicts and differences.

Conventions
-----------
- Element values (columns, indexes, constraints, types, defaults) are frozen
  dataclasses: equal iff every semantic attribute matches.
- Tables and schemas are plain dataclasses holding name-keyed maps.
- A table attribute of ``None`` (engine, comment) means "not specified".
- Defaults are always stored normalized (see ``normalize_default``).
"""

import copy
import hashlib
import json
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import (
    Any,
    ClassVar,
    Dict,
    FrozenSet,
    Iterator,
    List,
    Optional,
    Tuple,
    Union,
)

from .expressions import canonical_expression


class ElementKind(str, Enum):
    """Kinds of schema elements tracked by id."""

    TABLE = "table"
    COLUMN = "column"
    INDEX = "index"
    CONSTRAINT = "constraint"


@dataclass(frozen=True, order=True)
class ElementId:
    """Canonical key of a schema element: (table, kind, name)."""

    table: str
    kind: ElementKind
    name: str

    @classmethod
    def for_table(cls, table: str) -> "ElementId":
        return cls(table, ElementKind.TABLE, table)

    @classmethod
    def column(cls, table: str, name: str) -> "ElementId":
        return cls(table, ElementKind.COLUMN, name)

    @classmethod
    def index(cls, table: str, name: str) -> "ElementId":
        return cls(table, ElementKind.INDEX, name)

    @classmethod
    def constraint(cls, table: str, name: str) -> "ElementId":
        return cls(table, ElementKind.CONSTRAINT, name)

    @property
    def is_table(self) -> bool:
        return self.kind == ElementKind.TABLE

    def to_dict(self) -> Dict[str, str]:
        return {"table": self.table, "kind": self.kind.value, "name": self.name}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "ElementId":
        return cls(data["table"], ElementKind(data["kind"]), data["name"])

    def __str__(self) -> str:
        if self.is_table:
            return f"table {self.table}"
        return f"{self.kind.value} {self.table}.{self.name}"


class TypeKind(str, Enum):
    """Logical column types."""

    SMALLINT = "smallint"
    INTEGER = "integer"
    BIGINT = "bigint"
    BOOLEAN = "boolean"
    DECIMAL = "decimal"
    REAL = "real"
    DOUBLE = "double"
    CHAR = "char"
    VARCHAR = "varchar"
    TEXT = "text"
    DATE = "date"
    TIME = "time"
    TIMESTAMP = "timestamp"
    TIMESTAMPTZ = "timestamptz"
    JSON = "json"
    JSONB = "jsonb"
    BLOB = "blob"
    UUID = "uuid"
    OTHER = "other"

    @property
    def is_integer(self) -> bool:
        return self in (TypeKind.SMALLINT, TypeKind.INTEGER, TypeKind.BIGINT)

    @property
    def is_numeric(self) -> bool:
        return self.is_integer or self in (
            TypeKind.DECIMAL,
            TypeKind.REAL,
            TypeKind.DOUBLE,
        )

    @property
    def is_temporal(self) -> bool:
        return self in (
            TypeKind.DATE,
            TypeKind.TIME,
            TypeKind.TIMESTAMP,
            TypeKind.TIMESTAMPTZ,
        )

    @property
    def has_length(self) -> bool:
        return self in (TypeKind.CHAR, TypeKind.VARCHAR)


@dataclass(frozen=True)
class ColumnType:
    """Logical type with optional length / precision / scale."""

    kind: TypeKind
    length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    raw: Optional[str] = None  # store type name, only for TypeKind.OTHER

    def __str__(self) -> str:
        if self.kind == TypeKind.OTHER:
            return self.raw or "other"
        if self.kind.has_length and self.length is not None:
            return f"{self.kind.value}({self.length})"
        if self.kind == TypeKind.DECIMAL and self.precision is not None:
            return f"decimal({self.precision},{self.scale or 0})"
        return self.kind.value


class DefaultKind(str, Enum):
    """Kinds of column default values."""

    LITERAL = "literal"
    CURRENT_TIMESTAMP = "current_timestamp"


@dataclass(frozen=True)
class ColumnDefault:
    """A normalized column default: a literal or the current-timestamp sentinel."""

    kind: DefaultKind
    value: Optional[str] = None

    @classmethod
    def literal(cls, value: str) -> "ColumnDefault":
        return cls(DefaultKind.LITERAL, value)

    @classmethod
    def current_timestamp(cls) -> "ColumnDefault":
        return cls(DefaultKind.CURRENT_TIMESTAMP)

    @property
    def is_current_timestamp(self) -> bool:
        return self.kind == DefaultKind.CURRENT_TIMESTAMP

    def __str__(self) -> str:
        if self.is_current_timestamp:
            return "CURRENT_TIMESTAMP"
        return repr(self.value)


_CURRENT_TIMESTAMP_SPELLINGS = {
    "now()",
    "current_timestamp",
    "current_timestamp()",
    "transaction_timestamp()",
    "statement_timestamp()",
    "localtimestamp",
    "localtimestamp()",
}
_TRUE_SPELLINGS = {"1", "true", "t", "yes", "y", "on"}
_FALSE_SPELLINGS = {"0", "false", "f", "no", "n", "off"}
# unquoted SQL value keywords, kept as lower-case literals
SQL_VALUE_KEYWORDS = {
    "current_date",
    "current_time",
    "localtime",
    "current_user",
    "session_user",
    "current_role",
}

_NULL_RE = re.compile(r"^null(::.+)?$", re.IGNORECASE)
_TYPE_CAST = (
    r"::(?:\"[^\"]+\"|[a-z_][a-z0-9_]*"
    r"(?:\s+(?:varying|precision|without\s+time\s+zone|with\s+time\s+zone))?)"
    r"(?:\(\d+(?:\s*,\s*\d+)?\))?(?:\[\])?"
)
_TRAILING_CAST_RE = re.compile(r"^(.*)" + _TYPE_CAST + r"$", re.IGNORECASE | re.DOTALL)


def normalize_default(
    value: Any, type_kind: Optional[TypeKind] = None
) -> Optional[ColumnDefault]:
    """
    Normalize a default as written by an author or reported by the store.

    ``'abc'::character varying`` and ``abc`` both become the literal ``abc``;
    every spelling of "now" on a date/time column becomes the sentinel; NULL
    and sequence defaults mean "no default".
    """
    if value is None:
        return None
    if isinstance(value, ColumnDefault):
        return value
    if isinstance(value, bool):
        text = "true" if value else "false"
    else:
        text = str(value).strip()

    if not text or _NULL_RE.match(text):
        return None
    if text.lower().startswith("nextval("):
        return None

    # ('x'::text)::character varying -> 'x'
    previous = None
    while text != previous:
        previous = text
        match = _TRAILING_CAST_RE.match(text)
        if match:
            text = match.group(1).strip()
        if text.startswith("(") and text.endswith(")"):
            text = text[1:-1].strip()

    quoted = len(text) >= 2 and text.startswith("'") and text.endswith("'")
    if quoted:
        text = text[1:-1].replace("''", "'")
    elif text.lower() in _CURRENT_TIMESTAMP_SPELLINGS and (
        type_kind is None or type_kind.is_temporal
    ):
        return ColumnDefault.current_timestamp()
    elif text.lower() in SQL_VALUE_KEYWORDS:
        return ColumnDefault.literal(text.lower())

    if type_kind == TypeKind.BOOLEAN:
        lowered = text.lower()
        if lowered in _TRUE_SPELLINGS:
            text = "true"
        elif lowered in _FALSE_SPELLINGS:
            text = "false"

    return ColumnDefault.literal(text)


@dataclass(frozen=True)
class ColumnDecl:
    """Column declaration."""

    name: str
    data_type: ColumnType
    nullable: bool = True
    unsigned: bool = False
    default: Optional[ColumnDefault] = None
    auto_increment: bool = False
    on_update_auto: bool = False
    comment: Optional[str] = None

    def __str__(self) -> str:
        result = f"{self.name} {self.data_type}"
        if self.unsigned:
            result += " unsigned"
        if not self.nullable:
            result += " NOT NULL"
        if self.default is not None:
            result += f" DEFAULT {self.default}"
        if self.auto_increment:
            result += " AUTO_INCREMENT"
        if self.on_update_auto:
            result += " ON UPDATE CURRENT_TIMESTAMP"
        return result


class IndexKind(str, Enum):
    """Index kinds."""

    BTREE = "btree"
    FULLTEXT = "fulltext"


@dataclass(frozen=True)
class IndexDecl:
    """Index declaration over an ordered list of columns."""

    name: str
    columns: Tuple[str, ...]
    kind: IndexKind = IndexKind.BTREE

    def __post_init__(self):
        object.__setattr__(self, "columns", tuple(self.columns))

    def __str__(self) -> str:
        return f"{self.kind.value} index {self.name} ({', '.join(self.columns)})"


class ConstraintType(str, Enum):
    """Constraint variants."""

    PRIMARY = "primary"
    UNIQUE = "unique"
    FOREIGN = "foreign"
    CHECK = "check"


class OnDelete(str, Enum):
    """Foreign key ON DELETE policies."""

    CASCADE = "cascade"
    SET_NULL = "set null"
    SET_DEFAULT = "set default"
    RESTRICT = "restrict"
    NO_ACTION = "no action"


@dataclass(frozen=True)
class PrimaryKey:
    name: str
    columns: Tuple[str, ...]

    constraint_type: ClassVar[ConstraintType] = ConstraintType.PRIMARY

    def __post_init__(self):
        object.__setattr__(self, "columns", tuple(self.columns))

    def __str__(self) -> str:
        return f"PRIMARY KEY {self.name} ({', '.join(self.columns)})"


@dataclass(frozen=True)
class UniqueKey:
    name: str
    columns: Tuple[str, ...]

    constraint_type: ClassVar[ConstraintType] = ConstraintType.UNIQUE

    def __post_init__(self):
        object.__setattr__(self, "columns", tuple(self.columns))

    def __str__(self) -> str:
        return f"UNIQUE {self.name} ({', '.join(self.columns)})"


@dataclass(frozen=True)
class ForeignKey:
    name: str
    column: str
    referenced_table: str
    referenced_column: str
    on_delete: OnDelete = OnDelete.NO_ACTION

    constraint_type: ClassVar[ConstraintType] = ConstraintType.FOREIGN

    @property
    def columns(self) -> Tuple[str, ...]:
        return (self.column,)

    def __str__(self) -> str:
        return (
            f"FOREIGN KEY {self.name} ({self.column}) -> "
            f"{self.referenced_table}({self.referenced_column}) "
            f"ON DELETE {self.on_delete.value.upper()}"
        )


@dataclass(frozen=True)
class CheckConstraint:
    """Check constraint; compared on the canonical form of its expression."""

    name: str
    expression: str = field(compare=False)
    canonical: str = field(init=False, repr=False)

    constraint_type: ClassVar[ConstraintType] = ConstraintType.CHECK

    def __post_init__(self):
        object.__setattr__(self, "canonical", canonical_expression(self.expression))

    @property
    def columns(self) -> Tuple[str, ...]:
        return ()

    def __str__(self) -> str:
        return f"CHECK {self.name} ({self.expression})"


ConstraintDecl = Union[PrimaryKey, UniqueKey, ForeignKey, CheckConstraint]
ElementDecl = Union[ColumnDecl, IndexDecl, PrimaryKey, UniqueKey, ForeignKey, CheckConstraint]


@dataclass
class TableDecl:
    """Table declaration: attributes plus name-keyed element maps."""

    name: str
    columns: Dict[str, ColumnDecl] = field(default_factory=dict)
    indexes: Dict[str, IndexDecl] = field(default_factory=dict)
    constraints: Dict[str, ConstraintDecl] = field(default_factory=dict)
    engine: Optional[str] = None
    comment: Optional[str] = None

    @property
    def element_id(self) -> ElementId:
        return ElementId.for_table(self.name)

    @property
    def primary_key(self) -> Optional[PrimaryKey]:
        for constraint in self.constraints.values():
            if isinstance(constraint, PrimaryKey):
                return constraint
        return None

    @property
    def foreign_keys(self) -> List[ForeignKey]:
        return [c for c in self.constraints.values() if isinstance(c, ForeignKey)]

    def element_ids(self) -> Iterator[ElementId]:
        """Yield the ids of the table and every element it contains."""
        yield self.element_id
        for name in self.columns:
            yield ElementId.column(self.name, name)
        for name in self.indexes:
            yield ElementId.index(self.name, name)
        for name in self.constraints:
            yield ElementId.constraint(self.name, name)

    def get_element(self, element_id: ElementId) -> Optional[Union["TableDecl", ElementDecl]]:
        if element_id.table != self.name:
            return None
        if element_id.kind == ElementKind.TABLE:
            return self
        if element_id.kind == ElementKind.COLUMN:
            return self.columns.get(element_id.name)
        if element_id.kind == ElementKind.INDEX:
            return self.indexes.get(element_id.name)
        return self.constraints.get(element_id.name)

    def copy(self) -> "TableDecl":
        return TableDecl(
            name=self.name,
            columns=dict(self.columns),
            indexes=dict(self.indexes),
            constraints=dict(self.constraints),
            engine=self.engine,
            comment=self.comment,
        )

    def without_foreign_keys(self) -> "TableDecl":
        table = self.copy()
        table.constraints = {
            name: c for name, c in self.constraints.items() if not isinstance(c, ForeignKey)
        }
        return table

    def to_dict(self) -> Dict[str, Any]:
        """Canonical, JSON-serializable representation."""
        constraints = {}
        for name, constraint in sorted(self.constraints.items()):
            data = asdict(constraint)
            data["type"] = constraint.constraint_type.value
            data.pop("canonical", None)
            constraints[name] = data
        return {
            "name": self.name,
            "engine": self.engine,
            "comment": self.comment,
            "columns": {n: asdict(c) for n, c in sorted(self.columns.items())},
            "indexes": {n: asdict(i) for n, i in sorted(self.indexes.items())},
            "constraints": constraints,
        }


@dataclass
class ModuleContribution:
    """One module's partial view of the schema."""

    module: str
    tables: Dict[str, TableDecl] = field(default_factory=dict)
    version: str = "0.0.0"

    def element_ids(self) -> Iterator[ElementId]:
        for table in self.tables.values():
            yield from table.element_ids()


@dataclass
class SchemaSnapshot:
    """A set of tables keyed by name."""

    tables: Dict[str, TableDecl] = field(default_factory=dict)

    def elements(self) -> Iterator[ElementId]:
        for table in self.tables.values():
            yield from table.element_ids()

    def has_element(self, element_id: ElementId) -> bool:
        return self.get_element(element_id) is not None

    def get_element(self, element_id: ElementId) -> Optional[Union[TableDecl, ElementDecl]]:
        table = self.tables.get(element_id.table)
        if table is None:
            return None
        return table.get_element(element_id)

    def copy(self) -> "SchemaSnapshot":
        clone = copy.copy(self)
        clone.tables = {name: table.copy() for name, table in self.tables.items()}
        return clone

    def to_dict(self) -> Dict[str, Any]:
        return {name: table.to_dict() for name, table in sorted(self.tables.items())}


@dataclass
class LiveSchema(SchemaSnapshot):
    """Structure currently present in the database, as introspected."""

    pass


@dataclass
class LogicalSchema(SchemaSnapshot):
    """Merged declarative target schema with element ownership."""

    ownership: Dict[ElementId, FrozenSet[str]] = field(default_factory=dict)

    def owners(self, element_id: ElementId) -> FrozenSet[str]:
        return self.ownership.get(element_id, frozenset())

    def elements_of(self, module: str) -> FrozenSet[ElementId]:
        return frozenset(eid for eid, owners in self.ownership.items() if module in owners)

    @property
    def modules(self) -> FrozenSet[str]:
        result = set()
        for owners in self.ownership.values():
            result.update(owners)
        return frozenset(result)


def schema_fingerprint(schema: SchemaSnapshot, extra: Optional[Any] = None) -> str:
    """SHA-256 over a canonical JSON encoding of the schema (and extra data)."""
    payload = {"tables": schema.to_dict(), "extra": extra}
    encoded = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
