"""
Module declaration loading for dbconverge.

Each YAML document describes one module's partial view of the schema:

    module: catalog
    version: "1.2.0"
    sequence: [core]          # modules whose declarations load first
    tables:
      product:
        comment: Catalog products
        columns:
          id: {type: integer, nullable: false, unsigned: true, auto_increment: true}
          sku: {type: "varchar(64)", nullable: false}
          created_at: {type: timestamp, default: CURRENT_TIMESTAMP}
        indexes:
          product_sku_idx: {columns: [sku]}
        constraints:
          product_pkey: {type: primary, columns: [id]}
          product_store_fk:
            type: foreign
            column: store_id
            referenced_table: store
            referenced_column: id
            on_delete: cascade

Documents are validated with pydantic and converted to ``ModuleContribution``
values, ordered so that every module follows the modules in its ``sequence``.
"""

import heapq
import logging
import re
from pathlib import Path
from typing import Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .exceptions import DeclarationError
from .schema.ddl import MAX_IDENTIFIER_BYTES, generated_names, identifier_too_long
from .schema.model import (
    CheckConstraint,
    ColumnDecl,
    ColumnType,
    ConstraintDecl,
    ForeignKey,
    IndexDecl,
    IndexKind,
    ModuleContribution,
    OnDelete,
    PrimaryKey,
    TableDecl,
    TypeKind,
    UniqueKey,
    normalize_default,
)


logger = logging.getLogger(__name__)


TYPE_ALIASES: Dict[str, TypeKind] = {
    "smallint": TypeKind.SMALLINT,
    "int2": TypeKind.SMALLINT,
    "tinyint": TypeKind.SMALLINT,
    "integer": TypeKind.INTEGER,
    "int": TypeKind.INTEGER,
    "int4": TypeKind.INTEGER,
    "bigint": TypeKind.BIGINT,
    "int8": TypeKind.BIGINT,
    "boolean": TypeKind.BOOLEAN,
    "bool": TypeKind.BOOLEAN,
    "decimal": TypeKind.DECIMAL,
    "numeric": TypeKind.DECIMAL,
    "real": TypeKind.REAL,
    "float4": TypeKind.REAL,
    "double": TypeKind.DOUBLE,
    "double precision": TypeKind.DOUBLE,
    "float": TypeKind.DOUBLE,
    "float8": TypeKind.DOUBLE,
    "char": TypeKind.CHAR,
    "character": TypeKind.CHAR,
    "varchar": TypeKind.VARCHAR,
    "character varying": TypeKind.VARCHAR,
    "text": TypeKind.TEXT,
    "date": TypeKind.DATE,
    "time": TypeKind.TIME,
    "timestamp": TypeKind.TIMESTAMP,
    "datetime": TypeKind.TIMESTAMP,
    "timestamptz": TypeKind.TIMESTAMPTZ,
    "json": TypeKind.JSON,
    "jsonb": TypeKind.JSONB,
    "blob": TypeKind.BLOB,
    "bytea": TypeKind.BLOB,
    "uuid": TypeKind.UUID,
}

_TYPE_RE = re.compile(r"^\s*([a-z][a-z0-9 ]*?)\s*(?:\(\s*(\d+)\s*(?:,\s*(\d+)\s*)?\))?\s*$")


def parse_type(spec: str) -> ColumnType:
    """
    Parse a declared type such as ``varchar(255)`` or ``decimal(12,4)``.

    Unknown type names are kept verbatim as ``TypeKind.OTHER``.
    """
    text = spec.strip().lower()
    match = _TYPE_RE.match(text)
    if not match:
        return ColumnType(TypeKind.OTHER, raw=spec.strip())

    name, first, second = match.groups()
    kind = TYPE_ALIASES.get(re.sub(r"\s+", " ", name))
    if kind is None:
        return ColumnType(TypeKind.OTHER, raw=spec.strip())

    if kind.has_length:
        if second is not None:
            raise ValueError(f"type '{spec}' takes a single length")
        if first is None and kind == TypeKind.CHAR:
            return ColumnType(kind, length=1)
        return ColumnType(kind, length=int(first) if first else None)

    if kind == TypeKind.DECIMAL:
        if first is None:
            return ColumnType(kind)
        return ColumnType(kind, precision=int(first), scale=int(second or 0))

    if first is not None:
        raise ValueError(f"type '{spec}' does not take arguments")
    return ColumnType(kind)


class ColumnSpec(BaseModel):
    """Declared column."""

    model_config = ConfigDict(extra="forbid")

    type: str = Field(..., description="Column type, e.g. varchar(255)")
    nullable: bool = Field(True, description="Whether NULL is allowed")
    unsigned: bool = Field(False, description="Reject negative values")
    default: Optional[Union[bool, int, float, str]] = Field(None, description="Default value")
    auto_increment: bool = Field(False, description="Generated sequence value")
    on_update_auto: bool = Field(
        False, description="Refresh to the current timestamp on row update"
    )
    comment: Optional[str] = Field(None, description="Column comment")

    @model_validator(mode="after")
    def check_combinations(self) -> "ColumnSpec":
        if self.auto_increment and self.default is not None:
            raise ValueError("auto_increment columns cannot have a default")
        return self

    def to_decl(self, name: str, primary: bool = False) -> ColumnDecl:
        column_type = parse_type(self.type)
        if self.auto_increment and not column_type.kind.is_integer:
            raise ValueError(f"auto_increment requires an integer type, got '{self.type}'")
        if self.on_update_auto and not column_type.kind.is_temporal:
            raise ValueError(f"on_update_auto requires a date/time type, got '{self.type}'")
        if self.unsigned and not column_type.kind.is_numeric:
            raise ValueError(f"unsigned requires a numeric type, got '{self.type}'")

        return ColumnDecl(
            name=name,
            data_type=column_type,
            # the store reports identity and key columns as NOT NULL
            nullable=self.nullable and not (self.auto_increment or primary),
            unsigned=self.unsigned,
            default=normalize_default(self.default, column_type.kind),
            auto_increment=self.auto_increment,
            on_update_auto=self.on_update_auto,
            comment=self.comment,
        )


class IndexSpec(BaseModel):
    """Declared index."""

    model_config = ConfigDict(extra="forbid")

    columns: List[str] = Field(..., min_length=1, description="Indexed columns, in order")
    kind: IndexKind = Field(IndexKind.BTREE, description="Index kind")

    def to_decl(self, name: str) -> IndexDecl:
        return IndexDecl(name=name, columns=tuple(self.columns), kind=self.kind)


class ConstraintSpec(BaseModel):
    """Declared constraint; which fields apply depends on ``type``."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["primary", "unique", "foreign", "check"]
    columns: List[str] = Field(default_factory=list)
    column: Optional[str] = None
    referenced_table: Optional[str] = None
    referenced_column: Optional[str] = None
    on_delete: OnDelete = OnDelete.NO_ACTION
    expression: Optional[str] = None

    @model_validator(mode="after")
    def check_fields(self) -> "ConstraintSpec":
        if self.type in ("primary", "unique") and not self.columns:
            raise ValueError(f"{self.type} constraint needs columns")
        if self.type == "foreign" and not (
            self.column and self.referenced_table and self.referenced_column
        ):
            raise ValueError(
                "foreign constraint needs column, referenced_table and referenced_column"
            )
        if self.type == "check" and not self.expression:
            raise ValueError("check constraint needs an expression")
        return self

    def to_decl(self, name: str) -> ConstraintDecl:
        if self.type == "primary":
            return PrimaryKey(name, tuple(self.columns))
        if self.type == "unique":
            return UniqueKey(name, tuple(self.columns))
        if self.type == "foreign":
            return ForeignKey(
                name,
                self.column,
                self.referenced_table,
                self.referenced_column,
                self.on_delete,
            )
        return CheckConstraint(name, self.expression)


def check_identifier_lengths(table: TableDecl) -> None:
    """Reject names, generated ones included, that the store would truncate."""
    names = [table.name, *table.columns, *table.indexes, *table.constraints]
    for column in table.columns.values():
        names.extend(generated_names(table.name, column))

    too_long = [name for name in names if identifier_too_long(name)]
    if too_long:
        raise ValueError(
            f"table '{table.name}' needs identifiers longer than "
            f"{MAX_IDENTIFIER_BYTES} bytes: {', '.join(too_long)}"
        )


class TableSpec(BaseModel):
    """Declared (partial) table."""

    model_config = ConfigDict(extra="forbid")

    engine: Optional[str] = None
    comment: Optional[str] = None
    columns: Dict[str, ColumnSpec] = Field(default_factory=dict)
    indexes: Dict[str, IndexSpec] = Field(default_factory=dict)
    constraints: Dict[str, ConstraintSpec] = Field(default_factory=dict)

    def to_decl(self, name: str) -> TableDecl:
        primary_columns = set()
        for constraint in self.constraints.values():
            if constraint.type == "primary":
                primary_columns.update(constraint.columns)

        table = TableDecl(
            name=name,
            columns={
                col_name: spec.to_decl(col_name, col_name in primary_columns)
                for col_name, spec in self.columns.items()
            },
            indexes={idx_name: spec.to_decl(idx_name) for idx_name, spec in self.indexes.items()},
            constraints={
                con_name: spec.to_decl(con_name)
                for con_name, spec in self.constraints.items()
            },
            engine=self.engine,
            comment=self.comment,
        )
        check_identifier_lengths(table)
        return table


class ModuleSpec(BaseModel):
    """One module's declaration document."""

    model_config = ConfigDict(extra="forbid")

    module: str = Field(..., min_length=1, description="Module identifier")
    version: str = Field("0.0.0", description="Module schema version")
    sequence: List[str] = Field(
        default_factory=list, description="Modules this one is loaded after"
    )
    tables: Dict[str, TableSpec] = Field(default_factory=dict)

    def to_contribution(self) -> ModuleContribution:
        return ModuleContribution(
            module=self.module,
            version=self.version,
            tables={name: spec.to_decl(name) for name, spec in self.tables.items()},
        )


def parse_module(data: Dict, source: str = "<memory>") -> ModuleSpec:
    """Validate one declaration document."""
    if not isinstance(data, dict):
        raise DeclarationError("Declaration document must be a mapping", source)
    if isinstance(data.get("version"), (int, float)):
        data = {**data, "version": str(data["version"])}
    try:
        return ModuleSpec(**data)
    except ValidationError as e:
        raise DeclarationError(f"Invalid declaration: {e}", source, e) from e


def load_module_file(path: Union[str, Path]) -> ModuleSpec:
    """Read and validate one YAML declaration file."""
    source = str(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise DeclarationError("Declaration file not found", source, e) from e
    except yaml.YAMLError as e:
        raise DeclarationError(f"Invalid YAML: {e}", source, e) from e
    return parse_module(data, source)


def order_modules(specs: List[ModuleSpec]) -> List[ModuleSpec]:
    """
    Order modules so each follows everything in its ``sequence``.

    Ties are broken by module name, so the result does not depend on file
    discovery order.

    Raises:
        DeclarationError: on duplicate modules, unknown or cyclic dependencies
    """
    by_name: Dict[str, ModuleSpec] = {}
    for spec in specs:
        if spec.module in by_name:
            raise DeclarationError(f"Module '{spec.module}' is declared more than once")
        by_name[spec.module] = spec

    pending: Dict[str, int] = {}
    followers: Dict[str, List[str]] = {name: [] for name in by_name}
    for name, spec in by_name.items():
        requires = set(spec.sequence)
        for dependency in requires:
            if dependency not in by_name:
                raise DeclarationError(
                    f"Module '{name}' depends on unknown module '{dependency}'"
                )
            followers[dependency].append(name)
        pending[name] = len(requires)

    ready = [name for name, count in pending.items() if count == 0]
    heapq.heapify(ready)
    ordered: List[ModuleSpec] = []
    while ready:
        name = heapq.heappop(ready)
        ordered.append(by_name[name])
        for follower in followers[name]:
            pending[follower] -= 1
            if pending[follower] == 0:
                heapq.heappush(ready, follower)

    if len(ordered) != len(by_name):
        stuck = sorted(name for name, count in pending.items() if count > 0)
        raise DeclarationError(f"Module sequence cycle between: {', '.join(stuck)}")
    return ordered


def to_contributions(specs: List[ModuleSpec]) -> List[ModuleContribution]:
    """Order specs and convert them to contributions."""
    contributions = []
    for spec in order_modules(specs):
        try:
            contributions.append(spec.to_contribution())
        except ValueError as e:
            raise DeclarationError(
                f"Invalid declaration for module '{spec.module}': {e}", spec.module, e
            ) from e
    return contributions


def load_declarations(
    path: Union[str, Path], pattern: str = "*.yaml"
) -> List[ModuleContribution]:
    """Load every declaration file in a directory, ordered by module sequence."""
    directory = Path(path)
    if not directory.is_dir():
        raise DeclarationError("Declarations directory not found", str(directory))

    files = sorted(directory.glob(pattern))
    specs = [load_module_file(file) for file in files]
    contributions = to_contributions(specs)
    logger.info(
        f"Loaded {len(contributions)} module declarations from {directory}: "
        f"{', '.join(c.module for c in contributions)}"
    )
    return contributions
