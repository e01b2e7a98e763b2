"""
PostgreSQL DDL rendering for dbconverge operations.

Column attributes PostgreSQL has no direct spelling for are mapped onto
store objects the introspector recognises again:

- auto_increment  -> ``GENERATED BY DEFAULT AS IDENTITY``
- unsigned        -> check constraint ``<table>_<column>_unsigned``
- on_update_auto  -> trigger ``<column>_on_update`` calling
                     ``<table>_<column>_on_update()``
- fulltext index  -> GIN index over ``to_tsvector('simple', <column>)``
"""

import re
from typing import List, Optional

from .model import (
    CheckConstraint,
    ColumnDecl,
    ColumnDefault,
    ColumnType,
    ConstraintDecl,
    ForeignKey,
    IndexDecl,
    IndexKind,
    PrimaryKey,
    SQL_VALUE_KEYWORDS,
    TableDecl,
    TypeKind,
    UniqueKey,
)
from .operations import SchemaOperation


UNSIGNED_SUFFIX = "_unsigned"
ON_UPDATE_SUFFIX = "_on_update"
FULLTEXT_CONFIG = "simple"
# longer identifiers are truncated by the store without an error
MAX_IDENTIFIER_BYTES = 63

_FUNCTION_CALL_RE = re.compile(r"^[a-z_][a-z0-9_.]*\(.*\)$", re.IGNORECASE | re.DOTALL)
_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?([eE][-+]?\d+)?$")

_TYPE_NAMES = {
    TypeKind.SMALLINT: "smallint",
    TypeKind.INTEGER: "integer",
    TypeKind.BIGINT: "bigint",
    TypeKind.BOOLEAN: "boolean",
    TypeKind.REAL: "real",
    TypeKind.DOUBLE: "double precision",
    TypeKind.TEXT: "text",
    TypeKind.DATE: "date",
    TypeKind.TIME: "time",
    TypeKind.TIMESTAMP: "timestamp",
    TypeKind.TIMESTAMPTZ: "timestamptz",
    TypeKind.JSON: "json",
    TypeKind.JSONB: "jsonb",
    TypeKind.BLOB: "bytea",
    TypeKind.UUID: "uuid",
}


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def identifier_too_long(name: str) -> bool:
    return len(name.encode("utf-8")) > MAX_IDENTIFIER_BYTES


def generated_names(table: str, column: ColumnDecl) -> List[str]:
    """Names of the store objects that carry a column's extra attributes."""
    names = []
    if column.unsigned:
        names.append(unsigned_check_name(table, column.name))
    if column.on_update_auto:
        names.append(on_update_trigger_name(column.name))
        names.append(on_update_function_name(table, column.name))
    return names


def unsigned_check_name(table: str, column: str) -> str:
    return f"{table}_{column}{UNSIGNED_SUFFIX}"


def on_update_trigger_name(column: str) -> str:
    return f"{column}{ON_UPDATE_SUFFIX}"


def on_update_function_name(table: str, column: str) -> str:
    return f"{table}_{column}{ON_UPDATE_SUFFIX}"


class PostgresDialect:
    """Renders operations as PostgreSQL statements for one target schema."""

    def __init__(self, schema: str = "public"):
        self.schema = schema

    def qualify(self, name: str) -> str:
        return f"{quote_ident(self.schema)}.{quote_ident(name)}"

    def render(self, operation: SchemaOperation) -> List[str]:
        """Return the statements that carry out one operation, in order."""
        handler = getattr(self, f"_render_{operation.op_type.value}")
        return handler(operation)

    def render_type(self, data_type: ColumnType) -> str:
        kind = data_type.kind
        if kind == TypeKind.OTHER:
            return data_type.raw or "text"
        if kind == TypeKind.DECIMAL:
            if data_type.precision is None:
                return "numeric"
            return f"numeric({data_type.precision},{data_type.scale or 0})"
        if kind in (TypeKind.CHAR, TypeKind.VARCHAR):
            base = "character" if kind == TypeKind.CHAR else "character varying"
            if data_type.length is None:
                return base
            return f"{base}({data_type.length})"
        return _TYPE_NAMES[kind]

    def render_default(self, default: ColumnDefault, data_type: ColumnType) -> str:
        if default.is_current_timestamp:
            return "CURRENT_TIMESTAMP"
        value = default.value
        if value.lower() in SQL_VALUE_KEYWORDS or _FUNCTION_CALL_RE.match(value):
            return value
        if data_type.kind.is_numeric and _NUMBER_RE.match(value):
            return value
        if data_type.kind == TypeKind.BOOLEAN and value in ("true", "false"):
            return value
        return quote_literal(value)

    def column_definition(self, column: ColumnDecl) -> str:
        parts = [quote_ident(column.name), self.render_type(column.data_type)]
        if column.auto_increment:
            parts.append("GENERATED BY DEFAULT AS IDENTITY")
        if not column.nullable:
            parts.append("NOT NULL")
        if column.default is not None:
            parts.append(f"DEFAULT {self.render_default(column.default, column.data_type)}")
        return " ".join(parts)

    def constraint_definition(self, constraint: ConstraintDecl) -> str:
        columns = ", ".join(quote_ident(c) for c in constraint.columns)
        if isinstance(constraint, PrimaryKey):
            body = f"PRIMARY KEY ({columns})"
        elif isinstance(constraint, UniqueKey):
            body = f"UNIQUE ({columns})"
        elif isinstance(constraint, ForeignKey):
            body = (
                f"FOREIGN KEY ({columns}) "
                f"REFERENCES {self.qualify(constraint.referenced_table)} "
                f"({quote_ident(constraint.referenced_column)}) "
                f"ON DELETE {constraint.on_delete.value.upper()}"
            )
        elif isinstance(constraint, CheckConstraint):
            body = f"CHECK ({constraint.expression})"
        else:
            raise TypeError(f"Unsupported constraint {constraint!r}")
        return f"CONSTRAINT {quote_ident(constraint.name)} {body}"

    def unsigned_check(self, table: str, column: str) -> str:
        return (
            f"CONSTRAINT {quote_ident(unsigned_check_name(table, column))} "
            f"CHECK ({quote_ident(column)} >= 0)"
        )

    def create_index(self, table: str, index: IndexDecl) -> str:
        if index.kind == IndexKind.FULLTEXT:
            expressions = ", ".join(
                f"to_tsvector({quote_literal(FULLTEXT_CONFIG)}, {quote_ident(c)})"
                for c in index.columns
            )
            return (
                f"CREATE INDEX {quote_ident(index.name)} ON {self.qualify(table)} "
                f"USING gin ({expressions})"
            )
        columns = ", ".join(quote_ident(c) for c in index.columns)
        return f"CREATE INDEX {quote_ident(index.name)} ON {self.qualify(table)} ({columns})"

    def comment_on_table(self, table: str, comment: Optional[str]) -> str:
        value = "NULL" if comment is None else quote_literal(comment)
        return f"COMMENT ON TABLE {self.qualify(table)} IS {value}"

    def comment_on_column(self, table: str, column: str, comment: Optional[str]) -> str:
        value = "NULL" if comment is None else quote_literal(comment)
        return f"COMMENT ON COLUMN {self.qualify(table)}.{quote_ident(column)} IS {value}"

    def create_on_update_trigger(self, table: str, column: str) -> List[str]:
        function = self.qualify(on_update_function_name(table, column))
        trigger = quote_ident(on_update_trigger_name(column))
        return [
            f"CREATE OR REPLACE FUNCTION {function}() RETURNS trigger AS $$\n"
            "BEGIN\n"
            f"    NEW.{quote_ident(column)} := CURRENT_TIMESTAMP;\n"
            "    RETURN NEW;\n"
            "END;\n"
            "$$ LANGUAGE plpgsql",
            f"DROP TRIGGER IF EXISTS {trigger} ON {self.qualify(table)}",
            f"CREATE TRIGGER {trigger} BEFORE UPDATE ON {self.qualify(table)} "
            f"FOR EACH ROW EXECUTE FUNCTION {function}()",
        ]

    def drop_on_update_trigger(self, table: str, column: str) -> List[str]:
        return [
            f"DROP TRIGGER IF EXISTS {quote_ident(on_update_trigger_name(column))} "
            f"ON {self.qualify(table)}",
            f"DROP FUNCTION IF EXISTS {self.qualify(on_update_function_name(table, column))}()",
        ]

    def _column_extras(self, table: str, column: ColumnDecl) -> List[str]:
        """Statements that follow a column's creation."""
        statements = []
        if column.on_update_auto:
            statements.extend(self.create_on_update_trigger(table, column.name))
        if column.comment is not None:
            statements.append(self.comment_on_column(table, column.name, column.comment))
        return statements

    def _render_create_table(self, operation: SchemaOperation) -> List[str]:
        table: TableDecl = operation.definition
        lines = [self.column_definition(c) for c in table.columns.values()]
        lines.extend(
            self.unsigned_check(table.name, c.name)
            for c in table.columns.values()
            if c.unsigned
        )
        lines.extend(self.constraint_definition(c) for c in table.constraints.values())

        statements = [
            f"CREATE TABLE {self.qualify(table.name)} (\n    "
            + ",\n    ".join(lines)
            + "\n)"
        ]
        statements.extend(self.create_index(table.name, i) for i in table.indexes.values())
        if table.comment is not None:
            statements.append(self.comment_on_table(table.name, table.comment))
        for column in table.columns.values():
            statements.extend(self._column_extras(table.name, column))
        return statements

    def _render_drop_table(self, operation: SchemaOperation) -> List[str]:
        table: TableDecl = operation.definition
        statements = [f"DROP TABLE {self.qualify(table.name)}"]
        for column in table.columns.values():
            if column.on_update_auto:
                statements.append(
                    "DROP FUNCTION IF EXISTS "
                    f"{self.qualify(on_update_function_name(table.name, column.name))}()"
                )
        return statements

    def _render_modify_table(self, operation: SchemaOperation) -> List[str]:
        return [self.comment_on_table(operation.table, operation.definition.comment)]

    def _render_add_column(self, operation: SchemaOperation) -> List[str]:
        table = operation.table
        column: ColumnDecl = operation.definition
        statements = [
            f"ALTER TABLE {self.qualify(table)} ADD COLUMN {self.column_definition(column)}"
        ]
        if column.unsigned:
            statements.append(
                f"ALTER TABLE {self.qualify(table)} ADD {self.unsigned_check(table, column.name)}"
            )
        statements.extend(self._column_extras(table, column))
        return statements

    def _render_modify_column(self, operation: SchemaOperation) -> List[str]:
        table = operation.table
        new: ColumnDecl = operation.definition
        old: ColumnDecl = operation.previous
        alter = f"ALTER TABLE {self.qualify(table)} ALTER COLUMN {quote_ident(new.name)}"
        statements = []

        if old.auto_increment and not new.auto_increment:
            statements.append(f"{alter} DROP IDENTITY IF EXISTS")
        if old.default is not None and new.default != old.default:
            statements.append(f"{alter} DROP DEFAULT")
        if old.unsigned and not new.unsigned:
            statements.append(
                f"ALTER TABLE {self.qualify(table)} DROP CONSTRAINT IF EXISTS "
                f"{quote_ident(unsigned_check_name(table, new.name))}"
            )
        if new.data_type != old.data_type:
            type_name = self.render_type(new.data_type)
            statements.append(
                f"{alter} TYPE {type_name} USING {quote_ident(new.name)}::{type_name}"
            )
        if new.nullable != old.nullable:
            statements.append(f"{alter} {'DROP' if new.nullable else 'SET'} NOT NULL")
        if new.default is not None and new.default != old.default:
            statements.append(
                f"{alter} SET DEFAULT {self.render_default(new.default, new.data_type)}"
            )
        if new.auto_increment and not old.auto_increment:
            statements.append(f"{alter} ADD GENERATED BY DEFAULT AS IDENTITY")
        if new.unsigned and not old.unsigned:
            statements.append(
                f"ALTER TABLE {self.qualify(table)} ADD {self.unsigned_check(table, new.name)}"
            )
        if new.on_update_auto != old.on_update_auto:
            if new.on_update_auto:
                statements.extend(self.create_on_update_trigger(table, new.name))
            else:
                statements.extend(self.drop_on_update_trigger(table, new.name))
        if new.comment != old.comment:
            statements.append(self.comment_on_column(table, new.name, new.comment))
        return statements

    def _render_drop_column(self, operation: SchemaOperation) -> List[str]:
        table = operation.table
        column: ColumnDecl = operation.definition
        statements = []
        if column.on_update_auto:
            statements.extend(self.drop_on_update_trigger(table, column.name))
        statements.append(
            f"ALTER TABLE {self.qualify(table)} DROP COLUMN {quote_ident(column.name)}"
        )
        return statements

    def _render_add_index(self, operation: SchemaOperation) -> List[str]:
        return [self.create_index(operation.table, operation.definition)]

    def _render_drop_index(self, operation: SchemaOperation) -> List[str]:
        return [f"DROP INDEX {self.qualify(operation.definition.name)}"]

    def _render_add_constraint(self, operation: SchemaOperation) -> List[str]:
        return [
            f"ALTER TABLE {self.qualify(operation.table)} "
            f"ADD {self.constraint_definition(operation.definition)}"
        ]

    def _render_drop_constraint(self, operation: SchemaOperation) -> List[str]:
        return [
            f"ALTER TABLE {self.qualify(operation.table)} "
            f"DROP CONSTRAINT {quote_ident(operation.definition.name)}"
        ]


def render_plan(dialect: PostgresDialect, operations) -> List[str]:
    """Flatten a sequence of operations into SQL statements."""
    statements = []
    for operation in operations:
        statements.extend(dialect.render(operation))
    return statements
