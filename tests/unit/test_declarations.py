"""
Tests for dbconverge.declarations module.
"""

import pytest

from dbconverge.declarations import (
    ColumnSpec,
    ModuleSpec,
    load_declarations,
    load_module_file,
    order_modules,
    parse_module,
    parse_type,
    to_contributions,
)
from dbconverge.exceptions import DeclarationError
from dbconverge.schema.model import (
    ColumnDefault,
    ColumnType,
    ForeignKey,
    IndexKind,
    OnDelete,
    PrimaryKey,
    TypeKind,
)


CATALOG_YAML = """
module: catalog
version: 1.2
sequence: [core]
tables:
  product:
    comment: Catalog products
    columns:
      id: {type: integer, auto_increment: true, unsigned: true}
      store_id: {type: int, nullable: false}
      sku: {type: "varchar(64)", nullable: false}
      price: {type: "decimal(12, 2)", default: 0}
      created_at: {type: timestamp, default: CURRENT_TIMESTAMP}
      body: {type: text}
    indexes:
      product_sku_idx: {columns: [sku]}
      product_body_fts: {columns: [body], kind: fulltext}
    constraints:
      product_pkey: {type: primary, columns: [id]}
      product_store_fk:
        type: foreign
        column: store_id
        referenced_table: store
        referenced_column: id
        on_delete: cascade
"""

CORE_YAML = """
module: core
tables:
  store:
    columns:
      id: {type: integer, auto_increment: true}
    constraints:
      store_pkey: {type: primary, columns: [id]}
"""


def declared(module, *sequence):
    return ModuleSpec(module=module, sequence=list(sequence))


class TestParseType:
    """Test declared type parsing."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("integer", ColumnType(TypeKind.INTEGER)),
            ("INT", ColumnType(TypeKind.INTEGER)),
            ("varchar(255)", ColumnType(TypeKind.VARCHAR, length=255)),
            ("character varying", ColumnType(TypeKind.VARCHAR)),
            ("char", ColumnType(TypeKind.CHAR, length=1)),
            ("decimal(10,2)", ColumnType(TypeKind.DECIMAL, precision=10, scale=2)),
            ("numeric(8)", ColumnType(TypeKind.DECIMAL, precision=8, scale=0)),
            ("double precision", ColumnType(TypeKind.DOUBLE)),
            ("datetime", ColumnType(TypeKind.TIMESTAMP)),
        ],
    )
    def test_known_types(self, text, expected):
        assert parse_type(text) == expected

    def test_unknown_type_is_kept(self):
        assert parse_type("inet") == ColumnType(TypeKind.OTHER, raw="inet")
        assert parse_type("text[]") == ColumnType(TypeKind.OTHER, raw="text[]")

    @pytest.mark.parametrize("text", ["integer(4)", "varchar(10,2)"])
    def test_invalid_arguments(self, text):
        with pytest.raises(ValueError):
            parse_type(text)


class TestColumnSpec:
    """Test column declarations."""

    def test_auto_increment_is_not_null(self):
        column = ColumnSpec(type="bigint", auto_increment=True).to_decl("id")

        assert column.auto_increment
        assert not column.nullable

    def test_primary_column_is_not_null(self):
        assert not ColumnSpec(type="uuid").to_decl("id", primary=True).nullable

    def test_default_is_normalized(self):
        column = ColumnSpec(type="boolean", default=True).to_decl("active")

        assert column.default == ColumnDefault.literal("true")

    def test_auto_increment_with_default_rejected(self):
        with pytest.raises(ValueError):
            ColumnSpec(type="integer", auto_increment=True, default=1)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"type": "text", "auto_increment": True},
            {"type": "integer", "on_update_auto": True},
            {"type": "varchar(10)", "unsigned": True},
        ],
    )
    def test_attribute_type_mismatch(self, kwargs):
        with pytest.raises(ValueError):
            ColumnSpec(**kwargs).to_decl("c")


class TestParseModule:
    """Test validating declaration documents."""

    def test_full_document(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text(CATALOG_YAML)

        module = load_module_file(path)
        product = module.to_contribution().tables["product"]

        assert module.version == "1.2"
        assert module.sequence == ["core"]
        assert product.comment == "Catalog products"
        assert product.columns["id"].unsigned
        assert not product.columns["id"].nullable
        assert product.columns["price"].default == ColumnDefault.literal("0")
        assert product.columns["created_at"].default == ColumnDefault.current_timestamp()
        assert product.indexes["product_body_fts"].kind == IndexKind.FULLTEXT
        assert product.constraints["product_pkey"] == PrimaryKey("product_pkey", ("id",))
        assert product.constraints["product_store_fk"] == ForeignKey(
            "product_store_fk", "store_id", "store", "id", OnDelete.CASCADE
        )

    def test_not_a_mapping(self):
        with pytest.raises(DeclarationError, match="must be a mapping"):
            parse_module(["module"], "list.yaml")

    def test_unknown_field(self):
        with pytest.raises(DeclarationError, match="Invalid declaration") as exc_info:
            parse_module({"module": "m", "tabels": {}}, "typo.yaml")

        assert exc_info.value.source == "typo.yaml"

    def test_foreign_key_needs_target(self):
        with pytest.raises(DeclarationError):
            parse_module(
                {
                    "module": "m",
                    "tables": {"t": {"constraints": {"fk": {"type": "foreign", "column": "x"}}}},
                }
            )

    def test_missing_file(self, tmp_path):
        with pytest.raises(DeclarationError, match="not found"):
            load_module_file(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("module: [")

        with pytest.raises(DeclarationError, match="Invalid YAML"):
            load_module_file(path)


class TestOrderModules:
    """Test module sequence ordering."""

    def test_dependencies_first_then_by_name(self):
        ordered = order_modules(
            [declared("sales", "core"), declared("billing"), declared("core")]
        )

        assert [m.module for m in ordered] == ["billing", "core", "sales"]

    def test_duplicate_module(self):
        with pytest.raises(DeclarationError, match="more than once"):
            order_modules([declared("core"), declared("core")])

    def test_unknown_dependency(self):
        with pytest.raises(DeclarationError, match="unknown module 'core'"):
            order_modules([declared("sales", "core")])

    def test_cycle(self):
        with pytest.raises(DeclarationError, match="cycle between: a, b"):
            order_modules([declared("a", "b"), declared("b", "a"), declared("c")])

    def test_invalid_column_surfaces_as_declaration_error(self):
        bad = parse_module(
            {"module": "m", "tables": {"t": {"columns": {"c": {"type": "text", "unsigned": True}}}}}
        )

        with pytest.raises(DeclarationError, match="Invalid declaration for module 'm'"):
            to_contributions([bad])

    @pytest.mark.parametrize(
        "column",
        [
            {"type": "integer", "unsigned": True},
            {"type": "timestamp", "on_update_auto": True},
        ],
    )
    def test_generated_name_over_identifier_limit(self, column):
        """Test that a helper object name the store would truncate is rejected."""
        spec = parse_module(
            {
                "module": "m",
                "tables": {"inventory_adjustment_line": {"columns": {"c" * 33: column}}},
            }
        )

        with pytest.raises(DeclarationError, match="longer than 63 bytes"):
            to_contributions([spec])

    def test_identifier_at_limit_is_accepted(self):
        spec = parse_module(
            {"module": "m", "tables": {"t": {"columns": {"c" * 63: {"type": "integer"}}}}}
        )

        assert "c" * 63 in to_contributions([spec])[0].tables["t"].columns

    def test_multibyte_name_counts_bytes(self):
        spec = parse_module(
            {"module": "m", "tables": {"t": {"columns": {"\u00e9" * 32: {"type": "integer"}}}}}
        )

        with pytest.raises(DeclarationError, match="longer than 63 bytes"):
            to_contributions([spec])


class TestLoadDeclarations:
    """Test loading a directory of declaration files."""

    def test_load_directory(self, tmp_path):
        (tmp_path / "a_catalog.yaml").write_text(CATALOG_YAML)
        (tmp_path / "z_core.yaml").write_text(CORE_YAML)
        (tmp_path / "notes.txt").write_text("ignored")

        contributions = load_declarations(tmp_path)

        assert [c.module for c in contributions] == ["core", "catalog"]
        assert contributions[0].version == "0.0.0"

    def test_missing_directory(self, tmp_path):
        with pytest.raises(DeclarationError, match="directory not found"):
            load_declarations(tmp_path / "absent")
