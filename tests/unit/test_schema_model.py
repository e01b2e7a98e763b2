"""
Tests for dbconverge.schema.model module.
"""

import pytest

from dbconverge.schema.model import (
    CheckConstraint,
    ColumnDecl,
    ColumnDefault,
    ColumnType,
    ElementId,
    ElementKind,
    ForeignKey,
    IndexDecl,
    LiveSchema,
    LogicalSchema,
    PrimaryKey,
    TableDecl,
    TypeKind,
    canonical_expression,
    normalize_default,
    schema_fingerprint,
)
from tests.conftest import id_table, int_column, make_table, varchar_column


class TestElementId:
    """Test ElementId keys."""

    def test_constructors(self):
        """Test the kind-specific constructors."""
        assert ElementId.for_table("t") == ElementId("t", ElementKind.TABLE, "t")
        assert ElementId.column("t", "c").kind == ElementKind.COLUMN
        assert ElementId.index("t", "i").kind == ElementKind.INDEX
        assert ElementId.constraint("t", "k").kind == ElementKind.CONSTRAINT

    def test_dict_form(self):
        """Test conversion to and from the whitelist representation."""
        element_id = ElementId.column("sales_order", "status")
        data = element_id.to_dict()

        assert data == {"table": "sales_order", "kind": "column", "name": "status"}
        assert ElementId.from_dict(data) == element_id

    def test_ordering_and_hashing(self):
        """Test that ids are totally ordered and usable in sets."""
        ids = [ElementId.column("b", "x"), ElementId.for_table("a"), ElementId.column("a", "y")]

        assert sorted(ids)[0].table == "a"
        assert len(set(ids + [ElementId.for_table("a")])) == 3

    def test_str(self):
        assert str(ElementId.for_table("t")) == "table t"
        assert str(ElementId.index("t", "i")) == "index t.i"


class TestColumnType:
    """Test ColumnType rendering and equality."""

    def test_str_forms(self):
        assert str(ColumnType(TypeKind.VARCHAR, length=32)) == "varchar(32)"
        assert str(ColumnType(TypeKind.DECIMAL, precision=12, scale=4)) == "decimal(12,4)"
        assert str(ColumnType(TypeKind.OTHER, raw="inet")) == "inet"
        assert str(ColumnType(TypeKind.TEXT)) == "text"

    def test_length_is_significant(self):
        assert ColumnType(TypeKind.VARCHAR, length=32) != ColumnType(TypeKind.VARCHAR, length=64)

    def test_kind_predicates(self):
        assert TypeKind.BIGINT.is_integer
        assert TypeKind.DECIMAL.is_numeric
        assert TypeKind.TIMESTAMPTZ.is_temporal
        assert not TypeKind.TEXT.is_numeric


class TestNormalizeDefault:
    """Test default normalization across author and store spellings."""

    def test_none_and_null(self):
        assert normalize_default(None) is None
        assert normalize_default("NULL") is None
        assert normalize_default("NULL::character varying") is None

    def test_sequence_default_is_dropped(self):
        assert normalize_default("nextval('order_id_seq'::regclass)", TypeKind.INTEGER) is None

    def test_quoted_literal_with_cast(self):
        """Test that store casts and quotes are removed."""
        expected = ColumnDefault.literal("pending")

        assert normalize_default("'pending'::character varying", TypeKind.VARCHAR) == expected
        assert normalize_default("pending", TypeKind.VARCHAR) == expected
        assert normalize_default("('pending'::text)::character varying") == expected

    def test_escaped_quote(self):
        assert normalize_default("'it''s'::text").value == "it's"

    @pytest.mark.parametrize(
        "spelling", ["now()", "CURRENT_TIMESTAMP", "transaction_timestamp()", "LOCALTIMESTAMP"]
    )
    def test_current_timestamp_spellings(self, spelling):
        """Test that every spelling of now maps to the sentinel on temporal columns."""
        default = normalize_default(spelling, TypeKind.TIMESTAMP)
        assert default == ColumnDefault.current_timestamp()
        assert default.is_current_timestamp

    def test_now_on_text_column_is_literal(self):
        assert normalize_default("now()", TypeKind.TEXT) == ColumnDefault.literal("now()")

    def test_boolean_spellings(self):
        assert normalize_default(1, TypeKind.BOOLEAN).value == "true"
        assert normalize_default("no", TypeKind.BOOLEAN).value == "false"
        assert normalize_default(True).value == "true"

    def test_sql_value_keyword(self):
        assert normalize_default("CURRENT_DATE", TypeKind.DATE) == ColumnDefault.literal(
            "current_date"
        )

    def test_numeric_literal(self):
        assert normalize_default("'-1'::integer", TypeKind.INTEGER).value == "-1"
        assert normalize_default(0, TypeKind.INTEGER).value == "0"


class TestConstraints:
    """Test constraint value semantics."""

    def test_check_constraint_compares_canonical_form(self):
        """Test that the store's re-spelling of an expression is not a difference."""
        declared = CheckConstraint("qty_positive", "qty > 0")
        live = CheckConstraint("qty_positive", "CHECK ((qty > (0)::numeric))")

        assert declared == live

    def test_check_constraint_detects_real_change(self):
        assert CheckConstraint("c", "qty > 0") != CheckConstraint("c", "qty >= 0")

    def test_canonical_expression(self):
        assert canonical_expression("CHECK ((\"Qty\" > 0))") == "qty > 0"

    def test_grouping_is_significant(self):
        """Test that parentheses which change evaluation order are kept."""
        assert canonical_expression("(a + b) * c > 0") == "(a + b) * c > 0"
        assert canonical_expression("a + b * c > 0") == "a + b * c > 0"
        assert CheckConstraint("c", "(a + b) * c > 0") != CheckConstraint("c", "a + b * c > 0")

    def test_literal_text_is_case_sensitive(self):
        assert CheckConstraint("c", "code = 'A'") != CheckConstraint("c", "code = 'a'")
        assert canonical_expression("CODE = 'MiXed'") == "code = 'MiXed'"

    @pytest.mark.parametrize(
        "declared, stored",
        [
            ("(a + b) * c > 0", "CHECK ((((a + b) * c) > 0))"),
            ("a > 0 AND b > 0", "CHECK (((a > 0) AND (b > 0)))"),
            ("code = 'A'", "CHECK (((code)::text = 'A'::text))"),
            (
                "status IN ('new', 'paid')",
                "CHECK (((status)::text = ANY ((ARRAY['new'::character varying, "
                "'paid'::character varying])::text[])))",
            ),
            ("qty BETWEEN 1 AND 10", "CHECK (((qty >= 1) AND (qty <= 10)))"),
            ("name LIKE 'a%'", "CHECK (((name)::text ~~ 'a%'::text))"),
            ("delta > -1", "CHECK ((delta > '-1'::integer))"),
            ("note IS NOT NULL OR qty != 0", "CHECK (((note IS NOT NULL) OR (qty <> 0)))"),
        ],
    )
    def test_store_spelling_matches_declaration(self, declared, stored):
        assert canonical_expression(declared) == canonical_expression(stored)

    def test_unparsed_expression_falls_back_to_text(self):
        assert canonical_expression("(x SIMILAR TO 'A%')") == "x similar to 'A%'"

    def test_foreign_key_columns(self):
        fk = ForeignKey("fk", "store_id", "store", "id")
        assert fk.columns == ("store_id",)

    def test_index_columns_become_tuple(self):
        assert IndexDecl("i", ["a", "b"]).columns == ("a", "b")


class TestTableDecl:
    """Test TableDecl helpers."""

    def test_element_ids(self):
        table = id_table("store", varchar_column("code"))
        ids = set(table.element_ids())

        assert ElementId.for_table("store") in ids
        assert ElementId.column("store", "code") in ids
        assert ElementId.constraint("store", "store_pkey") in ids
        assert len(ids) == 4

    def test_get_element(self):
        table = id_table("store")

        assert table.get_element(ElementId.for_table("store")) is table
        assert table.get_element(ElementId.column("store", "id")).auto_increment
        assert table.get_element(ElementId.column("other", "id")) is None

    def test_primary_key_and_foreign_keys(self):
        table = make_table(
            "product",
            columns=[int_column("id"), int_column("store_id")],
            constraints=[
                PrimaryKey("product_pkey", ("id",)),
                ForeignKey("product_store_fk", "store_id", "store", "id"),
            ],
        )

        assert table.primary_key.name == "product_pkey"
        assert [fk.name for fk in table.foreign_keys] == ["product_store_fk"]
        assert table.without_foreign_keys().foreign_keys == []
        assert len(table.foreign_keys) == 1

    def test_copy_is_independent(self):
        table = id_table("store")
        clone = table.copy()
        clone.columns["extra"] = int_column("extra")

        assert "extra" not in table.columns
        assert clone != table


class TestSchemas:
    """Test snapshot helpers and fingerprints."""

    def test_snapshot_elements_and_lookup(self):
        live = LiveSchema(tables={"store": id_table("store")})

        assert live.has_element(ElementId.column("store", "id"))
        assert not live.has_element(ElementId.column("store", "missing"))
        assert ElementId.for_table("store") in set(live.elements())

    def test_snapshot_copy_keeps_type(self):
        live = LiveSchema(tables={"store": id_table("store")})
        clone = live.copy()

        assert isinstance(clone, LiveSchema)
        clone.tables["store"].columns.pop("id")
        assert "id" in live.tables["store"].columns

    def test_logical_ownership_queries(self):
        table_id = ElementId.for_table("store")
        logical = LogicalSchema(
            tables={"store": id_table("store")},
            ownership={table_id: frozenset({"core", "sales"})},
        )

        assert logical.owners(table_id) == frozenset({"core", "sales"})
        assert logical.elements_of("core") == frozenset({table_id})
        assert logical.modules == frozenset({"core", "sales"})

    def test_fingerprint_is_stable(self):
        first = LiveSchema(tables={"store": id_table("store"), "a": id_table("a")})
        second = LiveSchema(tables={"a": id_table("a"), "store": id_table("store")})

        assert schema_fingerprint(first) == schema_fingerprint(second)
        assert len(schema_fingerprint(first)) == 64

    def test_fingerprint_changes_with_schema_and_extra(self):
        base = LiveSchema(tables={"store": id_table("store")})
        changed = LiveSchema(tables={"store": id_table("store", varchar_column("code"))})

        assert schema_fingerprint(base) != schema_fingerprint(changed)
        assert schema_fingerprint(base) != schema_fingerprint(base, extra={"m": 1})

    def test_column_str(self):
        column = ColumnDecl(
            "qty", ColumnType(TypeKind.INTEGER), nullable=False, unsigned=True,
            default=ColumnDefault.literal("0"),
        )
        assert str(column) == "qty integer unsigned NOT NULL DEFAULT '0'"

    def test_table_to_dict_is_json_ready(self):
        data = id_table("store").to_dict()

        assert data["name"] == "store"
        assert data["constraints"]["store_pkey"]["type"] == "primary"
        assert TableDecl("t").to_dict()["columns"] == {}
