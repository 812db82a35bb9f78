"""
Unit tests -- structured query compiler (parameterized SQL generation).
"""
import pytest

from smartbi.core.errors import ValidationError
from smartbi.datasets.compiler import (
    CompiledQuery,
    Select,
    Star,
    TableSource,
    compile_filter,
    compile_preview,
    compile_query,
    query_hash,
)
from smartbi.datasets.models import (
    AggregationType,
    ComputedField,
    Dataset,
    DatasetType,
    Field,
    FieldType,
    QueryFilter,
    QueryRequest,
    SqlConfig,
    TableConfig,
    ViewConfig,
    ViewFilter,
)


def _table(name="sales", schema=None, fields=None, **kw) -> Dataset:
    return Dataset(
        user_id="alice",
        name=name,
        display_name=name.title(),
        type=DatasetType.TABLE,
        table_config=TableConfig(datasource_id="ds1", table_name=name, schema_name=schema),
        fields=fields or [],
        **kw,
    )


def _view(base_id, filters=(), computed=(), **kw) -> Dataset:
    return Dataset(
        user_id="alice",
        name="apac_sales",
        display_name="APAC Sales",
        type=DatasetType.VIEW,
        view_config=ViewConfig(
            base_dataset_id=base_id,
            filters=list(filters),
            computed_fields=list(computed),
        ),
        **kw,
    )


# ── SELECT shape ─────────────────────────────────────────

def test_revenue_by_region_scenario():
    req = QueryRequest(
        measures=["revenue"],
        dimensions=["region"],
        filters=[QueryFilter(field="region", operator="equals", value="APAC")],
        limit=10,
    )
    compiled = compile_query(req, _table())
    assert compiled.sql == (
        "SELECT region, SUM(revenue) AS revenue FROM sales "
        "WHERE region = ? GROUP BY region ORDER BY revenue DESC LIMIT ?"
    )
    assert compiled.params == ["APAC", 10]


def test_no_columns_selects_star_without_order():
    compiled = compile_query(QueryRequest(limit=5), _table())
    assert compiled.sql == "SELECT * FROM sales LIMIT ?"
    assert compiled.params == [5]


def test_dimensions_only_orders_ascending():
    compiled = compile_query(QueryRequest(dimensions=["region", "channel"], limit=5), _table())
    assert compiled.sql == (
        "SELECT region, channel FROM sales GROUP BY region, channel ORDER BY region ASC LIMIT ?"
    )


def test_default_limit_is_bound():
    compiled = compile_query(QueryRequest(measures=["revenue"]), _table())
    assert compiled.params == [100]


def test_field_aggregation_is_used():
    fields = [Field(name="orders", display_name="Orders", field_type=FieldType.MEASURE,
                    aggregation_type=AggregationType.COUNT)]
    compiled = compile_query(QueryRequest(measures=["orders"], limit=5), _table(fields=fields))
    assert "COUNT(orders) AS orders" in compiled.sql


def test_calculated_measure_wraps_expression():
    fields = [Field(name="margin", display_name="Margin", field_type=FieldType.CALCULATED,
                    expression="revenue - cost")]
    compiled = compile_query(QueryRequest(measures=["margin"], limit=5), _table(fields=fields))
    assert "SUM((revenue - cost)) AS margin" in compiled.sql


def test_schema_qualified_table():
    compiled = compile_preview(_table(schema="analytics"), 20)
    assert compiled.sql == "SELECT * FROM analytics.sales LIMIT ?"
    assert compiled.params == [20]


# ── Parameterization ─────────────────────────────────────

def test_contains_value_never_reaches_sql_text():
    req = QueryRequest(
        dimensions=["customer"],
        filters=[QueryFilter(field="customer", operator="contains", value="O'Brien")],
        limit=10,
    )
    compiled = compile_query(req, _table())
    assert "O'Brien" not in compiled.sql
    assert "customer LIKE ?" in compiled.sql
    assert compiled.params[0] == "%O'Brien%"


@pytest.mark.parametrize("operator, value, sql, params", [
    ("eq", 3, "qty = ?", [3]),
    ("not_equals", "x", "qty != ?", ["x"]),
    ("gt", 1, "qty > ?", [1]),
    ("greater_than_or_equal", 1, "qty >= ?", [1]),
    ("lt", 9, "qty < ?", [9]),
    ("lte", 9, "qty <= ?", [9]),
    ("like", "A%", "qty LIKE ?", ["A%"]),
    ("in", [1, 2, 3], "qty IN (?, ?, ?)", [1, 2, 3]),
    ("between", [1, 5], "qty BETWEEN ? AND ?", [1, 5]),
    ("is_null", None, "qty IS NULL", []),
    ("is_not_null", None, "qty IS NOT NULL", []),
])
def test_filter_operators(operator, value, sql, params):
    predicate = compile_filter(QueryFilter(field="qty", operator=operator, value=value))
    compiled = CompiledQuery.from_statement(
        Select(columns=(Star(),), source=TableSource("sales"), where=(predicate,))
    )
    assert compiled.sql == f"SELECT * FROM sales WHERE {sql}"
    assert compiled.params == params


def test_empty_in_list_is_no_constraint():
    req = QueryRequest(filters=[QueryFilter(field="region", operator="in", value=[])], limit=5)
    compiled = compile_query(req, _table())
    assert "WHERE" not in compiled.sql
    assert compiled.params == [5]


def test_in_requires_list():
    with pytest.raises(ValidationError):
        compile_filter(QueryFilter(field="region", operator="in", value="APAC"))


def test_unknown_operator_rejected():
    with pytest.raises(ValidationError, match="Unsupported filter operator"):
        compile_filter(QueryFilter(field="region", operator="regex", value=".*"))


@pytest.mark.parametrize("name", ["region; DROP TABLE sales", "1abc", "a.b", "name--", ""])
def test_invalid_identifiers_rejected(name):
    with pytest.raises(ValidationError):
        compile_query(QueryRequest(dimensions=[name], limit=5), _table())


def test_unicode_identifiers_allowed():
    compiled = compile_query(QueryRequest(dimensions=["地区"], limit=5), _table())
    assert compiled.sql.startswith("SELECT 地区 FROM sales")


# ── Sources ──────────────────────────────────────────────

def test_sql_dataset_wraps_subquery():
    ds = Dataset(
        user_id="alice", name="recent", display_name="Recent", type=DatasetType.SQL,
        sql_config=SqlConfig(datasource_id="ds1", sql="SELECT * FROM orders WHERE y > 2020;"),
    )
    compiled = compile_preview(ds, 10)
    assert compiled.sql == "SELECT * FROM (SELECT * FROM orders WHERE y > 2020) AS subquery LIMIT ?"


def test_view_over_table():
    base = _table()
    view = _view(
        base.id,
        filters=[ViewFilter(field="region", operator="equals", value="APAC")],
        computed=[ComputedField(name="net", display_name="Net", expression="revenue - cost")],
    )
    compiled = compile_query(
        QueryRequest(measures=["net"], limit=5), view, resolve={base.id: base}.__getitem__
    )
    assert compiled.sql == (
        "SELECT SUM(net) AS net FROM "
        "(SELECT *, (revenue - cost) AS net FROM sales WHERE region = ?) AS view_query "
        "ORDER BY net DESC LIMIT ?"
    )
    assert compiled.params == ["APAC", 5]


def test_view_without_resolver_rejected():
    with pytest.raises(ValidationError):
        compile_preview(_view("missing"), 5)


def test_view_cycle_detected():
    a = _view("b", id="a")
    b = _view("a", id="b")
    lookup = {"a": a, "b": b}
    with pytest.raises(ValidationError, match="cycle"):
        compile_preview(a, 5, resolve=lookup.__getitem__)


# ── Named rendering for SQLAlchemy ───────────────────────

def test_named_rendering():
    req = QueryRequest(
        measures=["revenue"],
        dimensions=["region"],
        filters=[QueryFilter(field="region", operator="equals", value="APAC")],
        limit=10,
    )
    sql, params = compile_query(req, _table()).named()
    assert "region = :p0" in sql
    assert sql.endswith("LIMIT :p1")
    assert params == {"p0": "APAC", "p1": 10}


def test_named_rendering_escapes_colons_in_trusted_sql():
    sql, params = CompiledQuery.from_sql("SELECT ' :x' AS t, '12:30' AS u LIMIT 1").named()
    assert sql == "SELECT ' \\:x' AS t, '12:30' AS u LIMIT 1"
    assert params == {}


# ── Cache key ────────────────────────────────────────────

def test_query_hash_ignores_list_order():
    f1 = QueryFilter(field="region", operator="equals", value="APAC")
    f2 = QueryFilter(field="year", operator="gte", value=2023)
    a = QueryRequest(measures=["revenue", "cost"], dimensions=["region", "year"], filters=[f1, f2], limit=10)
    b = QueryRequest(measures=["cost", "revenue"], dimensions=["year", "region"], filters=[f2, f1], limit=10)
    assert query_hash(a) == query_hash(b)


def test_query_hash_depends_on_limit_and_values():
    base = QueryRequest(measures=["revenue"], limit=10)
    assert query_hash(base) != query_hash(QueryRequest(measures=["revenue"], limit=11))
    assert query_hash(base) != query_hash(QueryRequest(measures=["cost"], limit=10))
