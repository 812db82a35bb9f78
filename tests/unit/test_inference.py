"""
Unit tests -- schema inference rule chains and merge with user edits.
"""
from datetime import date

import pytest

from smartbi.datasets.inference import (
    display_name,
    infer_aggregation,
    infer_data_type,
    infer_dimension_level,
    infer_field,
    infer_field_type,
    infer_fields,
    merge_field,
    merge_fields,
)
from smartbi.datasets.models import (
    AggregationType,
    DataType,
    DimensionLevel,
    Field,
    FieldType,
    placeholder_field,
)


# ── data type ────────────────────────────────────────────

@pytest.mark.parametrize("values, expected", [
    ([True, False, True], DataType.BOOLEAN),
    (["true", "False", "1", "0"], DataType.BOOLEAN),
    ([0, 1, 1, 0], DataType.BOOLEAN),
    ([1.5, 2, "3.25", 4], DataType.NUMBER),
    (["2024-01-05", "2024-02-10T08:00:00", "2024/03/01"], DataType.DATE),
    ([date(2024, 1, 1), date(2024, 1, 2)], DataType.DATE),
    (["APAC", "EMEA", "AMER"], DataType.STRING),
    ([], DataType.STRING),
])
def test_infer_data_type(values, expected):
    assert infer_data_type(values) == expected


def test_number_needs_majority():
    # 4 of 5 numeric is exactly 80% -- not strictly more
    assert infer_data_type([1, 2, 3, 4, "n/a"]) == DataType.STRING


def test_short_strings_are_not_dates():
    assert infer_data_type(["2024-1-5", "2024-1-6"]) == DataType.STRING


def test_infinite_is_not_a_number():
    assert infer_data_type([float("inf"), float("nan"), "x", "y"]) == DataType.STRING


# ── field type / aggregation / level ─────────────────────

def test_measure_by_keyword():
    assert infer_field_type("total_amount", DataType.STRING, ["a", "a"]) == FieldType.MEASURE


def test_measure_by_cardinality():
    assert infer_field_type("score", DataType.NUMBER, [1, 2, 3, 4]) == FieldType.MEASURE


def test_low_cardinality_number_is_dimension():
    assert infer_field_type("store_id", DataType.NUMBER, [1, 1, 1, 2]) == FieldType.DIMENSION


@pytest.mark.parametrize("name, expected", [
    ("order_count", AggregationType.COUNT),
    ("num_visits", AggregationType.COUNT),
    ("total_revenue", AggregationType.SUM),
    ("avg_price", AggregationType.AVG),
    ("conversion_rate", AggregationType.AVG),
    ("profit", AggregationType.SUM),
])
def test_infer_aggregation(name, expected):
    assert infer_aggregation(name) == expected


@pytest.mark.parametrize("name, dtype, expected", [
    ("created", DataType.DATE, DimensionLevel.TEMPORAL),
    ("fiscal_year", DataType.NUMBER, DimensionLevel.TEMPORAL),
    ("customer_level", DataType.STRING, DimensionLevel.ORDINAL),
    ("region", DataType.STRING, DimensionLevel.CATEGORICAL),
    ("订单日期", DataType.STRING, DimensionLevel.TEMPORAL),
])
def test_infer_dimension_level(name, dtype, expected):
    assert infer_dimension_level(name, dtype) == expected


def test_display_name():
    assert display_name("order_count") == "Order Count"
    assert display_name("orderCount") == "Order Count"
    assert display_name("ship-date") == "Ship Date"


# ── whole field ──────────────────────────────────────────

def test_order_count_column():
    f = infer_field("order_count", [5, 5, 5, 5, 5, 12, 5])
    assert f.type == DataType.NUMBER
    assert f.field_type == FieldType.MEASURE
    assert f.aggregation_type == AggregationType.COUNT
    assert f.dimension_level is None
    assert f.sample_values == [5, 12]
    assert f.is_nullable is False


def test_nulls_mark_nullable_and_are_skipped():
    f = infer_field("region", ["APAC", None, "EMEA"])
    assert f.is_nullable is True
    assert f.sample_values == ["APAC", "EMEA"]
    assert f.dimension_level == DimensionLevel.CATEGORICAL


def test_all_null_column():
    f = infer_field("notes", [None, None])
    assert f.type == DataType.STRING
    assert f.field_type == FieldType.DIMENSION
    assert f.is_nullable is True
    assert f.sample_values == []


def test_sample_values_capped_at_ten():
    f = infer_field("code", [f"C{i:03d}" for i in range(50)])
    assert len(f.sample_values) == 10


def test_infer_fields_follows_column_order():
    rows = [{"b": 1, "a": "x"}, {"b": 2, "a": "y"}]
    fields = infer_fields(["a", "b"], rows)
    assert [f.name for f in fields] == ["a", "b"]


def test_inference_is_idempotent():
    rows = [
        {"region": "APAC", "revenue": 10.5, "order_date": "2024-01-01"},
        {"region": "EMEA", "revenue": 20.0, "order_date": "2024-01-02"},
        {"region": None, "revenue": 30.25, "order_date": "2024-01-03"},
    ]
    columns = ["region", "revenue", "order_date"]
    first = [f.model_dump() for f in infer_fields(columns, rows)]
    second = [f.model_dump() for f in infer_fields(columns, rows)]
    assert first == second


# ── merge ────────────────────────────────────────────────

def test_merge_keeps_user_display_name():
    existing = Field(
        name="revenue",
        display_name="Revenue (¥)",
        type=DataType.NUMBER,
        field_type=FieldType.MEASURE,
        aggregation_type=AggregationType.SUM,
    )
    inferred = infer_field("revenue", [10.0, 20.0, 30.0])
    merged = merge_field(existing, inferred)
    assert merged.display_name == "Revenue (¥)"
    assert merged.sample_values == [10.0, 20.0, 30.0]


def test_merge_keeps_user_field_type_and_fixes_invariants():
    existing = Field(
        name="store_id",
        display_name="Store",
        type=DataType.NUMBER,
        field_type=FieldType.DIMENSION,
        dimension_level=DimensionLevel.CATEGORICAL,
    )
    inferred = infer_field("store_id", [1, 2, 3, 4])  # high cardinality -> measure
    assert inferred.field_type == FieldType.MEASURE

    merged = merge_field(existing, inferred)
    assert merged.field_type == FieldType.DIMENSION
    assert merged.aggregation_type is None
    assert merged.dimension_level == DimensionLevel.CATEGORICAL


def test_merge_type_and_nullability_come_from_source():
    existing = Field(name="amount", display_name="Amount", type=DataType.STRING,
                     field_type=FieldType.MEASURE, aggregation_type=AggregationType.SUM,
                     is_nullable=False, hidden=True, is_primary_key=True)
    inferred = infer_field("amount", [1.0, None, 3.0])
    merged = merge_field(existing, inferred)
    assert merged.type == DataType.NUMBER
    assert merged.is_nullable is True
    assert merged.hidden is True
    assert merged.is_primary_key is True


def test_merge_fields_drops_placeholder_and_stale_columns():
    existing = [
        placeholder_field(),
        Field(name="old_column", display_name="Old"),
        Field(name="margin", display_name="Margin", field_type=FieldType.CALCULATED,
              expression="revenue - cost"),
    ]
    inferred = infer_fields(["region"], [{"region": "APAC"}])
    merged = merge_fields(existing, inferred)
    assert [f.name for f in merged] == ["region", "margin"]


def test_merge_fields_is_idempotent():
    rows = [{"region": "APAC", "revenue": 1.5}, {"region": "EMEA", "revenue": 2.5}]
    inferred = infer_fields(["region", "revenue"], rows)
    once = merge_fields([placeholder_field()], inferred)
    twice = merge_fields(once, infer_fields(["region", "revenue"], rows))
    assert [f.model_dump() for f in once] == [f.model_dump() for f in twice]
