"""
Unit tests -- display-name lookup and schema summary for the intent pipeline.
"""
from smartbi.datasets.intent import FieldLookup, IntentOutcome, dataset_schema
from smartbi.datasets.models import (
    AggregationType,
    Dataset,
    DatasetType,
    Field,
    FieldType,
    QueryResult,
    TableConfig,
    placeholder_field,
)


def _dataset() -> Dataset:
    return Dataset(
        user_id="alice",
        name="sales",
        display_name="Sales",
        type=DatasetType.TABLE,
        table_config=TableConfig(datasource_id="ds1", table_name="sales"),
        fields=[
            Field(name="region", display_name="Sales Region"),
            Field(name="revenue", display_name="Revenue (¥)", field_type=FieldType.MEASURE,
                  aggregation_type=AggregationType.SUM, sample_values=[1, 2, 3, 4, 5, 6]),
            placeholder_field(),
        ],
    )


def test_lookup_by_column_name():
    assert FieldLookup(_dataset()).resolve("region") == "region"


def test_lookup_by_display_name_with_special_characters():
    assert FieldLookup(_dataset()).resolve("Revenue (¥)") == "revenue"


def test_lookup_is_case_insensitive():
    assert FieldLookup(_dataset()).resolve("sales region") == "region"


def test_resolve_all_reports_unknown_labels():
    names, unknown = FieldLookup(_dataset()).resolve_all(["Sales Region", "Profit"])
    assert names == ["region"]
    assert unknown == ["Profit"]


def test_schema_hides_hidden_fields_and_trims_samples():
    schema = dataset_schema(_dataset())
    assert [f["name"] for f in schema["fields"]] == ["region", "revenue"]
    revenue = schema["fields"][1]
    assert revenue["aggregation_type"] == "SUM"
    assert revenue["sample_values"] == [1, 2, 3, 4, 5]


def test_schema_counts_visible_fields_by_role():
    schema = dataset_schema(_dataset())
    assert schema["dimension_count"] == 1
    assert schema["measure_count"] == 1


def test_outcome_success():
    ok = IntentOutcome(intent={}, result=QueryResult(data=[], columns=[], total=0, execution_time=1))
    failed = IntentOutcome(intent={}, errors=["Unknown fields: Profit"])
    assert ok.success is True
    assert failed.success is False
