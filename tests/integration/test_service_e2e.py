"""
End-to-end tests — DatasetService over the SQL repository and a SQLite warehouse.

Covers the full path: create -> background field analysis -> cached query,
with real SQL executed through SQLAlchemy.
"""
from __future__ import annotations

import pytest
from sqlalchemy import create_engine, text

from smartbi.cache.store import CacheStore
from smartbi.core.config import Settings
from smartbi.datasets.models import (
    AggregationType,
    CreateDatasetRequest,
    DatasetStatus,
    DatasetType,
    Datasource,
    DatasourceConfig,
    DatasourceType,
    FieldType,
    QueryFilter,
    QueryRequest,
    SqlConfig,
)
from smartbi.datasets.service import DatasetService
from smartbi.db.executor import SqlExecutor
from smartbi.db.repository import SqlRepository


@pytest.fixture
def warehouse(tmp_path) -> str:
    path = tmp_path / "warehouse.db"
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE orders (id INTEGER, region TEXT, total_amount REAL, coupon TEXT)"))
        conn.execute(
            text("INSERT INTO orders VALUES (:id, :region, :total_amount, :coupon)"),
            [
                {"id": 1, "region": "APAC", "total_amount": 10.5, "coupon": None},
                {"id": 2, "region": "APAC", "total_amount": 22.0, "coupon": None},
                {"id": 3, "region": "EMEA", "total_amount": 7.25, "coupon": "WELCOME"},
                {"id": 4, "region": "AMER", "total_amount": 13.0, "coupon": None},
                {"id": 5, "region": "EMEA", "total_amount": 40.0, "coupon": None},
            ],
        )
    engine.dispose()
    return str(path)


@pytest.fixture
def service(tmp_path, warehouse):
    metadata = create_engine(f"sqlite:///{tmp_path / 'metadata.db'}")
    repo = SqlRepository(metadata)
    repo.ensure_tables()
    repo.create_datasource(Datasource(
        id="wh", user_id="alice", name="warehouse",
        type=DatasourceType.SQLITE, config=DatasourceConfig(path=warehouse),
    ))
    executor = SqlExecutor()
    svc = DatasetService(repo, executor, CacheStore(default_ttl=60), Settings(analysis_workers=2))
    yield svc
    svc.shutdown()
    executor.close()
    metadata.dispose()


def _create_and_wait(service, request):
    ds = service.create("alice", request)
    pending = service.pending_analysis(ds.id)
    if pending is not None:
        pending.result(timeout=10)
    return service.get("alice", ds.id)


def test_sql_dataset_end_to_end(service):
    ds = _create_and_wait(service, CreateDatasetRequest(
        name="orders",
        display_name="Orders",
        type=DatasetType.SQL,
        sql_config=SqlConfig(datasource_id="wh", sql="SELECT region, total_amount, coupon FROM orders"),
    ))

    assert ds.status == DatasetStatus.ACTIVE
    amount = ds.field("total_amount")
    assert amount.field_type == FieldType.MEASURE
    assert amount.aggregation_type == AggregationType.SUM
    coupon = ds.field("coupon")
    assert coupon.is_nullable is True
    # coupon is 80% missing -> one high-severity issue capped at 30 points
    assert ds.quality_score == 70

    result = service.query("alice", ds.id, QueryRequest(
        measures=["total_amount"],
        dimensions=["region"],
        filters=[QueryFilter(field="region", operator="in", value=["APAC", "EMEA"])],
        limit=10,
    ))
    assert result.errors == []
    assert result.data == [
        {"region": "EMEA", "total_amount": 47.25},
        {"region": "APAC", "total_amount": 32.5},
    ]


def test_broken_source_sql_marks_error(service):
    ds = _create_and_wait(service, CreateDatasetRequest(
        name="broken",
        display_name="Broken",
        type=DatasetType.SQL,
        sql_config=SqlConfig(datasource_id="wh", sql="SELECT * FROM missing_table"),
    ))
    assert ds.status == DatasetStatus.ERROR
    assert "missing_table" in ds.last_error

    preview = service.preview("alice", ds.id)
    assert preview.rows == []
    assert preview.errors
