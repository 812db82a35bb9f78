"""
Shared fixtures -- in-memory repository, scripted SQL executor, inline analysis.
"""
from __future__ import annotations

import pytest

from smartbi.cache.store import CacheStore
from smartbi.core.config import Settings
from smartbi.datasets.models import Datasource, DatasourceType
from smartbi.datasets.service import DatasetService
from smartbi.db.repository import InMemoryRepository
from tests.unit.fakes import SALES_ROWS, FakeExecutor, InlineExecutor


@pytest.fixture
def repo() -> InMemoryRepository:
    r = InMemoryRepository()
    r.create_datasource(Datasource(id="ds1", user_id="alice", name="warehouse", type=DatasourceType.SQLITE))
    r.create_datasource(Datasource(id="ds2", user_id="bob", name="bob's db", type=DatasourceType.SQLITE))
    return r


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor(SALES_ROWS)


@pytest.fixture
def cache() -> CacheStore:
    return CacheStore(default_ttl=60)


@pytest.fixture
def service(repo, executor, cache):
    settings = Settings(inference_sample_rows=1000, max_query_rows=10_000, query_timeout_ms=10_000)
    svc = DatasetService(repo, executor, cache, settings, background=InlineExecutor())
    yield svc
    svc.shutdown()
