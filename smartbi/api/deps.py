"""
Shared FastAPI dependencies -- process-wide service objects and caller identity.
"""
from __future__ import annotations

from functools import lru_cache

from fastapi import Header

from smartbi.cache.store import CacheStore
from smartbi.core.config import get_settings
from smartbi.datasets.service import DatasetService
from smartbi.db.connection import get_engine
from smartbi.db.executor import SqlExecutor
from smartbi.db.repository import SqlRepository


@lru_cache
def get_cache() -> CacheStore:
    settings = get_settings()
    return CacheStore(
        default_ttl=settings.preview_cache_ttl,
        max_entries=settings.cache_max_entries,
    )


@lru_cache
def get_executor() -> SqlExecutor:
    return SqlExecutor()


@lru_cache
def get_service() -> DatasetService:
    repository = SqlRepository(get_engine())
    repository.ensure_tables()
    return DatasetService(repository, get_executor(), get_cache(), get_settings())


def current_user(x_user_id: str = Header(..., min_length=1, description="Caller identity")) -> str:
    """Caller identity from the ``X-User-Id`` header."""
    return x_user_id
