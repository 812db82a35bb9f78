"""
GET /cache/stats, POST /cache/cleanup -- cache observability.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from smartbi.api.deps import get_cache
from smartbi.cache.store import CacheStore

router = APIRouter()


class CacheStatsResponse(BaseModel):
    size: int
    max_entries: int
    default_ttl_seconds: float
    hits: int
    misses: int
    evictions: int
    coalesced: int
    inflight: int
    hit_rate: float


@router.get("/stats", response_model=CacheStatsResponse)
def cache_stats(store: CacheStore = Depends(get_cache)):
    """Return cache statistics."""
    return CacheStatsResponse(**store.stats())


@router.post("/cleanup")
def cache_cleanup(store: CacheStore = Depends(get_cache)):
    """Drop expired entries now instead of waiting for the sweeper."""
    return {"removed": store.cleanup()}
