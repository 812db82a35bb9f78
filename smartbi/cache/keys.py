"""
Cache key and tag builders.

Every entry belonging to a dataset carries the ``dataset:<id>`` tag so one
edit can drop its metadata, previews and query results together.
"""
from __future__ import annotations

PREVIEW_TAG = "preview"
QUERY_TAG = "query"


def dataset_tag(dataset_id: str) -> str:
    return f"dataset:{dataset_id}"


def user_tag(user_id: str) -> str:
    return f"user:{user_id}"


def dataset_key(dataset_id: str) -> str:
    return f"dataset:{dataset_id}"


def preview_key(dataset_id: str, limit: int) -> str:
    return f"dataset:preview:{dataset_id}:{limit}"


def query_key(dataset_id: str, query_hash: str) -> str:
    return f"dataset:query:{dataset_id}:{query_hash}"
