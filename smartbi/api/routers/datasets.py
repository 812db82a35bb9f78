"""
/datasets -- dataset CRUD, search, preview, structured query and refresh.

Every route identifies the caller through the ``X-User-Id`` header.
"""
from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Response

from smartbi.api.deps import current_user, get_service
from smartbi.datasets.models import (
    CreateDatasetRequest,
    Dataset,
    DatasetStatus,
    DatasetType,
    PreviewResult,
    QueryRequest,
    QueryResult,
    SearchParams,
    SearchResult,
    UpdateDatasetRequest,
)
from smartbi.datasets.service import DatasetService
from smartbi.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


@router.post("", response_model=Dataset, status_code=201)
def create_dataset(
    req: CreateDatasetRequest,
    user_id: str = Depends(current_user),
    service: DatasetService = Depends(get_service),
):
    """Create a dataset; field analysis continues in the background."""
    return service.create(user_id, req)


@router.get("", response_model=SearchResult)
def search_datasets(
    keyword: str | None = None,
    category: str | None = None,
    tags: list[str] = Query(default=[]),
    type: DatasetType | None = None,
    status: DatasetStatus = DatasetStatus.ACTIVE,
    sort_by: str = "updated_at",
    sort_order: Literal["asc", "desc"] = "desc",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    user_id: str = Depends(current_user),
    service: DatasetService = Depends(get_service),
):
    params = SearchParams(
        keyword=keyword,
        category=category,
        tags=tags,
        type=type,
        status=status,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return service.search(user_id, params)


@router.get("/{dataset_id}", response_model=Dataset)
def get_dataset(
    dataset_id: str,
    user_id: str = Depends(current_user),
    service: DatasetService = Depends(get_service),
):
    return service.get(user_id, dataset_id)


@router.patch("/{dataset_id}", response_model=Dataset)
def update_dataset(
    dataset_id: str,
    req: UpdateDatasetRequest,
    user_id: str = Depends(current_user),
    service: DatasetService = Depends(get_service),
):
    """Apply a partial update. Fields are written as given, without re-analysis."""
    return service.update(user_id, dataset_id, req)


@router.delete("/{dataset_id}", status_code=204)
def delete_dataset(
    dataset_id: str,
    user_id: str = Depends(current_user),
    service: DatasetService = Depends(get_service),
):
    service.delete(user_id, dataset_id)
    return Response(status_code=204)


@router.get("/{dataset_id}/preview", response_model=PreviewResult)
def preview_dataset(
    dataset_id: str,
    limit: int | None = Query(None, ge=1),
    timeout_ms: int | None = Query(None, ge=1),
    user_id: str = Depends(current_user),
    service: DatasetService = Depends(get_service),
):
    """First rows of the dataset. Execution failures are reported in ``errors``."""
    return service.preview(user_id, dataset_id, limit=limit, timeout_ms=timeout_ms)


@router.post("/{dataset_id}/query", response_model=QueryResult)
def query_dataset(
    dataset_id: str,
    req: QueryRequest,
    timeout_ms: int | None = Query(None, ge=1),
    user_id: str = Depends(current_user),
    service: DatasetService = Depends(get_service),
):
    """Run a structured query: measures, dimensions, filters, limit."""
    return service.query(user_id, dataset_id, req, timeout_ms=timeout_ms)


@router.post("/{dataset_id}/refresh", status_code=202)
def refresh_dataset(
    dataset_id: str,
    user_id: str = Depends(current_user),
    service: DatasetService = Depends(get_service),
):
    """Schedule field analysis again for an existing dataset."""
    service.refresh(user_id, dataset_id)
    logger.info("Refresh scheduled dataset=%s by=%s", dataset_id, user_id)
    return {"id": dataset_id, "scheduled": True}
