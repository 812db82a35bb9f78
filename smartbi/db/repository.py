"""
Metadata repository -- persistence for dataset and datasource definitions.

``MetadataRepository`` is the interface the dataset service depends on.  Two
implementations ship:

  - ``InMemoryRepository``  process-local dict store (tests, local runs)
  - ``SqlRepository``       JSON documents in two SQLAlchemy tables, created
                            on first use via ``ensure_tables()``

Both treat datasets as documents: scalar columns exist only to narrow a
lookup, the document column is the source of truth.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from sqlalchemy import text
from sqlalchemy.engine import Engine

from smartbi.core.errors import ValidationError
from smartbi.core.logging import get_logger
from smartbi.datasets.models import Dataset, DatasetStatus, DatasetType, Datasource, utcnow

logger = get_logger(__name__)

SORTABLE_FIELDS = ("name", "display_name", "created_at", "updated_at", "quality_score")
DISTINCT_FIELDS = ("category", "tags", "type")


# ── Query object ────────────────────────────────────────

@dataclass
class DatasetQuery:
    """Typed filter over dataset documents; unset attributes do not constrain."""
    accessible_to: str | None = None  # owner or listed in permissions
    owner: str | None = None
    name: str | None = None
    keyword: str | None = None
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    type: DatasetType | None = None
    status: DatasetStatus | None = None

    def matches(self, ds: Dataset) -> bool:
        if self.accessible_to is not None and not (
            ds.user_id == self.accessible_to
            or any(p.user_id == self.accessible_to for p in ds.permissions)
        ):
            return False
        if self.owner is not None and ds.user_id != self.owner:
            return False
        if self.name is not None and ds.name != self.name:
            return False
        if self.category is not None and ds.category != self.category:
            return False
        if self.type is not None and ds.type != self.type:
            return False
        if self.status is not None and ds.status != self.status:
            return False
        if self.tags and not set(self.tags) & set(ds.tags):
            return False
        if self.keyword:
            needle = self.keyword.lower()
            haystack = " ".join(filter(None, (ds.name, ds.display_name, ds.description))).lower()
            if needle not in haystack:
                return False
        return True


def _sort_key(field_name: str):
    if field_name not in SORTABLE_FIELDS:
        raise ValidationError(f"Cannot sort by '{field_name}'. Allowed: {', '.join(SORTABLE_FIELDS)}")

    def key(ds: Dataset) -> tuple:
        value = getattr(ds, field_name)
        # None sorts first ascending, last descending
        return (value is not None, value if value is not None else 0)

    return key


def _page(docs: list[Dataset], sort: tuple[str, str], skip: int, limit: int | None) -> list[Dataset]:
    field_name, order = sort
    docs = sorted(docs, key=_sort_key(field_name), reverse=(order == "desc"))
    end = None if limit is None else skip + limit
    return docs[skip:end]


def _distinct(docs: Iterable[Dataset], field_name: str) -> list[str]:
    if field_name not in DISTINCT_FIELDS:
        raise ValidationError(f"Cannot facet on '{field_name}'.")
    values: set[str] = set()
    for ds in docs:
        raw = getattr(ds, field_name)
        if isinstance(raw, list):
            values.update(raw)
        elif raw is not None:
            values.add(raw.value if isinstance(raw, DatasetType) else raw)
    return sorted(values)


def apply_patch(current: Dataset, patch: dict[str, Any]) -> Dataset:
    """Return *current* with *patch* applied; raises pydantic's error if invalid."""
    doc = current.model_dump()
    doc.update(patch)
    doc["updated_at"] = utcnow()
    return Dataset.model_validate(doc)


# ── Interface ───────────────────────────────────────────

class MetadataRepository(Protocol):
    def find_by_id(self, dataset_id: str) -> Dataset | None: ...

    def find(
        self,
        query: DatasetQuery,
        sort: tuple[str, str] = ("updated_at", "desc"),
        skip: int = 0,
        limit: int | None = None,
    ) -> list[Dataset]: ...

    def count_documents(self, query: DatasetQuery) -> int: ...

    def distinct(self, field_name: str, query: DatasetQuery) -> list[str]: ...

    def find_one_and_update(self, dataset_id: str, patch: dict[str, Any]) -> Dataset | None: ...

    def delete_by_id(self, dataset_id: str) -> bool: ...

    def create(self, dataset: Dataset) -> Dataset: ...

    def find_datasource(self, datasource_id: str) -> Datasource | None: ...

    def create_datasource(self, datasource: Datasource) -> Datasource: ...


# ── In-memory implementation ────────────────────────────

class InMemoryRepository:
    """Thread-safe dict-backed repository."""

    def __init__(self) -> None:
        self._datasets: dict[str, Dataset] = {}
        self._datasources: dict[str, Datasource] = {}
        self._lock = threading.Lock()

    def find_by_id(self, dataset_id: str) -> Dataset | None:
        with self._lock:
            return self._datasets.get(dataset_id)

    def find(self, query, sort=("updated_at", "desc"), skip=0, limit=None):
        with self._lock:
            docs = [d for d in self._datasets.values() if query.matches(d)]
        return _page(docs, sort, skip, limit)

    def count_documents(self, query: DatasetQuery) -> int:
        with self._lock:
            return sum(1 for d in self._datasets.values() if query.matches(d))

    def distinct(self, field_name: str, query: DatasetQuery) -> list[str]:
        with self._lock:
            docs = [d for d in self._datasets.values() if query.matches(d)]
        return _distinct(docs, field_name)

    def find_one_and_update(self, dataset_id: str, patch: dict[str, Any]) -> Dataset | None:
        with self._lock:
            current = self._datasets.get(dataset_id)
            if current is None:
                return None
            updated = apply_patch(current, patch)
            self._datasets[dataset_id] = updated
            return updated

    def delete_by_id(self, dataset_id: str) -> bool:
        with self._lock:
            return self._datasets.pop(dataset_id, None) is not None

    def create(self, dataset: Dataset) -> Dataset:
        with self._lock:
            if dataset.id in self._datasets:
                raise ValidationError(f"Dataset '{dataset.id}' already exists.")
            self._datasets[dataset.id] = dataset
        return dataset

    def find_datasource(self, datasource_id: str) -> Datasource | None:
        with self._lock:
            return self._datasources.get(datasource_id)

    def create_datasource(self, datasource: Datasource) -> Datasource:
        with self._lock:
            self._datasources[datasource.id] = datasource
        return datasource


# ── SQLAlchemy implementation ───────────────────────────

_DATASETS = "smartbi_datasets"
_DATASOURCES = "smartbi_datasources"

_CREATE_SQL = (
    f"""
CREATE TABLE IF NOT EXISTS {_DATASETS} (
    id          VARCHAR(64) PRIMARY KEY,
    user_id     VARCHAR(64) NOT NULL,
    name        VARCHAR(100) NOT NULL,
    category    VARCHAR(100),
    type        VARCHAR(10) NOT NULL,
    status      VARCHAR(20) NOT NULL,
    updated_at  VARCHAR(40) NOT NULL,
    document    TEXT NOT NULL          -- Dataset JSON
)
""",
    f"""
CREATE TABLE IF NOT EXISTS {_DATASOURCES} (
    id          VARCHAR(64) PRIMARY KEY,
    user_id     VARCHAR(64) NOT NULL,
    document    TEXT NOT NULL          -- Datasource JSON
)
""",
)


def _row_params(ds: Dataset) -> dict[str, Any]:
    return {
        "id": ds.id,
        "user_id": ds.user_id,
        "name": ds.name,
        "category": ds.category,
        "type": ds.type.value,
        "status": ds.status.value,
        "updated_at": ds.updated_at.isoformat(),
        "document": ds.model_dump_json(),
    }


class SqlRepository:
    """Document-style repository over two SQL tables."""

    def __init__(self, engine: Engine):
        self._engine = engine

    def ensure_tables(self) -> None:
        """Create the repository tables if they don't exist."""
        with self._engine.begin() as conn:
            for stmt in _CREATE_SQL:
                conn.execute(text(stmt))
        logger.info("Metadata tables '%s', '%s' ensured", _DATASETS, _DATASOURCES)

    # ── datasets ────────────────────────────────────────

    def _candidates(self, query: DatasetQuery) -> list[Dataset]:
        clauses: list[str] = []
        params: dict[str, Any] = {}
        for column, value in (
            ("user_id", query.owner),
            ("name", query.name),
            ("category", query.category),
            ("type", query.type.value if query.type else None),
            ("status", query.status.value if query.status else None),
        ):
            if value is not None:
                clauses.append(f"{column} = :{column}")
                params[column] = value
        sql = f"SELECT document FROM {_DATASETS}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        with self._engine.connect() as conn:
            rows = conn.execute(text(sql), params).fetchall()
        docs = [Dataset.model_validate_json(r[0]) for r in rows]
        return [d for d in docs if query.matches(d)]

    def find_by_id(self, dataset_id: str) -> Dataset | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT document FROM {_DATASETS} WHERE id = :id"), {"id": dataset_id}
            ).fetchone()
        return Dataset.model_validate_json(row[0]) if row else None

    def find(self, query, sort=("updated_at", "desc"), skip=0, limit=None):
        return _page(self._candidates(query), sort, skip, limit)

    def count_documents(self, query: DatasetQuery) -> int:
        return len(self._candidates(query))

    def distinct(self, field_name: str, query: DatasetQuery) -> list[str]:
        return _distinct(self._candidates(query), field_name)

    def find_one_and_update(self, dataset_id: str, patch: dict[str, Any]) -> Dataset | None:
        with self._engine.begin() as conn:
            row = conn.execute(
                text(f"SELECT document FROM {_DATASETS} WHERE id = :id"), {"id": dataset_id}
            ).fetchone()
            if row is None:
                return None
            updated = apply_patch(Dataset.model_validate_json(row[0]), patch)
            conn.execute(
                text(f"""
                    UPDATE {_DATASETS}
                    SET user_id = :user_id, name = :name, category = :category,
                        type = :type, status = :status, updated_at = :updated_at,
                        document = :document
                    WHERE id = :id
                """),
                _row_params(updated),
            )
        return updated

    def delete_by_id(self, dataset_id: str) -> bool:
        with self._engine.begin() as conn:
            result = conn.execute(
                text(f"DELETE FROM {_DATASETS} WHERE id = :id"), {"id": dataset_id}
            )
        return result.rowcount > 0

    def create(self, dataset: Dataset) -> Dataset:
        with self._engine.begin() as conn:
            conn.execute(
                text(f"""
                    INSERT INTO {_DATASETS}
                        (id, user_id, name, category, type, status, updated_at, document)
                    VALUES
                        (:id, :user_id, :name, :category, :type, :status, :updated_at, :document)
                """),
                _row_params(dataset),
            )
        return dataset

    # ── datasources ─────────────────────────────────────

    def find_datasource(self, datasource_id: str) -> Datasource | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT document FROM {_DATASOURCES} WHERE id = :id"), {"id": datasource_id}
            ).fetchone()
        return Datasource.model_validate_json(row[0]) if row else None

    def create_datasource(self, datasource: Datasource) -> Datasource:
        with self._engine.begin() as conn:
            conn.execute(
                text(f"""
                    INSERT INTO {_DATASOURCES} (id, user_id, document)
                    VALUES (:id, :user_id, :document)
                """),
                {"id": datasource.id, "user_id": datasource.user_id, "document": datasource.model_dump_json()},
            )
        return datasource
