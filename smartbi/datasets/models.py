"""
Dataset data model -- datasets, fields, quality issues, datasources and the
request / result shapes exchanged with callers.
"""
from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field as PydanticField, model_validator

_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def _new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Closed variants ──────────────────────────────────────

class DataType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"


class FieldType(str, Enum):
    DIMENSION = "dimension"
    MEASURE = "measure"
    CALCULATED = "calculated"


class AggregationType(str, Enum):
    SUM = "SUM"
    AVG = "AVG"
    COUNT = "COUNT"
    MAX = "MAX"
    MIN = "MIN"


class DimensionLevel(str, Enum):
    CATEGORICAL = "categorical"
    ORDINAL = "ordinal"
    TEMPORAL = "temporal"


class DatasetType(str, Enum):
    TABLE = "table"
    SQL = "sql"
    VIEW = "view"


class DatasetStatus(str, Enum):
    PROCESSING = "processing"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class Role(str, Enum):
    VIEWER = "viewer"
    EDITOR = "editor"
    OWNER = "owner"


class IssueType(str, Enum):
    MISSING_VALUES = "missing_values"
    DUPLICATE_RECORDS = "duplicate_records"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DatasourceType(str, Enum):
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    SQLITE = "sqlite"


# ── Fields ───────────────────────────────────────────────

class FieldFormat(BaseModel):
    type: str = "number"  # number | percentage | currency | date | custom
    pattern: str | None = None
    decimal_places: int | None = None
    thousands_separator: bool | None = None


class Field(BaseModel):
    """One column (or calculated expression) of a dataset."""

    name: str
    display_name: str
    type: DataType = DataType.STRING
    field_type: FieldType = FieldType.DIMENSION
    aggregation_type: AggregationType | None = None
    dimension_level: DimensionLevel | None = None
    is_nullable: bool = True
    is_primary_key: bool = False
    sample_values: list[Any] = PydanticField(default_factory=list)
    expression: str | None = None
    format: FieldFormat | None = None
    description: str | None = None
    hidden: bool = False

    @model_validator(mode="after")
    def _role_specific_settings(self) -> "Field":
        if self.aggregation_type is not None and self.field_type != FieldType.MEASURE:
            raise ValueError(f"Field '{self.name}': aggregation_type is only valid for measures.")
        if self.dimension_level is not None and self.field_type != FieldType.DIMENSION:
            raise ValueError(f"Field '{self.name}': dimension_level is only valid for dimensions.")
        return self


PLACEHOLDER_FIELD_NAME = "__pending__"


def placeholder_field() -> Field:
    """Stand-in field for a dataset whose schema has not been analyzed yet."""
    return Field(
        name=PLACEHOLDER_FIELD_NAME,
        display_name="Pending analysis",
        dimension_level=DimensionLevel.CATEGORICAL,
        hidden=True,
    )


class QualityIssue(BaseModel):
    type: IssueType
    field: str
    count: int
    percentage: float
    severity: Severity
    description: str


# ── Source configuration ─────────────────────────────────

class ViewFilter(BaseModel):
    field: str
    operator: str
    value: Any = None


class ComputedField(BaseModel):
    name: str
    display_name: str
    expression: str
    type: DataType = DataType.NUMBER
    description: str | None = None


class TableConfig(BaseModel):
    datasource_id: str
    table_name: str
    schema_name: str | None = PydanticField(None, alias="schema")

    model_config = {"populate_by_name": True}


class SqlConfig(BaseModel):
    datasource_id: str
    sql: str = PydanticField(..., min_length=1)


class ViewConfig(BaseModel):
    base_dataset_id: str
    filters: list[ViewFilter] = PydanticField(default_factory=list)
    computed_fields: list[ComputedField] = PydanticField(default_factory=list)


_CONFIG_ATTR = {
    DatasetType.TABLE: "table_config",
    DatasetType.SQL: "sql_config",
    DatasetType.VIEW: "view_config",
}


def _check_source_config(dataset_type: DatasetType, values: dict[str, Any]) -> None:
    populated = [attr for attr in _CONFIG_ATTR.values() if values.get(attr) is not None]
    expected = _CONFIG_ATTR[dataset_type]
    if populated != [expected]:
        raise ValueError(
            f"Dataset of type '{dataset_type.value}' requires exactly '{expected}'; "
            f"got {populated or 'none'}."
        )


# ── Dataset ──────────────────────────────────────────────

class Permission(BaseModel):
    user_id: str
    role: Role


class DatasetMetadata(BaseModel):
    record_count: int = 0
    column_count: int = 0
    last_refreshed: datetime | None = None
    data_size: int | None = None


class Dataset(BaseModel):
    """A dataset definition as persisted in the metadata store."""

    id: str = PydanticField(default_factory=_new_id)
    user_id: str
    name: str = PydanticField(..., max_length=100)
    display_name: str = PydanticField(..., min_length=1, max_length=200)
    description: str | None = PydanticField(None, max_length=1000)
    type: DatasetType
    table_config: TableConfig | None = None
    sql_config: SqlConfig | None = None
    view_config: ViewConfig | None = None
    fields: list[Field] = PydanticField(default_factory=list)
    metadata: DatasetMetadata = PydanticField(default_factory=DatasetMetadata)
    category: str = "default"
    tags: list[str] = PydanticField(default_factory=list, max_length=20)
    permissions: list[Permission] = PydanticField(default_factory=list)
    quality_score: int | None = PydanticField(None, ge=0, le=100)
    quality_issues: list[QualityIssue] = PydanticField(default_factory=list)
    status: DatasetStatus = DatasetStatus.PROCESSING
    last_error: str | None = None
    version: int = 1
    created_at: datetime = PydanticField(default_factory=utcnow)
    updated_at: datetime = PydanticField(default_factory=utcnow)

    @model_validator(mode="after")
    def _consistent(self) -> "Dataset":
        if not _NAME_RE.match(self.name):
            raise ValueError(
                "Dataset name must start with a letter and contain only letters, digits and underscores."
            )
        _check_source_config(self.type, {a: getattr(self, a) for a in _CONFIG_ATTR.values()})
        return self

    @property
    def datasource_id(self) -> str | None:
        if self.table_config is not None:
            return self.table_config.datasource_id
        if self.sql_config is not None:
            return self.sql_config.datasource_id
        return None

    def field(self, name: str) -> Field | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    @property
    def dimension_count(self) -> int:
        return sum(1 for f in self.fields if f.field_type == FieldType.DIMENSION and not f.hidden)

    @property
    def measure_count(self) -> int:
        return sum(1 for f in self.fields if f.field_type == FieldType.MEASURE and not f.hidden)


# ── Datasources ──────────────────────────────────────────

class DatasourceConfig(BaseModel):
    host: str | None = None
    port: int | None = PydanticField(None, ge=1, le=65535)
    database: str | None = None
    username: str | None = None
    password: str | None = None
    path: str | None = None  # sqlite file; empty means in-memory


class Datasource(BaseModel):
    id: str = PydanticField(default_factory=_new_id)
    user_id: str
    name: str
    type: DatasourceType
    config: DatasourceConfig = PydanticField(default_factory=DatasourceConfig)


# ── Requests ─────────────────────────────────────────────

class CreateDatasetRequest(BaseModel):
    name: str
    display_name: str
    description: str | None = None
    type: DatasetType
    table_config: TableConfig | None = None
    sql_config: SqlConfig | None = None
    view_config: ViewConfig | None = None
    fields: list[Field] = PydanticField(default_factory=list)
    category: str = "default"
    tags: list[str] = PydanticField(default_factory=list)


class UpdateDatasetRequest(BaseModel):
    """Partial update; only explicitly set attributes are written."""

    name: str | None = None
    display_name: str | None = None
    description: str | None = None
    type: DatasetType | None = None
    table_config: TableConfig | None = None
    sql_config: SqlConfig | None = None
    view_config: ViewConfig | None = None
    fields: list[Field] | None = None
    category: str | None = None
    tags: list[str] | None = None
    permissions: list[Permission] | None = None
    status: DatasetStatus | None = None


class QueryFilter(BaseModel):
    field: str
    operator: str
    value: Any = None


class QueryRequest(BaseModel):
    """Structured query over one dataset."""

    measures: list[str] = PydanticField(default_factory=list)
    dimensions: list[str] = PydanticField(default_factory=list)
    filters: list[QueryFilter] = PydanticField(default_factory=list)
    limit: int | None = PydanticField(None, ge=1)  # None -> configured default


class SearchParams(BaseModel):
    keyword: str | None = None
    category: str | None = None
    tags: list[str] = PydanticField(default_factory=list)
    type: DatasetType | None = None
    status: DatasetStatus = DatasetStatus.ACTIVE
    sort_by: str = "updated_at"  # name | created_at | updated_at | quality_score
    sort_order: Literal["asc", "desc"] = "desc"
    page: int = PydanticField(1, ge=1)
    limit: int = PydanticField(20, ge=1, le=200)


# ── Results ──────────────────────────────────────────────

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class SearchFacets(BaseModel):
    categories: list[str] = PydanticField(default_factory=list)
    tags: list[str] = PydanticField(default_factory=list)
    types: list[str] = PydanticField(default_factory=list)


class SearchResult(BaseModel):
    datasets: list[Dataset]
    pagination: Pagination
    filters: SearchFacets


class PreviewResult(BaseModel):
    columns: list[Field]
    rows: list[dict[str, Any]]
    total_count: int
    execution_time: int
    errors: list[str] = PydanticField(default_factory=list)


class QueryResult(BaseModel):
    data: list[dict[str, Any]]
    columns: list[dict[str, Any]]
    total: int
    execution_time: int
    errors: list[str] = PydanticField(default_factory=list)
    sql: str = ""
