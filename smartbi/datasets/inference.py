"""
Schema inference -- derives a typed ``Field`` for each sampled column.

Each inferred property is decided by an ordered rule chain: a list of
``(result, predicate)`` pairs evaluated top to bottom, first match wins.
Every predicate is a pure function of the column name and its sampled values,
so each rule can be tested on its own.

Re-inference never clobbers user customisation: ``merge_fields`` applies the
per-property precedence table below.

    property            winner
    ------------------  ---------------------------------
    display_name        existing, else inferred
    description         existing, else inferred
    field_type          existing, else inferred
    aggregation_type    existing, else inferred (measures only)
    dimension_level     existing, else inferred (dimensions only)
    expression          existing, else inferred
    format              existing, else inferred
    hidden              existing
    is_primary_key      existing
    type                inferred
    is_nullable         inferred
    sample_values       inferred
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Sequence

from smartbi.datasets.models import (
    AggregationType,
    DataType,
    DimensionLevel,
    Field,
    FieldType,
    PLACEHOLDER_FIELD_NAME,
)
from smartbi.core.logging import get_logger

logger = get_logger(__name__)

TYPE_SNIFF_LIMIT = 100
SAMPLE_VALUE_LIMIT = 10
MAJORITY_RATIO = 0.8
MEASURE_CARDINALITY_RATIO = 0.5


# ── Keyword lexicons ─────────────────────────────────────

MEASURE_KEYWORDS = (
    "count", "sum", "total", "amount", "price", "cost", "revenue", "profit",
    "qty", "quantity", "rate", "percentage",
    "数量", "金额", "总额", "费用", "价格", "比率",
)
COUNT_KEYWORDS = ("count", "num", "数量")
SUM_KEYWORDS = ("total", "sum", "amount", "总")
AVG_KEYWORDS = ("avg", "average", "rate", "平均")
TEMPORAL_KEYWORDS = ("date", "time", "year", "month", "day", "年", "月", "日")
ORDINAL_KEYWORDS = ("level", "grade", "rating", "priority", "rank", "等级", "级别", "评分")


def _name_has(name: str, keywords: Sequence[str]) -> bool:
    lowered = name.lower()
    return any(k in lowered for k in keywords)


# ── Value predicates ─────────────────────────────────────

_BOOLEAN_STRINGS = {"true", "false", "0", "1"}

_DATE_FORMATS = (
    "%Y/%m/%d",
    "%Y/%m/%d %H:%M:%S",
    "%m/%d/%Y",
    "%d.%m.%Y",
    "%Y%m%d%H%M%S",
)


def _is_boolean_like(value: Any) -> bool:
    if isinstance(value, bool):
        return True
    if isinstance(value, (int, float)):
        return value in (0, 1)
    if isinstance(value, str):
        return value.strip().lower() in _BOOLEAN_STRINGS
    return False


def _is_finite_number(value: Any) -> bool:
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return False
        try:
            return math.isfinite(float(text))
        except ValueError:
            return False
    return False


def _is_date_like(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    if not isinstance(value, str) or len(value) <= 8:
        return False
    text = value.strip()
    try:
        datetime.fromisoformat(text.replace("Z", "+00:00"))
        return True
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            datetime.strptime(text, fmt)
            return True
        except ValueError:
            continue
    return False


def _ratio(values: Sequence[Any], predicate: Callable[[Any], bool]) -> float:
    if not values:
        return 0.0
    return sum(1 for v in values if predicate(v)) / len(values)


def _distinct_ratio(values: Sequence[Any]) -> float:
    if not values:
        return 0.0
    return len({hashable_value(v) for v in values}) / len(values)


def hashable_value(value: Any) -> Any:
    """*value* itself when hashable, else its repr (lists, dicts from JSON columns)."""
    try:
        hash(value)
    except TypeError:
        return repr(value)
    return value


# ── Rule chains ──────────────────────────────────────────

@dataclass(frozen=True)
class ColumnSample:
    """Column name plus its non-null sampled values."""
    name: str
    values: list[Any]
    data_type: DataType = DataType.STRING

    @property
    def sniff(self) -> list[Any]:
        return self.values[:TYPE_SNIFF_LIMIT]


Rule = Callable[[ColumnSample], bool]

DATA_TYPE_RULES: list[tuple[DataType, Rule]] = [
    (DataType.BOOLEAN, lambda c: all(_is_boolean_like(v) for v in c.sniff)),
    (DataType.NUMBER, lambda c: _ratio(c.sniff, _is_finite_number) > MAJORITY_RATIO),
    (DataType.DATE, lambda c: _ratio(c.sniff, _is_date_like) > MAJORITY_RATIO),
]

FIELD_TYPE_RULES: list[tuple[FieldType, Rule]] = [
    (FieldType.MEASURE, lambda c: _name_has(c.name, MEASURE_KEYWORDS)),
    (
        FieldType.MEASURE,
        lambda c: c.data_type == DataType.NUMBER
        and _distinct_ratio(c.values) > MEASURE_CARDINALITY_RATIO,
    ),
]

AGGREGATION_RULES: list[tuple[AggregationType, Rule]] = [
    (AggregationType.COUNT, lambda c: _name_has(c.name, COUNT_KEYWORDS)),
    (AggregationType.SUM, lambda c: _name_has(c.name, SUM_KEYWORDS)),
    (AggregationType.AVG, lambda c: _name_has(c.name, AVG_KEYWORDS)),
]

DIMENSION_LEVEL_RULES: list[tuple[DimensionLevel, Rule]] = [
    (DimensionLevel.TEMPORAL, lambda c: c.data_type == DataType.DATE),
    (DimensionLevel.TEMPORAL, lambda c: _name_has(c.name, TEMPORAL_KEYWORDS)),
    (DimensionLevel.ORDINAL, lambda c: _name_has(c.name, ORDINAL_KEYWORDS)),
]


def _first_match(rules: list[tuple[Any, Rule]], column: ColumnSample, default: Any) -> Any:
    for result, predicate in rules:
        if predicate(column):
            return result
    return default


def infer_data_type(values: Sequence[Any]) -> DataType:
    if not values:
        return DataType.STRING
    return _first_match(DATA_TYPE_RULES, ColumnSample("", list(values)), DataType.STRING)


def infer_field_type(name: str, data_type: DataType, values: Sequence[Any]) -> FieldType:
    column = ColumnSample(name, list(values), data_type)
    return _first_match(FIELD_TYPE_RULES, column, FieldType.DIMENSION)


def infer_aggregation(name: str) -> AggregationType:
    return _first_match(AGGREGATION_RULES, ColumnSample(name, []), AggregationType.SUM)


def infer_dimension_level(name: str, data_type: DataType) -> DimensionLevel:
    column = ColumnSample(name, [], data_type)
    return _first_match(DIMENSION_LEVEL_RULES, column, DimensionLevel.CATEGORICAL)


_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def display_name(name: str) -> str:
    """``orderCount`` / ``order_count`` / ``order-count`` -> ``Order Count``."""
    spaced = _CAMEL_RE.sub(" ", name)
    words = re.split(r"[\s_\-]+", spaced)
    return " ".join(w[:1].upper() + w[1:] for w in words if w) or name


# ── Engine ───────────────────────────────────────────────

def infer_field(name: str, column_values: Sequence[Any]) -> Field:
    """Infer one field from every sampled value of a column (nulls included)."""
    values = [v for v in column_values if v is not None]
    is_nullable = len(values) < len(column_values)

    if not values:
        return Field(
            name=name,
            display_name=display_name(name),
            type=DataType.STRING,
            field_type=FieldType.DIMENSION,
            dimension_level=infer_dimension_level(name, DataType.STRING),
            is_nullable=True,
        )

    data_type = infer_data_type(values)
    field_type = infer_field_type(name, data_type, values)

    samples: list[Any] = []
    seen: set[Any] = set()
    for v in values:
        key = hashable_value(v)
        if key not in seen:
            seen.add(key)
            samples.append(v)
        if len(samples) >= SAMPLE_VALUE_LIMIT:
            break

    return Field(
        name=name,
        display_name=display_name(name),
        type=data_type,
        field_type=field_type,
        aggregation_type=infer_aggregation(name) if field_type == FieldType.MEASURE else None,
        dimension_level=(
            infer_dimension_level(name, data_type) if field_type == FieldType.DIMENSION else None
        ),
        is_nullable=is_nullable,
        sample_values=samples,
    )


def infer_fields(columns: Sequence[str], rows: Sequence[dict[str, Any]]) -> list[Field]:
    """Infer a field for each column name, in column order."""
    return [infer_field(col, [row.get(col) for row in rows]) for col in columns]


# ── Merge with user-edited metadata ──────────────────────

_KEEP_EXISTING = (
    "display_name",
    "description",
    "field_type",
    "aggregation_type",
    "dimension_level",
    "expression",
    "format",
)
_ALWAYS_EXISTING = ("hidden", "is_primary_key")
_ALWAYS_INFERRED = ("type", "is_nullable", "sample_values")


def merge_field(existing: Field, inferred: Field) -> Field:
    """Combine a stored field with a freshly inferred one (see module table)."""
    merged: dict[str, Any] = {"name": existing.name}
    for attr in _KEEP_EXISTING:
        current = getattr(existing, attr)
        merged[attr] = current if current is not None else getattr(inferred, attr)
    for attr in _ALWAYS_EXISTING:
        merged[attr] = getattr(existing, attr)
    for attr in _ALWAYS_INFERRED:
        merged[attr] = getattr(inferred, attr)

    # Re-establish the role-specific invariants for the winning field_type.
    field_type = merged["field_type"]
    if field_type == FieldType.MEASURE:
        merged["aggregation_type"] = merged["aggregation_type"] or infer_aggregation(existing.name)
    else:
        merged["aggregation_type"] = None
    if field_type == FieldType.DIMENSION:
        merged["dimension_level"] = merged["dimension_level"] or infer_dimension_level(
            existing.name, merged["type"]
        )
    else:
        merged["dimension_level"] = None

    return Field(**merged)


def merge_fields(existing: Sequence[Field], inferred: Sequence[Field]) -> list[Field]:
    """Merge by ``name``; order follows the inferred (source) columns.

    Calculated fields with an expression survive even though they are not
    source columns.  Other stale fields and the placeholder are dropped.
    """
    by_name = {f.name: f for f in existing}
    result: list[Field] = []
    for fresh in inferred:
        current = by_name.get(fresh.name)
        result.append(merge_field(current, fresh) if current is not None else fresh)

    inferred_names = {f.name for f in inferred}
    for f in existing:
        if f.name in inferred_names or f.name == PLACEHOLDER_FIELD_NAME:
            continue
        if f.field_type == FieldType.CALCULATED and f.expression:
            result.append(f)
        else:
            logger.debug("Dropping stale field '%s' (no longer in source)", f.name)
    return result
