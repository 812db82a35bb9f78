"""
Query compiler -- turns a structured ``QueryRequest`` into parameterized SQL.

The compiler builds a small statement tree (``Select`` with columns, a source,
predicates, grouping, ordering and a limit) and renders it.  Caller-supplied
values can only enter the tree as ``Param`` nodes, which render as
placeholders and append to the bound-parameter list; no rendering path ever
writes a value into the SQL text.  ``TrustedSql`` carries SQL owned by the
dataset definition itself (stored SQL, calculated-field expressions).

Two placeholder styles are supported:
  - ``qmark``  -> ``?``     (the canonical form, returned as ``CompiledQuery.sql``)
  - ``named``  -> ``:p0``   (what SQLAlchemy ``text()`` binds)

The compiler is stateless and never touches dataset state.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence, Union

from smartbi.core.errors import ValidationError
from smartbi.core.utils import canonical_json, digest
from smartbi.datasets.models import (
    AggregationType,
    Dataset,
    DatasetType,
    FieldType,
    QueryFilter,
    QueryRequest,
    ViewFilter,
)

DEFAULT_LIMIT = 100

_IDENT_RE = re.compile(r"^[^\W\d]\w*$")
_TABLE_RE = re.compile(r"^[^\W\d]\w*(\.[^\W\d]\w*)?$")
# ":name" sequences SQLAlchemy text() would otherwise treat as bind markers
_BIND_LIKE_RE = re.compile(r"(?<![:\\\w]):(?=\w)")


# ── Rendering context ────────────────────────────────────

class _Renderer:
    def __init__(self, style: str):
        if style not in ("qmark", "named"):
            raise ValueError(f"Unknown placeholder style '{style}'")
        self.style = style
        self.params: list[Any] = []

    def bind(self, value: Any) -> str:
        self.params.append(value)
        if self.style == "qmark":
            return "?"
        return f":p{len(self.params) - 1}"


# ── Statement tree ───────────────────────────────────────

@dataclass(frozen=True)
class Param:
    value: Any

    def render(self, r: _Renderer) -> str:
        return r.bind(self.value)


@dataclass(frozen=True)
class TrustedSql:
    """SQL text that belongs to the dataset definition, not to a caller."""
    text: str

    def render(self, r: _Renderer) -> str:
        if r.style == "named":
            return _BIND_LIKE_RE.sub(r"\\:", self.text)
        return self.text


@dataclass(frozen=True)
class Column:
    name: str

    def render(self, r: _Renderer) -> str:
        return self.name


@dataclass(frozen=True)
class Star:
    def render(self, r: _Renderer) -> str:
        return "*"


@dataclass(frozen=True)
class Aliased:
    expr: "Expression"
    alias: str

    def render(self, r: _Renderer) -> str:
        return f"{self.expr.render(r)} AS {self.alias}"


@dataclass(frozen=True)
class Aggregate:
    func: AggregationType
    arg: "Expression"

    def render(self, r: _Renderer) -> str:
        return f"{self.func.value}({self.arg.render(r)})"


@dataclass(frozen=True)
class Grouped:
    expr: "Expression"

    def render(self, r: _Renderer) -> str:
        return f"({self.expr.render(r)})"


Expression = Union[Column, Star, Aliased, Aggregate, Grouped, TrustedSql]


@dataclass(frozen=True)
class TableSource:
    table: str
    schema: str | None = None

    def render(self, r: _Renderer) -> str:
        return f"{self.schema}.{self.table}" if self.schema else self.table


@dataclass(frozen=True)
class SubquerySource:
    body: Union["Select", TrustedSql]
    alias: str

    def render(self, r: _Renderer) -> str:
        return f"({self.body.render(r)}) AS {self.alias}"


Source = Union[TableSource, SubquerySource]


@dataclass(frozen=True)
class Comparison:
    column: Column
    op: str
    value: Param

    def render(self, r: _Renderer) -> str:
        return f"{self.column.render(r)} {self.op} {self.value.render(r)}"


@dataclass(frozen=True)
class InList:
    column: Column
    values: tuple[Param, ...]

    def render(self, r: _Renderer) -> str:
        placeholders = ", ".join(v.render(r) for v in self.values)
        return f"{self.column.render(r)} IN ({placeholders})"


@dataclass(frozen=True)
class Between:
    column: Column
    low: Param
    high: Param

    def render(self, r: _Renderer) -> str:
        return f"{self.column.render(r)} BETWEEN {self.low.render(r)} AND {self.high.render(r)}"


@dataclass(frozen=True)
class NullCheck:
    column: Column
    negate: bool = False

    def render(self, r: _Renderer) -> str:
        return f"{self.column.render(r)} IS {'NOT ' if self.negate else ''}NULL"


Predicate = Union[Comparison, InList, Between, NullCheck]


@dataclass(frozen=True)
class OrderBy:
    column: Column
    descending: bool = False

    def render(self, r: _Renderer) -> str:
        return f"{self.column.render(r)} {'DESC' if self.descending else 'ASC'}"


@dataclass(frozen=True)
class Select:
    columns: tuple[Expression, ...]
    source: Source
    where: tuple[Predicate, ...] = ()
    group_by: tuple[Column, ...] = ()
    order_by: OrderBy | None = None
    limit: Param | None = None

    def render(self, r: _Renderer) -> str:
        parts = [
            "SELECT " + ", ".join(c.render(r) for c in self.columns),
            "FROM " + self.source.render(r),
        ]
        if self.where:
            parts.append("WHERE " + " AND ".join(p.render(r) for p in self.where))
        if self.group_by:
            parts.append("GROUP BY " + ", ".join(c.render(r) for c in self.group_by))
        if self.order_by is not None:
            parts.append("ORDER BY " + self.order_by.render(r))
        if self.limit is not None:
            parts.append("LIMIT " + self.limit.render(r))
        return " ".join(parts)


# ── Compiled output ──────────────────────────────────────

@dataclass(frozen=True)
class CompiledQuery:
    """Rendered SQL (qmark placeholders) with its bound parameters, in order."""
    statement: Union[Select, TrustedSql]
    sql: str
    params: list[Any] = field(default_factory=list)

    @classmethod
    def from_statement(cls, statement: Union[Select, TrustedSql]) -> "CompiledQuery":
        r = _Renderer("qmark")
        sql = statement.render(r)
        return cls(statement=statement, sql=sql, params=r.params)

    @classmethod
    def from_sql(cls, sql: str) -> "CompiledQuery":
        """Wrap SQL produced elsewhere (e.g. the intent pipeline); no parameters."""
        return cls.from_statement(TrustedSql(sql))

    def named(self) -> tuple[str, dict[str, Any]]:
        """Render with ``:pN`` placeholders for SQLAlchemy ``text()``."""
        r = _Renderer("named")
        sql = self.statement.render(r)
        return sql, {f"p{i}": v for i, v in enumerate(r.params)}


# ── Identifier checks ────────────────────────────────────

def _identifier(name: str, what: str) -> Column:
    if not isinstance(name, str) or not _IDENT_RE.match(name):
        raise ValidationError(f"Invalid {what} name {name!r}.")
    return Column(name)


# ── Filters ──────────────────────────────────────────────

_COMPARISON_OPS = {
    "equals": "=", "eq": "=",
    "not_equals": "!=", "ne": "!=",
    "greater_than": ">", "gt": ">",
    "greater_than_or_equal": ">=", "gte": ">=",
    "less_than": "<", "lt": "<",
    "less_than_or_equal": "<=", "lte": "<=",
}

SUPPORTED_OPERATORS = frozenset(_COMPARISON_OPS) | {
    "contains", "like", "in", "between", "is_null", "is_not_null",
}


def compile_filter(flt: QueryFilter | ViewFilter) -> Predicate | None:
    """Translate one filter into a predicate; ``None`` means "no constraint"."""
    column = _identifier(flt.field, "filter field")
    op = flt.operator
    value = flt.value

    if op in _COMPARISON_OPS:
        return Comparison(column, _COMPARISON_OPS[op], Param(value))
    if op == "contains":
        return Comparison(column, "LIKE", Param(f"%{value}%"))
    if op == "like":
        return Comparison(column, "LIKE", Param(value))
    if op == "in":
        if not isinstance(value, (list, tuple)):
            raise ValidationError(f"Filter 'in' on '{flt.field}' needs a list of values.")
        if not value:
            return None
        return InList(column, tuple(Param(v) for v in value))
    if op == "between":
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise ValidationError(f"Filter 'between' on '{flt.field}' needs [low, high].")
        return Between(column, Param(value[0]), Param(value[1]))
    if op == "is_null":
        return NullCheck(column)
    if op == "is_not_null":
        return NullCheck(column, negate=True)
    raise ValidationError(
        f"Unsupported filter operator '{op}'. Allowed: {', '.join(sorted(SUPPORTED_OPERATORS))}"
    )


def _compile_filters(filters: Sequence[QueryFilter | ViewFilter]) -> tuple[Predicate, ...]:
    predicates = (compile_filter(f) for f in filters)
    return tuple(p for p in predicates if p is not None)


# ── FROM clause ──────────────────────────────────────────

Resolver = Callable[[str], Dataset]


def compile_source(dataset: Dataset, resolve: Resolver | None = None, _seen: frozenset[str] = frozenset()) -> Source:
    """Build the FROM source for *dataset*, following view chains through *resolve*."""
    if dataset.id in _seen:
        raise ValidationError(f"View cycle detected at dataset '{dataset.id}'.")

    if dataset.type == DatasetType.TABLE and dataset.table_config:
        cfg = dataset.table_config
        if not _TABLE_RE.match(cfg.table_name):
            raise ValidationError(f"Invalid table name {cfg.table_name!r}.")
        if cfg.schema_name and not _IDENT_RE.match(cfg.schema_name):
            raise ValidationError(f"Invalid schema name {cfg.schema_name!r}.")
        return TableSource(table=cfg.table_name, schema=cfg.schema_name)

    if dataset.type == DatasetType.SQL and dataset.sql_config:
        return SubquerySource(TrustedSql(dataset.sql_config.sql.strip().rstrip(";")), "subquery")

    if dataset.type == DatasetType.VIEW and dataset.view_config:
        if resolve is None:
            raise ValidationError("View datasets need a resolver for their base dataset.")
        view = dataset.view_config
        base = resolve(view.base_dataset_id)
        base_source = compile_source(base, resolve, _seen | {dataset.id})
        columns: list[Expression] = [Star()]
        for computed in view.computed_fields:
            alias = _identifier(computed.name, "computed field").name
            columns.append(Aliased(Grouped(TrustedSql(computed.expression)), alias))
        inner = Select(
            columns=tuple(columns),
            source=base_source,
            where=_compile_filters(view.filters),
        )
        return SubquerySource(inner, "view_query")

    raise ValidationError(f"Unsupported dataset type '{dataset.type}'.")


# ── SELECT compilation ───────────────────────────────────

def _measure_expression(dataset: Dataset, name: str) -> Expression:
    column = _identifier(name, "measure")
    f = dataset.field(name)
    func = AggregationType.SUM
    if f is not None and f.aggregation_type is not None:
        func = f.aggregation_type
    arg: Expression = column
    if f is not None and f.field_type == FieldType.CALCULATED and f.expression:
        arg = Grouped(TrustedSql(f.expression))
    return Aliased(Aggregate(func, arg), column.name)


def _dimension_expression(dataset: Dataset, name: str) -> Expression:
    column = _identifier(name, "dimension")
    f = dataset.field(name)
    if f is not None and f.field_type == FieldType.CALCULATED and f.expression:
        return Aliased(Grouped(TrustedSql(f.expression)), column.name)
    return column


def compile_query(
    request: QueryRequest,
    dataset: Dataset,
    resolve: Resolver | None = None,
) -> CompiledQuery:
    """Compile *request* against *dataset* into SQL plus bound parameters."""
    dimensions = [_dimension_expression(dataset, d) for d in request.dimensions]
    measures = [_measure_expression(dataset, m) for m in request.measures]
    columns: tuple[Expression, ...] = tuple(dimensions + measures) or (Star(),)

    group_by = tuple(Column(d) for d in request.dimensions)

    order_by: OrderBy | None = None
    if request.measures:
        order_by = OrderBy(Column(request.measures[0]), descending=True)
    elif request.dimensions:
        order_by = OrderBy(Column(request.dimensions[0]))

    statement = Select(
        columns=columns,
        source=compile_source(dataset, resolve),
        where=_compile_filters(request.filters),
        group_by=group_by,
        order_by=order_by,
        limit=Param(request.limit or DEFAULT_LIMIT),
    )
    return CompiledQuery.from_statement(statement)


def compile_preview(dataset: Dataset, limit: int, resolve: Resolver | None = None) -> CompiledQuery:
    """``SELECT * FROM <source> LIMIT ?`` -- used for previews and inference sampling."""
    statement = Select(
        columns=(Star(),),
        source=compile_source(dataset, resolve),
        limit=Param(limit),
    )
    return CompiledQuery.from_statement(statement)


# ── Cache key ────────────────────────────────────────────

def canonical_request(request: QueryRequest) -> QueryRequest:
    """Order-insensitive form of *request*: sorted measures, dimensions and filters."""
    filters = sorted(
        request.filters,
        key=lambda f: canonical_json(f.model_dump(mode="json")),
    )
    return QueryRequest(
        measures=sorted(request.measures),
        dimensions=sorted(request.dimensions),
        filters=filters,
        limit=request.limit,
    )


def query_hash(request: QueryRequest) -> str:
    """Deterministic hash: identical up to list ordering ⇒ identical hash."""
    canon = canonical_request(request)
    return digest(canon.model_dump(mode="json"))
