"""
Dataset service -- orchestrates repository -> cache -> inference / compiler -> executor.

Operations:
  create          persist a provisional dataset, schedule field analysis
  update          persist a patch verbatim (no re-inference), invalidate cache
  get             cached metadata lookup, permission-checked on every call
  search          permission-scoped listing with facets (not cached)
  preview         ``SELECT * ... LIMIT n`` through the cache
  query           compiled structured query through the cache
  analyze_fields  detached schema inference + quality scoring
  refresh         explicit re-analysis
  delete          remove and invalidate
  run_sql / ask   execute SQL handed back by the external intent pipeline

Cache layout (tags in brackets):
  dataset:<id>                    [dataset:<id>, user:<uid>]   10 min
  dataset:preview:<id>:<limit>    [dataset:<id>, preview]       5 min
  dataset:query:<id>:<hash>       [dataset:<id>, query]         3 min
"""
from __future__ import annotations

import math
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Callable, Iterator

import pydantic

from smartbi.cache import keys
from smartbi.cache.store import CacheStore
from smartbi.core.config import Settings, get_settings
from smartbi.core.errors import (
    DatasetError,
    InferenceError,
    NotFound,
    SourceExecutionError,
    ValidationError,
)
from smartbi.core.logging import get_logger
from smartbi.core.utils import canonical_json, digest, stopwatch
from smartbi.datasets.compiler import (
    CompiledQuery,
    compile_preview,
    compile_query,
    query_hash,
)
from smartbi.datasets.inference import infer_fields, merge_fields
from smartbi.datasets.intent import FieldLookup, IntentOutcome, IntentPipeline, dataset_schema
from smartbi.datasets.models import (
    CreateDatasetRequest,
    Dataset,
    DatasetMetadata,
    DatasetStatus,
    DatasetType,
    Datasource,
    Pagination,
    Permission,
    PreviewResult,
    QueryRequest,
    QueryResult,
    Role,
    SearchFacets,
    SearchParams,
    SearchResult,
    SqlConfig,
    TableConfig,
    UpdateDatasetRequest,
    ViewConfig,
    placeholder_field,
    utcnow,
)
from smartbi.datasets.quality import analyze_quality, quality_score
from smartbi.db.executor import SqlExecutionAdapter
from smartbi.db.repository import DatasetQuery, MetadataRepository, apply_patch
from smartbi.governance.permissions import require
from smartbi.governance.sql_safety import check_sql_safety

logger = get_logger(__name__)


def _validated(build: Callable[[], Any]) -> Any:
    """Run a pydantic construction, re-raising its errors as ``ValidationError``."""
    try:
        return build()
    except pydantic.ValidationError as exc:
        raise ValidationError(str(exc)) from exc


class DatasetService:
    """Dataset operations for callers identified by a user id."""

    def __init__(
        self,
        repository: MetadataRepository,
        executor: SqlExecutionAdapter,
        cache: CacheStore,
        settings: Settings | None = None,
        background: Executor | None = None,
    ):
        self._repo = repository
        self._executor = executor
        self._cache = cache
        self._settings = settings or get_settings()
        self._owns_background = background is None
        self._background = background or ThreadPoolExecutor(
            max_workers=self._settings.analysis_workers,
            thread_name_prefix="dataset-analysis",
        )
        self._pending: dict[str, Future] = {}
        self._pending_lock = threading.Lock()

    # ── create / update / delete ────────────────────────

    def create(self, owner_id: str, request: CreateDatasetRequest) -> Dataset:
        """Persist a provisional dataset and schedule field analysis."""
        self._check_source(
            owner_id, owner_id, request.table_config or request.sql_config, request.view_config
        )
        self._check_name_free(owner_id, request.name)

        fields = request.fields or [placeholder_field()]
        dataset = _validated(lambda: Dataset(
            user_id=owner_id,
            name=request.name,
            display_name=request.display_name,
            description=request.description,
            type=request.type,
            table_config=request.table_config,
            sql_config=request.sql_config,
            view_config=request.view_config,
            fields=fields,
            metadata=DatasetMetadata(column_count=len(fields)),
            category=request.category,
            tags=request.tags,
            permissions=[Permission(user_id=owner_id, role=Role.OWNER)],
            status=DatasetStatus.PROCESSING,
        ))
        saved = self._repo.create(dataset)
        logger.info("Dataset created id=%s name=%s owner=%s", saved.id, saved.name, owner_id)
        self._schedule_analysis(saved.id)
        return saved

    def update(self, user_id: str, dataset_id: str, request: UpdateDatasetRequest) -> Dataset:
        """Write *request* verbatim. Field analysis is not re-run."""
        current = self._load(dataset_id)
        require(current, user_id, Role.EDITOR)

        patch = request.model_dump(exclude_unset=True)
        if not patch:
            return current
        if "permissions" in patch:
            require(current, user_id, Role.OWNER)
        if patch.get("name") not in (None, current.name):
            self._check_name_free(current.user_id, patch["name"])
        if patch.keys() & {"table_config", "sql_config", "view_config"}:
            self._check_source(
                current.user_id,
                user_id,
                request.table_config or request.sql_config,
                request.view_config,
            )
        _validated(lambda: apply_patch(current, patch))

        updated = self._repo.find_one_and_update(dataset_id, patch)
        if updated is None:
            raise NotFound("dataset", dataset_id)
        # Invalidate only after the write has committed.
        self._cache.remove_by_tags([keys.dataset_tag(dataset_id)])
        logger.info("Dataset updated id=%s keys=%s", dataset_id, sorted(patch))
        return updated

    def delete(self, user_id: str, dataset_id: str) -> None:
        current = self._load(dataset_id)
        require(current, user_id, Role.OWNER)
        self._repo.delete_by_id(dataset_id)
        self._cache.remove_by_tags([keys.dataset_tag(dataset_id)])
        logger.info("Dataset deleted id=%s by=%s", dataset_id, user_id)

    # ── reads ───────────────────────────────────────────

    def get(self, user_id: str, dataset_id: str) -> Dataset:
        dataset = self._cache.get_or_set(
            keys.dataset_key(dataset_id),
            lambda: self._load(dataset_id),
            ttl=self._settings.dataset_cache_ttl,
            tags=[keys.dataset_tag(dataset_id), keys.user_tag(user_id)],
        )
        require(dataset, user_id, Role.VIEWER)
        return dataset

    def search(self, user_id: str, params: SearchParams) -> SearchResult:
        query = DatasetQuery(
            accessible_to=user_id,
            keyword=params.keyword,
            category=params.category,
            tags=list(params.tags),
            type=params.type,
            status=params.status,
        )
        datasets = self._repo.find(
            query,
            sort=(params.sort_by, params.sort_order),
            skip=(params.page - 1) * params.limit,
            limit=params.limit,
        )
        total = self._repo.count_documents(query)

        facet_scope = DatasetQuery(accessible_to=user_id, status=DatasetStatus.ACTIVE)
        return SearchResult(
            datasets=datasets,
            pagination=Pagination(
                page=params.page,
                limit=params.limit,
                total=total,
                total_pages=math.ceil(total / params.limit),
            ),
            filters=SearchFacets(
                categories=self._repo.distinct("category", facet_scope),
                tags=self._repo.distinct("tags", facet_scope),
                types=self._repo.distinct("type", facet_scope),
            ),
        )

    def preview(
        self,
        user_id: str,
        dataset_id: str,
        limit: int | None = None,
        timeout_ms: int | None = None,
    ) -> PreviewResult:
        """First rows of the dataset; execution failures come back in ``errors``."""
        dataset = self.get(user_id, dataset_id)
        if limit is None:
            limit = self._settings.preview_default_limit
        limit = self._clamp_limit(limit)
        resolve = self._resolver(user_id)
        compiled = compile_preview(dataset, limit, resolve)
        datasource = self._datasource_for(dataset, resolve)

        def compute() -> PreviewResult:
            with stopwatch() as t:
                result = self._executor.execute(datasource, compiled, self._timeout(timeout_ms))
            return PreviewResult(
                columns=dataset.fields,
                rows=result.data,
                total_count=result.total,
                execution_time=t.elapsed_ms,
            )

        with stopwatch() as t:
            try:
                return self._cache.get_or_set(
                    keys.preview_key(dataset_id, limit),
                    compute,
                    ttl=self._settings.preview_cache_ttl,
                    tags=[keys.dataset_tag(dataset_id), keys.PREVIEW_TAG],
                )
            except SourceExecutionError as exc:
                error = str(exc)
        logger.warning("Preview failed dataset=%s: %s", dataset_id, error)
        return PreviewResult(
            columns=dataset.fields,
            rows=[],
            total_count=0,
            execution_time=t.elapsed_ms,
            errors=[error],
        )

    def query(
        self,
        user_id: str,
        dataset_id: str,
        request: QueryRequest,
        timeout_ms: int | None = None,
    ) -> QueryResult:
        """Compile and run a structured query; execution failures come back in ``errors``."""
        dataset = self.get(user_id, dataset_id)
        limit = request.limit if request.limit is not None else self._settings.query_default_limit
        request = request.model_copy(update={"limit": self._clamp_limit(limit)})
        resolve = self._resolver(user_id)
        compiled = compile_query(request, dataset, resolve)
        datasource = self._datasource_for(dataset, resolve)
        key = keys.query_key(dataset_id, query_hash(request))
        return self._run_cached(dataset_id, key, datasource, compiled, timeout_ms)

    # ── intent pipeline ─────────────────────────────────

    def run_sql(
        self,
        user_id: str,
        dataset_id: str,
        sql: str,
        timeout_ms: int | None = None,
    ) -> QueryResult:
        """Execute SQL produced by the intent pipeline, cached like ``query``."""
        dataset = self.get(user_id, dataset_id)
        violations = check_sql_safety(sql, self._settings.max_query_rows)
        if violations:
            raise ValidationError("; ".join(violations))
        datasource = self._datasource_for(dataset, self._resolver(user_id))
        key = keys.query_key(dataset_id, f"sql:{digest(sql.strip())}")
        return self._run_cached(dataset_id, key, datasource, CompiledQuery.from_sql(sql), timeout_ms)

    def ask(
        self,
        user_id: str,
        dataset_id: str,
        question: str,
        pipeline: IntentPipeline,
    ) -> IntentOutcome:
        """question -> intent -> SQL (external pipeline) -> cached execution."""
        dataset = self.get(user_id, dataset_id)
        extracted = pipeline.extract_intent(question, dataset_schema(dataset))
        outcome = IntentOutcome(
            intent=extracted.get("intent"),
            confidence=float(extracted.get("confidence") or 0.0),
            explanation=extracted.get("explanation") or "",
            suggestions=list(extracted.get("suggestions") or []),
        )
        if not outcome.intent:
            outcome.errors.append("No intent could be extracted from the question.")
            return outcome

        intent, unknown = _resolve_intent_fields(outcome.intent, FieldLookup(dataset))
        if unknown:
            outcome.errors.append(f"Unknown fields: {', '.join(unknown)}")
            return outcome
        outcome.intent = intent

        check = pipeline.validate_intent(intent)
        if not check.get("valid", False):
            outcome.errors.extend(check.get("errors") or ["Intent failed validation."])
            return outcome

        outcome.sql = pipeline.intent_to_sql(intent, dataset).get("sql") or ""
        if not outcome.sql:
            outcome.errors.append("The intent pipeline produced no SQL.")
            return outcome
        try:
            outcome.result = self.run_sql(user_id, dataset_id, outcome.sql)
        except ValidationError as exc:
            outcome.errors.append(str(exc))
        return outcome

    # ── field analysis ──────────────────────────────────

    def analyze_fields(self, dataset_id: str) -> None:
        """Infer fields and quality for *dataset_id*; never raises.

        Success -> fields / metadata / quality written, status=active.
        Failure -> status=error with ``last_error``; fields left untouched.
        """
        try:
            dataset = self._repo.find_by_id(dataset_id)
            if dataset is None:
                logger.warning("Field analysis skipped: dataset %s no longer exists", dataset_id)
                return
            columns, rows = self._sample(dataset)
            inferred = infer_fields(columns, rows)

            # Merge against the freshest copy so edits made during sampling survive.
            latest = self._repo.find_by_id(dataset_id)
            if latest is None:
                return
            fields = merge_fields(latest.fields, inferred)
            source_columns = set(columns)
            issues = analyze_quality([f for f in fields if f.name in source_columns], rows)
            patch = {
                "fields": [f.model_dump() for f in fields],
                "metadata": DatasetMetadata(
                    record_count=len(rows),
                    column_count=len(columns),
                    last_refreshed=utcnow(),
                    data_size=len(canonical_json(rows)),
                ).model_dump(),
                "quality_issues": [i.model_dump() for i in issues],
                "quality_score": quality_score(issues),
                "status": DatasetStatus.ACTIVE,
                "last_error": None,
            }
            self._repo.find_one_and_update(dataset_id, patch)
            logger.info(
                "Field analysis done dataset=%s fields=%d score=%d",
                dataset_id, len(fields), patch["quality_score"],
            )
        except InferenceError as exc:
            logger.warning("Field analysis failed dataset=%s: %s", dataset_id, exc)
            self._mark_error(dataset_id, str(exc))
        except Exception:
            logger.exception("Field analysis crashed dataset=%s", dataset_id)
            self._mark_error(dataset_id, "Field analysis failed unexpectedly.")
        finally:
            self._cache.remove_by_tags([keys.dataset_tag(dataset_id)])

    def refresh(self, user_id: str, dataset_id: str) -> Future:
        """Schedule re-analysis of an existing dataset (editor or above)."""
        require(self._load(dataset_id), user_id, Role.EDITOR)
        return self._schedule_analysis(dataset_id)

    def pending_analysis(self, dataset_id: str) -> Future | None:
        with self._pending_lock:
            return self._pending.get(dataset_id)

    # ── lifecycle / observability ───────────────────────

    def cache_stats(self) -> dict[str, Any]:
        return self._cache.stats()

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_background:
            self._background.shutdown(wait=wait)

    # ── internals ───────────────────────────────────────

    def _load(self, dataset_id: str) -> Dataset:
        dataset = self._repo.find_by_id(dataset_id)
        if dataset is None:
            raise NotFound("dataset", dataset_id)
        return dataset

    def _resolver(self, user_id: str) -> Callable[[str], Dataset]:
        """Base-dataset lookup for views, permission-checked for *user_id*."""
        return lambda base_id: self.get(user_id, base_id)

    def _view_chain(self, dataset: Dataset, resolve: Callable[[str], Dataset]) -> Iterator[Dataset]:
        seen: set[str] = set()
        current = dataset
        while True:
            if current.id in seen:
                raise ValidationError(f"View cycle detected at dataset '{current.id}'.")
            seen.add(current.id)
            yield current
            if current.type != DatasetType.VIEW or current.view_config is None:
                return
            current = resolve(current.view_config.base_dataset_id)

    def _datasource_for(self, dataset: Dataset, resolve: Callable[[str], Dataset]) -> Datasource:
        for ds in self._view_chain(dataset, resolve):
            if ds.datasource_id is not None:
                datasource = self._repo.find_datasource(ds.datasource_id)
                if datasource is None:
                    raise NotFound("datasource", ds.datasource_id)
                return datasource
        raise ValidationError(f"Dataset '{dataset.id}' has no datasource configured.")

    def _check_source(
        self,
        owner_id: str,
        reader_id: str,
        config: TableConfig | SqlConfig | None,
        view_config: ViewConfig | None,
    ) -> None:
        """Datasources must belong to *owner_id*; view bases must be readable by *reader_id*."""
        if config is not None:
            datasource = self._repo.find_datasource(config.datasource_id)
            if datasource is None or datasource.user_id != owner_id:
                raise NotFound("datasource", config.datasource_id)
        if view_config is not None:
            self.get(reader_id, view_config.base_dataset_id)

    def _check_name_free(self, owner_id: str, name: str) -> None:
        if self._repo.count_documents(DatasetQuery(owner=owner_id, name=name)):
            raise ValidationError(f"A dataset named '{name}' already exists.")

    def _sample(self, dataset: Dataset) -> tuple[list[str], list[dict[str, Any]]]:
        """Run the bounded inference probe; any failure becomes ``InferenceError``."""
        try:
            compiled = compile_preview(dataset, self._settings.inference_sample_rows, self._load)
            datasource = self._datasource_for(dataset, self._load)
            result = self._executor.execute(datasource, compiled, self._settings.query_timeout_ms)
        except DatasetError as exc:
            raise InferenceError(str(exc)) from exc
        return [c["name"] for c in result.columns], result.data

    def _mark_error(self, dataset_id: str, message: str) -> None:
        try:
            self._repo.find_one_and_update(
                dataset_id, {"status": DatasetStatus.ERROR, "last_error": message}
            )
        except Exception:
            logger.exception("Could not record analysis failure for dataset=%s", dataset_id)

    def _schedule_analysis(self, dataset_id: str) -> Future:
        future = self._background.submit(self.analyze_fields, dataset_id)
        with self._pending_lock:
            self._pending[dataset_id] = future

        def _done(f: Future) -> None:
            with self._pending_lock:
                if self._pending.get(dataset_id) is f:
                    del self._pending[dataset_id]

        future.add_done_callback(_done)
        return future

    def _run_cached(
        self,
        dataset_id: str,
        key: str,
        datasource: Datasource,
        compiled: CompiledQuery,
        timeout_ms: int | None,
    ) -> QueryResult:
        def compute() -> QueryResult:
            with stopwatch() as t:
                result = self._executor.execute(datasource, compiled, self._timeout(timeout_ms))
            return QueryResult(
                data=result.data,
                columns=result.columns,
                total=result.total,
                execution_time=t.elapsed_ms,
                sql=compiled.sql,
            )

        with stopwatch() as t:
            try:
                return self._cache.get_or_set(
                    key,
                    compute,
                    ttl=self._settings.query_cache_ttl,
                    tags=[keys.dataset_tag(dataset_id), keys.QUERY_TAG],
                )
            except SourceExecutionError as exc:
                error = str(exc)
        logger.warning("Query failed dataset=%s: %s", dataset_id, error)
        return QueryResult(
            data=[],
            columns=[],
            total=0,
            execution_time=t.elapsed_ms,
            errors=[error],
            sql=compiled.sql,
        )

    def _clamp_limit(self, limit: int) -> int:
        if limit < 1:
            raise ValidationError("Limit must be a positive integer.")
        return min(limit, self._settings.max_query_rows)

    def _timeout(self, timeout_ms: int | None) -> int:
        return timeout_ms or self._settings.query_timeout_ms


def _resolve_intent_fields(intent: dict[str, Any], lookup: FieldLookup) -> tuple[dict[str, Any], list[str]]:
    """Map display labels in *intent* back to column names."""
    resolved = dict(intent)
    unknown: list[str] = []
    for key in ("measures", "dimensions"):
        labels = intent.get(key)
        if isinstance(labels, list):
            names, missing = lookup.resolve_all(labels)
            resolved[key] = names
            unknown.extend(missing)
    filters = intent.get("filters")
    if isinstance(filters, list):
        mapped = []
        for flt in filters:
            if isinstance(flt, dict) and "field" in flt:
                name = lookup.resolve(flt["field"])
                if name is None:
                    unknown.append(flt["field"])
                    continue
                flt = {**flt, "field": name}
            mapped.append(flt)
        resolved["filters"] = mapped
    return resolved, unknown
