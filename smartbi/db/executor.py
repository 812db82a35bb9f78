"""
Read-only SQL execution adapter.

Every datasource query runs through ``SqlExecutor.execute``, which:
  1. Opens a pooled connection for the datasource (READ ONLY where supported)
  2. Binds all parameters through SQLAlchemy ``text()`` -- never interpolated
  3. Applies a per-query timeout on the engine side
  4. Converts Decimal/date/datetime to JSON-safe Python types
"""
from __future__ import annotations

import decimal
import datetime
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from smartbi.core.errors import SourceExecutionError
from smartbi.core.logging import get_logger
from smartbi.datasets.compiler import CompiledQuery
from smartbi.datasets.models import Datasource
from smartbi.db.connection import EnginePool, readonly_connection

logger = get_logger(__name__)

DEFAULT_TIMEOUT_MS = 10_000  # 10 seconds max per query


@dataclass
class ExecutionResult:
    data: list[dict[str, Any]] = field(default_factory=list)
    columns: list[dict[str, Any]] = field(default_factory=list)
    total: int = 0


class SqlExecutionAdapter(Protocol):
    def execute(
        self,
        datasource: Datasource,
        query: CompiledQuery,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> ExecutionResult: ...


def _serialise_value(val: Any) -> Any:
    """Convert DB types to JSON-serialisable Python types."""
    if isinstance(val, decimal.Decimal):
        return float(val)
    if isinstance(val, (datetime.date, datetime.datetime)):
        return val.isoformat()
    if isinstance(val, datetime.timedelta):
        return str(val)
    if isinstance(val, (bytes, bytearray, memoryview)):
        return bytes(val).hex()
    return val


def _apply_timeout(conn: Connection, timeout_ms: int) -> None:
    backend = conn.engine.url.get_backend_name()
    if backend == "postgresql":
        conn.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))
    elif backend == "mysql":
        conn.execute(text(f"SET SESSION MAX_EXECUTION_TIME = {int(timeout_ms)}"))


class SqlExecutor:
    """Runs compiled queries against datasource engines."""

    def __init__(self, engines: EnginePool | None = None):
        self._engines = engines or EnginePool()

    def execute(
        self,
        datasource: Datasource,
        query: CompiledQuery,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> ExecutionResult:
        """Execute *query* and return rows as serialisable dicts.

        Raises
        ------
        SourceExecutionError
            If the engine rejects or fails the query for any reason.
        """
        sql, params = query.named()
        logger.info(
            "Executing SQL on datasource=%s (%d chars, %d params)",
            datasource.id, len(sql), len(params),
        )
        try:
            engine = self._engines.engine_for(datasource)
            with readonly_connection(engine) as conn:
                _apply_timeout(conn, timeout_ms)
                result = conn.execute(text(sql), params)
                keys = list(result.keys())
                rows = [
                    {col: _serialise_value(val) for col, val in zip(keys, row)}
                    for row in result.fetchall()
                ]
        except SQLAlchemyError as exc:
            logger.warning("SQL execution failed on datasource=%s: %s", datasource.id, exc)
            raise SourceExecutionError(str(getattr(exc, "orig", None) or exc)) from exc

        logger.info("Returned %d rows", len(rows))
        return ExecutionResult(
            data=rows,
            columns=[{"name": k} for k in keys],
            total=len(rows),
        )

    def close(self) -> None:
        self._engines.dispose_all()
