"""SQLAlchemy engines.

Two kinds of engines live here:
  - the metadata engine (dataset definitions), one per process, lazy-created
  - datasource engines, opened ad hoc from each datasource's connection
    config and pooled per datasource id

Datasource queries run through ``readonly_connection``, which sets the
transaction to READ ONLY where the dialect supports it.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine, URL, make_url

from smartbi.core.config import get_settings
from smartbi.core.logging import get_logger
from smartbi.datasets.models import Datasource, DatasourceType

logger = get_logger(__name__)

_DRIVERS = {
    DatasourceType.POSTGRESQL: "postgresql+psycopg2",
    DatasourceType.MYSQL: "mysql+pymysql",
    DatasourceType.SQLITE: "sqlite",
}

_engine: Engine | None = None


def _make_engine(url: str | URL) -> Engine:
    if make_url(url).get_backend_name() == "sqlite":
        return create_engine(url, connect_args={"check_same_thread": False}, echo=False)
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        echo=False,
    )


def get_engine() -> Engine:
    """Return the shared metadata-store engine (lazy-created, cached)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = _make_engine(settings.metadata_database_url)
        logger.info("Metadata engine created  backend=%s", _engine.url.get_backend_name())
    return _engine


def datasource_url(datasource: Datasource) -> URL:
    """Build a SQLAlchemy URL from a datasource's connection config."""
    cfg = datasource.config
    if datasource.type == DatasourceType.SQLITE:
        return URL.create("sqlite", database=cfg.path or None)
    return URL.create(
        _DRIVERS[datasource.type],
        username=cfg.username,
        password=cfg.password,
        host=cfg.host,
        port=cfg.port,
        database=cfg.database,
    )


class EnginePool:
    """Datasource engines keyed by datasource id and connection config."""

    def __init__(self) -> None:
        self._engines: dict[str, tuple[str, Engine]] = {}
        self._lock = threading.Lock()

    def engine_for(self, datasource: Datasource) -> Engine:
        fingerprint = datasource.config.model_dump_json()
        with self._lock:
            cached = self._engines.get(datasource.id)
            if cached is not None and cached[0] == fingerprint:
                return cached[1]
            if cached is not None:
                cached[1].dispose()
            engine = _make_engine(datasource_url(datasource))
            self._engines[datasource.id] = (fingerprint, engine)
        logger.info(
            "Datasource engine created  id=%s  type=%s", datasource.id, datasource.type.value
        )
        return engine

    def dispose_all(self) -> None:
        with self._lock:
            for _, engine in self._engines.values():
                engine.dispose()
            self._engines.clear()


@contextmanager
def readonly_connection(engine: Engine) -> Generator[Connection, None, None]:
    """Yield a connection in a READ ONLY transaction (Postgres / MySQL).

    The connection is returned to the pool on exit.
    """
    conn = engine.connect()
    try:
        backend = engine.url.get_backend_name()
        if backend == "postgresql":
            conn.execute(text("SET TRANSACTION READ ONLY"))
        elif backend == "mysql":
            conn.execute(text("SET SESSION TRANSACTION READ ONLY"))
        yield conn
    finally:
        conn.close()
