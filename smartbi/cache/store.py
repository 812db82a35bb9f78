"""
Tagged TTL cache for dataset metadata, previews and query results.

Entries carry an absolute expiry and a set of tags.  Tags make it possible to
drop every cached view of a dataset (metadata, previews, each distinct query)
with one ``remove_by_tags(["dataset:<id>"])`` call, without enumerating keys.

``get_or_set`` is single-flight per key: the first caller to miss runs the
producer while concurrent callers for the same key wait on its future.  The
store lock is only held for bookkeeping, never while a producer runs, so
unrelated keys are not serialised.

The store is process-local and constructed explicitly; the FastAPI lifespan
owns one instance and a ``CacheSweeper`` that evicts expired entries.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from smartbi.core.logging import get_logger

logger = get_logger(__name__)


# ── Configuration ───────────────────────────────────────

DEFAULT_TTL_SECONDS = 300  # 5 minutes
DEFAULT_MAX_ENTRIES = 1024

_MISSING = object()


# ── Cache entry ─────────────────────────────────────────


@dataclass
class CacheEntry:
    """A single cached value."""
    key: str
    value: Any
    created_at: float
    expires_at: float
    tags: frozenset[str] = field(default_factory=frozenset)
    hit_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class _Flight:
    """An in-progress ``get_or_set`` computation."""
    future: Future
    tags: frozenset[str]


# ── Cache implementation ────────────────────────────────


class CacheStore:
    """Thread-safe in-memory TTL cache with tag invalidation.

    Parameters
    ----------
    default_ttl : float
        Time-to-live in seconds used when ``set`` is called without one.
    max_entries : int
        Maximum number of entries.  The oldest entry is evicted when full.
    clock : callable
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store: dict[str, CacheEntry] = {}
        self._inflight: dict[str, _Flight] = {}
        self._tag_epochs: dict[str, int] = {}
        self._generation = 0
        self._lock = threading.Lock()
        self._clock = clock
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._coalesced = 0

    # ── Public API ──────────────────────────────────────

    def get(self, key: str) -> Any | None:
        """Return a live cached value, or ``None`` on miss / expiry."""
        with self._lock:
            value = self._lookup(key)
        return None if value is _MISSING else value

    def set(
        self,
        key: str,
        value: Any,
        ttl: float | None = None,
        tags: Iterable[str] = (),
    ) -> None:
        """Store *value* until ``now + ttl``, replacing any existing entry."""
        with self._lock:
            self._put(key, value, ttl, frozenset(tags))
        logger.debug("Cache SET key=%s size=%d", key, len(self._store))

    def get_or_set(
        self,
        key: str,
        compute: Callable[[], Any],
        ttl: float | None = None,
        tags: Iterable[str] = (),
    ) -> Any:
        """Return the cached value for *key*, computing it at most once concurrently.

        Raises whatever *compute* raises; nothing is cached in that case.
        """
        tag_set = frozenset(tags)
        with self._lock:
            value = self._lookup(key)
            if value is not _MISSING:
                return value
            flight = self._inflight.get(key)
            if flight is not None:
                self._coalesced += 1
                leader = False
            else:
                flight = _Flight(future=Future(), tags=tag_set)
                self._inflight[key] = flight
                leader = True
            epochs = {t: self._tag_epochs.get(t, 0) for t in tag_set}
            generation = self._generation

        if not leader:
            logger.debug("Cache WAIT key=%s", key)
            return flight.future.result()

        try:
            value = compute()
        except BaseException as exc:
            with self._lock:
                if self._inflight.get(key) is flight:
                    del self._inflight[key]
            flight.future.set_exception(exc)
            raise

        with self._lock:
            stale = generation != self._generation or any(
                self._tag_epochs.get(t, 0) != e for t, e in epochs.items()
            )
            if stale:
                logger.debug("Cache SKIP key=%s (invalidated during compute)", key)
            else:
                self._put(key, value, ttl, tag_set)
            if self._inflight.get(key) is flight:
                del self._inflight[key]
        flight.future.set_result(value)
        return value

    def remove(self, key: str) -> bool:
        """Remove a single entry. Returns True if it existed."""
        with self._lock:
            return self._store.pop(key, None) is not None

    def remove_by_tags(self, tags: Iterable[str]) -> int:
        """Remove every entry sharing at least one of *tags*. Returns count removed."""
        tag_set = frozenset(tags)
        with self._lock:
            for tag in tag_set:
                self._tag_epochs[tag] = self._tag_epochs.get(tag, 0) + 1
            doomed = [k for k, e in self._store.items() if e.tags & tag_set]
            for k in doomed:
                del self._store[k]
            detached = [k for k, f in self._inflight.items() if f.tags & tag_set]
            for k in detached:
                del self._inflight[k]
        if doomed:
            logger.info("Cache invalidated %d entries for tags=%s", len(doomed), sorted(tag_set))
        return len(doomed)

    def clear(self) -> int:
        """Flush every entry. Returns number removed."""
        with self._lock:
            count = len(self._store)
            self._store.clear()
            self._generation += 1
            self._inflight.clear()
            return count

    def cleanup(self) -> int:
        """Evict expired entries, then the oldest entries above capacity.

        Returns the number of entries removed.
        """
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._store.items() if e.is_expired(now)]
            for k in expired:
                del self._store[k]
            removed = len(expired)
            while len(self._store) > self._max_entries:
                self._evict_oldest()
                removed += 1
        if removed:
            logger.debug("Cache cleanup removed %d entries", removed)
        return removed

    def stats(self) -> dict[str, Any]:
        """Return cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._store),
                "max_entries": self._max_entries,
                "default_ttl_seconds": self._default_ttl,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "coalesced": self._coalesced,
                "inflight": len(self._inflight),
                "hit_rate": round(self._hits / total, 3) if total else 0.0,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    # ── Internals (caller holds the lock) ───────────────

    def _lookup(self, key: str) -> Any:
        """Live value for *key*, or ``_MISSING``."""
        entry = self._store.get(key)
        if entry is None:
            self._misses += 1
            return _MISSING
        if entry.is_expired(self._clock()):
            del self._store[key]
            self._misses += 1
            return _MISSING
        entry.hit_count += 1
        self._hits += 1
        logger.debug("Cache HIT key=%s hits=%d", key, entry.hit_count)
        return entry.value

    def _put(self, key: str, value: Any, ttl: float | None, tags: frozenset[str]) -> None:
        if len(self._store) >= self._max_entries and key not in self._store:
            self._evict_oldest()
        now = self._clock()
        self._store[key] = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + (self._default_ttl if ttl is None else ttl),
            tags=tags,
        )

    def _evict_oldest(self) -> None:
        if not self._store:
            return
        oldest_key = min(self._store, key=lambda k: self._store[k].created_at)
        del self._store[oldest_key]
        self._evictions += 1


# ── Periodic cleanup ────────────────────────────────────


class CacheSweeper:
    """Background thread that calls ``CacheStore.cleanup`` on an interval."""

    def __init__(self, cache: CacheStore, interval: float):
        self._cache = cache
        self._interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="cache-sweeper", daemon=True)
        self._thread.start()
        logger.info("Cache sweeper started interval=%.0fs", self._interval)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=self._interval + 1)
        self._thread = None
        logger.info("Cache sweeper stopped")

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._cache.cleanup()
            except Exception:
                logger.exception("Cache cleanup failed -- will retry next interval")
