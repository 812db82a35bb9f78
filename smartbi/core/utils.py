"""
Small shared helpers: wall-clock timing and stable digests for cache keys.
"""
from __future__ import annotations

import hashlib
import json
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator


@dataclass
class Stopwatch:
    started: float
    elapsed_ms: int = 0


@contextmanager
def stopwatch() -> Iterator[Stopwatch]:
    """Measure the enclosed block; ``elapsed_ms`` is set on exit, also on error."""
    sw = Stopwatch(started=time.perf_counter())
    try:
        yield sw
    finally:
        sw.elapsed_ms = int((time.perf_counter() - sw.started) * 1000)


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def digest(value: Any) -> str:
    """sha256 hex of *value*: strings as-is, anything else as canonical JSON."""
    raw = value if isinstance(value, str) else canonical_json(value)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
