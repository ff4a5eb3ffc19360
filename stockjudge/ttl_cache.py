"""
Fetch-through TTL cache for collaborator responses (Yahoo quotes, news, candles).

Built once by the application wiring and handed to clients by construction;
the pipeline itself never reaches for a module-level cache. Keys are built
with `cache_key(kind, *parts)` so one instance can hold every endpoint.
Hits and misses are reported to the run's PipelineMetrics when one is given.
"""

from __future__ import annotations
import time
import threading
from typing import Any, Callable, Dict, Optional, Tuple

from stockjudge.pipeline_metrics import PipelineMetrics


def cache_key(kind: str, *parts: Any) -> str:
    return ":".join([kind, *(str(p) for p in parts)])


class TTLCache:
    """Thread-safe in-memory cache with per-key TTL (seconds)."""

    def __init__(self, default_ttl: int = 300, *, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self._default_ttl = default_ttl
        self._clock = clock

    def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if now >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        now = self._clock()
        with self._lock:
            self._purge(now)
            self._entries[key] = (value, now + (ttl or self._default_ttl))

    def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Any],
        *,
        ttl: Optional[int] = None,
        metrics: Optional[PipelineMetrics] = None,
    ) -> Any:
        """Return the cached value or call `fetch` and keep a non-empty result.

        Concurrent misses on one key may both fetch; the later write wins.
        """
        hit = self.get(key)
        if hit is not None:
            if metrics:
                metrics.inc_cache_hit()
            return hit
        if metrics:
            metrics.inc_cache_miss()
        value = fetch()
        if value:
            self.set(key, value, ttl=ttl)
        return value

    def _purge(self, now: float) -> None:
        # caller holds the lock
        expired = [k for k, (_, exp) in self._entries.items() if now >= exp]
        for k in expired:
            del self._entries[k]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)
