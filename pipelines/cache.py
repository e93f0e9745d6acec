"""Keyed result cache with cost accounting for expensive external operations."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import Any, TypeVar

from app.observability.metrics import metrics

logger = logging.getLogger("pipelines.cache")

_T = TypeVar("_T")


class BudgetExceededError(RuntimeError):
    """Raised when running an operation would push spend past the configured budget."""

    def __init__(self, message: str, code: str = "BUDGET_EXCEEDED") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class _CacheEntry:
    value: Any
    cost: float
    expires_at: float | None


class ContentCache:
    """Memoizes operation results by key and tracks what they cost.

    Unbounded with no expiry by default, which suits a single run. Long-lived
    callers can pass ``max_entries`` (least recently used entries are evicted)
    and ``ttl_seconds``.
    """

    def __init__(
        self,
        *,
        max_entries: int | None = None,
        ttl_seconds: float | None = None,
        budget_limit: float | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._budget_limit = budget_limit
        self._clock = clock or time.monotonic
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._budget_used = 0.0
        self._savings = 0.0
        self._lock = Lock()

    @property
    def stats(self) -> dict[str, int]:
        with self._lock:
            return {"hits": self._hits, "misses": self._misses, "entries": len(self._entries)}

    @property
    def budget_used(self) -> float:
        return round(self._budget_used, 6)

    @property
    def savings(self) -> float:
        return round(self._savings, 6)

    def cached_operation(self, key: str, cost_estimate: float, operation: Callable[[], _T]) -> _T:
        """Return the cached value for ``key`` or run ``operation`` once and store its result.

        Failures propagate and are not cached; only successful runs are charged.
        """
        namespace = key.split(":", 1)[0]
        with self._lock:
            entry = self._live_entry(key)
            if entry is not None:
                self._hits += 1
                self._savings += entry.cost
                self._entries.move_to_end(key)
            else:
                self._misses += 1
                if self._budget_limit is not None and self._budget_used + cost_estimate > self._budget_limit:
                    raise BudgetExceededError(
                        f"Operation {namespace} would exceed budget "
                        f"({self._budget_used:.3f} + {cost_estimate:.3f} > {self._budget_limit:.3f})."
                    )
        if entry is not None:
            metrics.increment("cache.hit", tags={"namespace": namespace})
            logger.debug("cache.hit", extra={"key": key})
            return entry.value

        metrics.increment("cache.miss", tags={"namespace": namespace})
        value = operation()
        expires_at = self._clock() + self._ttl if self._ttl is not None else None
        with self._lock:
            self._entries[key] = _CacheEntry(value=value, cost=cost_estimate, expires_at=expires_at)
            self._entries.move_to_end(key)
            self._budget_used += cost_estimate
            if self._max_entries is not None:
                while len(self._entries) > self._max_entries:
                    evicted, _ = self._entries.popitem(last=False)
                    logger.debug("cache.evicted", extra={"key": evicted})
        return value

    def _live_entry(self, key: str) -> _CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry
