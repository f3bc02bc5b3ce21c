"""
Time-to-live cache for process-wide lookups (e.g. registry reachability).

The cache is an explicit object injected where it is used, so tests can
reset it instead of patching module globals.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    fetched_at: float


class TTLCache(Generic[T]):
    """Single-value cache refreshed by ``refresh`` once ``ttl`` seconds pass."""

    def __init__(
        self,
        refresh: Callable[[], T],
        ttl: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._refresh = refresh
        self.ttl = ttl
        self._clock = clock
        self._entry: Optional[CacheEntry[T]] = None
        self._lock = threading.Lock()

    def get(self) -> T:
        with self._lock:
            now = self._clock()
            if self._entry is None or now - self._entry.fetched_at >= self.ttl:
                self._entry = CacheEntry(value=self._refresh(), fetched_at=now)
            return self._entry.value

    @property
    def fetched_at(self) -> Optional[float]:
        return self._entry.fetched_at if self._entry else None

    def reset(self) -> None:
        with self._lock:
            self._entry = None
