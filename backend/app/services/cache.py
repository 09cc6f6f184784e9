"""
In-process response cache with fresh and stale windows.

A hit inside the fresh window is served as-is. A hit inside the stale window
is served immediately while a background thread refreshes the entry. Past the
stale window the producer runs inline; if it fails, whatever is still cached
is returned as a last resort.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from ..config import CACHE_CATEGORY_TTLS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheCategoryConfig:
    fresh_ttl: float
    stale_ttl: float

    def __post_init__(self):
        if self.fresh_ttl < 0:
            raise ValueError("fresh_ttl must not be negative")
        if self.stale_ttl < self.fresh_ttl:
            raise ValueError("stale_ttl must be >= fresh_ttl")


@dataclass
class CacheEntry:
    data: Any
    stored_at: float
    fresh_until: float


def default_categories() -> dict[str, CacheCategoryConfig]:
    return {
        name: CacheCategoryConfig(fresh_ttl=fresh, stale_ttl=stale)
        for name, (fresh, stale) in CACHE_CATEGORY_TTLS.items()
    }


class TieredCache:
    def __init__(
        self,
        categories: dict[str, CacheCategoryConfig] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._categories = dict(categories) if categories is not None else default_categories()
        self._categories.setdefault("default", CacheCategoryConfig(5 * 60, 15 * 60))
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._refreshing: dict[str, threading.Thread] = {}

    def now(self) -> float:
        return self._clock()

    def category(self, name: str) -> CacheCategoryConfig:
        return self._categories.get(name) or self._categories["default"]

    def get(self, key: str, category: str, produce: Callable[[], Any]) -> Any:
        config = self.category(category)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)

        if entry is not None and now < entry.fresh_until:
            return entry.data

        if entry is not None and now < entry.stored_at + config.stale_ttl:
            self._revalidate_in_background(key, category, produce)
            return entry.data

        return self._fetch_and_store(key, category, produce)

    def set(self, key: str, data: Any, category: str = "default") -> None:
        config = self.category(category)
        now = self._clock()
        with self._lock:
            self._entries[key] = CacheEntry(data=data, stored_at=now, fresh_until=now + config.fresh_ttl)

    def peek(self, key: str) -> CacheEntry | None:
        with self._lock:
            return self._entries.get(key)

    def invalidate(self, key_pattern: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key_pattern in key]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {"size": len(self._entries), "keys": list(self._entries)}

    def wait_for_background(self, timeout: float | None = None) -> None:
        with self._lock:
            workers = list(self._refreshing.values())
        for worker in workers:
            worker.join(timeout)

    def _fetch_and_store(self, key: str, category: str, produce: Callable[[], Any]) -> Any:
        try:
            data = produce()
        except Exception as exc:
            entry = self.peek(key)
            if entry is not None:
                logger.warning(f"Fetch failed for {key}, returning stale data: {exc}")
                return entry.data
            raise
        self.set(key, data, category)
        return data

    def _revalidate_in_background(self, key: str, category: str, produce: Callable[[], Any]) -> None:
        with self._lock:
            if key in self._refreshing:
                return
            worker = threading.Thread(
                target=self._refresh,
                args=(key, category, produce),
                name=f"cache-refresh:{key}",
                daemon=True,
            )
            self._refreshing[key] = worker
        worker.start()

    def _refresh(self, key: str, category: str, produce: Callable[[], Any]) -> None:
        try:
            self.set(key, produce(), category)
        except Exception as exc:
            logger.warning(f"Background revalidation failed for {key}: {exc}")
        finally:
            with self._lock:
                self._refreshing.pop(key, None)
