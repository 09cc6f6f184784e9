"""
Long-lived cache in front of the search endpoint.

Search is the most quota-hungry call, so its results are kept far longer
than ordinary metadata. When a live search fails because the quota is gone
(or the provider is down), the last known-good result is served with a
warning instead of an error.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

from ..errors import SearchUnavailableError, YouTubeApiError, YouTubeQuotaExceededError
from .cache import CacheCategoryConfig, TieredCache

logger = logging.getLogger(__name__)

SEARCH_FALLBACK_CATEGORY = "search_fallback"
SEARCH_FALLBACK_FRESH_SECONDS = 30 * 60
SEARCH_FALLBACK_STALE_SECONDS = 8 * 60 * 60


@dataclass
class SearchResult:
    data: dict[str, Any]
    source: str  # fresh | stale | live | fallback
    warning: str | None = None

    @property
    def from_cache(self) -> bool:
        return self.source != "live"


def search_cache_key(params: dict[str, Any]) -> str:
    cleaned = {key: str(value) for key, value in params.items() if value is not None and key != "key"}
    return "search:" + json.dumps(cleaned, sort_keys=True, separators=(",", ":"))


def is_fallback_eligible(exc: Exception) -> bool:
    if isinstance(exc, YouTubeQuotaExceededError):
        return True
    return isinstance(exc, YouTubeApiError) and exc.status_code >= 500


class SearchFallbackCache:
    def __init__(
        self,
        fetch_live: Callable[[dict[str, Any]], dict[str, Any]],
        cache: TieredCache | None = None,
        category: str = SEARCH_FALLBACK_CATEGORY,
    ):
        self._fetch_live = fetch_live
        self._category = category
        self._cache = cache or TieredCache(
            {category: CacheCategoryConfig(SEARCH_FALLBACK_FRESH_SECONDS, SEARCH_FALLBACK_STALE_SECONDS)}
        )

    @property
    def cache(self) -> TieredCache:
        return self._cache

    def search(self, params: dict[str, Any], fresh: bool = False) -> SearchResult:
        key = search_cache_key(params)
        config = self._cache.category(self._category)
        entry = self._cache.peek(key)
        now = self._cache.now()

        if entry is not None and not fresh:
            if now < entry.fresh_until:
                return SearchResult(entry.data, "fresh")
            if now < entry.stored_at + config.stale_ttl:
                self._cache.get(key, self._category, lambda: self._fetch_live(params))
                return SearchResult(entry.data, "stale")

        try:
            data = self._fetch_live(params)
        except YouTubeApiError as exc:
            if not is_fallback_eligible(exc):
                raise
            entry = self._cache.peek(key)
            if entry is None:
                logger.error(f"Search failed with no cached fallback: {exc}")
                raise SearchUnavailableError() from exc
            age_hours = round((now - entry.stored_at) / 3600, 1)
            warning = f"Serving cached search results ({age_hours}h old): {exc}"
            logger.warning(warning)
            return SearchResult(entry.data, "fallback", warning)

        self._cache.set(key, data, self._category)
        return SearchResult(data, "live")
