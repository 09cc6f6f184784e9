"""
Quota-aware client for the YouTube Data API v3.

Every cached call goes through ``TieredCache`` with a category picked from the
endpoint; search calls go through ``SearchFallbackCache`` so an exhausted
quota can still be answered from the last good result. The API key is added
only at request time and never becomes part of a cache key.
"""

import json
import logging
import re
import threading
import time
from collections import deque
from datetime import datetime
from typing import Any, Callable

import requests

from ..config import YOUTUBE_API_BASE_URL
from ..errors import YouTubeApiError, YouTubeConfigurationError, YouTubeQuotaExceededError
from ..storage import StoredChannel, StoredVideo, compute_vph
from .cache import TieredCache
from .search_cache import SearchFallbackCache, SearchResult

logger = logging.getLogger(__name__)

BATCH_SIZE = 50
QUOTA_REASONS = ("quotaexceeded", "quota exceeded", "youtube.quota", "ratelimitexceeded", "dailylimitexceeded")

ProgressCallback = Callable[[int, int | None], None]


def iso8601_duration_to_seconds(duration: str) -> int:
    match = re.match(r"P(?:(\d+)D)?T?(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?", duration or "")
    if not match:
        return 0
    days = int(match.group(1) or 0)
    hours = int(match.group(2) or 0)
    minutes = int(match.group(3) or 0)
    seconds = int(match.group(4) or 0)
    return days * 86400 + hours * 3600 + minutes * 60 + seconds


def parse_iso8601_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def chunked(lst, n):
    for i in range(0, len(lst), n):
        yield lst[i:i + n]


def canonical_params(params: dict[str, Any]) -> str:
    cleaned = {key: str(value) for key, value in params.items() if value is not None and key != "key"}
    return json.dumps(cleaned, sort_keys=True, separators=(",", ":"))


def cache_category_for(endpoint: str, params: dict[str, Any]) -> str:
    if endpoint == "channels":
        return "youtube_channel"
    if endpoint == "search":
        return "youtube_search"
    if endpoint == "videos" and params.get("chart") == "mostPopular":
        return "video_stats"
    return "youtube_videos"


def is_quota_response(status_code: int, text: str) -> bool:
    if status_code == 429:
        return True
    lowered = (text or "").lower()
    return status_code == 403 and any(reason in lowered for reason in QUOTA_REASONS)


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _thumbnail_url(thumbnails: dict) -> str | None:
    for size in ("medium", "high", "default"):
        url = (thumbnails.get(size) or {}).get("url")
        if url:
            return url
    return None


def parse_video_item(item: dict[str, Any], now: datetime | None = None) -> StoredVideo:
    snippet = item.get("snippet") or {}
    statistics = item.get("statistics") or {}
    details = item.get("contentDetails") or {}
    published_at = parse_iso8601_datetime(snippet.get("publishedAt"))
    view_count = _as_int(statistics.get("viewCount"))
    return StoredVideo(
        external_id=item.get("id"),
        channel_id=snippet.get("channelId", ""),
        title=snippet.get("title", ""),
        description=snippet.get("description", ""),
        thumbnail_url=_thumbnail_url(snippet.get("thumbnails") or {}),
        view_count=view_count,
        like_count=_as_int(statistics.get("likeCount")),
        comment_count=_as_int(statistics.get("commentCount")),
        published_at=published_at,
        duration_seconds=iso8601_duration_to_seconds(details.get("duration", "")),
        computed_vph=compute_vph(view_count, published_at, now),
    )


def parse_channel_item(item: dict[str, Any]) -> StoredChannel:
    snippet = item.get("snippet") or {}
    statistics = item.get("statistics") or {}
    details = item.get("contentDetails") or {}
    return StoredChannel(
        external_id=item.get("id"),
        title=snippet.get("title", ""),
        description=snippet.get("description", ""),
        thumbnail_url=_thumbnail_url(snippet.get("thumbnails") or {}),
        subscriber_count=_as_int(statistics.get("subscriberCount")),
        video_count=_as_int(statistics.get("videoCount")),
        view_count=_as_int(statistics.get("viewCount")),
        uploads_playlist_id=(details.get("relatedPlaylists") or {}).get("uploads"),
    )


class RateLimiter:
    """Sliding-window limiter for outgoing calls; blocks until a slot frees up."""

    def __init__(
        self,
        max_requests: int = 5,
        window_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._calls: deque[float] = deque()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        while True:
            with self._lock:
                now = self._clock()
                cutoff = now - self.window_seconds
                while self._calls and self._calls[0] <= cutoff:
                    self._calls.popleft()
                if len(self._calls) < self.max_requests:
                    self._calls.append(now)
                    return
                wait = self._calls[0] + self.window_seconds - now
            logger.debug(f"Rate limit reached, waiting {wait:.3f}s")
            self._sleep(max(wait, 0.001))


class YouTubeClient:
    def __init__(
        self,
        api_key: str | None,
        cache: TieredCache,
        search_cache: SearchFallbackCache | None = None,
        session: requests.Session | None = None,
        base_url: str = YOUTUBE_API_BASE_URL,
        rate_limiter: RateLimiter | None = None,
        timeout: int = 15,
    ):
        self._api_key = (api_key or "").strip()
        self._cache = cache
        self._session = session or requests.Session()
        self._base_url = base_url.rstrip("/")
        self._rate_limiter = rate_limiter
        self._timeout = timeout
        self.search_cache = search_cache or SearchFallbackCache(lambda params: self.request("search", params))

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _require_key(self) -> None:
        if not self._api_key:
            raise YouTubeConfigurationError()

    def request(self, endpoint: str, params: dict[str, Any]) -> dict[str, Any]:
        self._require_key()
        if self._rate_limiter is not None:
            self._rate_limiter.acquire()

        query = {key: value for key, value in params.items() if value is not None}
        query["key"] = self._api_key
        logger.info(f"Fetching from YouTube: {endpoint} {canonical_params(params)}")
        try:
            response = self._session.get(f"{self._base_url}/{endpoint}", params=query, timeout=self._timeout)
        except requests.RequestException as exc:
            raise YouTubeApiError(502, None, f"YouTube is temporarily unavailable: {exc}") from exc

        if 200 <= response.status_code < 300:
            return response.json()

        try:
            payload = response.json()
        except ValueError:
            payload = {"message": response.text}
        logger.error(f"YouTube API error {response.status_code} for {endpoint}: {payload}")
        if is_quota_response(response.status_code, response.text):
            raise YouTubeQuotaExceededError(response.status_code, payload)
        raise YouTubeApiError(response.status_code, payload)

    def fetch(self, endpoint: str, params: dict[str, Any]) -> dict[str, Any]:
        self._require_key()
        cache_key = f"{endpoint}:{canonical_params(params)}"
        category = cache_category_for(endpoint, params)
        return self._cache.get(cache_key, category, lambda: self.request(endpoint, params))

    def search(self, params: dict[str, Any], fresh: bool = False) -> SearchResult:
        self._require_key()
        return self.search_cache.search(params, fresh=fresh)

    def _call(self, endpoint: str, params: dict[str, Any], fresh: bool) -> dict[str, Any]:
        if fresh:
            payload = self.request(endpoint, params)
            self._cache.set(f"{endpoint}:{canonical_params(params)}", payload, cache_category_for(endpoint, params))
            return payload
        return self.fetch(endpoint, params)

    def get_channel(self, channel_id: str, fresh: bool = False) -> StoredChannel | None:
        payload = self._call(
            "channels",
            {"part": "snippet,statistics,contentDetails", "id": channel_id},
            fresh,
        )
        items = payload.get("items", [])
        if not items:
            return None
        return parse_channel_item(items[0])

    def hydrate_videos(self, video_ids: list[str], fresh: bool = False) -> list[StoredVideo]:
        hydrated: list[StoredVideo] = []
        for batch in chunked(video_ids, BATCH_SIZE):
            payload = self._call(
                "videos",
                {"part": "snippet,statistics,contentDetails", "id": ",".join(batch)},
                fresh,
            )
            hydrated.extend(parse_video_item(item) for item in payload.get("items", []))
        return hydrated

    def get_recent_videos(self, channel_id: str, max_results: int, fresh: bool = False) -> list[StoredVideo]:
        ids: list[str] = []
        page_token = None
        while len(ids) < max_results:
            params = {
                "part": "snippet",
                "channelId": channel_id,
                "maxResults": min(BATCH_SIZE, max_results - len(ids)),
                "order": "date",
                "type": "video",
                "pageToken": page_token,
            }
            result = self.search(params, fresh=fresh)
            if result.warning:
                logger.warning(f"Channel {channel_id}: {result.warning}")
            for item in result.data.get("items", []):
                video_id = (item.get("id") or {}).get("videoId")
                if video_id and video_id not in ids:
                    ids.append(video_id)
                    if len(ids) >= max_results:
                        break
            page_token = result.data.get("nextPageToken")
            if not page_token:
                break
        return self.hydrate_videos(ids, fresh=fresh)

    def get_all_videos(
        self,
        channel_id: str,
        progress: ProgressCallback | None = None,
        fresh: bool = False,
    ) -> list[StoredVideo]:
        channel = self.get_channel(channel_id)
        if channel is None or not channel.uploads_playlist_id:
            return []

        total = channel.video_count or None
        ids: list[str] = []
        page_token = None
        while True:
            payload = self._call(
                "playlistItems",
                {
                    "part": "contentDetails",
                    "playlistId": channel.uploads_playlist_id,
                    "maxResults": BATCH_SIZE,
                    "pageToken": page_token,
                },
                fresh,
            )
            for item in payload.get("items", []):
                video_id = (item.get("contentDetails") or {}).get("videoId")
                if video_id:
                    ids.append(video_id)
            if progress is not None:
                progress(len(ids), total)
            page_token = payload.get("nextPageToken")
            if not page_token:
                break

        return self.hydrate_videos(ids, fresh=fresh)
