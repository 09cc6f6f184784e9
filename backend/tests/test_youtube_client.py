import json
from datetime import datetime, timedelta, timezone

import pytest
import requests

from backend.app.errors import YouTubeApiError, YouTubeConfigurationError, YouTubeQuotaExceededError
from backend.app.services.cache import TieredCache
from backend.app.services.youtube_client import (
    RateLimiter,
    YouTubeClient,
    cache_category_for,
    canonical_params,
    iso8601_duration_to_seconds,
    is_quota_response,
    parse_video_item,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload) if payload is not None else ""

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def get(self, url, params=None, timeout=None):
        endpoint = url.rsplit("/", 1)[-1]
        self.calls.append((endpoint, dict(params or {})))
        handler = self.routes[endpoint]
        return handler(params) if callable(handler) else handler


def make_api_video(video_id: str, channel_id: str = "UC1", hours_ago: int = 10, views: int = 1000) -> dict:
    published_at = (NOW - timedelta(hours=hours_ago)).isoformat().replace("+00:00", "Z")
    return {
        "id": video_id,
        "snippet": {
            "channelId": channel_id,
            "title": f"Video {video_id}",
            "publishedAt": published_at,
            "thumbnails": {"high": {"url": f"https://img/{video_id}.jpg"}},
        },
        "statistics": {"viewCount": str(views), "likeCount": "10", "commentCount": "2"},
        "contentDetails": {"duration": "PT3M"},
    }


def videos_route(params):
    ids = params["id"].split(",")
    return FakeResponse(200, {"items": [make_api_video(video_id) for video_id in ids]})


def channel_route(uploads: str | None = "UU1", video_count: int = 3):
    details = {"relatedPlaylists": {"uploads": uploads}} if uploads else {}
    return FakeResponse(
        200,
        {
            "items": [
                {
                    "id": "UC1",
                    "snippet": {"title": "Channel One"},
                    "statistics": {"subscriberCount": "500", "videoCount": str(video_count), "viewCount": "9000"},
                    "contentDetails": details,
                }
            ]
        },
    )


def make_client(routes, api_key: str = "test-key") -> tuple[YouTubeClient, FakeSession]:
    session = FakeSession(routes)
    return YouTubeClient(api_key, TieredCache(), session=session), session


def test_iso8601_duration_to_seconds():
    assert iso8601_duration_to_seconds("PT1H2M3S") == 3723
    assert iso8601_duration_to_seconds("PT45S") == 45
    assert iso8601_duration_to_seconds("P1DT1H") == 90000
    assert iso8601_duration_to_seconds("") == 0


def test_missing_key_fails_before_any_request():
    client, session = make_client({}, api_key="")
    assert not client.configured
    with pytest.raises(YouTubeConfigurationError):
        client.fetch("channels", {"id": "UC1"})
    with pytest.raises(YouTubeConfigurationError):
        client.search({"q": "x"})
    assert session.calls == []


def test_fetch_is_cached_and_key_stays_out_of_cache():
    client, session = make_client({"channels": channel_route()})

    first = client.fetch("channels", {"part": "snippet", "id": "UC1"})
    second = client.fetch("channels", {"id": "UC1", "part": "snippet"})

    assert first == second
    assert len(session.calls) == 1
    assert session.calls[0][1]["key"] == "test-key"
    assert all("test-key" not in key for key in client._cache.stats()["keys"])


def test_quota_and_error_mapping():
    quota = {"error": {"errors": [{"reason": "quotaExceeded"}]}}
    client, _ = make_client({"videos": FakeResponse(403, quota)})
    with pytest.raises(YouTubeQuotaExceededError):
        client.request("videos", {"id": "a"})

    client, _ = make_client({"videos": FakeResponse(429, {"error": "slow down"})})
    with pytest.raises(YouTubeQuotaExceededError):
        client.request("videos", {"id": "a"})

    client, _ = make_client({"videos": FakeResponse(403, {"error": {"errors": [{"reason": "forbidden"}]}})})
    with pytest.raises(YouTubeApiError) as exc:
        client.request("videos", {"id": "a"})
    assert not isinstance(exc.value, YouTubeQuotaExceededError)
    assert exc.value.status_code == 403


def test_transport_error_becomes_bad_gateway():
    def boom(_params):
        raise requests.ConnectionError("connection reset")

    client, _ = make_client({"videos": boom})
    with pytest.raises(YouTubeApiError) as exc:
        client.request("videos", {"id": "a"})
    assert exc.value.status_code == 502


def test_cache_category_for_endpoints():
    assert cache_category_for("channels", {}) == "youtube_channel"
    assert cache_category_for("search", {"q": "x"}) == "youtube_search"
    assert cache_category_for("videos", {"chart": "mostPopular"}) == "video_stats"
    assert cache_category_for("videos", {"id": "a"}) == "youtube_videos"
    assert cache_category_for("playlistItems", {}) == "youtube_videos"


def test_canonical_params_is_order_independent():
    assert canonical_params({"b": 1, "a": 2, "key": "x"}) == canonical_params({"a": 2, "b": 1})


def test_is_quota_response():
    assert is_quota_response(429, "")
    assert is_quota_response(403, '{"reason": "quotaExceeded"}')
    assert not is_quota_response(403, '{"reason": "forbidden"}')
    assert not is_quota_response(500, "quotaExceeded")


def test_parse_video_item_computes_vph():
    video = parse_video_item(make_api_video("a", hours_ago=10, views=1000), now=NOW)
    assert video.external_id == "a"
    assert video.channel_id == "UC1"
    assert video.duration_seconds == 180
    assert video.computed_vph == 100
    assert video.like_count == 10
    assert video.thumbnail_url == "https://img/a.jpg"


def test_get_recent_videos_stops_at_limit():
    search_payload = {"items": [{"id": {"videoId": vid}} for vid in ("a", "b", "c")]}
    client, session = make_client({"search": FakeResponse(200, search_payload), "videos": videos_route})

    videos = client.get_recent_videos("UC1", 2)

    assert [video.external_id for video in videos] == ["a", "b"]
    search_params = session.calls[0][1]
    assert search_params["order"] == "date"
    assert search_params["channelId"] == "UC1"
    assert session.calls[1][1]["id"] == "a,b"


def test_get_all_videos_pages_uploads_and_reports_progress():
    pages = {
        None: {"items": [{"contentDetails": {"videoId": "a"}}, {"contentDetails": {"videoId": "b"}}], "nextPageToken": "p2"},
        "p2": {"items": [{"contentDetails": {"videoId": "c"}}]},
    }

    def playlist_route(params):
        assert params["playlistId"] == "UU1"
        return FakeResponse(200, pages[params.get("pageToken")])

    client, _ = make_client({"channels": channel_route(), "playlistItems": playlist_route, "videos": videos_route})
    progress = []

    videos = client.get_all_videos("UC1", progress=lambda current, total: progress.append((current, total)))

    assert [video.external_id for video in videos] == ["a", "b", "c"]
    assert progress == [(2, 3), (3, 3)]


def test_get_all_videos_without_uploads_playlist_is_empty():
    client, session = make_client({"channels": channel_route(uploads=None)})
    assert client.get_all_videos("UC1") == []
    assert [call[0] for call in session.calls] == ["channels"]


def test_search_falls_back_when_quota_runs_out():
    responses = [FakeResponse(200, {"items": [{"id": {"videoId": "a"}}]}), FakeResponse(403, {"reason": "quotaExceeded"})]
    client, _ = make_client({"search": lambda _params: responses.pop(0)})

    live = client.search({"q": "lofi"})
    fallback = client.search({"q": "lofi"}, fresh=True)

    assert live.source == "live"
    assert fallback.source == "fallback"
    assert fallback.data == live.data
    assert fallback.warning


def test_rate_limiter_waits_for_window():
    clock = {"now": 0.0}
    sleeps = []

    def sleep(seconds):
        sleeps.append(seconds)
        clock["now"] += seconds

    limiter = RateLimiter(max_requests=2, window_seconds=1.0, clock=lambda: clock["now"], sleep=sleep)
    for _ in range(3):
        limiter.acquire()

    assert sleeps == [1.0]
