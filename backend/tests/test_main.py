import asyncio
import json
from datetime import date, datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from starlette.requests import Request

import backend.main as main_module
from backend.app.config import Settings
from backend.app.errors import SearchUnavailableError, YouTubeQuotaExceededError
from backend.app.services.cache import CacheCategoryConfig, TieredCache
from backend.app.services.search_cache import SearchFallbackCache
from backend.app.storage import (
    ChannelSyncState,
    EntityKind,
    InMemoryVideoRepository,
    MetricsSnapshot,
    StoredChannel,
    StoredVideo,
    SyncStatus,
    utcnow,
)
from backend.main import (
    InvalidateRequest,
    SyncRequest,
    TrackChannelRequest,
    build_services,
    cron_sync,
    health,
    invalidate_cache,
    manual_sync,
    metric_trend,
    stored_videos,
    sync_status,
    top_videos,
    track_channel,
    video_outlier,
    youtube_channel,
    youtube_search,
)

SECRET = "s3cret"


def make_request(authorization: str | None = None, ip: str = "127.0.0.1") -> Request:
    headers = [(b"authorization", authorization.encode("utf-8"))] if authorization else []
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/",
            "headers": headers,
            "client": (ip, 8000),
            "query_string": b"",
            "server": ("test", 80),
            "scheme": "http",
            "http_version": "1.1",
        }
    )


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload)

    def json(self):
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


def make_api_video(video_id: str, hours_ago: int, views: int) -> dict:
    published_at = (datetime.now(timezone.utc) - timedelta(hours=hours_ago)).isoformat().replace("+00:00", "Z")
    return {
        "id": video_id,
        "snippet": {"channelId": "UC_TEST", "title": f"Video {video_id}", "publishedAt": published_at},
        "statistics": {"viewCount": str(views), "likeCount": "5", "commentCount": "1"},
        "contentDetails": {"duration": "PT4M"},
    }


API_VIDEOS = {
    "a": make_api_video("a", 5, 5000),
    "b": make_api_video("b", 30, 1200),
    "c": make_api_video("c", 60, 800),
}


def default_routes(uploads: str | None = "UU_TEST") -> dict:
    channel = {
        "id": "UC_TEST",
        "snippet": {"title": "Test Channel"},
        "statistics": {"subscriberCount": "100", "videoCount": "3", "viewCount": "7000"},
        "contentDetails": {"relatedPlaylists": {"uploads": uploads}} if uploads else {},
    }
    return {
        "channels": FakeResponse(200, {"items": [channel]}),
        "search": FakeResponse(200, {"items": [{"id": {"videoId": vid}} for vid in API_VIDEOS]}),
        "playlistItems": FakeResponse(200, {"items": [{"contentDetails": {"videoId": vid}} for vid in API_VIDEOS]}),
        "videos": lambda params: FakeResponse(
            200, {"items": [API_VIDEOS[vid] for vid in params["id"].split(",") if vid in API_VIDEOS]}
        ),
    }


@pytest.fixture
def services(monkeypatch):
    settings = Settings(youtube_api_key="test-key", cron_secret=SECRET, sync_batch_delay_seconds=0)
    session = FakeSession(default_routes())
    built = build_services(settings, repository=InMemoryVideoRepository(), session=session)
    built.session = session
    monkeypatch.setattr(main_module, "SERVICES", built)
    yield built
    built.cache.wait_for_background(timeout=5)


def seed_videos(repository: InMemoryVideoRepository) -> None:
    now = utcnow()
    repository.upsert_videos(
        [
            StoredVideo(external_id=f"s{n}", channel_id="UC_TEST", view_count=views, published_at=now - timedelta(days=n))
            for n, views in enumerate([1000, 100, 200, 300], start=1)
        ]
    )


def test_health():
    assert health() == {"ok": True}


def test_sync_request_accepts_camel_case_and_field_names():
    camel = SyncRequest.model_validate({"channelIds": ["a"], "videosPerChannel": 5, "fullSync": False})
    snake = SyncRequest(channel_ids=["a"], videos_per_channel=5)
    assert camel.channel_ids == snake.channel_ids == ["a"]
    assert camel.videos_per_channel == 5


def test_manual_sync_rejects_multi_channel_full_sync(services):
    for payload in (
        SyncRequest(channel_ids=["a", "b"], full_sync=True, videos_per_channel=5),
        SyncRequest(channel_ids=["a", "b"]),
    ):
        with pytest.raises(HTTPException) as exc:
            manual_sync(payload)
        assert exc.value.status_code == 400
    assert services.session.calls == []


def test_manual_sync_rejects_empty_request(services):
    with pytest.raises(HTTPException) as exc:
        manual_sync(SyncRequest())
    assert exc.value.status_code == 400


def test_manual_sync_conflicts_with_running_sync(services):
    services.repository.save_sync_state(
        ChannelSyncState(channel_id="UC_TEST", status=SyncStatus.FULL_SYNCING, status_changed_at=utcnow())
    )
    with pytest.raises(HTTPException) as exc:
        manual_sync(SyncRequest(channel_ids=["UC_TEST"]))
    assert exc.value.status_code == 409
    assert services.session.calls == []


def test_manual_incremental_sync(services):
    response = manual_sync(SyncRequest(channel_ids=["UC_TEST"], videos_per_channel=2))

    assert response["success"] is True
    assert response["totalVideos"] == 2
    assert response["fromApi"] == 2
    assert response["errors"] == []
    assert services.repository.count_videos("UC_TEST") == 2
    assert services.repository.get_channel("UC_TEST").title == "Test Channel"


def test_manual_full_sync(services):
    response = manual_sync(SyncRequest(channel_ids=["UC_TEST"]))

    assert response["fullSync"] is True
    assert response["videoCount"] == 3
    state = services.repository.get_sync_state("UC_TEST")
    assert state.full_sync_completed
    assert state.status == SyncStatus.IDLE


def test_manual_full_sync_of_empty_channel(services):
    services.session.routes["channels"] = default_routes(uploads=None)["channels"]

    response = manual_sync(SyncRequest(channel_ids=["UC_TEST"], full_sync=True))

    assert response.status_code == 500
    body = json.loads(response.body)
    assert body["error"] == "No videos found for this channel"


def test_cron_sync_requires_secret(services):
    for header in (None, "Bearer nope", SECRET):
        with pytest.raises(HTTPException) as exc:
            cron_sync(make_request(header))
        assert exc.value.status_code == 401


def test_cron_sync_runs_background_sync(services):
    services.repository.track_channel("owner-1", "UC_TEST")

    response = cron_sync(make_request(f"Bearer {SECRET}"))

    assert response["success"] is True
    assert response["channels"] == 1
    assert response["syncedVideos"] == 3
    assert response["snapshotsRecorded"] is True
    assert services.repository.list_snapshots("owner-1", EntityKind.CHANNEL, "UC_TEST")


def test_stored_videos_and_status(services):
    seed_videos(services.repository)

    response = stored_videos("UC_TEST, other", limit=2)
    assert [item["id"] for item in response["items"]] == ["s1", "s2"]
    assert response["meta"]["channel_ids"] == ["UC_TEST", "other"]

    status = sync_status("UC_TEST")
    assert status["status"] == "idle"
    assert status["storedVideoCount"] == 4

    with pytest.raises(HTTPException) as exc:
        stored_videos(" , ")
    assert exc.value.status_code == 400


def test_video_outlier(services):
    seed_videos(services.repository)

    response = video_outlier("s1")
    assert response["score"] == 100
    assert response["medianViews"] == 200
    assert response["performanceLevel"] == "exceptional"
    assert response["siblingCount"] == 3

    with pytest.raises(HTTPException) as exc:
        video_outlier("missing")
    assert exc.value.status_code == 404


def test_metric_trend(services):
    seed_videos(services.repository)
    services.repository.upsert_snapshot(
        MetricsSnapshot("owner-1", "s1", EntityKind.VIDEO, {"view_count": 800}, date.today() - timedelta(days=1))
    )

    response = metric_trend("video", "s1", owner_id="owner-1", metric="view_count")
    assert response["current"] == 1000
    assert response["previous"] == 800
    assert response["percentageChange"] == 25.0
    assert response["hasPriorData"] is True

    for kind, metric in (("playlist", "view_count"), ("video", "total_likes")):
        with pytest.raises(HTTPException) as exc:
            metric_trend(kind, "s1", owner_id="owner-1", metric=metric)
        assert exc.value.status_code == 400


def test_channel_likes_trend_sums_stored_videos(services):
    services.repository.upsert_channel(StoredChannel(external_id="c1", view_count=9000))
    services.repository.upsert_videos(
        [
            StoredVideo(external_id="l1", channel_id="c1", view_count=4000, like_count=300),
            StoredVideo(external_id="l2", channel_id="c1", view_count=2000, like_count=200),
        ]
    )
    services.repository.upsert_snapshot(
        MetricsSnapshot("owner-1", "c1", EntityKind.CHANNEL, {"total_likes": 400}, date.today() - timedelta(days=1))
    )

    response = metric_trend("channel", "c1", owner_id="owner-1", metric="total_likes")

    assert response["current"] == 500
    assert response["previous"] == 400
    assert response["percentageChange"] == 25.0
    assert response["hasPriorData"] is True


def test_youtube_channel(services):
    response = youtube_channel("UC_TEST")
    assert response["title"] == "Test Channel"
    assert response["subscribers"] == 100

    services.cache.clear()
    services.session.routes["channels"] = FakeResponse(200, {"items": []})
    with pytest.raises(HTTPException) as exc:
        youtube_channel("UC_TEST")
    assert exc.value.status_code == 404


def test_youtube_search_falls_back_to_cached_results(services):
    clock = {"now": 1_000_000.0}
    fallback_cache = TieredCache(
        {"search_fallback": CacheCategoryConfig(30 * 60, 8 * 3600)}, clock=lambda: clock["now"]
    )
    services.client.search_cache = SearchFallbackCache(
        lambda params: services.client.request("search", params), cache=fallback_cache
    )

    live = youtube_search(q="lofi")
    assert live["meta"]["source"] == "live"
    assert len(live["items"]) == 3

    clock["now"] += 9 * 3600
    services.session.routes["search"] = FakeResponse(403, {"error": {"errors": [{"reason": "quotaExceeded"}]}})
    fallback = youtube_search(q="lofi")

    assert fallback["meta"]["source"] == "fallback"
    assert fallback["meta"]["warning"]
    assert fallback["items"] == live["items"]


def test_youtube_search_without_cache_is_unavailable(services):
    services.session.routes["search"] = FakeResponse(403, {"error": {"errors": [{"reason": "quotaExceeded"}]}})

    with pytest.raises(SearchUnavailableError) as exc:
        youtube_search(q="nothing cached")

    response = asyncio.run(main_module.search_unavailable_handler(make_request(), exc.value))
    assert response.status_code == 503
    assert json.loads(response.body)["error_code"] == "search_unavailable"


def test_youtube_search_requires_query(services):
    with pytest.raises(HTTPException) as exc:
        youtube_search()
    assert exc.value.status_code == 400


def test_quota_handler_shape():
    response = asyncio.run(main_module.youtube_quota_exceeded_handler(make_request(), YouTubeQuotaExceededError()))
    assert response.status_code == 429
    assert json.loads(response.body)["error_code"] == "youtube_quota_exhausted"


def test_invalidate_cache(services):
    youtube_channel("UC_TEST")

    with pytest.raises(HTTPException) as exc:
        invalidate_cache(InvalidateRequest(pattern="channels"), make_request())
    assert exc.value.status_code == 401

    response = invalidate_cache(InvalidateRequest(pattern="channels"), make_request(f"Bearer {SECRET}"))
    assert response == {"cleared": False, "removed": 1}
    assert services.cache.stats()["size"] == 0


def test_top_videos(services):
    seed_videos(services.repository)

    response = top_videos("UC_TEST", limit=2)

    assert [item["id"] for item in response["items"]] == ["s1", "s4"]
    assert response["meta"]["candidates"] == 4
    assert response["items"][0]["performanceScore"] > response["items"][1]["performanceScore"]


def test_track_channel_feeds_background_sync(services):
    response = track_channel(TrackChannelRequest.model_validate({"ownerId": "owner-1", "channelId": "UC_TEST"}))

    assert response["tracked"] is True
    assert services.sync.get_channels_needing_sync() == ["UC_TEST"]

    with pytest.raises(HTTPException) as exc:
        track_channel(TrackChannelRequest(owner_id=" ", channel_id="UC_TEST"))
    assert exc.value.status_code == 400
