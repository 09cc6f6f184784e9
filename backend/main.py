import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import requests
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

try:
    from backend.app import config, errors, storage
    from backend.app.services import metrics_history, outliers, scheduler, video_sync
    from backend.app.services.cache import TieredCache
    from backend.app.services.youtube_client import RateLimiter, YouTubeClient
except ModuleNotFoundError:
    from app import config, errors, storage
    from app.services import metrics_history, outliers, scheduler, video_sync
    from app.services.cache import TieredCache
    from app.services.youtube_client import RateLimiter, YouTubeClient

logger = logging.getLogger(__name__)


# ---------------------------
# Composition
# ---------------------------

@dataclass
class Services:
    settings: config.Settings
    repository: storage.VideoRepository
    cache: TieredCache
    client: YouTubeClient
    sync: video_sync.VideoSyncService
    recorder: metrics_history.MetricsRecorder
    scheduler: scheduler.BackgroundSyncScheduler


def build_services(
    settings: config.Settings,
    repository: storage.VideoRepository | None = None,
    session: requests.Session | None = None,
) -> Services:
    repository = repository or storage.InMemoryVideoRepository(settings.storage_file)
    cache = TieredCache()
    client = YouTubeClient(
        settings.youtube_api_key,
        cache,
        session=session,
        rate_limiter=RateLimiter(max_requests=settings.rate_limit_per_second, window_seconds=1.0),
    )
    sync = video_sync.VideoSyncService(
        client,
        repository,
        max_workers=settings.sync_max_workers,
        stale_after_minutes=settings.sync_stale_minutes,
    )
    recorder = metrics_history.MetricsRecorder(repository)
    background = scheduler.BackgroundSyncScheduler(
        sync,
        repository=repository,
        recorder=recorder,
        videos_per_channel=settings.sync_videos_per_channel,
        batch_delay=settings.sync_batch_delay_seconds,
        run_at=settings.sync_daily_time,
    )
    return Services(settings, repository, cache, client, sync, recorder, background)


# ---------------------------
# Serializers
# ---------------------------

def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def video_to_dict(video: storage.StoredVideo) -> dict[str, Any]:
    return {
        "id": video.external_id,
        "channelId": video.channel_id,
        "title": video.title,
        "views": video.view_count,
        "likes": video.like_count,
        "comments": video.comment_count,
        "publishedAt": _iso(video.published_at),
        "duration": video.duration_seconds,
        "vph": video.computed_vph,
        "thumbnail": video.thumbnail_url,
    }


def sync_state_to_dict(state: storage.ChannelSyncState | None, channel_id: str, video_count: int) -> dict[str, Any]:
    state = state or storage.ChannelSyncState(channel_id=channel_id)
    return {
        "channelId": channel_id,
        "status": state.status.value,
        "lastSyncAt": _iso(state.last_sync_at),
        "totalVideosSynced": state.total_videos_synced,
        "latestVideoDate": _iso(state.latest_video_date),
        "fullSyncCompleted": state.full_sync_completed,
        "lastError": state.last_error,
        "storedVideoCount": video_count,
    }


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    channel_ids: list[str] = Field(default_factory=list, alias="channelIds")
    videos_per_channel: int | None = Field(default=None, alias="videosPerChannel")
    full_sync: bool = Field(default=False, alias="fullSync")
    force_refresh: bool = Field(default=False, alias="forceRefresh")


class TrackChannelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    owner_id: str = Field(alias="ownerId")
    channel_id: str = Field(alias="channelId")


class InvalidateRequest(BaseModel):
    pattern: str = ""


# ---------------------------
# App setup
# ---------------------------

SETTINGS = config.load_settings()
config.configure_logging(SETTINGS.log_level)
SERVICES = build_services(SETTINGS)

if not SETTINGS.youtube_api_key:
    logger.error("YOUTUBE_API_KEY is not configured; YouTube requests will fail until it is set.")

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(SETTINGS.cors_origins),
    allow_credentials=SETTINGS.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(errors.YouTubeQuotaExceededError)
async def youtube_quota_exceeded_handler(_request: Request, _exc: errors.YouTubeQuotaExceededError):
    return JSONResponse(
        status_code=429,
        content={
            "detail": "YouTube API quota is currently exhausted. Showing cached data where available.",
            "error_code": "youtube_quota_exhausted",
        },
    )


@app.exception_handler(errors.YouTubeApiError)
async def youtube_api_error_handler(_request: Request, exc: errors.YouTubeApiError):
    return JSONResponse(
        status_code=502,
        content={
            "detail": "Could not fetch YouTube data right now.",
            "error_code": "youtube_api_error",
            "upstream_status": exc.status_code,
        },
    )


@app.exception_handler(errors.YouTubeConfigurationError)
async def youtube_configuration_error_handler(_request: Request, exc: errors.YouTubeConfigurationError):
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc), "error_code": "youtube_not_configured"},
    )


@app.exception_handler(errors.SearchUnavailableError)
async def search_unavailable_handler(_request: Request, exc: errors.SearchUnavailableError):
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc), "error_code": "search_unavailable"},
    )


@app.on_event("startup")
def on_startup_start_scheduler():
    if SETTINGS.sync_scheduler_enabled:
        SERVICES.scheduler.start()


@app.on_event("shutdown")
def on_shutdown_stop_scheduler():
    SERVICES.scheduler.stop()
    SERVICES.cache.wait_for_background(timeout=5)


def require_cron_secret(request: Request) -> None:
    try:
        scheduler.verify_cron_secret(request.headers.get("authorization"), SERVICES.settings.cron_secret)
    except errors.CronAuthorizationError:
        logger.error("Unauthorized cron request")
        raise HTTPException(status_code=401, detail="Unauthorized")


def parse_channel_ids(raw: str) -> list[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/videos/sync")
def manual_sync(payload: SyncRequest):
    try:
        is_full = video_sync.validate_sync_request(
            payload.channel_ids,
            payload.videos_per_channel,
            payload.full_sync,
        )
    except errors.SyncValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    if is_full:
        channel_id = payload.channel_ids[0]
        try:
            result = SERVICES.sync.full_sync_channel(channel_id)
        except errors.SyncInProgressError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        if not result.success:
            return JSONResponse(
                status_code=500,
                content={"error": result.error or "Full sync failed", "channelId": channel_id, "fullSync": True},
            )
        return {
            "success": True,
            "message": f"Full sync completed for channel {channel_id}",
            "videoCount": result.video_count,
            "fullSync": True,
        }

    result = SERVICES.sync.sync_channels(
        payload.channel_ids,
        payload.videos_per_channel,
        payload.force_refresh,
    )
    return {
        "success": True,
        "totalVideos": len(result.videos),
        "fromCache": result.from_cache,
        "fromApi": result.from_api,
        "errors": result.errors,
        "channels": len(payload.channel_ids),
    }


@app.get("/videos/sync")
def cron_sync(request: Request):
    require_cron_secret(request)
    report = SERVICES.scheduler.background_sync_all_channels()
    return {
        "success": True,
        "message": "Background sync skipped, another run is in progress" if report.skipped else "Background sync completed",
        "timestamp": _iso(datetime.now(timezone.utc)),
        "channels": len(report.channels),
        "syncedVideos": report.synced_videos,
        "errors": report.errors,
        "snapshotsRecorded": report.snapshots_recorded,
    }


@app.get("/videos/stored")
def stored_videos(channel_ids: str, limit: int | None = None):
    ids = parse_channel_ids(channel_ids)
    if not ids:
        raise HTTPException(status_code=400, detail="channel_ids is required")
    if limit is not None and limit < 1:
        raise HTTPException(status_code=400, detail="limit must be positive")
    videos = SERVICES.sync.get_stored_videos_for_channels(ids, limit)
    return {"items": [video_to_dict(video) for video in videos], "meta": {"channel_ids": ids, "limit": limit}}


@app.get("/videos/top")
def top_videos(channel_ids: str, limit: int = 5):
    ids = parse_channel_ids(channel_ids)
    if not ids:
        raise HTTPException(status_code=400, detail="channel_ids is required")
    videos = SERVICES.repository.get_stored_videos_for_channels(ids)
    ranked = outliers.get_top_performing_videos(videos, limit=max(1, min(limit, 50)))
    return {
        "items": [{**video_to_dict(video), "performanceScore": round(score, 2)} for video, score in ranked],
        "meta": {"channel_ids": ids, "candidates": len(videos)},
    }


@app.get("/videos/sync/{channel_id}/status")
def sync_status(channel_id: str):
    state = SERVICES.sync.get_channel_sync_status(channel_id)
    return sync_state_to_dict(state, channel_id, SERVICES.sync.get_stored_video_count(channel_id))


@app.post("/channels/track")
def track_channel(payload: TrackChannelRequest):
    owner_id = payload.owner_id.strip()
    channel_id = payload.channel_id.strip()
    if not owner_id or not channel_id:
        raise HTTPException(status_code=400, detail="ownerId and channelId are required")
    SERVICES.repository.track_channel(owner_id, channel_id)
    return {"ownerId": owner_id, "channelId": channel_id, "tracked": True}


@app.get("/videos/{video_id}/outlier")
def video_outlier(video_id: str):
    video = SERVICES.repository.get_video(video_id)
    if video is None:
        raise HTTPException(status_code=404, detail="Video not found in storage.")
    siblings = SERVICES.repository.get_stored_videos_for_channels([video.channel_id])
    result = outliers.calculate_outlier_score(video, siblings)
    return {
        "videoId": video.external_id,
        "score": result.score,
        "medianViews": result.median_views,
        "deviationPercentage": round(result.deviation_percentage, 2),
        "performanceLevel": result.performance_level,
        "xFactor": round(result.x_factor, 2),
        "siblingCount": max(0, len(siblings) - 1),
    }


@app.get("/metrics/trend/{entity_kind}/{entity_id}")
def metric_trend(
    entity_kind: str,
    entity_id: str,
    owner_id: str,
    metric: str,
    current: float | None = None,
    days_back: int = 1,
):
    try:
        kind = storage.EntityKind(entity_kind.lower())
        parsed_metric = metrics_history.parse_metric(kind, metric)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    if current is None:
        if kind is storage.EntityKind.VIDEO:
            video = SERVICES.repository.get_video(entity_id)
            values = metrics_history.video_metric_values(video) if video else None
        else:
            channel = SERVICES.repository.get_channel(entity_id)
            values = None
            if channel is not None:
                stored = SERVICES.repository.get_stored_videos_for_channels([entity_id])
                total_likes = metrics_history.sum_likes_by_channel(stored).get(entity_id, 0)
                values = metrics_history.channel_metric_values(channel, total_likes)
        if values is None:
            raise HTTPException(status_code=404, detail=f"No stored {kind.value} to read the current value from.")
        current = values[parsed_metric.value]

    if kind is storage.EntityKind.VIDEO:
        trend = SERVICES.recorder.video_trend(owner_id, entity_id, parsed_metric, current, days_back)
    else:
        trend = SERVICES.recorder.channel_trend(owner_id, entity_id, parsed_metric, current, days_back)
    return {
        "entityKind": kind.value,
        "entityId": entity_id,
        "metric": parsed_metric.value,
        "current": trend.current,
        "previous": trend.previous,
        "percentageChange": trend.percentage_change,
        "hasPriorData": trend.has_prior_data,
    }


@app.get("/youtube/search")
def youtube_search(
    q: str | None = None,
    channel_id: str | None = None,
    type: str = "video",
    max_results: int = 10,
    part: str = "snippet",
    order: str = "relevance",
    page_token: str | None = None,
):
    if not q and not channel_id:
        raise HTTPException(status_code=400, detail="q or channel_id is required")
    params = {
        "part": part,
        "type": type,
        "maxResults": max(1, min(max_results, 50)),
        "order": order,
        "q": q,
        "channelId": channel_id,
        "pageToken": page_token,
    }
    result = SERVICES.client.search(params)
    return {
        "items": result.data.get("items", []),
        "nextPageToken": result.data.get("nextPageToken"),
        "meta": {"source": result.source, "warning": result.warning},
    }


@app.get("/youtube/channel/{channel_id}")
def youtube_channel(channel_id: str):
    channel = SERVICES.client.get_channel(channel_id)
    if channel is None:
        raise HTTPException(status_code=404, detail="Channel not found.")
    return {
        "id": channel.external_id,
        "title": channel.title,
        "description": channel.description,
        "thumbnail": channel.thumbnail_url,
        "subscribers": channel.subscriber_count,
        "videos": channel.video_count,
        "views": channel.view_count,
    }


@app.post("/cache/invalidate")
def invalidate_cache(payload: InvalidateRequest, request: Request):
    require_cron_secret(request)
    if not payload.pattern:
        SERVICES.cache.clear()
        SERVICES.client.search_cache.cache.clear()
        return {"cleared": True, "removed": None}
    removed = SERVICES.cache.invalidate(payload.pattern)
    removed += SERVICES.client.search_cache.cache.invalidate(payload.pattern)
    return {"cleared": False, "removed": removed}
