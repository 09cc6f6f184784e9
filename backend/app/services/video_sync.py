"""
Per-channel video synchronization.

An incremental sync pulls the newest N videos of each channel; a full sync
(no per-channel limit) backfills every upload of exactly one channel. Results
are upserted by external id, so a sync interrupted between the API call and
the write is healed by the next attempt.

Only one sync per channel may run at a time. Different channels run
concurrently on a small worker pool.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from ..errors import (
    SearchUnavailableError,
    StorageError,
    SyncInProgressError,
    SyncValidationError,
    YouTubeApiError,
    YouTubeConfigurationError,
    YouTubeQuotaExceededError,
)
from ..storage import ChannelSyncState, StoredVideo, SyncStatus, VideoRepository, utcnow
from .youtube_client import ProgressCallback, YouTubeClient

logger = logging.getLogger(__name__)

FETCH_ERRORS = (YouTubeApiError, YouTubeConfigurationError, SearchUnavailableError)
BUSY_STATUSES = {SyncStatus.SYNCING, SyncStatus.FULL_SYNCING}


@dataclass
class SyncResult:
    videos: list[StoredVideo] = field(default_factory=list)
    from_cache: int = 0
    from_api: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class FullSyncResult:
    success: bool
    video_count: int
    error: str | None = None


def validate_sync_request(
    channel_ids: list[str],
    videos_per_channel: int | None = None,
    full_sync: bool = False,
) -> bool:
    """Validate a sync request and return whether it is a full sync.

    Omitting the per-channel limit (or passing 0) means "all videos", which
    is a full sync and is only allowed for a single channel.
    """
    if not channel_ids:
        raise SyncValidationError("channelIds array is required")
    if any(not isinstance(channel_id, str) or not channel_id.strip() for channel_id in channel_ids):
        raise SyncValidationError("channelIds must be non-empty strings")
    if videos_per_channel is not None and videos_per_channel < 0:
        raise SyncValidationError("videosPerChannel must not be negative")

    is_full = full_sync or not videos_per_channel
    if is_full and len(set(channel_ids)) > 1:
        raise SyncValidationError(
            "Full sync is only supported for one channel at a time due to processing intensity"
        )
    return is_full


def sort_newest_first(videos: list[StoredVideo]) -> list[StoredVideo]:
    floor = datetime.min.replace(tzinfo=utcnow().tzinfo)
    return sorted(videos, key=lambda video: video.published_at or floor, reverse=True)


def merge_videos(fresh: list[StoredVideo], stored: list[StoredVideo], limit: int | None) -> list[StoredVideo]:
    merged: dict[str, StoredVideo] = {}
    for video in fresh + stored:
        merged.setdefault(video.external_id, video)
    ordered = sort_newest_first(list(merged.values()))
    return ordered[:limit] if limit else ordered


class VideoSyncService:
    def __init__(
        self,
        client: YouTubeClient,
        repository: VideoRepository,
        max_workers: int = 2,
        max_retries: int = 3,
        retry_base_delay: float = 5.0,
        stale_after_minutes: int = 30,
        stale_claim_after: timedelta = timedelta(hours=2),
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._client = client
        self._repository = repository
        self.max_workers = max(1, max_workers)
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.stale_after = timedelta(minutes=stale_after_minutes)
        self.stale_claim_after = stale_claim_after
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._active: dict[str, SyncStatus] = {}

    # ---------------------------
    # Read side
    # ---------------------------

    def get_stored_videos_for_channels(self, channel_ids: list[str], limit: int | None = None) -> list[StoredVideo]:
        return self._repository.get_stored_videos_for_channels(channel_ids, limit or None)

    def get_channel_sync_status(self, channel_id: str) -> ChannelSyncState | None:
        return self._repository.get_sync_state(channel_id)

    def get_stored_video_count(self, channel_id: str) -> int:
        return self._repository.count_videos(channel_id)

    def needs_sync(self, channel_id: str) -> bool:
        state = self._repository.get_sync_state(channel_id)
        if state is None or state.last_sync_at is None:
            return True
        return self._clock() - state.last_sync_at > self.stale_after

    def get_channels_needing_sync(self) -> list[str]:
        channel_ids = list(dict.fromkeys(item.channel_id for item in self._repository.list_tracked_channels()))
        due = [channel_id for channel_id in channel_ids if self.needs_sync(channel_id)]
        logger.info(f"{len(due)} of {len(channel_ids)} tracked channels need syncing")
        return due

    # ---------------------------
    # Status discipline
    # ---------------------------

    def _claim(self, channel_id: str, status: SyncStatus) -> ChannelSyncState:
        with self._lock:
            running = self._active.get(channel_id)
            if running is not None:
                raise SyncInProgressError(channel_id, running.value)

            now = self._clock()
            state = self._repository.get_sync_state(channel_id) or ChannelSyncState(channel_id=channel_id)
            if state.status in BUSY_STATUSES:
                changed_at = state.status_changed_at
                if changed_at is not None and now - changed_at < self.stale_claim_after:
                    raise SyncInProgressError(channel_id, state.status.value)
                logger.warning(f"Reclaiming channel {channel_id} left in '{state.status.value}' by an earlier run")

            state.status = status
            state.status_changed_at = now
            self._repository.save_sync_state(state)
            self._active[channel_id] = status
            return state

    def _release(self, channel_id: str, state: ChannelSyncState, error: str | None) -> None:
        with self._lock:
            try:
                state.status = SyncStatus.ERROR if error else SyncStatus.IDLE
                state.status_changed_at = self._clock()
                state.last_error = error
                state.total_videos_synced = self._repository.count_videos(channel_id)
                self._repository.save_sync_state(state)
            except StorageError as exc:
                logger.error(f"Could not record sync status for {channel_id}: {exc}")
            finally:
                self._active.pop(channel_id, None)

    # ---------------------------
    # Fetch + persist
    # ---------------------------

    def _fetch_with_retry(
        self,
        channel_id: str,
        limit: int | None,
        fresh: bool,
        progress: ProgressCallback | None = None,
    ) -> list[StoredVideo]:
        attempt = 0
        while True:
            try:
                if limit is None:
                    logger.info(f"Full sync: fetching all videos for channel {channel_id}")
                    return self._client.get_all_videos(channel_id, progress=progress, fresh=fresh)
                logger.info(f"Incremental sync: fetching {limit} recent videos for channel {channel_id}")
                return self._client.get_recent_videos(channel_id, limit, fresh=fresh)
            except YouTubeQuotaExceededError:
                attempt += 1
                if attempt > self.max_retries:
                    raise
                delay = self.retry_base_delay * 2 ** (attempt - 1)
                logger.warning(f"Rate limited on {channel_id}, retry {attempt}/{self.max_retries} in {delay}s")
                self._sleep(delay)

    def _store(self, channel_id: str, videos: list[StoredVideo], state: ChannelSyncState, full: bool) -> None:
        if videos:
            self._repository.upsert_videos(videos)

        try:
            channel = self._client.get_channel(channel_id)
        except FETCH_ERRORS as exc:
            logger.warning(f"Could not refresh channel metadata for {channel_id}: {exc}")
            channel = None
        if channel is not None:
            self._repository.upsert_channel(channel)

        published = [video.published_at for video in videos if video.published_at is not None]
        state.last_sync_at = self._clock()
        state.total_videos_synced = self._repository.count_videos(channel_id)
        if published:
            state.latest_video_date = max(published)
        if full:
            state.full_sync_completed = True

    def _run_claimed(
        self,
        channel_id: str,
        state: ChannelSyncState,
        limit: int | None,
        fresh: bool,
        progress: ProgressCallback | None = None,
        require_videos: bool = False,
    ) -> tuple[list[StoredVideo], str | None]:
        videos: list[StoredVideo] = []
        error = None
        try:
            videos = self._fetch_with_retry(channel_id, limit, fresh, progress)
            if require_videos and not videos:
                error = "No videos found for this channel"
            else:
                self._store(channel_id, videos, state, full=limit is None)
        except FETCH_ERRORS as exc:
            error = f"Failed to fetch videos for channel {channel_id}: {exc}"
        except StorageError as exc:
            error = f"Failed to store videos for channel {channel_id}: {exc}"
        except Exception as exc:
            logger.exception(f"Unexpected error syncing channel {channel_id}")
            error = f"Error processing channel {channel_id}: {exc}"
        finally:
            self._release(channel_id, state, error)

        if error:
            logger.error(error)
        return videos, error

    def _sync_channel(self, channel_id: str, limit: int | None, force_refresh: bool) -> SyncResult:
        outcome = SyncResult()
        try:
            stored = self._repository.get_stored_videos_for_channels([channel_id], limit)
            if not force_refresh and limit and len(stored) >= limit and not self.needs_sync(channel_id):
                outcome.videos = stored[:limit]
                outcome.from_cache = len(outcome.videos)
                logger.info(f"Using {outcome.from_cache} stored videos for channel {channel_id}")
                return outcome
            state = self._claim(channel_id, SyncStatus.SYNCING if limit else SyncStatus.FULL_SYNCING)
        except (SyncInProgressError, StorageError) as exc:
            logger.warning(f"Skipping channel {channel_id}: {exc}")
            outcome.errors.append(str(exc))
            return outcome

        fresh, error = self._run_claimed(channel_id, state, limit, fresh=force_refresh)
        if error:
            outcome.errors.append(error)

        final = merge_videos(fresh, stored, limit)
        outcome.videos = final
        outcome.from_api = len(fresh)
        outcome.from_cache = max(0, len(final) - len(fresh))
        logger.info(
            f"Channel {channel_id}: {len(final)} videos ({len(fresh)} fresh + {outcome.from_cache} stored)"
        )
        return outcome

    # ---------------------------
    # Entry points
    # ---------------------------

    def sync_channels(
        self,
        channel_ids: list[str],
        videos_per_channel: int | None = None,
        force_refresh: bool = False,
    ) -> SyncResult:
        validate_sync_request(channel_ids, videos_per_channel)
        limit = videos_per_channel or None
        unique_ids = list(dict.fromkeys(channel_ids))
        logger.info(
            f"Sync started: {len(unique_ids)} channels, "
            f"{limit if limit else 'all'} videos per channel, force_refresh={force_refresh}"
        )

        result = SyncResult()
        workers = min(self.max_workers, len(unique_ids))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="video-sync") as pool:
            futures = [pool.submit(self._sync_channel, channel_id, limit, force_refresh) for channel_id in unique_ids]
            for future in futures:
                outcome = future.result()
                result.videos.extend(outcome.videos)
                result.from_cache += outcome.from_cache
                result.from_api += outcome.from_api
                result.errors.extend(outcome.errors)

        result.videos = sort_newest_first(result.videos)
        logger.info(
            f"Sync complete: {len(result.videos)} videos, {result.from_cache} from cache, "
            f"{result.from_api} from API, {len(result.errors)} errors"
        )
        return result

    def full_sync_channel(self, channel_id: str, progress: ProgressCallback | None = None) -> FullSyncResult:
        validate_sync_request([channel_id], None, full_sync=True)
        state = self._claim(channel_id, SyncStatus.FULL_SYNCING)
        logger.info(f"Full sync started for channel {channel_id}")

        videos, error = self._run_claimed(
            channel_id,
            state,
            limit=None,
            fresh=True,
            progress=progress or self._log_progress(channel_id),
            require_videos=True,
        )
        if error:
            return FullSyncResult(success=False, video_count=0, error=error)
        logger.info(f"Full sync complete: {len(videos)} videos stored for channel {channel_id}")
        return FullSyncResult(success=True, video_count=len(videos))

    @staticmethod
    def _log_progress(channel_id: str) -> ProgressCallback:
        def report(current: int, total: int | None) -> None:
            if total:
                logger.info(f"Channel {channel_id}: {current}/{total} videos ({round(current / total * 100)}%)")
            else:
                logger.info(f"Channel {channel_id}: {current} videos fetched")

        return report
