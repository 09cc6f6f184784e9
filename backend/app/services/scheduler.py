"""
Background sync driver.

The authenticated cron endpoint is the source of truth for scheduling. The
in-process daily timer is a convenience for single-instance deployments and
loses its schedule on every restart.
"""

import hmac
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from datetime import time as dtime
from typing import Callable

from ..errors import CronAuthorizationError, StorageError, SyncValidationError
from ..storage import VideoRepository, utcnow
from .metrics_history import MetricsRecorder
from .video_sync import VideoSyncService

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


def verify_cron_secret(authorization: str | None, secret: str | None) -> None:
    if not secret:
        raise CronAuthorizationError("Cron secret is not configured")
    header = (authorization or "").strip()
    if not header.startswith(BEARER_PREFIX):
        raise CronAuthorizationError()
    provided = header[len(BEARER_PREFIX):].strip()
    if not hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
        raise CronAuthorizationError()


def parse_time_of_day(value: str) -> dtime:
    try:
        hours, minutes = (int(part) for part in value.strip().split(":", 1))
        return dtime(hour=hours, minute=minutes)
    except ValueError as exc:
        raise ValueError(f"Invalid time of day '{value}', expected HH:MM") from exc


def seconds_until_next_run(now: datetime, run_at: dtime) -> float:
    target = now.replace(hour=run_at.hour, minute=run_at.minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


@dataclass
class BackgroundSyncReport:
    channels: list[str] = field(default_factory=list)
    synced_videos: int = 0
    errors: list[str] = field(default_factory=list)
    snapshots_recorded: bool | None = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    skipped: bool = False


class BackgroundSyncScheduler:
    def __init__(
        self,
        sync_service: VideoSyncService,
        repository: VideoRepository | None = None,
        recorder: MetricsRecorder | None = None,
        videos_per_channel: int = 25,
        batch_size: int = 1,
        batch_delay: float = 30.0,
        run_at: str = "00:05",
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._sync = sync_service
        self._repository = repository
        self._recorder = recorder
        self.videos_per_channel = videos_per_channel
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        self.run_at = parse_time_of_day(run_at)
        self._sleep = sleep
        self._clock = clock
        self._run_lock = threading.Lock()
        self._timer_lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._running = False

    def background_sync_all_channels(self) -> BackgroundSyncReport:
        report = BackgroundSyncReport()
        if not self._run_lock.acquire(blocking=False):
            logger.info("Background sync already running, skipping this trigger")
            report.skipped = True
            report.finished_at = utcnow()
            return report

        try:
            self._sync_batches(report)
            if self._recorder is not None and self._repository is not None:
                report.snapshots_recorded = self._record_snapshots()
        finally:
            self._run_lock.release()

        report.finished_at = utcnow()
        logger.info(
            f"Background sync finished: {len(report.channels)} channels, "
            f"{report.synced_videos} videos, {len(report.errors)} errors"
        )
        return report

    def _sync_batches(self, report: BackgroundSyncReport) -> None:
        try:
            report.channels = self._sync.get_channels_needing_sync()
        except StorageError as exc:
            logger.error(f"Could not list channels for background sync: {exc}")
            report.errors.append(str(exc))
            return

        if not report.channels:
            logger.info("No channels need syncing at this time")
            return

        batches = [
            report.channels[i:i + self.batch_size]
            for i in range(0, len(report.channels), self.batch_size)
        ]
        for index, batch in enumerate(batches, start=1):
            logger.info(f"Background batch {index}/{len(batches)}: {', '.join(batch)}")
            try:
                result = self._sync.sync_channels(batch, self.videos_per_channel, force_refresh=False)
            except SyncValidationError as exc:
                report.errors.append(str(exc))
                continue
            report.synced_videos += len(result.videos)
            report.errors.extend(result.errors)
            if index < len(batches) and self.batch_delay > 0:
                self._sleep(self.batch_delay)

    def _record_snapshots(self) -> bool:
        try:
            tracked = self._repository.list_tracked_channels()
        except StorageError as exc:
            logger.error(f"Could not list tracked channels for metrics: {exc}")
            return False

        by_owner: dict[str, list[str]] = {}
        for item in tracked:
            by_owner.setdefault(item.owner_id, []).append(item.channel_id)

        recorded = True
        for owner_id, channel_ids in by_owner.items():
            recorded = self._recorder.collect_daily_metrics(owner_id, channel_ids) and recorded
        return recorded

    # ---------------------------
    # In-process daily timer
    # ---------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._timer_lock:
            if self._running:
                return
            self._running = True
        worker = threading.Thread(target=self._tick, name="background-sync", daemon=True)
        worker.start()

    def stop(self) -> None:
        with self._timer_lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _tick(self) -> None:
        try:
            self.background_sync_all_channels()
        except Exception:
            logger.exception("Background sync failed")
        finally:
            self._schedule_next()

    def _schedule_next(self) -> None:
        with self._timer_lock:
            if not self._running:
                return
            delay = seconds_until_next_run(self._clock(), self.run_at)
            self._timer = threading.Timer(delay, self._tick)
            self._timer.daemon = True
            self._timer.start()
        logger.info(f"Next background sync scheduled in {round(delay / 3600, 1)} hours")
