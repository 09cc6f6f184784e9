"""
Daily metric snapshots and trend calculation.

One snapshot per (owner, entity, day): writing again on the same day replaces
the earlier values. Trends compare a current value with the most recent
snapshot on or before a cutoff day.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Callable

from ..errors import StorageError
from ..storage import EntityKind, MetricsSnapshot, StoredChannel, StoredVideo, VideoRepository

logger = logging.getLogger(__name__)


class VideoMetric(str, Enum):
    VIEW_COUNT = "view_count"
    LIKE_COUNT = "like_count"
    COMMENT_COUNT = "comment_count"
    VPH = "vph"


class ChannelMetric(str, Enum):
    TOTAL_VIEWS = "total_views"
    SUBSCRIBER_COUNT = "subscriber_count"
    VIDEO_COUNT = "video_count"
    TOTAL_LIKES = "total_likes"


METRICS_BY_KIND: dict[EntityKind, type[Enum]] = {
    EntityKind.VIDEO: VideoMetric,
    EntityKind.CHANNEL: ChannelMetric,
}


@dataclass(frozen=True)
class TrendResult:
    current: float
    previous: float
    percentage_change: float
    has_prior_data: bool


def round_half_up(value: float, places: int = 1) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def calculate_trend(current: float, previous: float) -> TrendResult:
    if current == 0 and previous == 0:
        return TrendResult(current, previous, 0.0, False)
    if previous == 0 and current > 0:
        return TrendResult(current, previous, 100.0, False)
    if previous == 0:
        # Negative current against an empty history has no meaningful baseline.
        return TrendResult(current, previous, 0.0, False)
    change = (current - previous) / previous * 100
    return TrendResult(current, previous, round_half_up(change, 1), True)


def video_metric_values(video: StoredVideo) -> dict[str, float]:
    return {
        VideoMetric.VIEW_COUNT.value: video.view_count,
        VideoMetric.LIKE_COUNT.value: video.like_count,
        VideoMetric.COMMENT_COUNT.value: video.comment_count,
        VideoMetric.VPH.value: video.computed_vph,
    }


def channel_metric_values(channel: StoredChannel, total_likes: int = 0) -> dict[str, float]:
    return {
        ChannelMetric.TOTAL_VIEWS.value: channel.view_count,
        ChannelMetric.SUBSCRIBER_COUNT.value: channel.subscriber_count,
        ChannelMetric.VIDEO_COUNT.value: channel.video_count,
        ChannelMetric.TOTAL_LIKES.value: total_likes,
    }


def sum_likes_by_channel(videos: list[StoredVideo]) -> dict[str, int]:
    totals: dict[str, int] = {}
    for video in videos:
        totals[video.channel_id] = totals.get(video.channel_id, 0) + video.like_count
    return totals


def parse_metric(kind: EntityKind, name: str) -> VideoMetric | ChannelMetric:
    metric_type = METRICS_BY_KIND[kind]
    try:
        return metric_type(name)
    except ValueError:
        allowed = ", ".join(member.value for member in metric_type)
        raise ValueError(f"metric for {kind.value} must be one of: {allowed}") from None


class MetricsRecorder:
    def __init__(self, repository: VideoRepository, today: Callable[[], date] = date.today):
        self._repository = repository
        self._today = today
        self._last_collection: dict[str, date] = {}

    def record_video_snapshot(self, owner_id: str, videos: list[StoredVideo]) -> bool:
        if not videos:
            logger.info(f"No videos to record for owner {owner_id}")
            return True

        recorded_date = self._today()
        try:
            for video in videos:
                self._repository.upsert_snapshot(
                    MetricsSnapshot(
                        owner_id=owner_id,
                        entity_id=video.external_id,
                        entity_kind=EntityKind.VIDEO,
                        metric_values=video_metric_values(video),
                        recorded_date=recorded_date,
                    )
                )
        except StorageError as exc:
            logger.error(f"Error storing video metrics for owner {owner_id}: {exc}")
            return False

        logger.info(f"Stored metrics for {len(videos)} videos (owner {owner_id}, {recorded_date})")
        return True

    def record_channel_snapshot(self, owner_id: str, channel: StoredChannel, total_likes: int = 0) -> bool:
        try:
            self._repository.upsert_snapshot(
                MetricsSnapshot(
                    owner_id=owner_id,
                    entity_id=channel.external_id,
                    entity_kind=EntityKind.CHANNEL,
                    metric_values=channel_metric_values(channel, total_likes),
                    recorded_date=self._today(),
                )
            )
        except StorageError as exc:
            logger.error(f"Error storing channel metrics for {channel.external_id}: {exc}")
            return False
        return True

    def _trend(self, owner_id: str, kind: EntityKind, entity_id: str, metric: str, current: float, days_back: int) -> TrendResult:
        cutoff = self._today() - timedelta(days=max(days_back, 0))
        try:
            history = self._repository.list_snapshots(owner_id, kind, entity_id, on_or_before=cutoff)
        except StorageError as exc:
            logger.error(f"Error fetching {kind.value} metrics history for {entity_id}: {exc}")
            return calculate_trend(current, 0)

        for snapshot in history:
            if metric in snapshot.metric_values:
                return calculate_trend(current, snapshot.metric_values[metric] or 0)
        return calculate_trend(current, 0)

    def video_trend(
        self,
        owner_id: str,
        video_id: str,
        metric: VideoMetric,
        current: float,
        days_back: int = 1,
    ) -> TrendResult:
        return self._trend(owner_id, EntityKind.VIDEO, video_id, VideoMetric(metric).value, current, days_back)

    def channel_trend(
        self,
        owner_id: str,
        channel_id: str,
        metric: ChannelMetric,
        current: float,
        days_back: int = 1,
    ) -> TrendResult:
        return self._trend(owner_id, EntityKind.CHANNEL, channel_id, ChannelMetric(metric).value, current, days_back)

    def collect_daily_metrics(self, owner_id: str, channel_ids: list[str], force: bool = False) -> bool:
        """Record today's channel and video snapshots for one owner, once per day."""
        today = self._today()
        if not force and self._last_collection.get(owner_id) == today:
            logger.info(f"Metrics already collected today for owner {owner_id}")
            return True

        try:
            videos = self._repository.get_stored_videos_for_channels(channel_ids)
            channels = [self._repository.get_channel(channel_id) for channel_id in channel_ids]
        except StorageError as exc:
            logger.error(f"Could not load stored data for owner {owner_id}: {exc}")
            return False

        likes_by_channel = sum_likes_by_channel(videos)

        stored_ok = self.record_video_snapshot(owner_id, videos)
        for channel in channels:
            if channel is None:
                continue
            total_likes = likes_by_channel.get(channel.external_id, 0)
            stored_ok = self.record_channel_snapshot(owner_id, channel, total_likes) and stored_ok

        if stored_ok:
            self._last_collection[owner_id] = today
        else:
            logger.error(f"Failed to store all metrics for owner {owner_id}")
        return stored_ok
