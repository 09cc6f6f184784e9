import math
from dataclasses import dataclass
from datetime import datetime
from statistics import StatisticsError, median

from ..storage import StoredVideo, utcnow


@dataclass(frozen=True)
class OutlierScore:
    score: int
    median_views: float
    deviation_percentage: float
    performance_level: str  # low | average | high | exceptional
    x_factor: float


def median_or_default(values: list[float], default: float) -> float:
    if not values:
        return default
    try:
        return median(values)
    except StatisticsError:
        return default


def performance_level_for(score: float) -> str:
    if score < 30:
        return "low"
    if score >= 90:
        return "exceptional"
    if score > 70:
        return "high"
    return "average"


def calculate_outlier_score(video: StoredVideo, channel_videos: list[StoredVideo]) -> OutlierScore:
    siblings = [other.view_count for other in channel_videos if other.external_id != video.external_id]
    # A lone video is its own baseline, so it always lands on 50.
    median_views = median_or_default(siblings, default=video.view_count)

    deviation = (video.view_count - median_views) / median_views * 100 if median_views > 0 else 0.0
    raw_score = min(100.0, max(0.0, 50 + deviation / 4))
    x_factor = video.view_count / median_views if median_views > 0 else 1.0

    return OutlierScore(
        score=math.floor(raw_score + 0.5),
        median_views=median_views,
        deviation_percentage=deviation,
        performance_level=performance_level_for(raw_score),
        x_factor=x_factor,
    )


def calculate_performance_score(
    video: StoredVideo,
    channel_videos: list[StoredVideo],
    now: datetime | None = None,
) -> float:
    outlier = calculate_outlier_score(video, channel_videos)
    engagement_rate = (
        (video.like_count + video.comment_count) / video.view_count * 100 if video.view_count > 0 else 0.0
    )
    recency_factor = 0.0
    if video.published_at is not None:
        age_days = ((now or utcnow()) - video.published_at).total_seconds() / 86400
        recency_factor = max(0.0, 1 - age_days / 30)

    return (
        outlier.score * 0.5
        + engagement_rate * 0.3
        + video.computed_vph * 0.1
        + recency_factor * 10
    )


def get_top_performing_videos(
    videos: list[StoredVideo],
    limit: int = 5,
    now: datetime | None = None,
) -> list[tuple[StoredVideo, float]]:
    if not videos:
        return []
    scored = [(video, calculate_performance_score(video, videos, now)) for video in videos]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored[:limit]
