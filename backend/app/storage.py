import json
import math
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import StorageError


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    FULL_SYNCING = "full-syncing"
    ERROR = "error"


class EntityKind(str, Enum):
    VIDEO = "video"
    CHANNEL = "channel"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_vph(view_count: int, published_at: datetime | None, now: datetime | None = None) -> int:
    if published_at is None:
        return 0
    now = now or utcnow()
    hours_elapsed = max(1, math.floor((now - published_at).total_seconds() / 3600))
    return round(view_count / hours_elapsed)


@dataclass
class StoredVideo:
    external_id: str
    channel_id: str
    title: str = ""
    view_count: int = 0
    like_count: int = 0
    comment_count: int = 0
    published_at: datetime | None = None
    duration_seconds: int = 0
    computed_vph: int = 0
    description: str = ""
    thumbnail_url: str | None = None

    def with_vph(self, now: datetime | None = None) -> "StoredVideo":
        return replace(self, computed_vph=compute_vph(self.view_count, self.published_at, now))


@dataclass
class StoredChannel:
    external_id: str
    title: str = ""
    description: str = ""
    thumbnail_url: str | None = None
    subscriber_count: int = 0
    video_count: int = 0
    view_count: int = 0
    uploads_playlist_id: str | None = None


@dataclass
class ChannelSyncState:
    channel_id: str
    status: SyncStatus = SyncStatus.IDLE
    last_sync_at: datetime | None = None
    total_videos_synced: int = 0
    latest_video_date: datetime | None = None
    full_sync_completed: bool = False
    last_error: str | None = None
    status_changed_at: datetime | None = None


@dataclass(frozen=True)
class TrackedChannel:
    owner_id: str
    channel_id: str


@dataclass
class MetricsSnapshot:
    owner_id: str
    entity_id: str
    entity_kind: EntityKind
    metric_values: dict[str, float] = field(default_factory=dict)
    recorded_date: date = field(default_factory=date.today)

    @property
    def key(self) -> tuple[str, str, str, date]:
        return (self.owner_id, self.entity_kind.value, self.entity_id, self.recorded_date)


class VideoRepository(ABC):
    """Narrow storage interface used by the sync and metrics services.

    Implementations raise ``StorageError`` for I/O failures.
    """

    @abstractmethod
    def upsert_videos(self, videos: list[StoredVideo]) -> int: ...

    @abstractmethod
    def get_video(self, external_id: str) -> StoredVideo | None: ...

    @abstractmethod
    def get_stored_videos_for_channels(self, channel_ids: list[str], limit: int | None = None) -> list[StoredVideo]: ...

    @abstractmethod
    def count_videos(self, channel_id: str) -> int: ...

    @abstractmethod
    def upsert_channel(self, channel: StoredChannel) -> None: ...

    @abstractmethod
    def get_channel(self, channel_id: str) -> StoredChannel | None: ...

    @abstractmethod
    def get_sync_state(self, channel_id: str) -> ChannelSyncState | None: ...

    @abstractmethod
    def save_sync_state(self, state: ChannelSyncState) -> None: ...

    @abstractmethod
    def track_channel(self, owner_id: str, channel_id: str) -> None: ...

    @abstractmethod
    def list_tracked_channels(self) -> list[TrackedChannel]: ...

    @abstractmethod
    def upsert_snapshot(self, snapshot: MetricsSnapshot) -> None: ...

    @abstractmethod
    def list_snapshots(
        self,
        owner_id: str,
        entity_kind: EntityKind,
        entity_id: str,
        on_or_before: date | None = None,
    ) -> list[MetricsSnapshot]: ...


def _sort_newest_first(videos: list[StoredVideo]) -> list[StoredVideo]:
    floor = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(videos, key=lambda video: video.published_at or floor, reverse=True)


class InMemoryVideoRepository(VideoRepository):
    def __init__(self, path: Path | None = None):
        self._path = path
        self._lock = threading.RLock()
        self._videos: dict[str, StoredVideo] = {}
        self._channels: dict[str, StoredChannel] = {}
        self._sync_states: dict[str, ChannelSyncState] = {}
        self._tracked: set[TrackedChannel] = set()
        self._snapshots: dict[tuple[str, str, str, date], MetricsSnapshot] = {}
        if path is not None:
            self.load()

    def upsert_videos(self, videos: list[StoredVideo]) -> int:
        with self._lock:
            for video in videos:
                existing = self._videos.get(video.external_id)
                if (
                    existing is None
                    or existing.view_count != video.view_count
                    or existing.published_at != video.published_at
                ):
                    video = video.with_vph()
                self._videos[video.external_id] = video
            self._persist()
        return len(videos)

    def get_video(self, external_id: str) -> StoredVideo | None:
        with self._lock:
            return self._videos.get(external_id)

    def get_stored_videos_for_channels(self, channel_ids: list[str], limit: int | None = None) -> list[StoredVideo]:
        wanted = set(channel_ids)
        with self._lock:
            matching = [video for video in self._videos.values() if video.channel_id in wanted]
        ordered = _sort_newest_first(matching)
        if not limit:
            return ordered
        per_channel: dict[str, int] = {}
        limited = []
        for video in ordered:
            seen = per_channel.get(video.channel_id, 0)
            if seen >= limit:
                continue
            per_channel[video.channel_id] = seen + 1
            limited.append(video)
        return limited

    def count_videos(self, channel_id: str) -> int:
        with self._lock:
            return sum(1 for video in self._videos.values() if video.channel_id == channel_id)

    def upsert_channel(self, channel: StoredChannel) -> None:
        with self._lock:
            self._channels[channel.external_id] = channel
            self._persist()

    def get_channel(self, channel_id: str) -> StoredChannel | None:
        with self._lock:
            return self._channels.get(channel_id)

    def get_sync_state(self, channel_id: str) -> ChannelSyncState | None:
        with self._lock:
            state = self._sync_states.get(channel_id)
            return replace(state) if state else None

    def save_sync_state(self, state: ChannelSyncState) -> None:
        with self._lock:
            self._sync_states[state.channel_id] = replace(state)
            self._persist()

    def track_channel(self, owner_id: str, channel_id: str) -> None:
        with self._lock:
            self._tracked.add(TrackedChannel(owner_id=owner_id, channel_id=channel_id))
            self._sync_states.setdefault(channel_id, ChannelSyncState(channel_id=channel_id))
            self._persist()

    def list_tracked_channels(self) -> list[TrackedChannel]:
        with self._lock:
            return sorted(self._tracked, key=lambda item: (item.owner_id, item.channel_id))

    def upsert_snapshot(self, snapshot: MetricsSnapshot) -> None:
        with self._lock:
            self._snapshots[snapshot.key] = snapshot
            self._persist()

    def list_snapshots(
        self,
        owner_id: str,
        entity_kind: EntityKind,
        entity_id: str,
        on_or_before: date | None = None,
    ) -> list[MetricsSnapshot]:
        with self._lock:
            rows = [
                snapshot
                for snapshot in self._snapshots.values()
                if snapshot.owner_id == owner_id
                and snapshot.entity_kind == entity_kind
                and snapshot.entity_id == entity_id
                and (on_or_before is None or snapshot.recorded_date <= on_or_before)
            ]
        return sorted(rows, key=lambda snapshot: snapshot.recorded_date, reverse=True)

    # ---------------------------
    # JSON persistence
    # ---------------------------

    def load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Could not read storage file {self._path}: {exc}") from exc

        with self._lock:
            for item in raw.get("videos", []):
                video = StoredVideo(**{**item, "published_at": _parse_dt(item.get("published_at"))})
                self._videos[video.external_id] = video
            for item in raw.get("channels", []):
                channel = StoredChannel(**item)
                self._channels[channel.external_id] = channel
            for item in raw.get("sync_states", []):
                state = ChannelSyncState(
                    **{
                        **item,
                        "status": SyncStatus(item.get("status", "idle")),
                        "last_sync_at": _parse_dt(item.get("last_sync_at")),
                        "latest_video_date": _parse_dt(item.get("latest_video_date")),
                        "status_changed_at": _parse_dt(item.get("status_changed_at")),
                    }
                )
                self._sync_states[state.channel_id] = state
            for item in raw.get("tracked", []):
                self._tracked.add(TrackedChannel(**item))
            for item in raw.get("snapshots", []):
                snapshot = MetricsSnapshot(
                    owner_id=item["owner_id"],
                    entity_id=item["entity_id"],
                    entity_kind=EntityKind(item["entity_kind"]),
                    metric_values=item.get("metric_values") or {},
                    recorded_date=date.fromisoformat(item["recorded_date"]),
                )
                self._snapshots[snapshot.key] = snapshot

    def _persist(self) -> None:
        if self._path is None:
            return
        payload = {
            "videos": [asdict(video) for video in self._videos.values()],
            "channels": [asdict(channel) for channel in self._channels.values()],
            "sync_states": [asdict(state) for state in self._sync_states.values()],
            "tracked": [asdict(item) for item in self._tracked],
            "snapshots": [asdict(snapshot) for snapshot in self._snapshots.values()],
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(payload, default=_json_default, indent=2), encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Could not write storage file {self._path}: {exc}") from exc


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Unserializable value: {value!r}")


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
