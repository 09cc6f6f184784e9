"""
Runtime configuration.

Everything is read from the environment (a local ``backend/.env`` is loaded
first). A missing YouTube key does not stop the app from booting; requests
that need the key fail fast instead.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

HOUR = 60 * 60
DAY = 24 * HOUR

# Category -> (fresh seconds, stale seconds). Stale is measured from storage time.
CACHE_CATEGORY_TTLS: dict[str, tuple[int, int]] = {
    "youtube_channel": (DAY, 7 * DAY),
    "youtube_videos": (30 * 60, 4 * HOUR),
    "youtube_search": (15 * 60, 2 * HOUR),
    "video_stats": (15 * 60, HOUR),
    "search_fallback": (30 * 60, 8 * HOUR),
    "default": (5 * 60, 15 * 60),
}

YOUTUBE_API_BASE_URL = "https://www.googleapis.com/youtube/v3"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    youtube_api_key: str = ""
    cron_secret: str = ""
    sync_max_workers: int = 2
    sync_videos_per_channel: int = 25
    sync_stale_minutes: int = 30
    sync_scheduler_enabled: bool = False
    sync_daily_time: str = "00:05"
    sync_batch_delay_seconds: float = 30.0
    rate_limit_per_second: int = 5
    storage_file: Path | None = None
    cors_origins: tuple[str, ...] = ("http://localhost:5173",)
    cors_allow_credentials: bool = True
    log_level: str = "INFO"


def parse_cors_origins(raw: str | None) -> tuple[tuple[str, ...], bool]:
    raw = (raw or "").strip()
    if not raw:
        return ("http://localhost:5173",), True
    if raw == "*":
        return ("*",), False
    origins = tuple(origin.strip() for origin in raw.split(",") if origin.strip())
    if not origins:
        return ("http://localhost:5173",), True
    return origins, True


def load_settings(env_file: Path | None = None) -> Settings:
    load_dotenv(env_file or Path(__file__).resolve().parents[1] / ".env")

    storage_raw = (os.getenv("STORAGE_FILE") or "").strip()
    cors_origins, cors_credentials = parse_cors_origins(os.getenv("CORS_ALLOWED_ORIGINS"))
    return Settings(
        youtube_api_key=(os.getenv("YOUTUBE_API_KEY") or "").strip(),
        cron_secret=(os.getenv("CRON_SECRET") or "").strip(),
        sync_max_workers=max(1, _env_int("SYNC_MAX_WORKERS", 2)),
        sync_videos_per_channel=max(1, _env_int("SYNC_VIDEOS_PER_CHANNEL", 25)),
        sync_stale_minutes=max(0, _env_int("SYNC_STALE_MINUTES", 30)),
        sync_scheduler_enabled=_env_flag("SYNC_SCHEDULER_ENABLED"),
        sync_daily_time=(os.getenv("SYNC_DAILY_TIME") or "00:05").strip(),
        sync_batch_delay_seconds=max(0.0, _env_float("SYNC_BATCH_DELAY_SECONDS", 30.0)),
        rate_limit_per_second=max(1, _env_int("YOUTUBE_RATE_LIMIT_PER_SECOND", 5)),
        storage_file=Path(storage_raw) if storage_raw else None,
        cors_origins=cors_origins,
        cors_allow_credentials=cors_credentials,
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
