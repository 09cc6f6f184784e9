from typing import Any


class YouTubeConfigurationError(Exception):
    status_code = 500

    def __init__(self, message: str = "YOUTUBE_API_KEY is not configured"):
        super().__init__(message)


class YouTubeApiError(Exception):
    def __init__(self, status_code: int, payload: Any = None, message: str | None = None):
        self.status_code = status_code
        self.payload = payload
        super().__init__(message or f"YouTube API error ({status_code})")


class YouTubeQuotaExceededError(YouTubeApiError):
    def __init__(self, status_code: int = 429, payload: Any = None):
        super().__init__(status_code, payload, "YouTube API quota exceeded")


class SearchUnavailableError(Exception):
    status_code = 503

    def __init__(self, message: str = "Search quota exhausted and no cached results are available"):
        super().__init__(message)


class StorageError(Exception):
    pass


class SyncValidationError(ValueError):
    status_code = 400


class SyncInProgressError(Exception):
    status_code = 409

    def __init__(self, channel_id: str, status: str):
        self.channel_id = channel_id
        self.status = status
        super().__init__(f"Channel {channel_id} is already being synced ({status})")


class CronAuthorizationError(Exception):
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)
