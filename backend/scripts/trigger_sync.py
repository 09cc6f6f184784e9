from __future__ import annotations

import argparse
import json
import os
from typing import Any

import requests
from requests import HTTPError

DEFAULT_BASE_URL = "http://localhost:8000"


def trigger_background_sync(base_url: str, secret: str, timeout: int = 900) -> dict[str, Any]:
    response = requests.get(
        f"{base_url.rstrip('/')}/videos/sync",
        headers={"Authorization": f"Bearer {secret}"},
        timeout=timeout,
    )
    try:
        response.raise_for_status()
    except HTTPError as exc:
        if response.status_code == 401:
            raise RuntimeError("Server rejected the cron secret (401). Check CRON_SECRET.") from exc
        raise
    return response.json()


def trigger_manual_sync(
    base_url: str,
    channel_ids: list[str],
    videos_per_channel: int | None,
    full_sync: bool,
    timeout: int = 900,
) -> dict[str, Any]:
    body: dict[str, Any] = {"channelIds": channel_ids, "fullSync": full_sync}
    if videos_per_channel is not None:
        body["videosPerChannel"] = videos_per_channel
    response = requests.post(f"{base_url.rstrip('/')}/videos/sync", json=body, timeout=timeout)
    if response.status_code in (400, 409):
        raise RuntimeError(f"Sync rejected ({response.status_code}): {response.json().get('detail')}")
    response.raise_for_status()
    return response.json()


def main() -> int:
    parser = argparse.ArgumentParser(description="Trigger a video sync on a running backend.")
    parser.add_argument("--base-url", default=os.getenv("SYNC_BASE_URL", DEFAULT_BASE_URL))
    parser.add_argument("--channel", action="append", dest="channels", default=[], help="Sync this channel now (repeatable).")
    parser.add_argument("--videos-per-channel", type=int, default=None)
    parser.add_argument("--full", action="store_true", help="Backfill every video of a single channel.")
    args = parser.parse_args()

    if args.channels:
        result = trigger_manual_sync(args.base_url, args.channels, args.videos_per_channel, args.full)
    else:
        secret = os.getenv("CRON_SECRET", "").strip()
        if not secret:
            raise RuntimeError("CRON_SECRET is required to trigger the background sync")
        result = trigger_background_sync(args.base_url, secret)

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
