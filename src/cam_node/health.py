"""On-disk health view of every camera's live stream."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable
from urllib.parse import urlsplit

from .config import CameraIdentity
from .status import StatusTable
from .transcoder import PLAYLIST_NAME, SEGMENT_SUFFIX

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StreamHealth:
    camera_id: str
    enabled: bool
    has_playlist: bool
    segment_count: int
    last_segment_age_s: float | None
    status: str | None
    healthy: bool

    def to_dict(self) -> dict[str, object | None]:
        return {
            "camera_id": self.camera_id,
            "enabled": self.enabled,
            "has_playlist": self.has_playlist,
            "segment_count": self.segment_count,
            "last_segment_age_s": (
                round(self.last_segment_age_s, 3) if self.last_segment_age_s is not None else None
            ),
            "status": self.status,
            "healthy": self.healthy,
        }


def check_stream_health(
    camera: CameraIdentity,
    live_dir: Path,
    *,
    max_segment_age_s: float,
    statuses: StatusTable | None = None,
    now: float | None = None,
) -> StreamHealth:
    """Inspect ``live_dir`` and decide whether ``camera`` is producing video.

    A stream is healthy when its playlist exists, at least one segment is on
    disk and the newest segment was modified less than ``max_segment_age_s``
    ago. Disabled cameras are always reported unhealthy and are left out of
    the overall verdict by :func:`summarize_health`.
    """

    entry = statuses.get(camera.id) if statuses is not None else None
    status = entry.status.value if entry is not None else None
    if not camera.enabled:
        return StreamHealth(camera.id, False, False, 0, None, status, False)

    current = time.time() if now is None else now
    has_playlist = (live_dir / PLAYLIST_NAME).is_file()
    segment_count = 0
    newest: float | None = None
    try:
        for path in live_dir.glob(f"*{SEGMENT_SUFFIX}"):
            try:
                mtime = path.stat().st_mtime
            except FileNotFoundError:
                continue
            segment_count += 1
            if newest is None or mtime > newest:
                newest = mtime
    except OSError as exc:  # pragma: no cover - unreadable directory
        logger.error("Unable to inspect live segments for camera %s: %s", camera.id, exc)

    age = current - newest if newest is not None else None
    healthy = has_playlist and segment_count > 0 and age is not None and age < max_segment_age_s
    return StreamHealth(camera.id, True, has_playlist, segment_count, age, status, healthy)


def summarize_health(reports: Iterable[StreamHealth]) -> dict[str, object]:
    reports = list(reports)
    enabled = [report for report in reports if report.enabled]
    unhealthy = [report.camera_id for report in enabled if not report.healthy]
    if unhealthy:
        logger.warning("Unhealthy streams: %s", ", ".join(unhealthy))
    return {
        "healthy": not unhealthy,
        "unhealthy": unhealthy,
        "streams": [report.to_dict() for report in reports],
    }


DEFAULT_RTSP_PORT = 554


async def check_camera_reachable(stream_url: str, *, timeout_s: float = 2.0) -> str:
    """Return ``"online"`` when the stream host accepts a TCP connection."""

    try:
        parts = urlsplit(stream_url)
        host = parts.hostname
        port = parts.port or DEFAULT_RTSP_PORT
    except ValueError as exc:
        logger.warning("Unable to parse stream URL %r: %s", stream_url, exc)
        return "offline"
    if not host:
        return "offline"
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout_s)
    except (OSError, asyncio.TimeoutError) as exc:
        logger.debug("Camera host %s:%s unreachable: %s", host, port, exc)
        return "offline"
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:  # pragma: no cover - peer reset during close
        pass
    return "online"


__all__ = ["DEFAULT_RTSP_PORT", "StreamHealth", "check_camera_reachable", "check_stream_health", "summarize_health"]
