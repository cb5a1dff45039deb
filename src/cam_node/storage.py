"""Disk housekeeping for live segments and durable recordings."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .transcoder import SEGMENT_SUFFIX

logger = logging.getLogger(__name__)

RECORDING_SUFFIX = ".mp4"
THUMBNAIL_SUFFIX = ".jpg"


def thumbnail_for(video: Path) -> Path:
    return video.with_suffix(THUMBNAIL_SUFFIX)


def remove_recording_files(video: Path) -> list[Path]:
    """Delete ``video`` and its same-basename thumbnail."""

    removed: list[Path] = []
    for candidate in (video, thumbnail_for(video)):
        try:
            candidate.unlink()
        except FileNotFoundError:
            continue
        removed.append(candidate)
    return removed


def sweep_live_segments(live_dir: Path, max_age_s: float, *, now: float | None = None) -> list[Path]:
    """Remove live segment files whose mtime is older than ``max_age_s``."""

    if not live_dir.is_dir():
        return []
    cutoff = (time.time() if now is None else now) - float(max_age_s)
    removed: list[Path] = []
    for path in live_dir.glob(f"*{SEGMENT_SUFFIX}"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed.append(path)
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("Unable to remove stale segment %s: %s", path, exc)
    if removed:
        logger.info("Removed %d stale live segments from %s", len(removed), live_dir)
    return removed


def purge_recordings(directory: Path, older_than: datetime) -> list[Path]:
    """Remove recordings (and thumbnails) last modified before ``older_than``."""

    if not directory.is_dir():
        return []
    cutoff = older_than.timestamp()
    removed: list[Path] = []
    for video in sorted(directory.glob(f"*{RECORDING_SUFFIX}")):
        try:
            if video.stat().st_mtime >= cutoff:
                continue
        except FileNotFoundError:
            continue
        removed.extend(remove_recording_files(video))
    return removed


@dataclass(frozen=True, slots=True)
class _RecordingFile:
    path: Path
    size: int
    mtime: float


def enforce_storage_limit(directory: Path, limit_bytes: int) -> list[Path]:
    """Delete the oldest recordings until the directory fits in ``limit_bytes``."""

    if limit_bytes <= 0 or not directory.is_dir():
        return []
    files: list[_RecordingFile] = []
    for video in directory.glob(f"*{RECORDING_SUFFIX}"):
        try:
            stat = video.stat()
        except FileNotFoundError:
            continue
        files.append(_RecordingFile(video, stat.st_size, stat.st_mtime))
    files.sort(key=lambda item: item.mtime)
    total = sum(item.size for item in files)
    removed: list[Path] = []
    for item in files:
        if total <= limit_bytes:
            break
        try:
            removed.extend(remove_recording_files(item.path))
        except OSError as exc:
            logger.error("Failed to delete %s while enforcing storage limit: %s", item.path, exc)
            break
        total -= item.size
        logger.info("Deleted oldest recording %s to stay under the storage limit", item.path.name)
    return removed


__all__ = [
    "enforce_storage_limit",
    "purge_recordings",
    "remove_recording_files",
    "sweep_live_segments",
    "thumbnail_for",
]
