from __future__ import annotations

import os
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

from cam_node.storage import (
    enforce_storage_limit,
    purge_recordings,
    remove_recording_files,
    sweep_live_segments,
    thumbnail_for,
)


def _touch(path: Path, *, size: int = 10, mtime: float | None = None) -> Path:
    path.write_bytes(b"x" * size)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def test_sweep_removes_only_stale_segments(tmp_path: Path) -> None:
    now = time.time()
    stale = _touch(tmp_path / "segment000001.ts", mtime=now - 4000)
    fresh = _touch(tmp_path / "segment000002.ts", mtime=now - 60)
    playlist = _touch(tmp_path / "live.m3u8", mtime=now - 4000)

    removed = sweep_live_segments(tmp_path, 3900, now=now)

    assert removed == [stale]
    assert fresh.exists()
    assert playlist.exists()
    assert sweep_live_segments(tmp_path / "missing", 10) == []


def test_remove_recording_files_takes_thumbnail_too(tmp_path: Path) -> None:
    video = _touch(tmp_path / "rec-motion-1.mp4")
    thumb = _touch(thumbnail_for(video))

    assert remove_recording_files(video) == [video, thumb]
    assert not video.exists() and not thumb.exists()
    assert remove_recording_files(video) == []


def test_purge_recordings_uses_age_cutoff(tmp_path: Path) -> None:
    now = time.time()
    old = _touch(tmp_path / "rec-old.mp4", mtime=now - 2 * 86400)
    _touch(tmp_path / "rec-old.jpg", mtime=now - 2 * 86400)
    recent = _touch(tmp_path / "rec-new.mp4", mtime=now - 60)

    cutoff = datetime.fromtimestamp(now, tz=timezone.utc) - timedelta(hours=24)
    removed = purge_recordings(tmp_path, cutoff)

    assert old in removed
    assert (tmp_path / "rec-old.jpg") in removed
    assert recent.exists()


def test_storage_limit_deletes_oldest_recordings_first(tmp_path: Path) -> None:
    now = time.time()
    oldest = _touch(tmp_path / "rec-a.mp4", size=400, mtime=now - 300)
    oldest_thumb = _touch(tmp_path / "rec-a.jpg", size=5, mtime=now - 300)
    middle = _touch(tmp_path / "rec-b.mp4", size=400, mtime=now - 200)
    newest = _touch(tmp_path / "rec-c.mp4", size=400, mtime=now - 100)

    removed = enforce_storage_limit(tmp_path, 900)

    assert removed == [oldest, oldest_thumb]
    assert middle.exists() and newest.exists()
    assert enforce_storage_limit(tmp_path, 900) == []
