"""Segment descriptors and the bounded pre-roll buffer."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Deque, Iterable, Sequence


def truncate_to_millis(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime with millisecond precision."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


@dataclass(frozen=True, slots=True)
class Segment:
    """A live segment file observed while the transcoder was writing it."""

    filename: str
    path: Path
    start_time: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "filename": self.filename,
            "path": str(self.path),
            "start_time": self.start_time.isoformat(),
        }


class SegmentBuffer:
    """FIFO of the most recent segments for a single camera."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("Segment buffer capacity must be positive")
        self._capacity = int(capacity)
        self._segments: Deque[Segment] = deque()
        self._filenames: set[str] = set()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._segments)

    def __bool__(self) -> bool:
        return bool(self._segments)

    def append(self, segment: Segment) -> Segment | None:
        """Append ``segment`` and return the evicted entry, if any."""

        if segment.filename in self._filenames:
            raise ValueError(f"Segment {segment.filename!r} is already buffered")
        if self._segments and segment.start_time <= self._segments[-1].start_time:
            raise ValueError("Segment start times must be strictly increasing")
        self._segments.append(segment)
        self._filenames.add(segment.filename)
        evicted: Segment | None = None
        while len(self._segments) > self._capacity:
            evicted = self._segments.popleft()
            self._filenames.discard(evicted.filename)
        return evicted

    def record(self, path: Path, observed_at: datetime) -> Segment:
        """Build a segment for ``path`` observed at ``observed_at`` and append it.

        Start times are clamped so that two observations within the same
        millisecond still produce strictly increasing values.
        """

        start_time = truncate_to_millis(observed_at)
        if self._segments and start_time <= self._segments[-1].start_time:
            start_time = self._segments[-1].start_time + timedelta(milliseconds=1)
        segment = Segment(filename=path.name, path=path, start_time=start_time)
        self.append(segment)
        return segment

    def snapshot(self) -> tuple[Segment, ...]:
        """Return the buffered segments, oldest first."""

        return tuple(self._segments)

    def latest(self) -> Segment | None:
        """Return the newest buffered segment, if any."""

        return self._segments[-1] if self._segments else None

    def clear(self) -> None:
        """Forget every buffered segment."""

        self._segments.clear()
        self._filenames.clear()


def select_best_segment(segments: Sequence[Segment], timestamp: datetime) -> Segment | None:
    """Return the segment with the largest start time not after ``timestamp``.

    Falls back to the most recent segment when every segment starts after
    ``timestamp``; returns ``None`` only for an empty sequence.
    """

    if not segments:
        return None
    reference = truncate_to_millis(timestamp)
    best: Segment | None = None
    for segment in segments:
        if segment.start_time <= reference:
            if best is None or segment.start_time > best.start_time:
                best = segment
    if best is None:
        return segments[-1]
    return best


def segments_from(segments: Sequence[Segment], anchor: Segment) -> list[Segment]:
    """Return ``anchor`` and every segment after it."""

    for index, segment in enumerate(segments):
        if segment.filename == anchor.filename:
            return list(segments[index:])
    return [anchor]


def select_window(
    segments: Sequence[Segment],
    timestamp: datetime,
    *,
    before_s: float,
    after_s: float,
) -> list[Segment]:
    """Return segments starting within ``[timestamp - before_s, timestamp + after_s]``."""

    reference = truncate_to_millis(timestamp)
    start = reference - timedelta(seconds=float(before_s))
    end = reference + timedelta(seconds=float(after_s))
    return [segment for segment in segments if start <= segment.start_time <= end]


def merge_snapshots(*snapshots: Iterable[Segment]) -> list[Segment]:
    """Union several snapshots into one list ordered by start time.

    A filename seen twice with different start times was rewritten by a later
    capture, so the later entry wins.
    """

    merged: dict[str, Segment] = {}
    for snapshot in snapshots:
        for segment in snapshot:
            current = merged.get(segment.filename)
            if current is None or segment.start_time > current.start_time:
                merged[segment.filename] = segment
    return sorted(merged.values(), key=lambda item: item.start_time)


def build_vod_playlist(
    segments: Sequence[Segment],
    *,
    segment_duration_s: int,
    uri_for: Callable[[Segment], str],
) -> str:
    """Render a VOD HLS playlist that lists ``segments`` in order."""

    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        f"#EXT-X-TARGETDURATION:{int(segment_duration_s)}",
        "#EXT-X-PLAYLIST-TYPE:VOD",
    ]
    for segment in segments:
        lines.append(f"#EXTINF:{float(segment_duration_s):.4f},")
        lines.append(uri_for(segment))
    lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines) + "\n"


__all__ = [
    "Segment",
    "SegmentBuffer",
    "build_vod_playlist",
    "merge_snapshots",
    "segments_from",
    "select_best_segment",
    "select_window",
    "truncate_to_millis",
]
