"""Per-camera status table and its push channel."""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncGenerator, Callable, Mapping

logger = logging.getLogger(__name__)

StatusTableSnapshot = dict[str, dict[str, object]]


class CameraStatus(str, Enum):
    """Lifecycle states reported for each camera's live stream."""

    INITIALIZING = "initializing"
    RESTARTING = "restarting"
    RECORDING = "recording"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class StatusEntry:
    status: CameraStatus
    last_update: int  # epoch milliseconds

    def to_dict(self) -> dict[str, object]:
        return {"status": self.status.value, "lastUpdate": self.last_update}


class StatusTable:
    """Last-write-wins status per camera; transitions notify a listener."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        on_change: Callable[[StatusTableSnapshot], None] | None = None,
    ) -> None:
        self._clock = clock
        self._entries: dict[str, StatusEntry] = {}
        self._on_change = on_change

    def set_listener(self, on_change: Callable[[StatusTableSnapshot], None] | None) -> None:
        self._on_change = on_change

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def get(self, camera_id: str) -> StatusEntry | None:
        return self._entries.get(camera_id)

    def update(self, camera_id: str, status: CameraStatus) -> StatusEntry:
        """Record a transition for ``camera_id`` and notify the listener."""

        entry = StatusEntry(status=CameraStatus(status), last_update=self._now_ms())
        self._entries[camera_id] = entry
        logger.info("Camera %s status -> %s", camera_id, entry.status.value)
        if self._on_change is not None:
            try:
                self._on_change(self.snapshot())
            except Exception:  # pragma: no cover - listener failures must not break updates
                logger.exception("Status listener failed for camera %s", camera_id)
        return entry

    def touch(self, camera_id: str) -> StatusEntry | None:
        """Refresh the timestamp of the current status without a transition."""

        entry = self._entries.get(camera_id)
        if entry is None:
            return None
        refreshed = StatusEntry(status=entry.status, last_update=self._now_ms())
        self._entries[camera_id] = refreshed
        return refreshed

    def seconds_since_update(self, camera_id: str) -> float | None:
        """Return the age of the last transition or touch for ``camera_id``."""

        entry = self._entries.get(camera_id)
        if entry is None:
            return None
        return (self._now_ms() - entry.last_update) / 1000.0

    def snapshot(self) -> StatusTableSnapshot:
        """Return every entry in its wire form."""

        return {camera_id: entry.to_dict() for camera_id, entry in self._entries.items()}


class StatusBroadcaster:
    """Fan the status table out to any number of observer queues."""

    def __init__(
        self,
        *,
        queue_size: int = 1,
        source: Callable[[], StatusTableSnapshot] | None = None,
    ) -> None:
        if queue_size <= 0:
            raise ValueError("queue_size must be positive")
        self._queue_size = queue_size
        self._source = source
        self._subscribers: set[asyncio.Queue[StatusTableSnapshot]] = set()
        self._latest: StatusTableSnapshot = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, table: Mapping[str, Mapping[str, object]]) -> None:
        """Offer ``table`` to every observer, replacing any undelivered table."""

        payload = {camera_id: dict(entry) for camera_id, entry in table.items()}
        self._latest = payload
        for queue in list(self._subscribers):
            try:
                self._offer(queue, payload)
            except Exception:  # pragma: no cover - one observer must not affect the rest
                logger.exception("Dropping status observer after delivery failure")
                self._subscribers.discard(queue)

    @asynccontextmanager
    async def subscribe(self) -> AsyncGenerator[asyncio.Queue[StatusTableSnapshot], None]:
        """Register an observer queue seeded with the full current table."""

        queue: asyncio.Queue[StatusTableSnapshot] = asyncio.Queue(maxsize=self._queue_size)
        initial = self._source() if self._source is not None else self._latest
        queue.put_nowait(dict(initial))
        self._subscribers.add(queue)
        logger.debug("Status observer connected (%d total)", len(self._subscribers))
        try:
            yield queue
        finally:
            self._subscribers.discard(queue)
            logger.debug("Status observer disconnected (%d remaining)", len(self._subscribers))

    async def stream(self) -> AsyncGenerator[StatusTableSnapshot, None]:
        async with self.subscribe() as queue:
            while True:
                yield await queue.get()

    def close(self) -> None:
        """Drop every observer queue."""

        for queue in list(self._subscribers):
            self._drain_queue(queue)
        self._subscribers.clear()

    def _offer(self, queue: asyncio.Queue[StatusTableSnapshot], payload: StatusTableSnapshot) -> None:
        try:
            queue.put_nowait(payload)
        except asyncio.QueueFull:
            self._drain_queue(queue)
            try:
                queue.put_nowait(payload)
            except asyncio.QueueFull:  # pragma: no cover - queue refilled concurrently
                logger.debug("Dropping status update after queue remained full")

    def _drain_queue(self, queue: asyncio.Queue[StatusTableSnapshot]) -> None:
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            return


__all__ = [
    "CameraStatus",
    "StatusBroadcaster",
    "StatusEntry",
    "StatusTable",
    "StatusTableSnapshot",
]
