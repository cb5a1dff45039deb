"""Persistent journal of supervisor and recording events."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SystemLogEntry:
    """One journal line describing something that happened to a camera."""

    timestamp: float
    event: str
    message: str
    camera_id: str | None = None
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "event": self.event,
            "message": self.message,
        }
        if self.camera_id is not None:
            payload["camera_id"] = self.camera_id
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> "SystemLogEntry | None":
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        try:
            timestamp = float(payload.get("timestamp", time.time()))
        except (TypeError, ValueError):
            timestamp = time.time()
        camera_id = payload.get("camera_id")
        metadata = payload.get("metadata")
        return cls(
            timestamp=timestamp,
            event=event,
            message=message,
            camera_id=str(camera_id) if camera_id is not None else None,
            metadata=metadata if isinstance(metadata, dict) else None,
        )


class SystemLog:
    """Bounded in-memory journal mirrored to a JSON-lines file."""

    def __init__(
        self,
        path: Path | str | None = Path("data/system_log.jsonl"),
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[SystemLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare system log directory: %s", exc)
                self._path = None
        self._restore()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        event: str,
        message: str,
        *,
        camera_id: str | None = None,
        metadata: dict[str, object | None] | None = None,
    ) -> SystemLogEntry:
        """Append an entry, persist it and return it; ``None`` metadata values are dropped."""

        cleaned = {key: value for key, value in (metadata or {}).items() if value is not None}
        entry = SystemLogEntry(
            timestamp=time.time(),
            event=event,
            message=message,
            camera_id=camera_id,
            metadata=cleaned or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._persist(entry)
        return entry

    def tail(self, limit: int | None = None, *, camera_id: str | None = None) -> list[SystemLogEntry]:
        """Return the newest entries, oldest first, optionally for one camera."""

        with self._lock:
            entries: Iterable[SystemLogEntry] = list(self._entries)
        if camera_id:
            entries = [entry for entry in entries if entry.camera_id == camera_id]
        entries = list(entries)
        if limit is not None:
            limit = max(1, int(limit))
            entries = entries[-limit:]
        return entries

    def _restore(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load system log: %s", exc)
            return
        for line in lines:
            if not line.strip():
                continue
            try:
                entry = SystemLogEntry.from_dict(json.loads(line))
            except ValueError:
                continue
            if entry is not None:
                self._entries.append(entry)

    def _persist(self, entry: SystemLogEntry) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist system log: %s", exc)


__all__ = ["SystemLog", "SystemLogEntry"]
