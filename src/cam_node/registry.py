"""Owned per-camera runtime state: process handles, buffers and statuses."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

from .config import CameraIdentity, CameraRegistry
from .segments import SegmentBuffer
from .status import CameraStatus, StatusTable


class CamNodeError(RuntimeError):
    """Base class for errors surfaced to API callers."""


class UnknownCameraError(CamNodeError, KeyError):
    """Raised when a camera id is not present in the registry."""

    def __init__(self, camera_id: str) -> None:
        super().__init__(f"Camera {camera_id!r} not found")
        self.camera_id = camera_id

    def __str__(self) -> str:
        return str(self.args[0])


class NoSegmentsError(CamNodeError):
    """Raised when no buffered segment matches a capture request."""


class ProcessHandle(Protocol):
    """Subset of :class:`asyncio.subprocess.Process` used by CamNode."""

    pid: int
    returncode: int | None
    stderr: asyncio.StreamReader | None

    async def wait(self) -> int: ...

    def send_signal(self, signal: int) -> None: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


@dataclass
class CameraRuntimeState:
    """Mutable state for one camera; only the event loop thread touches it."""

    camera_id: str
    is_manual_recording: bool = False
    is_event_recording: bool = False
    live_process: ProcessHandle | None = None
    manual_process: ProcessHandle | None = None
    manual_output: str | None = None
    restart_handle: asyncio.TimerHandle | None = None
    event_handle: asyncio.TimerHandle | None = None
    watchdog_killed: bool = False
    awaiting_first_segment: bool = True
    tasks: set[asyncio.Task] = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def cancel_restart(self) -> None:
        if self.restart_handle is not None:
            self.restart_handle.cancel()
            self.restart_handle = None

    def cancel_event(self) -> None:
        if self.event_handle is not None:
            self.event_handle.cancel()
            self.event_handle = None

    @property
    def live_running(self) -> bool:
        process = self.live_process
        return process is not None and process.returncode is None


class CameraStateRegistry:
    """Single owner of every per-camera map, keyed by camera id."""

    def __init__(
        self,
        cameras: CameraRegistry,
        *,
        buffer_capacity: int,
        clock: Callable[[], float] = time.time,
        status_table: StatusTable | None = None,
    ) -> None:
        self._cameras = cameras
        self._buffer_capacity = int(buffer_capacity)
        self._states: dict[str, CameraRuntimeState] = {}
        self._buffers: dict[str, SegmentBuffer] = {}
        self.statuses = status_table if status_table is not None else StatusTable(clock=clock)

    @property
    def cameras(self) -> CameraRegistry:
        return self._cameras

    def camera(self, camera_id: str) -> CameraIdentity:
        """Return the configured camera or raise :class:`UnknownCameraError`."""

        camera = self._cameras.get(camera_id)
        if camera is None:
            raise UnknownCameraError(str(camera_id))
        return camera

    def state(self, camera_id: str) -> CameraRuntimeState:
        """Return the runtime state of ``camera_id``, creating it on first use."""

        key = self.camera(camera_id).id
        state = self._states.get(key)
        if state is None:
            state = CameraRuntimeState(camera_id=key)
            self._states[key] = state
        return state

    def buffer(self, camera_id: str) -> SegmentBuffer:
        """Return the segment buffer of ``camera_id``, creating it on first use."""

        key = self.camera(camera_id).id
        buffer = self._buffers.get(key)
        if buffer is None:
            buffer = SegmentBuffer(self._buffer_capacity)
            self._buffers[key] = buffer
        return buffer

    def snapshot(self, camera_id: str):
        """Return a read-only ordered snapshot of the camera's segment buffer."""

        return self.buffer(camera_id).snapshot()

    def set_status(self, camera_id: str, status: CameraStatus):
        """Record a status transition for a known camera."""

        return self.statuses.update(self.camera(camera_id).id, status)

    def states(self) -> list[CameraRuntimeState]:
        return list(self._states.values())


__all__ = [
    "CamNodeError",
    "CameraRuntimeState",
    "CameraStateRegistry",
    "NoSegmentsError",
    "ProcessHandle",
    "UnknownCameraError",
]
