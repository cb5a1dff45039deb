"""Event and manual recording state machines for each camera."""
from __future__ import annotations

import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Sequence

from .config import DEFAULT_FFMPEG_BINARY, PipelineSettings
from .finalizer import Finalizer, RecordingResult, format_stamp
from .registry import CamNodeError, CameraStateRegistry, NoSegmentsError, ProcessHandle
from .segments import (
    Segment,
    merge_snapshots,
    segments_from,
    select_best_segment,
    select_window,
    truncate_to_millis,
)
from .system_log import SystemLog
from .transcoder import SpawnFn, manual_record_args, spawn_process

logger = logging.getLogger(__name__)


class RecordingConflictError(CamNodeError):
    """Raised when a manual recording is already running, or is not running."""


@dataclass(frozen=True, slots=True)
class TriggerResult:
    camera_id: str
    started: bool
    message: str

    def to_dict(self) -> dict[str, object]:
        return {
            "camera_id": self.camera_id,
            "status": "started" if self.started else "already_recording",
            "message": self.message,
        }


@dataclass(frozen=True, slots=True)
class ClipPlan:
    """Segments chosen for an on-demand clip and the job finalizing them."""

    camera_id: str
    label: str
    reference: datetime
    segments: tuple[Segment, ...]
    task: asyncio.Task[RecordingResult]

    def to_dict(self) -> dict[str, object]:
        return {
            "camera_id": self.camera_id,
            "label": self.label,
            "timestamp": self.reference.isoformat(),
            "segments": [segment.to_dict() for segment in self.segments],
        }


class RecordingTriggerHandler:
    """Turn external triggers and operator actions into recordings.

    Event triggers never spawn a capture process: the pre-roll is taken from
    the segment buffer at trigger time and merged with whatever arrived during
    the post-roll before the finalizer stitches the result together. Manual
    recordings run their own transcoder writing straight into a container.
    Both flags are tracked independently per camera.
    """

    def __init__(
        self,
        registry: CameraStateRegistry,
        finalizer: Finalizer,
        settings: PipelineSettings,
        *,
        spawn: SpawnFn = spawn_process,
        clock: Callable[[], float] = time.time,
        binary: str = DEFAULT_FFMPEG_BINARY,
        system_log: SystemLog | None = None,
    ) -> None:
        self._registry = registry
        self._finalizer = finalizer
        self._settings = settings
        self._spawn = spawn
        self._clock = clock
        self._binary = binary
        self._system_log = system_log
        self._tasks: set[asyncio.Task[None]] = set()

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _reference(self, timestamp: datetime | None) -> datetime:
        return truncate_to_millis(timestamp if timestamp is not None else self._now())

    # ------------------------------------------------------------------
    # Event-triggered recordings
    # ------------------------------------------------------------------
    def trigger(self, camera_id: str, label: str, timestamp: datetime | None = None) -> TriggerResult:
        """Start an event recording unless one is already in progress."""

        camera = self._registry.camera(camera_id)
        state = self._registry.state(camera.id)
        if state.is_event_recording:
            logger.info("Trigger %r ignored; camera %s is already recording an event", label, camera.id)
            return TriggerResult(camera.id, False, "already recording")

        reference = self._reference(timestamp)
        pre_roll = self._registry.snapshot(camera.id)
        state.is_event_recording = True
        loop = asyncio.get_running_loop()
        state.event_handle = loop.call_later(
            self._settings.event_post_roll_s,
            self._complete_event,
            camera.id,
            label,
            reference,
            pre_roll,
        )
        logger.info(
            "Event %r started for camera %s with %d pre-roll segment(s)",
            label,
            camera.id,
            len(pre_roll),
        )
        if self._system_log is not None:
            self._system_log.record(
                "event_triggered",
                f"Event {label} triggered",
                camera_id=camera.id,
                metadata={"timestamp": reference.isoformat(), "pre_roll": len(pre_roll)},
            )
        return TriggerResult(camera.id, True, "recording started")

    def _complete_event(
        self,
        camera_id: str,
        label: str,
        reference: datetime,
        pre_roll: Sequence[Segment],
    ) -> None:
        state = self._registry.state(camera_id)
        state.event_handle = None
        merged = merge_snapshots(pre_roll, self._registry.snapshot(camera_id))
        missing = [segment for segment in merged if not segment.path.exists()]
        if missing:
            logger.warning(
                "Event %r for camera %s lost %d buffered segment(s) before finalizing",
                label,
                camera_id,
                len(missing),
            )
            merged = [segment for segment in merged if segment.path.exists()]
        anchor = select_best_segment(merged, reference)
        selected = segments_from(merged, anchor) if anchor is not None else []
        if anchor is None:
            logger.error("Event %r for camera %s has no buffered segments", label, camera_id)
        else:
            logger.info(
                "Finalizing event %r for camera %s from %s (%d segment(s))",
                label,
                camera_id,
                anchor.filename,
                len(selected),
            )

        def _finished(result: RecordingResult) -> None:
            state.is_event_recording = False

        self._finalizer.dispatch(camera_id, label, selected, reference=reference, on_done=_finished)

    def is_event_recording(self, camera_id: str) -> bool:
        return self._registry.state(camera_id).is_event_recording

    # ------------------------------------------------------------------
    # Windowed clips
    # ------------------------------------------------------------------
    def capture_window(self, camera_id: str, label: str, timestamp: datetime | None = None) -> ClipPlan:
        """Finalize the buffered segments surrounding ``timestamp`` right away."""

        camera = self._registry.camera(camera_id)
        reference = self._reference(timestamp)
        segments = select_window(
            self._registry.snapshot(camera.id),
            reference,
            before_s=self._settings.pre_event_s,
            after_s=self._settings.post_event_s,
        )
        if not segments:
            raise NoSegmentsError(f"No buffered segments around {reference.isoformat()} for camera {camera.id}")
        task = self._finalizer.dispatch(camera.id, label, segments, reference=reference)
        return ClipPlan(camera.id, label, reference, tuple(segments), task)

    # ------------------------------------------------------------------
    # Manual recordings
    # ------------------------------------------------------------------
    async def start_manual(self, camera_id: str) -> Path:
        """Spawn a stream-copy recorder for ``camera_id`` and return its output path."""

        camera = self._registry.camera(camera_id)
        state = self._registry.state(camera.id)
        async with state.lock:
            if state.is_manual_recording:
                raise RecordingConflictError(f"Camera {camera.id} is already recording")
            directory = self._finalizer.recordings_dir(camera.id)
            directory.mkdir(parents=True, exist_ok=True)
            output = directory / f"manual-{format_stamp(self._now())}.mp4"
            args = manual_record_args(camera.stream_url, output, binary=self._binary)
            try:
                process = await self._spawn(*args)
            except OSError as exc:
                logger.error("Unable to start manual recording for camera %s: %s", camera.id, exc)
                raise CamNodeError(f"Unable to start recording: {exc}") from exc
            state.is_manual_recording = True
            state.manual_process = process
            state.manual_output = str(output)
            task = asyncio.create_task(self._watch_manual(camera.id, process, output))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        logger.info("Manual recording started for camera %s -> %s", camera.id, output.name)
        if self._system_log is not None:
            self._system_log.record(
                "manual_started",
                "Manual recording started",
                camera_id=camera.id,
                metadata={"output": str(output)},
            )
        return output

    async def stop_manual(self, camera_id: str) -> Path:
        """Ask the manual transcoder to close its container; exit is observed later."""

        camera = self._registry.camera(camera_id)
        state = self._registry.state(camera.id)
        async with state.lock:
            process = state.manual_process
            if not state.is_manual_recording or process is None or state.manual_output is None:
                raise RecordingConflictError(f"Camera {camera.id} is not recording")
            output = Path(state.manual_output)
            try:
                process.send_signal(signal.SIGINT)
            except ProcessLookupError:
                logger.debug("Manual recording process for camera %s already exited", camera.id)
        logger.info("Stopping manual recording for camera %s", camera.id)
        return output

    def is_manual_recording(self, camera_id: str) -> bool:
        return self._registry.state(camera_id).is_manual_recording

    async def _watch_manual(self, camera_id: str, process: ProcessHandle, output: Path) -> None:
        stream = process.stderr
        if stream is not None:
            while True:
                try:
                    raw = await stream.readline()
                except ValueError:
                    continue
                if not raw:
                    break
                logger.debug("[%s manual] %s", camera_id, raw.decode("utf-8", errors="replace").rstrip())
        returncode = await process.wait()
        state = self._registry.state(camera_id)
        if state.manual_process is process:
            state.manual_process = None
            state.manual_output = None
            state.is_manual_recording = False
        logger.info("Manual recording for camera %s ended with code %s", camera_id, returncode)
        self._finalizer.dispatch_manual(camera_id, output)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------
    async def aclose(self) -> None:
        """Cancel pending events and interrupt any manual recorders."""

        for state in self._registry.states():
            if state.event_handle is not None:
                logger.info("Discarding pending event recording for camera %s", state.camera_id)
                state.cancel_event()
                state.is_event_recording = False
            process = state.manual_process
            if process is not None and process.returncode is None:
                try:
                    process.send_signal(signal.SIGINT)
                except ProcessLookupError:
                    continue
        tasks = list(self._tasks)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=self._settings.stop_grace_s)
        if not pending:
            return
        for state in self._registry.states():
            process = state.manual_process
            if process is not None and process.returncode is None:
                logger.warning("Manual recording for camera %s ignored SIGINT; killing", state.camera_id)
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
        await asyncio.gather(*pending, return_exceptions=True)


__all__ = [
    "ClipPlan",
    "NoSegmentsError",
    "RecordingConflictError",
    "RecordingTriggerHandler",
    "TriggerResult",
]
