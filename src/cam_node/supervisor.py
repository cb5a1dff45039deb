"""Keep one live HLS transcoder running per camera."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from .config import DEFAULT_FFMPEG_BINARY, CameraIdentity, PipelineSettings
from .registry import CamNodeError, CameraStateRegistry, NoSegmentsError, ProcessHandle
from .status import CameraStatus
from .storage import enforce_storage_limit, purge_recordings, sweep_live_segments
from .system_log import SystemLog
from .transcoder import (
    SpawnFn,
    live_stream_args,
    parse_segment_opened,
    run_transcoder,
    screenshot_args,
    spawn_process,
)

logger = logging.getLogger(__name__)

_STALE_PATTERNS = ("*.ts", "*.m3u8", "*.tmp")
_PLAYLIST_PATTERNS = ("*.m3u8", "*.tmp")


@dataclass(frozen=True, slots=True)
class SegmentOpened:
    """The transcoder reported that it started writing ``path``."""

    camera_id: str
    path: Path
    observed_at: datetime


class StreamSupervisor:
    """Spawn, monitor, restart and reap the live transcoder of every camera."""

    def __init__(
        self,
        registry: CameraStateRegistry,
        settings: PipelineSettings,
        *,
        recordings_root: Path | str,
        spawn: SpawnFn = spawn_process,
        clock: Callable[[], float] = time.time,
        binary: str = DEFAULT_FFMPEG_BINARY,
        system_log: SystemLog | None = None,
    ) -> None:
        self._registry = registry
        self._settings = settings
        self._root = Path(recordings_root).absolute()
        self._spawn = spawn
        self._clock = clock
        self._binary = binary
        self._system_log = system_log
        self._loops: list[asyncio.Task[None]] = []
        self._restarts: set[asyncio.Task[bool]] = set()
        self._closed = False

    @property
    def registry(self) -> CameraStateRegistry:
        return self._registry

    @property
    def settings(self) -> PipelineSettings:
        return self._settings

    def live_dir(self, camera_id: str) -> Path:
        return self._root / camera_id / "live"

    def recordings_dir(self, camera_id: str) -> Path:
        return self._root / camera_id / "recordings"

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _journal(self, event: str, message: str, camera_id: str, **metadata: object) -> None:
        if self._system_log is None:
            return
        self._system_log.record(event, message, camera_id=camera_id, metadata=metadata or None)

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------
    async def start(self, camera: CameraIdentity | str) -> bool:
        """Spawn the live transcoder for ``camera``; returns ``True`` once running."""

        if isinstance(camera, str):
            camera = self._registry.camera(camera)
        if not camera.enabled:
            logger.info("Camera %s is disabled; not starting live stream", camera.id)
            return False
        if self._closed:
            return False
        state = self._registry.state(camera.id)
        state.cancel_restart()
        if state.live_running:
            logger.debug("Live stream for camera %s is already running", camera.id)
            return True

        live_dir = self.live_dir(camera.id)
        live_dir.mkdir(parents=True, exist_ok=True)
        # A pending event still needs its pre-roll files; the retention sweep
        # retires them later.
        patterns = _PLAYLIST_PATTERNS if state.is_event_recording else _STALE_PATTERNS
        self._remove_stale_artifacts(live_dir, patterns)
        self._registry.buffer(camera.id).clear()
        self._registry.set_status(camera.id, CameraStatus.RESTARTING)

        run_id = uuid.uuid4().hex[:8]
        args = live_stream_args(
            camera.stream_url, live_dir, self._settings, run_id=run_id, binary=self._binary
        )
        try:
            process = await self._spawn(*args)
        except OSError as exc:
            logger.error("Unable to spawn live transcoder for camera %s: %s", camera.id, exc)
            self._registry.set_status(camera.id, CameraStatus.ERROR)
            self._journal("spawn_failed", f"Live transcoder failed to start: {exc}", camera.id)
            self._schedule_restart(camera.id)
            return False

        state.live_process = process
        state.watchdog_killed = False
        state.awaiting_first_segment = True
        logger.info("Started live transcoder for camera %s (pid %s)", camera.id, process.pid)
        self._journal("stream_started", "Live transcoder started", camera.id, pid=process.pid, run_id=run_id)

        queue: asyncio.Queue[SegmentOpened | None] = asyncio.Queue()
        self._track(camera.id, self._read_stderr(camera.id, process, queue))
        self._track(camera.id, self._consume_segments(camera.id, process, queue))
        self._track(camera.id, self._watch_exit(camera.id, process))
        return True

    async def start_all(self) -> None:
        """Start the live transcoder of every enabled camera."""

        for camera in self._registry.cameras.enabled():
            await self.start(camera)

    async def stop(self, camera_id: str) -> None:
        """Stop the live transcoder without triggering a restart."""

        state = self._registry.state(camera_id)
        state.cancel_restart()
        process = state.live_process
        state.live_process = None
        if process is None or process.returncode is not None:
            return
        logger.info("Stopping live transcoder for camera %s (pid %s)", state.camera_id, process.pid)
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self._settings.stop_grace_s)
        except asyncio.TimeoutError:
            logger.warning(
                "Live transcoder for camera %s ignored SIGTERM; sending SIGKILL", state.camera_id
            )
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def stop_all(self) -> list[str]:
        """Stop every running live transcoder; returns the affected camera ids."""

        running = [state.camera_id for state in self._registry.states() if state.live_running]
        await asyncio.gather(*(self.stop(camera_id) for camera_id in running))
        for camera_id in running:
            self._registry.set_status(camera_id, CameraStatus.INITIALIZING)
            self._journal("stream_disconnected", "Live transcoder disconnected on request", camera_id)
        if running:
            logger.info("Disconnected %d live transcoder(s)", len(running))
        return running

    async def capture_screenshot(self, camera_id: str) -> bytes:
        """Grab one JPEG frame from the newest buffered segment of ``camera_id``."""

        latest = self._registry.buffer(camera_id).latest()
        if latest is None or not latest.path.exists():
            raise NoSegmentsError(f"No live segment available for camera {camera_id}")
        output = latest.path.with_name(f"screenshot-{uuid.uuid4().hex[:8]}.jpg")
        try:
            result = await run_transcoder(
                screenshot_args(latest.path, output, binary=self._binary),
                spawn=self._spawn,
                timeout_s=self._settings.finalize_timeout_s,
                label=f"screenshot:{camera_id}",
            )
            if not result.ok or not output.exists():
                reason = result.error or "no frame written"
                raise CamNodeError(f"Screenshot for camera {camera_id} failed: {reason}")
            return await asyncio.to_thread(output.read_bytes)
        finally:
            output.unlink(missing_ok=True)

    def _remove_stale_artifacts(self, live_dir: Path, patterns: tuple[str, ...] = _STALE_PATTERNS) -> None:
        removed = 0
        for pattern in patterns:
            for path in live_dir.glob(pattern):
                try:
                    path.unlink()
                    removed += 1
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    logger.warning("Unable to remove stale artifact %s: %s", path, exc)
        if removed:
            logger.debug("Removed %d stale live artifacts from %s", removed, live_dir)

    def _schedule_restart(self, camera_id: str) -> None:
        if self._closed:
            return
        state = self._registry.state(camera_id)
        state.cancel_restart()
        delay = self._settings.restart_delay_s
        loop = asyncio.get_running_loop()
        state.restart_handle = loop.call_later(delay, self._restart, camera_id)
        logger.info("Restarting live transcoder for camera %s in %.1fs", camera_id, delay)
        self._journal("restart_scheduled", "Live transcoder restart scheduled", camera_id, delay_s=delay)

    def _restart(self, camera_id: str) -> None:
        state = self._registry.state(camera_id)
        state.restart_handle = None
        task = asyncio.create_task(self.start(camera_id))
        self._restarts.add(task)
        task.add_done_callback(self._on_restart_done)

    def _on_restart_done(self, task: asyncio.Task[bool]) -> None:
        self._restarts.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception:  # pragma: no cover - logging only
            logger.exception("Live transcoder restart failed")

    # ------------------------------------------------------------------
    # Per-process monitoring tasks
    # ------------------------------------------------------------------
    def _track(self, camera_id: str, coro) -> asyncio.Task[None]:
        state = self._registry.state(camera_id)
        task = asyncio.create_task(coro)
        state.tasks.add(task)

        def _done(finished: asyncio.Task[None]) -> None:
            state.tasks.discard(finished)
            try:
                finished.result()
            except asyncio.CancelledError:
                pass
            except Exception:  # pragma: no cover - logging only
                logger.exception("Monitor task for camera %s terminated unexpectedly", camera_id)

        task.add_done_callback(_done)
        return task

    async def _read_stderr(
        self,
        camera_id: str,
        process: ProcessHandle,
        queue: asyncio.Queue[SegmentOpened | None],
    ) -> None:
        stream = process.stderr
        try:
            if stream is None:
                return
            while True:
                try:
                    raw = await stream.readline()
                except ValueError:
                    logger.warning("Discarding oversized diagnostic line from camera %s", camera_id)
                    continue
                if not raw:
                    return
                line = raw.decode("utf-8", errors="replace").rstrip()
                if not line:
                    continue
                path = parse_segment_opened(line)
                if path is not None:
                    queue.put_nowait(SegmentOpened(camera_id, path, self._now()))
                elif "error" in line.lower():
                    logger.warning("[%s] %s", camera_id, line)
                else:
                    logger.debug("[%s] %s", camera_id, line)
        finally:
            queue.put_nowait(None)

    async def _consume_segments(
        self,
        camera_id: str,
        process: ProcessHandle,
        queue: asyncio.Queue[SegmentOpened | None],
    ) -> None:
        buffer = self._registry.buffer(camera_id)
        state = self._registry.state(camera_id)
        while True:
            event = await queue.get()
            if event is None:
                return
            if state.live_process is not process:
                continue
            try:
                segment = buffer.record(event.path, event.observed_at)
            except ValueError as exc:
                logger.warning("Ignoring segment %s for camera %s: %s", event.path.name, camera_id, exc)
                continue
            logger.debug("Camera %s buffered %s", camera_id, segment.filename)
            if state.awaiting_first_segment:
                state.awaiting_first_segment = False
                self._registry.set_status(camera_id, CameraStatus.RECORDING)
            else:
                self._registry.statuses.touch(camera_id)

    async def _watch_exit(self, camera_id: str, process: ProcessHandle) -> None:
        returncode = await process.wait()
        state = self._registry.state(camera_id)
        if state.live_process is not process:
            logger.info("Live transcoder for camera %s stopped (code %s)", camera_id, returncode)
            return
        state.live_process = None
        logger.warning("Live transcoder for camera %s exited with code %s", camera_id, returncode)
        self._registry.set_status(camera_id, CameraStatus.RESTARTING)
        self._journal(
            "stream_exited",
            "Live transcoder exited unexpectedly",
            camera_id,
            returncode=returncode,
            watchdog=state.watchdog_killed or None,
        )
        self._schedule_restart(camera_id)

    # ------------------------------------------------------------------
    # Periodic maintenance
    # ------------------------------------------------------------------
    def check_watchdog(self) -> list[str]:
        """Kill live transcoders whose status has not moved within the stall threshold."""

        killed: list[str] = []
        threshold = self._settings.stall_threshold_s
        for camera in self._registry.cameras.enabled():
            state = self._registry.state(camera.id)
            if not state.live_running or state.watchdog_killed:
                continue
            age = self._registry.statuses.seconds_since_update(camera.id)
            if age is None or age <= threshold:
                continue
            process = state.live_process
            logger.warning(
                "Camera %s has not reported progress for %.0fs; killing pid %s",
                camera.id,
                age,
                process.pid,
            )
            state.watchdog_killed = True
            try:
                process.kill()
            except ProcessLookupError:
                continue
            killed.append(camera.id)
            self._journal("watchdog_kill", "Watchdog killed a stalled live transcoder", camera.id, stalled_s=round(age, 1))
        return killed

    def sweep(self) -> list[Path]:
        """Apply live-segment retention, recording retention and the storage cap."""

        now = self._clock()
        cutoff = datetime.fromtimestamp(now, tz=timezone.utc) - timedelta(
            hours=self._settings.recording_retention_hours
        )
        removed: list[Path] = []
        for camera in self._registry.cameras:
            removed.extend(
                sweep_live_segments(self.live_dir(camera.id), self._settings.live_retention_s, now=now)
            )
            recordings = self.recordings_dir(camera.id)
            removed.extend(purge_recordings(recordings, cutoff))
            removed.extend(enforce_storage_limit(recordings, self._settings.storage_limit_bytes))
        return removed

    def start_maintenance(self) -> None:
        """Launch the watchdog and retention loops; a second call is a no-op."""

        if self._loops:
            return
        self._loops = [
            asyncio.create_task(self._periodic("watchdog", self._settings.watchdog_interval_s, self._watchdog_tick)),
            asyncio.create_task(
                self._periodic("retention", self._settings.retention_sweep_interval_s, self._sweep_tick)
            ),
        ]

    async def _watchdog_tick(self) -> None:
        self.check_watchdog()

    async def _sweep_tick(self) -> None:
        removed = await asyncio.to_thread(self.sweep)
        if removed:
            logger.info("Retention sweep removed %d file(s)", len(removed))

    async def _periodic(self, name: str, interval: float, action) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await action()
            except Exception:
                logger.exception("%s tick failed", name.capitalize())

    async def aclose(self) -> None:
        """Stop every transcoder and cancel all timers and monitor tasks."""

        self._closed = True
        loops, self._loops = self._loops, []
        for task in loops:
            task.cancel()
        for task in list(self._restarts):
            task.cancel()
        states = self._registry.states()
        for state in states:
            state.cancel_restart()
        await asyncio.gather(*(self.stop(state.camera_id) for state in states))
        pending: list[asyncio.Task] = [*loops, *self._restarts]
        for state in states:
            for task in list(state.tasks):
                task.cancel()
                pending.append(task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


__all__ = ["SegmentOpened", "StreamSupervisor"]
