"""Turn buffered live segments into durable recordings and thumbnails."""
from __future__ import annotations

import asyncio
import inspect
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Sequence

from .config import DEFAULT_FFMPEG_BINARY, PipelineSettings
from .segments import Segment, truncate_to_millis
from .storage import enforce_storage_limit, thumbnail_for
from .system_log import SystemLog
from .transcoder import (
    SpawnFn,
    concat_args,
    run_transcoder,
    spawn_process,
    thumbnail_args,
    write_concat_manifest,
)

logger = logging.getLogger(__name__)

_LABEL_SAFE = re.compile(r"[^A-Za-z0-9_-]+")


def sanitize_label(label: str) -> str:
    cleaned = _LABEL_SAFE.sub("-", str(label).strip()).strip("-")
    return cleaned[:64] or "event"


def format_stamp(moment: datetime) -> str:
    moment = truncate_to_millis(moment)
    return moment.strftime("%Y%m%dT%H%M%S") + f"{moment.microsecond // 1000:03d}Z"


def dedupe_paths(paths: Iterable[Path]) -> list[Path]:
    """Drop repeated paths while preserving first-seen order."""

    seen: set[str] = set()
    unique: list[Path] = []
    for path in paths:
        key = str(path)
        if key in seen:
            continue
        seen.add(key)
        unique.append(Path(path))
    return unique


@dataclass(frozen=True, slots=True)
class RecordingResult:
    """Outcome reported to completion hooks once a finalize job ends."""

    camera_id: str
    label: str
    video_path: Path | None
    thumbnail_path: Path | None
    segment_count: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.video_path is not None

    def to_dict(self) -> dict[str, object | None]:
        return {
            "camera_id": self.camera_id,
            "label": self.label,
            "video_path": str(self.video_path) if self.video_path else None,
            "thumbnail_path": str(self.thumbnail_path) if self.thumbnail_path else None,
            "segment_count": self.segment_count,
            "error": self.error,
        }


CompletionHook = Callable[[RecordingResult], "Awaitable[None] | None"]


class Finalizer:
    """Run concat and thumbnail jobs as one-shot transcoder invocations."""

    def __init__(
        self,
        recordings_root: Path | str,
        settings: PipelineSettings,
        *,
        spawn: SpawnFn = spawn_process,
        binary: str = DEFAULT_FFMPEG_BINARY,
        system_log: SystemLog | None = None,
    ) -> None:
        self._root = Path(recordings_root)
        self._settings = settings
        self._spawn = spawn
        self._binary = binary
        self._system_log = system_log
        self._hooks: list[CompletionHook] = []
        self._tasks: set[asyncio.Task[RecordingResult]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def add_completion_hook(self, hook: CompletionHook) -> None:
        """Call ``hook`` with every finished :class:`RecordingResult`."""

        self._hooks.append(hook)

    def recordings_dir(self, camera_id: str) -> Path:
        return self._root / camera_id / "recordings"

    def output_path(self, camera_id: str, label: str, reference: datetime) -> Path:
        """Return a fresh ``rec-<label>-<stamp>.mp4`` path for ``camera_id``."""

        directory = self.recordings_dir(camera_id)
        base = f"rec-{sanitize_label(label)}-{format_stamp(reference)}"
        candidate = directory / f"{base}.mp4"
        if candidate.exists():
            candidate = directory / f"{base}-{uuid.uuid4().hex[:6]}.mp4"
        return candidate

    # ------------------------------------------------------------------
    # Transcoder jobs
    # ------------------------------------------------------------------
    async def concatenate(self, paths: Sequence[Path], output: Path) -> bool:
        """Stream-copy ``paths`` in order into ``output``; returns success."""

        unique = dedupe_paths(paths)
        existing = [path for path in unique if path.exists()]
        missing = len(unique) - len(existing)
        if missing:
            logger.warning("Skipping %d segment(s) no longer on disk for %s", missing, output.name)
        if not existing:
            logger.error("No segment files available to build %s", output.name)
            return False
        output.parent.mkdir(parents=True, exist_ok=True)
        manifest = output.parent / f"concat-{uuid.uuid4().hex}.txt"
        try:
            write_concat_manifest(manifest, existing)
            result = await run_transcoder(
                concat_args(manifest, output, binary=self._binary),
                spawn=self._spawn,
                timeout_s=self._settings.finalize_timeout_s,
                label="concat",
            )
        finally:
            try:
                manifest.unlink()
            except FileNotFoundError:
                pass
        if not result.ok:
            logger.error("Concatenation into %s failed: %s", output.name, result.error)
            return False
        logger.info("Concatenated %d segment(s) into %s", len(existing), output.name)
        return True

    async def generate_thumbnail(self, video: Path) -> Path | None:
        """Extract a still frame next to ``video``; ``None`` when no image was produced."""

        thumb = thumbnail_for(video)
        result = await run_transcoder(
            thumbnail_args(
                video,
                thumb,
                offset_s=self._settings.thumbnail_offset_s,
                width=self._settings.thumbnail_width,
                binary=self._binary,
            ),
            spawn=self._spawn,
            timeout_s=self._settings.finalize_timeout_s,
            label="thumbnail",
        )
        if not result.ok:
            logger.warning("Thumbnail for %s was not created: %s", video.name, result.error)
            return None
        if not thumb.exists():
            logger.warning("Thumbnail for %s was not written; clip may be shorter than the offset", video.name)
            return None
        return thumb

    # ------------------------------------------------------------------
    # Recording assembly
    # ------------------------------------------------------------------
    async def finalize(
        self,
        camera_id: str,
        label: str,
        segments: Sequence[Segment],
        *,
        reference: datetime | None = None,
    ) -> RecordingResult:
        """Concatenate ``segments`` into a new recording and attach a thumbnail."""

        reference = reference or datetime.now(timezone.utc)
        if not segments:
            return RecordingResult(camera_id, label, None, None, 0, error="no segments available")
        output = self.output_path(camera_id, label, reference)
        paths = dedupe_paths(segment.path for segment in segments)
        if not await self.concatenate(paths, output):
            return RecordingResult(camera_id, label, None, None, len(paths), error="concatenation failed")
        thumbnail = await self.generate_thumbnail(output)
        removed = await asyncio.to_thread(
            enforce_storage_limit, output.parent, self._settings.storage_limit_bytes
        )
        if removed:
            logger.info("Storage limit removed %d file(s) for camera %s", len(removed), camera_id)
        return RecordingResult(camera_id, label, output, thumbnail, len(paths))

    async def finalize_manual(self, camera_id: str, video: Path) -> RecordingResult:
        """Attach a thumbnail to a finished manual recording."""

        if not video.exists() or video.stat().st_size == 0:
            return RecordingResult(camera_id, "manual", None, None, 0, error="manual recording is empty")
        thumbnail = await self.generate_thumbnail(video)
        return RecordingResult(camera_id, "manual", video, thumbnail, 0)

    # ------------------------------------------------------------------
    # Fire-and-forget dispatch
    # ------------------------------------------------------------------
    def dispatch(
        self,
        camera_id: str,
        label: str,
        segments: Sequence[Segment],
        *,
        reference: datetime | None = None,
        on_done: Callable[[RecordingResult], None] | None = None,
    ) -> asyncio.Task[RecordingResult]:
        """Schedule :meth:`finalize` in the background and return its task."""

        job = self.finalize(camera_id, label, list(segments), reference=reference)
        return self._track(camera_id, label, job, on_done)

    def dispatch_manual(
        self,
        camera_id: str,
        video: Path,
        *,
        on_done: Callable[[RecordingResult], None] | None = None,
    ) -> asyncio.Task[RecordingResult]:
        return self._track(camera_id, "manual", self.finalize_manual(camera_id, video), on_done)

    def _track(
        self,
        camera_id: str,
        label: str,
        job: Awaitable[RecordingResult],
        on_done: Callable[[RecordingResult], None] | None,
    ) -> asyncio.Task[RecordingResult]:
        task = asyncio.create_task(self._run_job(camera_id, label, job, on_done))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_job(
        self,
        camera_id: str,
        label: str,
        job: Awaitable[RecordingResult],
        on_done: Callable[[RecordingResult], None] | None,
    ) -> RecordingResult:
        try:
            result = await job
        except asyncio.CancelledError:
            result = RecordingResult(camera_id, label, None, None, 0, error="cancelled")
            await self._complete(result, on_done)
            raise
        except Exception as exc:
            logger.exception("Finalize job for camera %s (%s) crashed", camera_id, label)
            result = RecordingResult(camera_id, label, None, None, 0, error=str(exc) or "finalize failed")
        await self._complete(result, on_done)
        return result

    async def _complete(
        self,
        result: RecordingResult,
        on_done: Callable[[RecordingResult], None] | None,
    ) -> None:
        if result.ok:
            logger.info(
                "Recording for camera %s ready: %s (thumbnail: %s)",
                result.camera_id,
                result.video_path,
                result.thumbnail_path or "none",
            )
        else:
            logger.error("Recording for camera %s (%s) failed: %s", result.camera_id, result.label, result.error)
        if self._system_log is not None:
            self._system_log.record(
                "recording_ready" if result.ok else "recording_failed",
                f"Recording {result.label} {'finished' if result.ok else 'failed'}",
                camera_id=result.camera_id,
                metadata=result.to_dict(),
            )
        if on_done is not None:
            try:
                on_done(result)
            except Exception:
                logger.exception("Finalize completion callback failed for camera %s", result.camera_id)
        for hook in list(self._hooks):
            try:
                outcome = hook(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Recording completion hook failed for camera %s", result.camera_id)

    async def aclose(self) -> None:
        """Wait for every in-flight recording job."""

        tasks = list(self._tasks)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = [
    "CompletionHook",
    "Finalizer",
    "RecordingResult",
    "dedupe_paths",
    "format_stamp",
    "sanitize_label",
]
