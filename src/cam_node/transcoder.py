"""Command builders and process helpers for the external ffmpeg binary."""
from __future__ import annotations

import asyncio
import logging
import re
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from .config import DEFAULT_FFMPEG_BINARY, PipelineSettings
from .registry import ProcessHandle

logger = logging.getLogger(__name__)

SEGMENT_PATTERN = "segment%06d.ts"
RUN_SEGMENT_PATTERN = "segment-{run_id}-%06d.ts"
PLAYLIST_NAME = "live.m3u8"
SEGMENT_SUFFIX = ".ts"

# ffmpeg announces every file it opens at info level, e.g.
# [hls @ 0x55d0c8] Opening '/data/1/live/segment000042.ts' for writing
_SEGMENT_OPENED = re.compile(r"Opening '(?P<path>[^']+\.ts)' for writing")

SpawnFn = Callable[..., Awaitable[ProcessHandle]]


async def spawn_process(*args: str, stdin: int | None = asyncio.subprocess.DEVNULL) -> ProcessHandle:
    """Spawn ``args`` with stderr piped and stdout discarded."""

    return await asyncio.create_subprocess_exec(
        *args,
        stdin=stdin,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )


def parse_segment_opened(line: str) -> Path | None:
    """Return the segment path announced by ``line`` or ``None``."""

    match = _SEGMENT_OPENED.search(line)
    if match is None:
        return None
    return Path(match.group("path"))


def segment_pattern(run_id: str | None = None) -> str:
    """Return the segment filename template for one live run."""

    if not run_id:
        return SEGMENT_PATTERN
    return RUN_SEGMENT_PATTERN.format(run_id=run_id)


def live_stream_args(
    stream_url: str,
    live_dir: Path,
    settings: PipelineSettings,
    *,
    run_id: str | None = None,
    binary: str = DEFAULT_FFMPEG_BINARY,
) -> list[str]:
    """Arguments for the long-lived HLS process of one camera.

    ``-hls_delete_threshold`` keeps a buffer's worth of unreferenced segments
    on disk so pre-roll lookups still find their files. ``run_id`` prefixes the
    segment names so a restarted process never reuses an earlier filename.
    """

    return [
        binary,
        "-hide_banner",
        "-loglevel",
        "info",
        "-rtsp_transport",
        "tcp",
        "-i",
        stream_url,
        "-c:v",
        "copy",
        "-an",
        "-f",
        "hls",
        "-hls_time",
        str(settings.segment_duration_s),
        "-hls_list_size",
        str(settings.playlist_size),
        "-hls_flags",
        "delete_segments",
        "-hls_delete_threshold",
        str(settings.buffer_capacity),
        "-hls_segment_filename",
        str(live_dir / segment_pattern(run_id)),
        str(live_dir / PLAYLIST_NAME),
    ]


def manual_record_args(
    stream_url: str,
    output: Path,
    *,
    binary: str = DEFAULT_FFMPEG_BINARY,
) -> list[str]:
    return [
        binary,
        "-hide_banner",
        "-rtsp_transport",
        "tcp",
        "-i",
        stream_url,
        "-c",
        "copy",
        "-an",
        "-movflags",
        "+faststart",
        "-y",
        str(output),
    ]


def concat_args(manifest: Path, output: Path, *, binary: str = DEFAULT_FFMPEG_BINARY) -> list[str]:
    return [
        binary,
        "-hide_banner",
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        str(manifest),
        "-c",
        "copy",
        "-movflags",
        "+faststart",
        "-y",
        str(output),
    ]


def thumbnail_args(
    video: Path,
    output: Path,
    *,
    offset_s: float = 1.0,
    width: int = 320,
    binary: str = DEFAULT_FFMPEG_BINARY,
) -> list[str]:
    return [
        binary,
        "-hide_banner",
        "-ss",
        f"{float(offset_s):.3f}",
        "-i",
        str(video),
        "-frames:v",
        "1",
        "-vf",
        f"scale={int(width)}:-1",
        "-y",
        str(output),
    ]


def screenshot_args(segment: Path, output: Path, *, binary: str = DEFAULT_FFMPEG_BINARY) -> list[str]:
    return [
        binary,
        "-hide_banner",
        "-i",
        str(segment),
        "-frames:v",
        "1",
        "-q:v",
        "3",
        "-y",
        str(output),
    ]


def write_concat_manifest(path: Path, segments: Sequence[Path]) -> Path:
    lines = []
    for segment in segments:
        escaped = str(segment).replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@dataclass(frozen=True, slots=True)
class TranscoderResult:
    """Outcome of a one-shot transcoder invocation."""

    returncode: int | None
    stderr_tail: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.returncode == 0


async def run_transcoder(
    args: Sequence[str],
    *,
    spawn: SpawnFn = spawn_process,
    timeout_s: float | None = None,
    label: str = "ffmpeg",
    tail_lines: int = 20,
) -> TranscoderResult:
    """Run a one-shot transcoder job and report its outcome without raising."""

    try:
        process = await spawn(*args)
    except OSError as exc:
        logger.error("[%s] failed to start %s: %s", label, args[0], exc)
        return TranscoderResult(returncode=None, error=f"spawn failed: {exc}")

    tail: deque[str] = deque(maxlen=tail_lines)

    async def _drain() -> None:
        stream = process.stderr
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                tail.append(line)
                logger.debug("[%s] %s", label, line)

    async def _run() -> int:
        await _drain()
        return await process.wait()

    try:
        if timeout_s is None:
            returncode = await _run()
        else:
            returncode = await asyncio.wait_for(_run(), timeout=timeout_s)
    except asyncio.TimeoutError:
        logger.error("[%s] timed out after %.1fs; killing pid %s", label, timeout_s, process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        return TranscoderResult(returncode=process.returncode, stderr_tail="\n".join(tail), error="timeout")

    if returncode != 0:
        logger.error("[%s] exited with code %s", label, returncode)
        return TranscoderResult(
            returncode=returncode,
            stderr_tail="\n".join(tail),
            error=f"exit code {returncode}",
        )
    return TranscoderResult(returncode=returncode, stderr_tail="\n".join(tail))


__all__ = [
    "PLAYLIST_NAME",
    "RUN_SEGMENT_PATTERN",
    "SEGMENT_PATTERN",
    "SEGMENT_SUFFIX",
    "SpawnFn",
    "TranscoderResult",
    "concat_args",
    "live_stream_args",
    "manual_record_args",
    "parse_segment_opened",
    "run_transcoder",
    "screenshot_args",
    "segment_pattern",
    "spawn_process",
    "thumbnail_args",
    "write_concat_manifest",
]
