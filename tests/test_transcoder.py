from __future__ import annotations

import asyncio
from pathlib import Path

from cam_node.config import PipelineSettings
from cam_node.transcoder import (
    concat_args,
    live_stream_args,
    parse_segment_opened,
    run_transcoder,
    screenshot_args,
    thumbnail_args,
    write_concat_manifest,
)

from conftest import FakeProcess


def test_parse_segment_opened_matches_hls_lines() -> None:
    line = "[hls @ 0x55d0c8] Opening '/data/1/live/segment000042.ts' for writing"
    assert parse_segment_opened(line) == Path("/data/1/live/segment000042.ts")
    assert parse_segment_opened("[hls @ 0x55d0c8] Opening '/data/1/live/live.m3u8.tmp' for writing") is None
    assert parse_segment_opened("frame=  100 fps= 25 q=-1.0 size=N/A") is None


def test_live_stream_args_use_shared_segment_duration(tmp_path: Path) -> None:
    settings = PipelineSettings(segment_duration_s=4, playlist_size=6, buffer_capacity=40)
    args = live_stream_args("rtsp://cam/stream", tmp_path, settings, binary="/usr/bin/ffmpeg")

    assert args[0] == "/usr/bin/ffmpeg"
    assert args[args.index("-rtsp_transport") + 1] == "tcp"
    assert args[args.index("-i") + 1] == "rtsp://cam/stream"
    assert args[args.index("-c:v") + 1] == "copy"
    assert "-an" in args
    assert args[args.index("-hls_time") + 1] == "4"
    assert args[args.index("-hls_list_size") + 1] == "6"
    assert args[args.index("-hls_flags") + 1] == "delete_segments"
    assert args[args.index("-hls_delete_threshold") + 1] == "40"
    assert args[args.index("-hls_segment_filename") + 1] == str(tmp_path / "segment%06d.ts")
    assert args[-1] == str(tmp_path / "live.m3u8")


def test_live_stream_args_prefix_segments_with_run_id(tmp_path: Path) -> None:
    args = live_stream_args("rtsp://cam/stream", tmp_path, PipelineSettings(), run_id="0a1b2c3d")

    pattern = args[args.index("-hls_segment_filename") + 1]
    assert pattern == str(tmp_path / "segment-0a1b2c3d-%06d.ts")
    line = f"[hls @ 0x1] Opening '{pattern % 7}' for writing"
    assert parse_segment_opened(line) == tmp_path / "segment-0a1b2c3d-000007.ts"


def test_screenshot_args_grab_single_frame(tmp_path: Path) -> None:
    args = screenshot_args(tmp_path / "segment000003.ts", tmp_path / "shot.jpg")
    assert args[args.index("-i") + 1] == str(tmp_path / "segment000003.ts")
    assert args[args.index("-frames:v") + 1] == "1"
    assert args[args.index("-q:v") + 1] == "3"
    assert args[-1] == str(tmp_path / "shot.jpg")


def test_concat_and_thumbnail_args(tmp_path: Path) -> None:
    concat = concat_args(tmp_path / "list.txt", tmp_path / "out.mp4")
    assert concat[concat.index("-f") + 1] == "concat"
    assert concat[concat.index("-safe") + 1] == "0"
    assert concat[concat.index("-c") + 1] == "copy"
    assert concat[concat.index("-movflags") + 1] == "+faststart"

    thumb = thumbnail_args(tmp_path / "out.mp4", tmp_path / "out.jpg")
    assert thumb[thumb.index("-ss") + 1] == "1.000"
    assert thumb[thumb.index("-frames:v") + 1] == "1"
    assert thumb[thumb.index("-vf") + 1] == "scale=320:-1"
    assert thumb[-1] == str(tmp_path / "out.jpg")


def test_write_concat_manifest_escapes_quotes(tmp_path: Path) -> None:
    manifest = write_concat_manifest(
        tmp_path / "list.txt",
        [Path("/live/segment000001.ts"), Path("/live/it's.ts")],
    )
    assert manifest.read_text(encoding="utf-8").splitlines() == [
        "file '/live/segment000001.ts'",
        "file '/live/it'\\''s.ts'",
    ]


def test_run_transcoder_reports_success_and_failure() -> None:
    async def runner() -> tuple:
        async def succeed(*args: str, **kwargs: object) -> FakeProcess:
            process = FakeProcess(list(args))
            process.emit("all good")
            process.finish(0)
            return process

        async def fail(*args: str, **kwargs: object) -> FakeProcess:
            process = FakeProcess(list(args))
            process.emit("Invalid data found when processing input")
            process.finish(1)
            return process

        async def missing(*args: str, **kwargs: object) -> FakeProcess:
            raise FileNotFoundError("ffmpeg")

        return (
            await run_transcoder(["ffmpeg"], spawn=succeed),
            await run_transcoder(["ffmpeg"], spawn=fail),
            await run_transcoder(["ffmpeg"], spawn=missing),
        )

    ok, failed, not_spawned = asyncio.run(runner())
    assert ok.ok and ok.stderr_tail == "all good"
    assert not failed.ok
    assert failed.returncode == 1
    assert "Invalid data" in failed.stderr_tail
    assert not not_spawned.ok
    assert not_spawned.returncode is None
    assert not_spawned.error.startswith("spawn failed")


def test_run_transcoder_kills_hung_job_after_timeout() -> None:
    hung: list[FakeProcess] = []

    async def runner():
        async def hang(*args: str, **kwargs: object) -> FakeProcess:
            process = FakeProcess(list(args))
            hung.append(process)
            return process

        return await run_transcoder(["ffmpeg"], spawn=hang, timeout_s=0.05)

    result = asyncio.run(runner())
    assert result.error == "timeout"
    assert hung[0].kill_count == 1
