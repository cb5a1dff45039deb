from __future__ import annotations

import asyncio
import itertools
import signal
from pathlib import Path
from typing import Callable

import pytest

from cam_node.config import CameraIdentity, CameraRegistry, PipelineSettings
from cam_node.registry import CameraStateRegistry

_PIDS = itertools.count(4000)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProcess:
    """In-memory stand-in for :class:`asyncio.subprocess.Process`."""

    def __init__(
        self,
        args: list[str],
        *,
        on_interrupt: Callable[[], None] | None = None,
        exit_on_terminate: bool = True,
    ) -> None:
        self.args = args
        self.pid = next(_PIDS)
        self.returncode: int | None = None
        self.stderr = asyncio.StreamReader()
        self.signals: list[int] = []
        self.kill_count = 0
        self.exit_on_kill = True
        self._on_interrupt = on_interrupt
        self._exit_on_terminate = exit_on_terminate
        self._exited = asyncio.Event()

    def emit(self, line: str) -> None:
        self.stderr.feed_data((line + "\n").encode("utf-8"))

    def open_segment(self, path: Path) -> None:
        self.emit(f"[hls @ 0x55d0c8] Opening '{path}' for writing")

    def finish(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def send_signal(self, sig: int) -> None:
        if self.returncode is not None:
            raise ProcessLookupError
        self.signals.append(sig)
        if sig == signal.SIGINT:
            if self._on_interrupt is not None:
                self._on_interrupt()
            self.finish(0)

    def terminate(self) -> None:
        if self.returncode is not None:
            raise ProcessLookupError
        self.signals.append(signal.SIGTERM)
        if self._exit_on_terminate:
            self.finish(-signal.SIGTERM)

    def kill(self) -> None:
        if self.returncode is not None:
            raise ProcessLookupError
        self.kill_count += 1
        self.signals.append(signal.SIGKILL)
        if self.exit_on_kill:
            self.finish(-signal.SIGKILL)


class FakeSpawner:
    """Spawn callable that recognises the ffmpeg invocations CamNode makes."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.live: list[FakeProcess] = []
        self.manual: list[FakeProcess] = []
        self.manifests: list[str] = []
        self.thumbnails: list[list[str]] = []
        self.fail_live = False
        self.concat_returncode = 0
        self.thumbnail_returncode = 0
        self.thumbnail_writes = True
        self.live_exit_on_terminate = True

    async def __call__(self, *args: str, **kwargs: object) -> FakeProcess:
        argv = [str(arg) for arg in args]
        self.calls.append(argv)
        if "hls" in argv:
            if self.fail_live:
                raise FileNotFoundError(argv[0])
            process = FakeProcess(argv, exit_on_terminate=self.live_exit_on_terminate)
            self.live.append(process)
            return process
        if "concat" in argv:
            manifest = Path(argv[argv.index("-i") + 1])
            text = manifest.read_text(encoding="utf-8")
            self.manifests.append(text)
            process = FakeProcess(argv)
            if self.concat_returncode == 0:
                Path(argv[-1]).write_text(text, encoding="utf-8")
            process.emit("frame=  120 fps=0.0 q=-1.0 size=    2048kB")
            process.finish(self.concat_returncode)
            return process
        if "-frames:v" in argv:
            self.thumbnails.append(argv)
            process = FakeProcess(argv)
            if self.thumbnail_returncode == 0 and self.thumbnail_writes:
                Path(argv[-1]).write_bytes(b"\xff\xd8jpeg")
            process.finish(self.thumbnail_returncode)
            return process
        output = Path(argv[-1])
        process = FakeProcess(argv, on_interrupt=lambda: output.write_bytes(b"mp4-data"))
        self.manual.append(process)
        return process


def camera_registry(*camera_ids: str, disabled: tuple[str, ...] = ()) -> CameraRegistry:
    return CameraRegistry(
        CameraIdentity(
            id=camera_id,
            name=f"Camera {camera_id}",
            stream_url=f"rtsp://10.0.0.{index}/stream",
            enabled=camera_id not in disabled,
        )
        for index, camera_id in enumerate(camera_ids, start=10)
    )


def fast_settings(**overrides: object) -> PipelineSettings:
    values: dict[str, object] = {
        "buffer_capacity": 10,
        "restart_delay_s": 0.01,
        "stop_grace_s": 0.05,
        "event_post_roll_s": 0,
    }
    values.update(overrides)
    return PipelineSettings(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def state_registry(clock: FakeClock) -> CameraStateRegistry:
    return CameraStateRegistry(camera_registry("cam1", "cam2"), buffer_capacity=10, clock=clock)
