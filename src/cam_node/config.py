"""Configuration management for CamNode."""
from __future__ import annotations

import json
import math
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from threading import Lock
from typing import Any, Iterable, Mapping, Sequence

DEFAULT_CONFIG_PATH = Path(os.environ.get("CAMNODE_CONFIG", "data/cameras.json"))
DEFAULT_RECORDINGS_DIR = Path(os.environ.get("CAMNODE_RECORDINGS_DIR", "recordings"))
DEFAULT_FFMPEG_BINARY = os.environ.get("CAMNODE_FFMPEG", "ffmpeg")


@dataclass(frozen=True, slots=True)
class CameraIdentity:
    """Static description of a network camera."""

    id: str
    name: str
    stream_url: str
    enabled: bool = True

    def __post_init__(self) -> None:
        camera_id = str(self.id).strip()
        if not camera_id:
            raise ValueError("Camera id must be a non-empty string")
        url = str(self.stream_url).strip()
        if not url:
            raise ValueError(f"Camera {camera_id!r} requires a stream URL")
        name = str(self.name).strip() or camera_id
        object.__setattr__(self, "id", camera_id)
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "stream_url", url)
        object.__setattr__(self, "enabled", bool(self.enabled))

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "stream_url": self.stream_url,
            "enabled": self.enabled,
        }


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    """Timing and sizing values shared by the supervisor and recording paths."""

    segment_duration_s: int = 2
    playlist_size: int = 5
    buffer_capacity: int = 150
    restart_delay_s: float = 10.0
    watchdog_interval_s: float = 30.0
    stall_threshold_s: float = 150.0
    retention_sweep_interval_s: float = 300.0
    live_retention_s: float = 3900.0
    stop_grace_s: float = 2.0
    event_post_roll_s: float = 30.0
    pre_event_s: float = 15.0
    post_event_s: float = 45.0
    thumbnail_offset_s: float = 1.0
    thumbnail_width: int = 320
    finalize_timeout_s: float | None = None
    recording_retention_hours: float = 24.0
    storage_limit_bytes: int = 2 * 1024**3
    health_max_segment_age_s: float = 30.0
    reachability_timeout_s: float = 2.0

    def __post_init__(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            if value is None:
                if item.name != "finalize_timeout_s":
                    raise ValueError(f"{item.name} must be provided")
                continue
            try:
                number = float(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{item.name} must be numeric") from exc
            if not math.isfinite(number):
                raise ValueError(f"{item.name} must be finite")
            if item.name in {"event_post_roll_s", "pre_event_s", "post_event_s", "thumbnail_offset_s"}:
                if number < 0:
                    raise ValueError(f"{item.name} must not be negative")
            elif number <= 0:
                raise ValueError(f"{item.name} must be positive")
        for name in ("segment_duration_s", "playlist_size", "buffer_capacity", "thumbnail_width", "storage_limit_bytes"):
            object.__setattr__(self, name, int(getattr(self, name)))
        if self.stall_threshold_s <= self.watchdog_interval_s:
            raise ValueError("Stall threshold must exceed the watchdog interval")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PipelineSettings":
        known = {item.name for item in fields(cls)}
        unknown = set(payload) - known
        if unknown:
            raise ValueError(f"Unknown pipeline settings: {', '.join(sorted(unknown))}")
        return cls(**{key: payload[key] for key in payload})


DEFAULT_PIPELINE_SETTINGS = PipelineSettings()


def _parse_cameras(payload: object) -> tuple[CameraIdentity, ...]:
    if payload is None:
        return ()
    if not isinstance(payload, Sequence) or isinstance(payload, (str, bytes)):
        raise ValueError("'cameras' must be a list of camera objects")
    cameras: list[CameraIdentity] = []
    seen: set[str] = set()
    for entry in payload:
        if not isinstance(entry, Mapping):
            raise ValueError("Camera entries must be JSON objects")
        stream_url = entry.get("stream_url", entry.get("rtsp_url"))
        camera = CameraIdentity(
            id=str(entry.get("id", "")),
            name=str(entry.get("name", "")),
            stream_url=str(stream_url or ""),
            enabled=bool(entry.get("enabled", True)),
        )
        if camera.id in seen:
            raise ValueError(f"Duplicate camera id {camera.id!r}")
        seen.add(camera.id)
        cameras.append(camera)
    return tuple(cameras)


class CameraRegistry:
    """Read-only lookup of the configured cameras."""

    def __init__(self, cameras: Iterable[CameraIdentity]) -> None:
        self._cameras: dict[str, CameraIdentity] = {}
        for camera in cameras:
            if camera.id in self._cameras:
                raise ValueError(f"Duplicate camera id {camera.id!r}")
            self._cameras[camera.id] = camera

    def __iter__(self):
        return iter(self._cameras.values())

    def __len__(self) -> int:
        return len(self._cameras)

    def __contains__(self, camera_id: object) -> bool:
        return str(camera_id) in self._cameras

    def get(self, camera_id: str) -> CameraIdentity | None:
        return self._cameras.get(str(camera_id))

    def enabled(self) -> list[CameraIdentity]:
        return [camera for camera in self._cameras.values() if camera.enabled]

    def ids(self) -> list[str]:
        return list(self._cameras)


class ConfigManager:
    """Loads camera and pipeline configuration from a JSON document."""

    def __init__(self, config_path: Path | str = DEFAULT_CONFIG_PATH) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._cameras, self._pipeline = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> tuple[tuple[CameraIdentity, ...], PipelineSettings]:
        if not self._path.exists():
            return (), DEFAULT_PIPELINE_SETTINGS
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except ValueError as exc:
            raise ValueError(f"Configuration file {self._path} is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ValueError("Configuration file must contain a JSON object")
        cameras = _parse_cameras(payload.get("cameras"))
        pipeline_payload = payload.get("pipeline", {})
        if not isinstance(pipeline_payload, Mapping):
            raise ValueError("'pipeline' must be a JSON object")
        pipeline = PipelineSettings.from_dict(pipeline_payload)
        return cameras, pipeline

    def reload(self) -> None:
        """Re-read the configuration file, keeping the previous values on error."""

        cameras, pipeline = self._load()
        with self._lock:
            self._cameras = cameras
            self._pipeline = pipeline

    def get_cameras(self) -> tuple[CameraIdentity, ...]:
        with self._lock:
            return self._cameras

    def get_pipeline_settings(self) -> PipelineSettings:
        with self._lock:
            return self._pipeline

    def build_registry(self) -> CameraRegistry:
        """Return a :class:`CameraRegistry` over the configured cameras."""

        return CameraRegistry(self.get_cameras())


__all__ = [
    "CameraIdentity",
    "CameraRegistry",
    "ConfigManager",
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_FFMPEG_BINARY",
    "DEFAULT_PIPELINE_SETTINGS",
    "DEFAULT_RECORDINGS_DIR",
    "PipelineSettings",
]
