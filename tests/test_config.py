from pathlib import Path
import json
import math

import pytest

from cam_node.config import (
    CameraIdentity,
    CameraRegistry,
    ConfigManager,
    DEFAULT_PIPELINE_SETTINGS,
    PipelineSettings,
)


def _write_config(path: Path, payload: object) -> Path:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_missing_config_yields_defaults(tmp_path: Path):
    manager = ConfigManager(tmp_path / "cameras.json")
    assert manager.get_cameras() == ()
    assert manager.get_pipeline_settings() == DEFAULT_PIPELINE_SETTINGS
    assert len(manager.build_registry()) == 0


def test_default_pipeline_settings_match_documented_values():
    settings = PipelineSettings()
    assert settings.segment_duration_s == 2
    assert settings.buffer_capacity == 150
    assert settings.restart_delay_s == 10
    assert settings.watchdog_interval_s == 30
    assert settings.stall_threshold_s == 150
    assert settings.retention_sweep_interval_s == 300
    assert settings.live_retention_s == 3900
    assert settings.finalize_timeout_s is None
    assert settings.pre_event_s == 15
    assert settings.post_event_s == 45
    assert settings.reachability_timeout_s == 2


def test_loads_cameras_and_pipeline_overrides(tmp_path: Path):
    config = _write_config(
        tmp_path / "cameras.json",
        {
            "cameras": [
                {"id": "1", "name": "Front door", "rtsp_url": "rtsp://10.0.0.2/live"},
                {"id": "2", "name": "Garage", "stream_url": "rtsp://10.0.0.3/live", "enabled": False},
            ],
            "pipeline": {"buffer_capacity": 30, "restart_delay_s": 5},
        },
    )
    manager = ConfigManager(config)

    registry = manager.build_registry()
    assert registry.ids() == ["1", "2"]
    assert registry.get("1") == CameraIdentity("1", "Front door", "rtsp://10.0.0.2/live")
    assert [camera.id for camera in registry.enabled()] == ["1"]
    assert "2" in registry
    settings = manager.get_pipeline_settings()
    assert settings.buffer_capacity == 30
    assert settings.restart_delay_s == 5


def test_duplicate_camera_ids_are_rejected(tmp_path: Path):
    config = _write_config(
        tmp_path / "cameras.json",
        {
            "cameras": [
                {"id": "1", "name": "A", "stream_url": "rtsp://a"},
                {"id": "1", "name": "B", "stream_url": "rtsp://b"},
            ]
        },
    )
    with pytest.raises(ValueError):
        ConfigManager(config)

    camera = CameraIdentity("x", "X", "rtsp://x")
    with pytest.raises(ValueError):
        CameraRegistry([camera, camera])


def test_invalid_json_is_reported(tmp_path: Path):
    config = tmp_path / "cameras.json"
    config.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        ConfigManager(config)

    _write_config(config, ["not", "an", "object"])
    with pytest.raises(ValueError):
        ConfigManager(config)


@pytest.mark.parametrize(
    "payload",
    [
        {"id": "", "name": "Nameless", "stream_url": "rtsp://x"},
        {"id": "1", "name": "No URL"},
    ],
)
def test_camera_validation(tmp_path: Path, payload):
    config = _write_config(tmp_path / "cameras.json", {"cameras": [payload]})
    with pytest.raises(ValueError):
        ConfigManager(config)


@pytest.mark.parametrize(
    "overrides",
    [
        {"buffer_capacity": 0},
        {"restart_delay_s": -1},
        {"segment_duration_s": math.inf},
        {"pre_event_s": -5},
        {"watchdog_interval_s": 200, "stall_threshold_s": 150},
    ],
)
def test_pipeline_settings_validation(overrides):
    with pytest.raises(ValueError):
        PipelineSettings(**overrides)


def test_unknown_pipeline_keys_are_rejected():
    with pytest.raises(ValueError):
        PipelineSettings.from_dict({"segment_seconds": 4})


def test_pipeline_settings_round_trip_through_dict():
    settings = PipelineSettings(buffer_capacity=12, finalize_timeout_s=60)
    assert PipelineSettings.from_dict(settings.to_dict()) == settings


def test_reload_picks_up_changes(tmp_path: Path):
    config = _write_config(tmp_path / "cameras.json", {"cameras": []})
    manager = ConfigManager(config)
    assert manager.get_cameras() == ()

    _write_config(config, {"cameras": [{"id": "7", "name": "Yard", "stream_url": "rtsp://y"}]})
    manager.reload()
    assert [camera.id for camera in manager.get_cameras()] == ["7"]
