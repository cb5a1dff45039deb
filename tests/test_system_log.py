from __future__ import annotations

import json
from pathlib import Path

import pytest

from cam_node.system_log import SystemLog


def test_record_persists_and_restores(tmp_path: Path) -> None:
    path = tmp_path / "log.jsonl"
    log = SystemLog(path)
    log.record("stream_started", "Live transcoder started", camera_id="cam1", metadata={"pid": 42, "extra": None})
    log.record("startup", "CamNode application starting up.")

    lines = path.read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[0])["metadata"] == {"pid": 42}

    restored = SystemLog(path)
    entries = restored.tail()
    assert [entry.event for entry in entries] == ["stream_started", "startup"]
    assert entries[0].camera_id == "cam1"


def test_tail_filters_by_camera_and_limit(tmp_path: Path) -> None:
    log = SystemLog(tmp_path / "log.jsonl", max_entries=3)
    for index in range(5):
        log.record("watchdog_kill", f"kill {index}", camera_id="cam1" if index % 2 else "cam2")

    assert [entry.message for entry in log.tail()] == ["kill 2", "kill 3", "kill 4"]
    assert [entry.message for entry in log.tail(camera_id="cam1")] == ["kill 3"]
    assert [entry.message for entry in log.tail(1)] == ["kill 4"]


def test_corrupt_lines_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "log.jsonl"
    path.write_text('not json\n{"event": "ok", "message": "fine", "timestamp": 1}\n[]\n', encoding="utf-8")

    entries = SystemLog(path).tail()
    assert [entry.event for entry in entries] == ["ok"]


def test_memory_only_log() -> None:
    log = SystemLog(None)
    log.record("startup", "hello")
    assert log.path is None
    assert len(log.tail()) == 1
    with pytest.raises(ValueError):
        SystemLog(None, max_entries=0)
