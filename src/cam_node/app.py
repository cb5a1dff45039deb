"""FastAPI application wiring together the CamNode services."""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Literal

from fastapi import FastAPI, HTTPException, Query, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import DEFAULT_CONFIG_PATH, DEFAULT_FFMPEG_BINARY, DEFAULT_RECORDINGS_DIR, ConfigManager
from .finalizer import Finalizer
from .health import check_camera_reachable, check_stream_health, summarize_health
from .registry import CamNodeError, CameraStateRegistry, NoSegmentsError, UnknownCameraError
from .segments import build_vod_playlist
from .status import CameraStatus, StatusBroadcaster, StatusTable
from .supervisor import StreamSupervisor
from .system_log import SystemLog
from .transcoder import SpawnFn, spawn_process
from .triggers import RecordingConflictError, RecordingTriggerHandler
from .version import APP_VERSION


class TriggerPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    camera_id: str | None = Field(default=None, alias="cameraId")
    label: str = "motion"
    timestamp: datetime | None = None


class RecordPayload(BaseModel):
    action: Literal["start", "stop"]


class ClipPayload(BaseModel):
    label: str = "clip"
    timestamp: datetime | None = None


def _http_error(exc: CamNodeError) -> HTTPException:
    if isinstance(exc, (UnknownCameraError, NoSegmentsError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, RecordingConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=503, detail=str(exc))


def create_app(
    config_path: Path | str = DEFAULT_CONFIG_PATH,
    *,
    recordings_dir: Path | str | None = None,
    spawn: SpawnFn | None = None,
    clock: Callable[[], float] = time.time,
    binary: str = DEFAULT_FFMPEG_BINARY,
    system_log: SystemLog | None = None,
    autostart: bool = True,
) -> FastAPI:
    app = FastAPI(title="CamNode", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_path = Path(config_path)
    config_manager = ConfigManager(config_path)
    settings = config_manager.get_pipeline_settings()
    cameras = config_manager.build_registry()
    recordings_root = Path(recordings_dir) if recordings_dir is not None else DEFAULT_RECORDINGS_DIR
    spawn_fn = spawn if spawn is not None else spawn_process
    journal = system_log if system_log is not None else SystemLog(config_path.parent / "system_log.jsonl")

    status_table = StatusTable(clock=clock)
    broadcaster = StatusBroadcaster(source=status_table.snapshot)
    status_table.set_listener(broadcaster.publish)
    registry = CameraStateRegistry(
        cameras,
        buffer_capacity=settings.buffer_capacity,
        clock=clock,
        status_table=status_table,
    )
    for camera in cameras.enabled():
        registry.set_status(camera.id, CameraStatus.INITIALIZING)

    supervisor = StreamSupervisor(
        registry,
        settings,
        recordings_root=recordings_root,
        spawn=spawn_fn,
        clock=clock,
        binary=binary,
        system_log=journal,
    )
    finalizer = Finalizer(
        recordings_root,
        settings,
        spawn=spawn_fn,
        binary=binary,
        system_log=journal,
    )
    triggers = RecordingTriggerHandler(
        registry,
        finalizer,
        settings,
        spawn=spawn_fn,
        clock=clock,
        binary=binary,
        system_log=journal,
    )

    app.state.config_manager = config_manager
    app.state.registry = registry
    app.state.broadcaster = broadcaster
    app.state.supervisor = supervisor
    app.state.finalizer = finalizer
    app.state.triggers = triggers
    app.state.system_log = journal

    @app.on_event("startup")
    async def startup() -> None:
        journal.record(
            "startup",
            "CamNode application starting up.",
            metadata={"cameras": len(cameras), "enabled": len(cameras.enabled())},
        )
        if not autostart:
            return
        await supervisor.start_all()
        supervisor.start_maintenance()

    @app.on_event("shutdown")
    async def shutdown() -> None:
        journal.record("shutdown", "CamNode application shutting down.")
        await triggers.aclose()
        await supervisor.aclose()
        await finalizer.aclose()
        broadcaster.close()

    # ------------------------------------------------------------------
    # Recording triggers
    # ------------------------------------------------------------------
    def _trigger(camera_id: str, payload: TriggerPayload) -> dict[str, object]:
        try:
            result = triggers.trigger(camera_id, payload.label, payload.timestamp)
        except CamNodeError as exc:
            raise _http_error(exc) from exc
        return result.to_dict()

    @app.post("/api/webhook")
    async def webhook(payload: TriggerPayload) -> dict[str, object]:
        if not payload.camera_id:
            raise HTTPException(status_code=400, detail="cameraId is required")
        return _trigger(payload.camera_id, payload)

    @app.post("/api/camera/{camera_id}/trigger")
    async def trigger_camera(camera_id: str, payload: TriggerPayload) -> dict[str, object]:
        return _trigger(camera_id, payload)

    @app.post("/api/camera/{camera_id}/record")
    async def record_camera(camera_id: str, payload: RecordPayload) -> dict[str, object]:
        try:
            if payload.action == "start":
                output = await triggers.start_manual(camera_id)
            else:
                output = await triggers.stop_manual(camera_id)
        except CamNodeError as exc:
            raise _http_error(exc) from exc
        return {
            "camera_id": camera_id,
            "action": payload.action,
            "output": str(output),
            "recording": payload.action == "start",
        }

    @app.post("/api/camera/{camera_id}/clip", status_code=202)
    async def clip_camera(camera_id: str, payload: ClipPayload) -> dict[str, object]:
        try:
            plan = triggers.capture_window(camera_id, payload.label, payload.timestamp)
        except CamNodeError as exc:
            raise _http_error(exc) from exc
        return plan.to_dict()

    @app.get("/api/camera/{camera_id}/segments")
    async def camera_segments(camera_id: str) -> dict[str, object]:
        try:
            buffer = registry.buffer(camera_id)
        except CamNodeError as exc:
            raise _http_error(exc) from exc
        return {
            "camera_id": camera_id,
            "capacity": buffer.capacity,
            "segments": [segment.to_dict() for segment in buffer.snapshot()],
        }

    @app.post("/api/camera/disconnect")
    async def disconnect_cameras() -> dict[str, object]:
        stopped = await supervisor.stop_all()
        return {"stopped": stopped}

    # ------------------------------------------------------------------
    # Live media
    # ------------------------------------------------------------------
    def _no_cache(response: Response) -> Response:
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
        response.headers["Pragma"] = "no-cache"
        return response

    @app.get("/api/camera/{camera_id}/dvr")
    async def camera_dvr(camera_id: str) -> Response:
        try:
            segments = registry.snapshot(camera_id)
        except CamNodeError as exc:
            raise _http_error(exc) from exc
        available = [segment for segment in segments if segment.path.exists()]
        if not available:
            raise HTTPException(status_code=404, detail=f"No segments available for camera {camera_id}")
        playlist = build_vod_playlist(
            available,
            segment_duration_s=settings.segment_duration_s,
            uri_for=lambda segment: f"/api/media/dvr/{camera_id}/{segment.filename}",
        )
        return _no_cache(Response(content=playlist, media_type="application/vnd.apple.mpegurl"))

    @app.get("/api/media/dvr/{camera_id}/{filename}")
    async def dvr_segment(camera_id: str, filename: str):
        safe_name = Path(filename).name
        try:
            segments = registry.snapshot(camera_id)
        except CamNodeError as exc:
            raise _http_error(exc) from exc
        if safe_name != filename:
            raise HTTPException(status_code=404, detail="Segment not found")
        for segment in segments:
            if segment.filename == safe_name and segment.path.exists():
                return FileResponse(segment.path, media_type="video/mp2t")
        raise HTTPException(status_code=404, detail="Segment not found")

    @app.get("/api/camera/{camera_id}/screenshot")
    async def camera_screenshot(camera_id: str) -> Response:
        try:
            payload = await supervisor.capture_screenshot(camera_id)
        except CamNodeError as exc:
            raise _http_error(exc) from exc
        return _no_cache(Response(content=payload, media_type="image/jpeg"))

    @app.get("/api/camera/{camera_id}/status")
    async def camera_reachability(camera_id: str) -> dict[str, object]:
        try:
            camera = registry.camera(camera_id)
        except CamNodeError as exc:
            raise _http_error(exc) from exc
        state = await check_camera_reachable(camera.stream_url, timeout_s=settings.reachability_timeout_s)
        return {"camera_id": camera.id, "status": state}

    # ------------------------------------------------------------------
    # Status, health and journal
    # ------------------------------------------------------------------
    @app.get("/api/status")
    async def status() -> dict[str, dict[str, object]]:
        return registry.statuses.snapshot()

    @app.websocket("/ws/status")
    async def status_feed(websocket: WebSocket) -> None:
        await websocket.accept()
        async with broadcaster.subscribe() as queue:
            receiver = asyncio.ensure_future(websocket.receive())
            try:
                while True:
                    update = asyncio.ensure_future(queue.get())
                    done, _ = await asyncio.wait(
                        {update, receiver}, return_when=asyncio.FIRST_COMPLETED
                    )
                    if update in done:
                        await websocket.send_json(update.result())
                    else:
                        update.cancel()
                    if receiver in done:
                        message = receiver.result()
                        if message.get("type") == "websocket.disconnect":
                            return
                        receiver = asyncio.ensure_future(websocket.receive())
            except WebSocketDisconnect:
                logger.debug("Status observer went away")
            finally:
                receiver.cancel()

    @app.get("/api/health")
    async def health() -> dict[str, object]:
        now = clock()
        reports = [
            check_stream_health(
                camera,
                supervisor.live_dir(camera.id),
                max_segment_age_s=settings.health_max_segment_age_s,
                statuses=registry.statuses,
                now=now,
            )
            for camera in cameras
        ]
        return summarize_health(reports)

    @app.get("/api/logs")
    async def logs(
        limit: int = Query(100, ge=1, le=1000),
        camera: str | None = None,
    ) -> dict[str, object]:
        entries = journal.tail(limit, camera_id=camera)
        return {"entries": [entry.to_dict() for entry in entries]}

    return app


__all__ = ["create_app"]
