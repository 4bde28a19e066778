"""FastAPI application wiring together the CamHome recorder services."""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any

import httpx
from fastapi import Body, FastAPI, HTTPException, Response
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .cameras import CameraRecord, CameraStatus, CameraStore
from .config import ConfigManager
from .event_log import EventLog
from .ffmpeg import RTSP_SNAPSHOT_SIZE, ProcessLauncher, locate_ffmpeg, spawn_process
from .live_view import (
    Frame,
    FrameAcquisitionError,
    FrameGateway,
    FrameServiceUnavailable,
)
from .playback import (
    ThumbnailCache,
    ThumbnailError,
    list_segments,
    probe_segment,
    resolve_segment,
    storage_status,
)
from .supervisor import RecordingSupervisor
from .version import APP_VERSION

DATA_DIR = Path(os.environ.get("CAMHOME_DATA_DIR", "data"))

_NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
}


class CameraPayload(BaseModel):
    """Camera record as sent by the dashboard."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    name: str | None = None
    stream_url: str | None = Field(default=None, alias="streamUrl")
    username: str | None = None
    password: str | None = None
    status: CameraStatus = CameraStatus.OFFLINE

    def to_record(self) -> CameraRecord:
        return CameraRecord.from_dict(self.model_dump(by_alias=True))


def _frame_response(frame: Frame) -> Response:
    if frame.content is not None:
        return Response(
            content=frame.content,
            media_type=frame.media_type,
            headers=dict(_NO_CACHE_HEADERS),
        )
    return StreamingResponse(
        frame.chunks,
        media_type=frame.media_type,
        headers=dict(_NO_CACHE_HEADERS),
    )


def create_app(
    config_path: Path | str | None = None,
    *,
    launcher: ProcessLauncher | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    logger = logging.getLogger(__name__)

    config_path = Path(config_path) if config_path is not None else DATA_DIR / "config.json"
    config_manager = ConfigManager(config_path)
    app = FastAPI(title=config_manager.get_app_name(), version=APP_VERSION)

    camera_store = CameraStore(config_path.with_name("cameras.json"))
    event_log = EventLog(config_path.with_name("recorder_events.jsonl"))
    ffmpeg_binary = locate_ffmpeg()
    if ffmpeg_binary is None:
        logger.warning("ffmpeg not found; recording and RTSP snapshots are disabled")
    else:
        logger.info("Using ffmpeg at %s", ffmpeg_binary)
    process_launcher = launcher or spawn_process

    supervisor = RecordingSupervisor(
        camera_store,
        destination=config_manager.get_recording_path,
        settings=config_manager.get_recorder_settings,
        launcher=process_launcher,
        ffmpeg_binary=ffmpeg_binary,
        event_log=event_log,
    )
    gateway = FrameGateway(
        client=http_client,
        ffmpeg_binary=ffmpeg_binary,
        launcher=process_launcher,
    )
    thumbnails = ThumbnailCache(ffmpeg_binary=ffmpeg_binary, launcher=process_launcher)

    app.state.config_manager = config_manager
    app.state.camera_store = camera_store
    app.state.event_log = event_log
    app.state.supervisor = supervisor
    app.state.gateway = gateway

    def _segment_path(camera: str, filename: str) -> Path:
        try:
            return resolve_segment(config_manager.get_recording_path(), camera, filename)
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404, detail="File not found") from exc

    async def _live_frame(
        url: str | None,
        *,
        username: str | None,
        password: str | None,
        transport: str | None,
        size: str | None = None,
    ) -> Response:
        try:
            frame = await gateway.acquire_frame(
                url or "",
                username=username,
                password=password,
                transport=transport,
                size=size,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except FrameServiceUnavailable as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except FrameAcquisitionError as exc:
            logger.warning("Live frame acquisition failed: %s", exc)
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return _frame_response(frame)

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        event_log.record("startup", "CamHome recorder starting up.")
        supervisor.schedule_initialise()

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        event_log.record("shutdown", "CamHome recorder shutting down.")
        await supervisor.aclose()
        await gateway.aclose()

    # ------------------------------------------------------------------
    # Cameras
    # ------------------------------------------------------------------
    @app.get("/api/cameras")
    def list_cameras() -> list[dict[str, Any]]:
        return [camera.to_dict() for camera in camera_store.list()]

    @app.post("/api/cameras")
    async def replace_cameras(payload: list[CameraPayload]) -> dict[str, object]:
        try:
            records = [item.to_record() for item in payload]
            diff = camera_store.replace_all(records)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        for camera_id in diff.stop:
            supervisor.forget(camera_id)
        started: list[str] = []
        for camera in diff.start:
            if await supervisor.start(camera):
                started.append(camera.id)
        return {"success": True, "started": started, "stopped": list(diff.stop)}

    @app.put("/api/cameras/{camera_id}")
    async def upsert_camera(camera_id: str, payload: CameraPayload) -> dict[str, object]:
        if payload.id != camera_id:
            raise HTTPException(status_code=400, detail="Camera id mismatch")
        try:
            record = payload.to_record()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if camera_store.upsert(record):
            await supervisor.start(record)
        return {"camera": record.to_dict(), "state": supervisor.state(camera_id).value}

    @app.delete("/api/cameras/{camera_id}")
    async def delete_camera(camera_id: str) -> dict[str, str]:
        removed = camera_store.delete(camera_id)
        if removed is None:
            raise HTTPException(status_code=404, detail="Camera not found")
        supervisor.forget(camera_id)
        return {"deleted": camera_id}

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return config_manager.to_dict()

    @app.post("/api/config")
    async def update_config(payload: dict[str, Any] = Body(...)) -> dict[str, object]:
        try:
            config, path_changed = config_manager.update(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if path_changed:
            logger.info("Recording path changed to %r; restarting recorders", config["recordingPath"])
            await supervisor.reinitialise()
        return {"success": True, "config": config}

    # ------------------------------------------------------------------
    # Recorder
    # ------------------------------------------------------------------
    @app.get("/api/recorder/status")
    async def recorder_status() -> dict[str, object]:
        return {
            "ffmpeg": supervisor.ffmpeg_available,
            "recording_path": config_manager.get_recording_path(),
            "cameras": supervisor.status(),
        }

    @app.post("/api/recorder/{camera_id}/start")
    async def start_recorder(camera_id: str) -> dict[str, object]:
        camera = camera_store.get(camera_id)
        if camera is None:
            raise HTTPException(status_code=404, detail="Camera not found")
        started = await supervisor.start(camera)
        return {
            "camera_id": camera_id,
            "started": started,
            "state": supervisor.state(camera_id).value,
        }

    @app.post("/api/recorder/{camera_id}/stop")
    async def stop_recorder(camera_id: str) -> dict[str, object]:
        session = supervisor.stop(camera_id)
        return {
            "camera_id": camera_id,
            "stopped": session is not None,
            "state": supervisor.state(camera_id).value,
        }

    @app.get("/api/logs")
    def get_recorder_events(limit: int = 100, camera_id: str | None = None) -> dict[str, object]:
        entries = event_log.tail(limit, camera_id=camera_id)
        return {"entries": [entry.to_dict() for entry in reversed(entries)]}

    # ------------------------------------------------------------------
    # Recordings and playback
    # ------------------------------------------------------------------
    @app.get("/api/recordings")
    async def list_recordings() -> list[dict[str, object]]:
        root = config_manager.get_recording_path()
        try:
            segments = await asyncio.to_thread(list_segments, root)
        except OSError as exc:
            logger.exception("Failed to scan recordings under %s", root)
            raise HTTPException(status_code=500, detail="Failed to scan recordings") from exc
        return [segment.to_dict() for segment in segments]

    @app.get("/api/recordings/{camera}/{filename}")
    async def recording_details(camera: str, filename: str) -> dict[str, object]:
        path = _segment_path(camera, filename)
        details = await asyncio.to_thread(probe_segment, path)
        stat = path.stat()
        return {
            "cameraId": path.parent.name,
            "file": path.name,
            "size_bytes": int(stat.st_size),
            "thumbnail_cached": ThumbnailCache.thumbnail_path(path).exists(),
            **details,
        }

    @app.get("/api/playback/{camera}/{filename}")
    def playback_segment(camera: str, filename: str) -> FileResponse:
        path = _segment_path(camera, filename)
        return FileResponse(path, media_type="video/mp4")

    @app.get("/api/playback/{camera}/{filename}/thumb")
    async def playback_thumbnail(camera: str, filename: str) -> FileResponse:
        path = _segment_path(camera, filename)
        try:
            thumbnail = await thumbnails.get(path)
        except ThumbnailError as exc:
            logger.warning("Thumbnail generation for %s failed: %s", path, exc)
            raise HTTPException(status_code=500, detail="Generating failed") from exc
        return FileResponse(thumbnail, media_type="image/jpeg")

    @app.get("/api/storage")
    async def get_storage_status() -> dict[str, object]:
        return await asyncio.to_thread(storage_status, config_manager.get_recording_path())

    # ------------------------------------------------------------------
    # Live view
    # ------------------------------------------------------------------
    @app.get("/api/proxy")
    async def proxy_frame(
        url: str | None = None,
        username: str | None = None,
        password: str | None = None,
        transport: str | None = None,
    ) -> Response:
        return await _live_frame(url, username=username, password=password, transport=transport)

    @app.get("/api/rtsp-snapshot")
    async def rtsp_snapshot(
        url: str | None = None,
        username: str | None = None,
        password: str | None = None,
    ) -> Response:
        if not url:
            raise HTTPException(status_code=400, detail="RTSP URL missing")
        return await _live_frame(
            url,
            username=username,
            password=password,
            transport="rtsp",
            size=RTSP_SNAPSHOT_SIZE,
        )

    return app


__all__ = ["CameraPayload", "create_app"]
