from __future__ import annotations

from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from yogi.catalog.poses import PoseCatalog, UnknownPoseError
from yogi.detectors.yolo_classifier import InferenceError
from yogi.server.logging_utils import configure_logging
from yogi.server.models.schemas import (
    PoseListResponse,
    PoseResponse,
    SessionStatusResponse,
    StartSessionRequest,
    WebsocketEvent,
)
from yogi.server.session import (
    SessionAlreadyActiveError,
    SessionManager,
    SessionNotStartedError,
    build_practice_session,
    snapshot_payload,
)
from yogi.utils.camera import (
    CameraBusyError,
    CameraDeviceError,
    CameraError,
    CameraSwitchFailedError,
    CameraUnauthorizedError,
    CameraUnavailableError,
)
from yogi.utils.config import (
    DEFAULT_POSE_CATALOG,
    DEFAULT_RUNTIME_CONFIG,
    POSE_CATALOG_ENV,
    RUNTIME_CONFIG_ENV,
    RuntimeConfig,
    load_runtime_config,
    resolve_config_path,
)
from yogi.utils.structures import CameraPosition, PoseMetadata

app = FastAPI(title="Yogi Live Pose Feedback", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_runtime_config() -> RuntimeConfig:
    path = resolve_config_path(None, RUNTIME_CONFIG_ENV, DEFAULT_RUNTIME_CONFIG)
    if not path.is_file():
        logger.warning("Runtime config {} not found; using defaults", path)
        return RuntimeConfig()
    return load_runtime_config(str(path))


@lru_cache(maxsize=1)
def get_catalog() -> PoseCatalog:
    return PoseCatalog.from_yaml(resolve_config_path(None, POSE_CATALOG_ENV, DEFAULT_POSE_CATALOG))


@lru_cache(maxsize=1)
def get_session_manager() -> SessionManager:
    return SessionManager(lambda: build_practice_session(get_runtime_config(), get_catalog()))


@app.on_event("startup")
async def on_startup() -> None:
    configure_logging(str(get_runtime_config().logging.get("level", "INFO")))


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await get_session_manager().shutdown()


def _pose_response(pose: PoseMetadata) -> PoseResponse:
    return PoseResponse(
        label=pose.label,
        name=pose.name,
        description=pose.description,
        difficulty=pose.difficulty,
        instructions=list(pose.instructions),
        media_url=pose.media_url,
        is_video=pose.is_video,
    )


def _http_error(exc: Exception) -> HTTPException:
    code = getattr(exc, "code", "error")
    if isinstance(exc, UnknownPoseError):
        return HTTPException(status_code=404, detail={"code": code, "message": f"Unknown pose: {exc.args[0]}"})
    if isinstance(exc, CameraUnauthorizedError):
        status = 403
    elif isinstance(exc, (CameraBusyError, SessionAlreadyActiveError, SessionNotStartedError)):
        status = 409
    elif isinstance(exc, (CameraUnavailableError, CameraDeviceError, CameraSwitchFailedError, InferenceError)):
        status = 503
    else:
        status = 500
    return HTTPException(status_code=status, detail={"code": code, "message": str(exc)})


@app.get("/api/poses", response_model=PoseListResponse)
async def list_poses(
    difficulty: Optional[str] = None,
    catalog: PoseCatalog = Depends(get_catalog),
) -> PoseListResponse:
    return PoseListResponse(poses=[_pose_response(pose) for pose in catalog.poses(difficulty)])


@app.get("/api/poses/{label}", response_model=PoseResponse)
async def read_pose(label: str, catalog: PoseCatalog = Depends(get_catalog)) -> PoseResponse:
    try:
        return _pose_response(catalog.lookup(label))
    except UnknownPoseError as exc:
        raise _http_error(exc) from exc


@app.post("/api/session/start", response_model=SessionStatusResponse)
async def start_session(
    request: StartSessionRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> SessionStatusResponse:
    try:
        snapshot = await manager.start(request.target_pose, CameraPosition(request.camera_position))
    except (UnknownPoseError, SessionAlreadyActiveError, CameraError, InferenceError) as exc:
        raise _http_error(exc) from exc
    return SessionStatusResponse(**snapshot_payload(snapshot))


@app.post("/api/session/stop", response_model=SessionStatusResponse)
async def stop_session(manager: SessionManager = Depends(get_session_manager)) -> SessionStatusResponse:
    snapshot = await manager.stop()
    return SessionStatusResponse(**snapshot_payload(snapshot))


@app.post("/api/session/pause", response_model=SessionStatusResponse)
async def pause_session(manager: SessionManager = Depends(get_session_manager)) -> SessionStatusResponse:
    try:
        snapshot = await manager.pause()
    except SessionNotStartedError as exc:
        raise _http_error(exc) from exc
    return SessionStatusResponse(**snapshot_payload(snapshot))


@app.post("/api/session/resume", response_model=SessionStatusResponse)
async def resume_session(manager: SessionManager = Depends(get_session_manager)) -> SessionStatusResponse:
    try:
        snapshot = await manager.resume()
    except (SessionNotStartedError, CameraError) as exc:
        raise _http_error(exc) from exc
    return SessionStatusResponse(**snapshot_payload(snapshot))


@app.post("/api/session/switch-camera", response_model=SessionStatusResponse)
async def switch_camera(manager: SessionManager = Depends(get_session_manager)) -> SessionStatusResponse:
    try:
        snapshot = await manager.switch_camera()
    except (SessionNotStartedError, CameraError) as exc:
        raise _http_error(exc) from exc
    return SessionStatusResponse(**snapshot_payload(snapshot))


@app.get("/api/session/status", response_model=SessionStatusResponse)
async def session_status(manager: SessionManager = Depends(get_session_manager)) -> SessionStatusResponse:
    snapshot = await manager.refresh_authorization()
    return SessionStatusResponse(**snapshot_payload(snapshot))


@app.websocket("/ws/feedback")
async def feedback_stream(websocket: WebSocket, manager: SessionManager = Depends(get_session_manager)) -> None:
    await websocket.accept()
    try:
        async for payload in manager.event_generator():
            await websocket.send_json(WebsocketEvent(**payload).model_dump())
    except WebSocketDisconnect:  # pragma: no cover - client initiated
        return
