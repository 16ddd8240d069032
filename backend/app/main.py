import json
import logging
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Response, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .models import (
    AnnotationCreate,
    AnnotationEvent,
    AnnotationEventType,
    AnnotationRecord,
    AnnotationUpdate,
    ErrorBody,
    VideoConfig,
)
from .services.annotation_repository import AnnotationNotFound, AnnotationRepository

logger = logging.getLogger(__name__)

DEFAULT_VIDEO_SRC = (
    "http://commondatastorage.googleapis.com/gtv-videos-bucket/sample/BigBuckBunny.mp4"
)
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]


def _parse_origins(value: Optional[str]) -> List[str]:
    if not value:
        return DEFAULT_CORS_ORIGINS
    return [origin.strip() for origin in value.split(",") if origin.strip()]


VIDEO_SRC = os.getenv("VIDEO_SRC", DEFAULT_VIDEO_SRC)
ANNOTATIONS_PATH = os.getenv("ANNOTATIONS_PATH")
CORS_ORIGINS = _parse_origins(os.getenv("CORS_ORIGINS"))

app = FastAPI(title="Video Annotation API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

repository = AnnotationRepository(ANNOTATIONS_PATH)

ERROR_RESPONSES = {400: {"model": ErrorBody}, 404: {"model": ErrorBody}}

# Websocket clients watching annotation changes
active_clients: Dict[WebSocket, Dict[str, Optional[str]]] = {}


@app.exception_handler(StarletteHTTPException)
async def _http_error(request, exc: StarletteHTTPException):
    body = ErrorBody(message=str(exc.detail))
    return JSONResponse(body.model_dump(exclude_none=True), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def _validation_error(request, exc: RequestValidationError):
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    body = ErrorBody(message="Validation Error", errors=errors)
    return JSONResponse(body.model_dump(), status_code=400)


def _validation_message(exc: ValidationError) -> str:
    return "; ".join(err["msg"] for err in exc.errors()) or "Validation Error"


async def _broadcast(
    event: AnnotationEventType,
    annotation_id: str,
    video: str,
    annotation: Optional[AnnotationRecord] = None,
) -> None:
    if not active_clients:
        return

    message = jsonable_encoder(
        AnnotationEvent(
            event=event,
            id=annotation_id,
            annotation=annotation,
            timestamp=datetime.now(timezone.utc),
        ),
        by_alias=True,
    )
    for websocket, pref in list(active_clients.items()):
        if pref.get("video") not in (None, video):
            continue
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.info("Dropping annotation watcher: %s", e)
            active_clients.pop(websocket, None)


@app.get("/", response_class=PlainTextResponse)
async def health():
    return "Video Annotation API is running"


@app.get("/api/video/config", response_model=VideoConfig)
async def video_config():
    return VideoConfig(src=VIDEO_SRC)


@app.get("/api/annotations", response_model=List[AnnotationRecord])
async def list_annotations(video: Optional[str] = Query(default=None)):
    """Every annotation, optionally for one video, sorted by timestamp."""
    return repository.list(video)


@app.post(
    "/api/annotations",
    response_model=AnnotationRecord,
    status_code=201,
    responses=ERROR_RESPONSES,
)
async def create_annotation(payload: AnnotationCreate):
    """
    Persist a new annotation.

    Any client-side ``id`` in the body is ignored; the server assigns one and
    returns the stored record.
    """
    record = repository.create(payload)
    await _broadcast(AnnotationEventType.created, record.id, record.video, record)
    return record


@app.put(
    "/api/annotations/{annotation_id}",
    response_model=AnnotationRecord,
    responses=ERROR_RESPONSES,
)
async def update_annotation(annotation_id: str, payload: AnnotationUpdate):
    try:
        record = repository.update(annotation_id, payload.changes())
    except AnnotationNotFound:
        raise HTTPException(status_code=404, detail="Annotation not found.")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=_validation_message(e))
    await _broadcast(AnnotationEventType.updated, record.id, record.video, record)
    return record


@app.delete(
    "/api/annotations/{annotation_id}", status_code=204, responses=ERROR_RESPONSES
)
async def delete_annotation(annotation_id: str):
    try:
        record = repository.delete(annotation_id)
    except AnnotationNotFound:
        raise HTTPException(status_code=404, detail="Annotation not found.")
    await _broadcast(AnnotationEventType.deleted, annotation_id, record.video)
    return Response(status_code=204)


@app.websocket("/ws/annotations")
async def websocket_annotations(websocket: WebSocket):
    """
    WebSocket endpoint streaming annotation changes.

    Clients may send ``{"video": "<key>"}`` to only receive changes for one
    video (``{"video": null}`` to watch all of them again).

    Server sends one JSON message per change:
    - event: created | updated | deleted
    - id: annotation id
    - annotation: the stored record (absent for deletes)
    """
    active_clients[websocket] = {"video": None}
    try:
        await websocket.accept()
        while True:
            data = await websocket.receive_text()
            try:
                payload = json.loads(data)
            except json.JSONDecodeError:
                continue

            if isinstance(payload, dict) and "video" in payload:
                active_clients[websocket]["video"] = payload["video"]
    except WebSocketDisconnect:
        pass
    finally:
        active_clients.pop(websocket, None)
