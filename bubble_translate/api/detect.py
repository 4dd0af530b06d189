"""
Detection API endpoints.
"""

import asyncio
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from bubble_translate.config import get_settings
from bubble_translate.exceptions import DuplicateRequestError
from bubble_translate.models.messages import (
    DetectObjectsMessage,
    DetectionResultsMessage,
    HealthResponse,
    UpdateSettingsMessage,
)
from bubble_translate.services.router_service import RequestRouter, RouteOrigin, get_router

logger = logging.getLogger(__name__)

router = APIRouter()
# Versioned HTTP endpoints; mounted on `router` at the bottom of this module
api_router = APIRouter(prefix=get_settings().API_V1_STR)


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """
    Health check endpoint.
    Returns service status and version.
    """
    return HealthResponse(status="ok", version=get_settings().VERSION)


@api_router.post(
    "/detect",
    response_model=DetectionResultsMessage,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    tags=["Detection"],
    summary="Detect, recognize and translate text regions",
    description="Send an image (base64 / data URL or raw pixel buffer) and get every text region with its translation.",
)
async def detect_objects(
    message: DetectObjectsMessage,
    request_router: RequestRouter = Depends(get_router),
) -> DetectionResultsMessage:
    """
    Run the full pipeline on one image.

    Failures inside the pipeline come back as a detectionResults message with
    `error` set; only a duplicate in-flight requestId is an HTTP error.
    """
    try:
        return await request_router.submit(
            message.image_data,
            settings=message.settings,
            request_id=message.request_id,
        )
    except DuplicateRequestError as e:
        raise HTTPException(status_code=409, detail=str(e))


@api_router.post("/settings", tags=["Detection"], summary="Replace the default request settings")
async def update_settings(
    message: UpdateSettingsMessage,
    request_router: RequestRouter = Depends(get_router),
) -> Dict[str, str]:
    request_router.update_settings(message.settings)
    return {"status": "ok"}


def _error_reply(error: str, request_id: Any = None) -> Dict[str, Any]:
    reply: Dict[str, Any] = {"action": "error", "error": error}
    if request_id is not None:
        reply["requestId"] = request_id
    return reply


@router.websocket("/ws")
async def detection_socket(
    websocket: WebSocket,
    request_router: RequestRouter = Depends(get_router),
) -> None:
    """
    Cross-boundary channel.

    Clients send detectObjects / updateSettings messages; detectionResults are
    pushed back carrying the client's own requestId.
    """
    await websocket.accept()
    send_lock = asyncio.Lock()

    async def send(payload: Dict[str, Any]) -> None:
        async with send_lock:
            await websocket.send_json(payload)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
                if not isinstance(data, dict):
                    raise ValueError("message must be a JSON object")
            except ValueError as e:
                await send(_error_reply(f"Malformed message: {e}"))
                continue

            action = data.get("action")
            try:
                if action == "detectObjects":
                    message = DetectObjectsMessage.model_validate(data)
                    origin = RouteOrigin(
                        send=send,
                        tag=message.request_id,
                        tab_id=message.tab_id,
                        frame_id=message.frame_id,
                    )
                    await request_router.dispatch(message, origin)
                elif action == "updateSettings":
                    request_router.update_settings(UpdateSettingsMessage.model_validate(data).settings)
                else:
                    await send(_error_reply(f"Unknown action: {action}", data.get("requestId")))
            except ValidationError as e:
                await send(_error_reply(f"Invalid {action} message: {e.error_count()} validation error(s)", data.get("requestId")))
    except WebSocketDisconnect:
        dropped = request_router.drop_origin(send)
        logger.info(f"WebSocket closed ({dropped} pending replies dropped)")


router.include_router(api_router)
