"""
Websocket endpoints for the ``exam`` and ``proctoring`` namespaces.

Clients authenticate with an access token (``?token=`` or a bearer header)
and exchange ``{"event": ..., "data": {...}}`` JSON messages.
"""
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from examdesk.core.auth import TokenData, decode_token
from examdesk.core.errors import UnauthorizedError
from examdesk.core.realtime import EXAM_NAMESPACE, PROCTORING_NAMESPACE, RealtimeHub, exam_room, proctoring_room
from examdesk.models.orm import UserRole

logger = logging.getLogger(__name__)

router = APIRouter()


def _token_from(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return None


async def _authenticate(websocket: WebSocket) -> Optional[TokenData]:
    """Decode the caller's token, closing the socket with 1008 when it is missing or invalid."""
    token = _token_from(websocket)
    try:
        if not token:
            raise UnauthorizedError("Authentication required")
        return decode_token(token, "access", websocket.app.state.settings)
    except UnauthorizedError as e:
        logger.info(f"Rejected websocket connection: {e.message}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None


async def _error(websocket: WebSocket, message: str) -> None:
    await websocket.send_json({"event": "error", "data": {"message": message}})


@router.websocket("/ws/exam")
async def exam_socket(websocket: WebSocket):
    user = await _authenticate(websocket)
    if user is None:
        return
    hub: RealtimeHub = websocket.app.state.hub
    await websocket.accept()
    hub.register(EXAM_NAMESPACE, websocket, user.sub)
    try:
        while True:
            message = await websocket.receive_json()
            event = message.get("event") if isinstance(message, dict) else None
            data = (message.get("data") or {}) if event else {}
            exam_id = data.get("exam_id")
            if event == "exam:join" and exam_id:
                hub.join(EXAM_NAMESPACE, websocket, exam_room(exam_id))
                await websocket.send_json({"event": "exam:joined", "data": {"success": True, "exam_id": exam_id}})
            elif event == "exam:leave" and exam_id:
                hub.leave(EXAM_NAMESPACE, websocket, exam_room(exam_id))
            else:
                await _error(websocket, "Unknown event")
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(websocket)


@router.websocket("/ws/proctoring")
async def proctoring_socket(websocket: WebSocket):
    user = await _authenticate(websocket)
    if user is None:
        return
    hub: RealtimeHub = websocket.app.state.hub
    await websocket.accept()
    try:
        while True:
            message = await websocket.receive_json()
            event = message.get("event") if isinstance(message, dict) else None
            data = (message.get("data") or {}) if event else {}
            exam_id = data.get("exam_id")
            if event == "proctoring:observe" and exam_id:
                if user.role != UserRole.GURU.value:
                    await _error(websocket, "Insufficient role")
                    continue
                hub.join(PROCTORING_NAMESPACE, websocket, proctoring_room(exam_id))
                await websocket.send_json({"event": "proctoring:observing", "data": {"exam_id": exam_id}})
            elif event == "proctoring:start" and exam_id:
                if user.role != UserRole.MURID.value:
                    await _error(websocket, "Insufficient role")
                    continue
                hub.register(PROCTORING_NAMESPACE, websocket, user.sub)
                await websocket.send_json({"event": "proctoring:started", "data": {"exam_id": exam_id}})
            else:
                await _error(websocket, "Unknown event")
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(websocket)
