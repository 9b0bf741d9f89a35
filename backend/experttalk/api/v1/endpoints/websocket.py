"""
WebSocket endpoint for realtime consultation chat.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from experttalk.core.exceptions import SessionNotFound
from experttalk.core.security import authenticate_websocket
from experttalk.core.websocket import ChatGateway
from experttalk.schemas.websocket import (
    WebSocketEndSession,
    WebSocketFrameUnion,
    WebSocketJoin,
    WebSocketLeave,
    WebSocketPing,
    WebSocketSendMessage,
    error_event,
    parse_websocket_message,
    pong_event,
)
from experttalk.services.session_service import ChatSessionService
from experttalk.websockets.connection_manager import ClientConnection

router = APIRouter()
logger = logging.getLogger(__name__)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    """
    Realtime channel for consultations.

    Connect with ``/api/v1/ws?token=<jwt>``, then exchange JSON frames:
    {"type": "join" | "leave" | "end_session", "session_id": "..."},
    {"type": "send_message", "session_id": "...", "content": "..."},
    {"type": "ping"}.

    The server pushes ``new_message``, ``session_ended``, ``pong`` and, for
    malformed frames only, ``error``.
    """
    state = websocket.app.state
    async with state.session_factory() as db:
        user = await authenticate_websocket(token, db)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    connection = await state.connection_manager.connect(websocket, user.id)
    try:
        while not connection.closed:
            raw = await websocket.receive_text()
            try:
                frame = parse_websocket_message(json.loads(raw))
            except (ValueError, ValidationError) as e:
                connection.enqueue(error_event("invalid_message", str(e)))
                continue
            await handle_frame(frame, connection, state.gateway, state.session_service)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error for user {user.id}: {str(e)}", exc_info=True)
    finally:
        await state.connection_manager.disconnect(connection)


async def handle_frame(
    frame: WebSocketFrameUnion,
    connection: ClientConnection,
    gateway: ChatGateway,
    sessions: ChatSessionService,
) -> None:
    if isinstance(frame, WebSocketJoin):
        await gateway.join(frame.session_id, connection)
    elif isinstance(frame, WebSocketLeave):
        gateway.leave(frame.session_id, connection)
    elif isinstance(frame, WebSocketSendMessage):
        await gateway.send(frame.session_id, connection.user_id, frame.content)
    elif isinstance(frame, WebSocketEndSession):
        try:
            await sessions.end_session(frame.session_id, connection.user_id)
        except SessionNotFound:
            logger.info(f"Ignored end request of user {connection.user_id} for session {frame.session_id}")
    elif isinstance(frame, WebSocketPing):
        connection.enqueue(pong_event())
