"""
Pydantic models for WebSocket communication.
"""
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, validator

from experttalk.services.message_service import MessageView


class WebSocketMessageType(str, Enum):
    """Types of WebSocket frames."""
    JOIN = "join"
    LEAVE = "leave"
    SEND_MESSAGE = "send_message"
    END_SESSION = "end_session"
    PING = "ping"
    PONG = "pong"
    NEW_MESSAGE = "new_message"
    SESSION_ENDED = "session_ended"
    ERROR = "error"


class WebSocketFrame(BaseModel):
    """Base inbound frame."""
    type: str = Field(..., description="Type of frame")


class SessionFrame(WebSocketFrame):
    session_id: UUID = Field(..., description="Consultation the frame refers to")


class WebSocketJoin(SessionFrame):
    type: Literal["join"] = "join"


class WebSocketLeave(SessionFrame):
    type: Literal["leave"] = "leave"


class WebSocketSendMessage(SessionFrame):
    type: Literal["send_message"] = "send_message"
    content: str = Field(..., max_length=4000, description="Message text")

    @validator("content")
    def content_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Message content cannot be empty")
        return v


class WebSocketEndSession(SessionFrame):
    type: Literal["end_session"] = "end_session"


class WebSocketPing(WebSocketFrame):
    """Liveness check; the pong is queued behind earlier outbound frames."""
    type: Literal["ping"] = "ping"


WebSocketFrameUnion = Union[
    WebSocketJoin,
    WebSocketLeave,
    WebSocketSendMessage,
    WebSocketEndSession,
    WebSocketPing,
]


def parse_websocket_message(message: Any) -> WebSocketFrameUnion:
    """
    Parse a raw client frame into the matching model.

    Raises:
        ValueError: If the frame is not an object or its type is unknown
        pydantic.ValidationError: If required fields are missing or invalid
    """
    if not isinstance(message, dict):
        raise ValueError("Frame must be a JSON object")

    message_type = message.get("type")
    if not message_type or not isinstance(message_type, str):
        raise ValueError("Message type is required")

    message_types = {
        WebSocketMessageType.JOIN.value: WebSocketJoin,
        WebSocketMessageType.LEAVE.value: WebSocketLeave,
        WebSocketMessageType.SEND_MESSAGE.value: WebSocketSendMessage,
        WebSocketMessageType.END_SESSION.value: WebSocketEndSession,
        WebSocketMessageType.PING.value: WebSocketPing,
    }

    if message_type not in message_types:
        raise ValueError(f"Unknown message type: {message_type}")

    return message_types[message_type](**message)


def new_message_event(message: MessageView) -> Dict[str, Any]:
    return {
        "type": WebSocketMessageType.NEW_MESSAGE.value,
        "session_id": str(message.session_id),
        "data": message.to_event_data(),
    }


def session_ended_event(session_id: UUID, ended_by: Optional[UUID]) -> Dict[str, Any]:
    return {
        "type": WebSocketMessageType.SESSION_ENDED.value,
        "session_id": str(session_id),
        "data": {
            "session_id": str(session_id),
            "ended_by": str(ended_by) if ended_by else None,
        },
    }


def pong_event() -> Dict[str, Any]:
    return {"type": WebSocketMessageType.PONG.value}


def error_event(code: str, message: str) -> Dict[str, Any]:
    return {"type": WebSocketMessageType.ERROR.value, "code": code, "message": message}
