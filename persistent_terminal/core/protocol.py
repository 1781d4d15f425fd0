"""
Client Session Protocol - Message Types and Validation.

One JSON object per WebSocket text frame, discriminated by ``type``.

Client -> Server:
- {"type": "auth", "pin": "1234"}
- {"type": "list"}
- {"type": "create", "name": "optional"}
- {"type": "attach", "sessionId": "abc123xy"}
- {"type": "detach"}
- {"type": "input", "data": "ls\\r"}
- {"type": "resize", "cols": 120, "rows": 30}
- {"type": "terminate" | "reactivate" | "delete", "sessionId": "..."}
- {"type": "rename", "sessionId": "...", "name": "..."}
- {"type": "ping"}

Server -> Client:
- auth_required{pinLength}, auth_success, auth_failed, error{message}
- sessions{sessions}, created{sessionId}, attached{sessionId,name,status}
- history{sessionId,data}, output{sessionId,data}
- terminated{sessionId}, reactivated{sessionId}, pong

Author: Backend Lead Developer
"""

from __future__ import annotations

import json
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

__all__ = [
    "MessageType",
    "ProtocolError",
    "ClientMessage",
    "parse_message",
    "CLIENT_MESSAGE_TYPES",
]


class MessageType:
    """WebSocket message types."""
    # Client → Server
    AUTH = "auth"
    LIST = "list"
    CREATE = "create"
    ATTACH = "attach"
    DETACH = "detach"
    INPUT = "input"
    RESIZE = "resize"
    TERMINATE = "terminate"
    REACTIVATE = "reactivate"
    DELETE = "delete"
    RENAME = "rename"
    PING = "ping"

    # Server → Client
    AUTH_REQUIRED = "auth_required"
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILED = "auth_failed"
    ERROR = "error"
    SESSIONS = "sessions"
    CREATED = "created"
    ATTACHED = "attached"
    HISTORY = "history"
    OUTPUT = "output"
    TERMINATED = "terminated"
    REACTIVATED = "reactivated"
    PONG = "pong"


class ProtocolError(Exception):
    """Raised for malformed client messages. Never closes the connection."""
    pass


class _Message(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class AuthMessage(_Message):
    type: Literal["auth"]
    pin: str = ""


class ListMessage(_Message):
    type: Literal["list"]


class CreateMessage(_Message):
    type: Literal["create"]
    name: Optional[str] = None


class AttachMessage(_Message):
    type: Literal["attach"]
    session_id: str = Field(alias="sessionId")


class DetachMessage(_Message):
    type: Literal["detach"]


class InputMessage(_Message):
    type: Literal["input"]
    data: str


class ResizeMessage(_Message):
    type: Literal["resize"]
    # Zero or missing dimensions are ignored rather than rejected;
    # anything past the winsize field width is a protocol error
    cols: int = Field(default=0, ge=0, le=65535)
    rows: int = Field(default=0, ge=0, le=65535)


class TerminateMessage(_Message):
    type: Literal["terminate"]
    session_id: str = Field(alias="sessionId")


class ReactivateMessage(_Message):
    type: Literal["reactivate"]
    session_id: str = Field(alias="sessionId")


class DeleteMessage(_Message):
    type: Literal["delete"]
    session_id: str = Field(alias="sessionId")


class RenameMessage(_Message):
    type: Literal["rename"]
    session_id: str = Field(alias="sessionId")
    name: str = ""


class PingMessage(_Message):
    type: Literal["ping"]


ClientMessage = Annotated[
    Union[
        AuthMessage,
        ListMessage,
        CreateMessage,
        AttachMessage,
        DetachMessage,
        InputMessage,
        ResizeMessage,
        TerminateMessage,
        ReactivateMessage,
        DeleteMessage,
        RenameMessage,
        PingMessage,
    ],
    Field(discriminator="type"),
]

_client_message_adapter = TypeAdapter(ClientMessage)

CLIENT_MESSAGE_TYPES = frozenset({
    MessageType.AUTH,
    MessageType.LIST,
    MessageType.CREATE,
    MessageType.ATTACH,
    MessageType.DETACH,
    MessageType.INPUT,
    MessageType.RESIZE,
    MessageType.TERMINATE,
    MessageType.REACTIVATE,
    MessageType.DELETE,
    MessageType.RENAME,
    MessageType.PING,
})


def decode_frame(raw: Union[str, bytes]) -> dict:
    """
    Decode a raw frame into a JSON object.

    Raises:
        ProtocolError: If the frame is not a JSON object
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise ProtocolError("Message must be a JSON object")

    return payload


def parse_message(payload: dict) -> ClientMessage:
    """
    Validate a decoded payload against the closed set of client messages.

    Raises:
        ProtocolError: If the payload does not match its declared type
    """
    try:
        return _client_message_adapter.validate_python(payload)
    except ValidationError as e:
        raise ProtocolError(
            f"Invalid '{payload.get('type')}' message: {e.error_count()} error(s)"
        ) from e


# Server → Client builders

def auth_required(pin_length: int) -> dict:
    return {"type": MessageType.AUTH_REQUIRED, "pinLength": pin_length}


def auth_success() -> dict:
    return {"type": MessageType.AUTH_SUCCESS}


def auth_failed() -> dict:
    return {"type": MessageType.AUTH_FAILED}


def error(message: str) -> dict:
    return {"type": MessageType.ERROR, "message": message}


def sessions(summaries: List[dict]) -> dict:
    return {"type": MessageType.SESSIONS, "sessions": summaries}


def created(session_id: str) -> dict:
    return {"type": MessageType.CREATED, "sessionId": session_id}


def attached(session_id: str, name: str, status: str) -> dict:
    return {
        "type": MessageType.ATTACHED,
        "sessionId": session_id,
        "name": name,
        "status": status,
    }


def history(session_id: str, data: str) -> dict:
    return {"type": MessageType.HISTORY, "sessionId": session_id, "data": data}


def output(session_id: str, data: str) -> dict:
    return {"type": MessageType.OUTPUT, "sessionId": session_id, "data": data}


def terminated(session_id: str) -> dict:
    return {"type": MessageType.TERMINATED, "sessionId": session_id}


def reactivated(session_id: str) -> dict:
    return {"type": MessageType.REACTIVATED, "sessionId": session_id}


def pong() -> dict[str, Any]:
    return {"type": MessageType.PONG}
