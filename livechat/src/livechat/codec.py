"""Wire envelope codec for the chat socket.

Every frame is a JSON object ``{"type": str, "payload"?: object}``. Decoding
is strict about that shape and nothing else: unknown ``type`` values are
passed through so the reducer can ignore them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import DecodeError


class MessageType(str, Enum):
    CONNECT = "CONNECT"
    HISTORY = "HISTORY"
    MESSAGE = "MESSAGE"
    TIP = "TIP"
    USER_JOINED = "USER_JOINED"
    USER_LEFT = "USER_LEFT"
    TYPING = "TYPING"
    MESSAGE_REPORT = "MESSAGE_REPORT"
    MESSAGE_REPORTED = "MESSAGE_REPORTED"
    MESSAGE_DELETE = "MESSAGE_DELETE"
    REACTION_ADD = "REACTION_ADD"
    REACTION_REMOVE = "REACTION_REMOVE"
    REACTION = "REACTION"
    USER_BAN = "USER_BAN"
    PING = "PING"
    PONG = "PONG"
    ERROR = "ERROR"


@dataclass(frozen=True)
class Envelope:
    """One protocol frame."""

    type: str
    payload: Any = None

    def is_a(self, message_type: MessageType) -> bool:
        return self.type == message_type.value

    def to_dict(self) -> dict[str, Any]:
        frame: dict[str, Any] = {"type": self.type}
        if self.payload is not None:
            frame["payload"] = self.payload
        return frame


def envelope(message_type: MessageType | str, payload: Any = None) -> Envelope:
    type_name = message_type.value if isinstance(message_type, MessageType) else message_type
    return Envelope(type=type_name, payload=payload)


def encode(frame: Envelope) -> str:
    return json.dumps(frame.to_dict(), separators=(",", ":"), default=_json_default)


def decode(raw: str | bytes) -> Envelope:
    """Parse one inbound frame, raising ``DecodeError`` on anything malformed."""

    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError("frame is not valid utf-8", raw) from exc
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise DecodeError("malformed json", raw) from exc
    return from_dict(data, raw)


def from_dict(data: Any, raw: str | bytes | None = None) -> Envelope:
    """Validate an already-parsed frame."""

    if not isinstance(data, dict):
        raise DecodeError("frame must be a json object", raw)
    frame_type = data.get("type")
    if not isinstance(frame_type, str) or not frame_type:
        raise DecodeError("frame type must be a non-empty string", raw)
    payload = data.get("payload")
    if payload is not None and not isinstance(payload, dict):
        raise DecodeError("payload must be an object", raw)
    return Envelope(type=frame_type, payload=payload)


def _json_default(value: Any) -> Any:
    isoformat = getattr(value, "isoformat", None)
    if callable(isoformat):
        return isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
