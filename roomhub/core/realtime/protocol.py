"""Wire protocol for realtime sessions.

Channels, stream kinds, publish commands and JSON frame helpers shared by the
hub and the client library.

Channel addressing:
- ``room/{roomId}``         message stream
- ``room/{roomId}/typing``  typing indicators
- ``room/{roomId}/edit``    message edits
- ``room/{roomId}/delete``  message deletions
- ``room/{roomId}/video``   video-call signaling
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from roomhub.core.errors import MalformedPayload

CHANNEL_PREFIX = "room"


class StreamKind(str, Enum):
    """Logical event streams carried for every room."""

    MESSAGE = "message"
    TYPING = "typing"
    EDIT = "edit"
    DELETE = "delete"
    VIDEO_SIGNAL = "video-signal"

    @property
    def suffix(self) -> Optional[str]:
        return _CHANNEL_SUFFIXES[self]

    @property
    def sequenced(self) -> bool:
        """Typing indicators never consume the room's sequence counter."""
        return self is not StreamKind.TYPING


_CHANNEL_SUFFIXES: Dict[StreamKind, Optional[str]] = {
    StreamKind.MESSAGE: None,
    StreamKind.TYPING: "typing",
    StreamKind.EDIT: "edit",
    StreamKind.DELETE: "delete",
    StreamKind.VIDEO_SIGNAL: "video",
}
_KINDS_BY_SUFFIX = {suffix: kind for kind, suffix in _CHANNEL_SUFFIXES.items()}


@dataclass(frozen=True)
class Channel:
    """One addressable event stream: (room, kind)."""

    room_id: str
    kind: StreamKind

    @property
    def name(self) -> str:
        suffix = self.kind.suffix
        if suffix is None:
            return f"{CHANNEL_PREFIX}/{self.room_id}"
        return f"{CHANNEL_PREFIX}/{self.room_id}/{suffix}"

    @classmethod
    def parse(cls, name: str) -> "Channel":
        parts = name.split("/") if isinstance(name, str) else []
        if len(parts) not in (2, 3) or parts[0] != CHANNEL_PREFIX or not parts[1]:
            raise MalformedPayload(f"Invalid channel name: {name!r}")
        suffix = parts[2] if len(parts) == 3 else None
        if suffix not in _KINDS_BY_SUFFIX:
            raise MalformedPayload(f"Unknown channel stream: {name!r}")
        return cls(room_id=parts[1], kind=_KINDS_BY_SUFFIX[suffix])

    def __str__(self) -> str:
        return self.name


def room_channels(room_id: str) -> List[Channel]:
    """All channels belonging to a room, in a stable order."""
    return [Channel(room_id=room_id, kind=kind) for kind in StreamKind]


class CommandType(str, Enum):
    """Client -> server publish destinations."""

    SEND_MESSAGE = "send-message"
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    SEND_TYPING = "send-typing"
    EDIT_MESSAGE = "edit-message"
    DELETE_MESSAGE = "delete-message"
    START_VIDEO_CALL = "start-video-call"
    END_VIDEO_CALL = "end-video-call"


class FrameType(str, Enum):
    """Frame ``type`` values."""

    # Client -> Server
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    PUBLISH = "publish"
    PING = "ping"

    # Server -> Client
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    EVENT = "event"
    ACK = "ack"
    ROOM_JOINED = "room-joined"
    REVOKED = "revoked"
    PONG = "pong"
    ERROR = "error"


class SessionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


# Close codes sent by the hub
CLOSE_NORMAL = 1000
CLOSE_AUTH_EXPIRED = 4401
CLOSE_TOO_MANY_SESSIONS = 4429
CLOSE_HEARTBEAT_TIMEOUT = 4408
CLOSE_SLOW_CONSUMER = 4413


def encode_frame(frame: Dict[str, Any]) -> str:
    return json.dumps(frame, separators=(",", ":"), ensure_ascii=False, default=str)


def decode_frame(raw: Any) -> Dict[str, Any]:
    """Decode a text frame into a dict with a known ``type``."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedPayload("Frame is not valid UTF-8") from exc
    try:
        frame = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise MalformedPayload("Invalid JSON") from exc
    if not isinstance(frame, dict):
        raise MalformedPayload("Frame must be a JSON object")
    try:
        FrameType(frame.get("type"))
    except ValueError as exc:
        raise MalformedPayload(f"Unknown frame type: {frame.get('type')!r}") from exc
    return frame


def require_room_id(data: Dict[str, Any], *keys: str) -> str:
    """Pull a non-empty room id out of a frame or body."""
    for key in keys or ("room_id", "roomId"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise MalformedPayload("Missing room id")
