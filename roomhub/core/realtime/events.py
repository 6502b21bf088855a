"""Realtime events.

An ``Event`` is created once by the router at publish time and never mutated;
every subscriber receives a serialized view of the same object.
"""

from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from roomhub.core.errors import MalformedPayload
from roomhub.core.realtime.protocol import Channel, FrameType, StreamKind


@dataclass(frozen=True)
class Event:
    """A published payload for one (room, kind) stream."""

    kind: StreamKind
    room_id: str
    body: Dict[str, Any]
    sequence: Optional[int] = None
    sender_user_id: Optional[str] = None
    sender_session_id: Optional[str] = None
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def create(
        cls,
        kind: StreamKind,
        room_id: str,
        body: Dict[str, Any],
        sequence: Optional[int] = None,
        sender_user_id: Optional[str] = None,
        sender_session_id: Optional[str] = None,
    ) -> "Event":
        # Deep copy so later mutation of the caller's dict cannot leak into fan-out
        return cls(
            kind=kind,
            room_id=room_id,
            body=copy.deepcopy(body),
            sequence=sequence,
            sender_user_id=sender_user_id,
            sender_session_id=sender_session_id,
        )

    @property
    def channel(self) -> Channel:
        return Channel(room_id=self.room_id, kind=self.kind)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "kind": self.kind.value,
            "channel": self.channel.name,
            "room_id": self.room_id,
            "sequence": self.sequence,
            "sender_user_id": self.sender_user_id,
            "sender_session_id": self.sender_session_id,
            "body": copy.deepcopy(self.body),
            "timestamp": self.timestamp,
        }

    def to_frame(self) -> Dict[str, Any]:
        frame = self.to_dict()
        frame["type"] = FrameType.EVENT.value
        return frame

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        """Rebuild an event from a frame, raising ``MalformedPayload`` on bad input."""
        if not isinstance(data, dict):
            raise MalformedPayload("Event must be an object")
        try:
            kind = StreamKind(data.get("kind"))
        except ValueError as exc:
            raise MalformedPayload(f"Unknown event kind: {data.get('kind')!r}") from exc

        room_id = data.get("room_id")
        if not isinstance(room_id, str) or not room_id:
            raise MalformedPayload("Event without room_id")

        body = data.get("body")
        if body is None:
            body = {}
        if not isinstance(body, dict):
            raise MalformedPayload("Event body must be an object")

        sequence = data.get("sequence")
        if sequence is not None and (isinstance(sequence, bool) or not isinstance(sequence, int)):
            raise MalformedPayload("Event sequence must be an integer")

        timestamp = data.get("timestamp")
        if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
            timestamp = time.time()

        return cls(
            kind=kind,
            room_id=room_id,
            body=body,
            sequence=sequence,
            sender_user_id=data.get("sender_user_id"),
            sender_session_id=data.get("sender_session_id"),
            event_id=str(data.get("event_id") or uuid.uuid4().hex),
            timestamp=float(timestamp),
        )
