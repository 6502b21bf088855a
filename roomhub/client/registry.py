"""Client-side subscription registry.

The registry records *intent*: the set of rooms the application wants to
follow, each with its typed handlers. Intent survives unexpected drops and is
replayed as plain ``subscribe`` frames on every ``on_connect``, so the hub's
subscription set converges to exactly the recorded rooms after a reconnect.
An explicit ``disconnect()`` clears it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from roomhub.client.connection import ConnectionListener, ConnectionManager, SessionInfo
from roomhub.core.errors import ErrorCode, MalformedPayload, RealtimeError
from roomhub.core.realtime.events import Event
from roomhub.core.realtime.protocol import CommandType, FrameType, StreamKind

logger = logging.getLogger(__name__)


class RoomEventHandler:
    """Typed callbacks for one room; override what you need."""

    async def on_message(self, event: Event) -> None:
        pass

    async def on_typing(self, event: Event) -> None:
        pass

    async def on_edit(self, event: Event) -> None:
        pass

    async def on_delete(self, event: Event) -> None:
        pass

    async def on_video_signal(self, event: Event) -> None:
        pass

    async def on_subscribed(self, room_id: str, channels: List[str]) -> None:
        pass

    async def on_rejected(self, room_id: str, error: RealtimeError) -> None:
        """The hub refused the subscription (not a member, or no such room)."""

    async def on_revoked(self, room_id: str, reason: str) -> None:
        """Access was withdrawn (kicked, left elsewhere, or room deleted)."""

    async def on_disconnect(self, error: RealtimeError) -> None:
        pass

    async def on_history(self, room_id: str, messages: List[Dict[str, Any]]) -> None:
        """Recent messages fetched after a reconnect to fill any gap."""


_KIND_HOOKS = {
    StreamKind.MESSAGE: "on_message",
    StreamKind.TYPING: "on_typing",
    StreamKind.EDIT: "on_edit",
    StreamKind.DELETE: "on_delete",
    StreamKind.VIDEO_SIGNAL: "on_video_signal",
}

_REJECTION_CODES = {ErrorCode.FORBIDDEN.value, ErrorCode.NOT_FOUND.value}


@dataclass
class RoomIntent:
    room_id: str
    handlers: List[RoomEventHandler] = field(default_factory=list)
    last_sequence: Optional[int] = None


class SubscriptionRegistry(ConnectionListener):
    def __init__(self, connection: ConnectionManager):
        self.connection = connection
        self._rooms: Dict[str, RoomIntent] = {}
        connection.add_listener(self)

    # ------------------------------------------------------------------
    # Intent
    # ------------------------------------------------------------------

    def rooms(self) -> Set[str]:
        return set(self._rooms)

    def is_subscribed(self, room_id: str) -> bool:
        return room_id in self._rooms

    def last_sequence(self, room_id: str) -> Optional[int]:
        intent = self._rooms.get(room_id)
        return intent.last_sequence if intent else None

    def subscribe_room(self, room_id: str, handler: Optional[RoomEventHandler] = None) -> bool:
        """Record interest in a room.

        Returns True when the room was not already recorded. A repeated call
        only attaches ``handler`` (if new) and sends nothing.
        """
        intent = self._rooms.get(room_id)
        created = intent is None
        if intent is None:
            intent = self._rooms[room_id] = RoomIntent(room_id=room_id)
        if handler is not None and handler not in intent.handlers:
            intent.handlers.append(handler)
        if not created:
            return False

        if self.connection.is_connected:
            try:
                self._send_subscribe(room_id)
                self.connection.send(CommandType.JOIN_ROOM, {"roomId": room_id})
            except RealtimeError as exc:
                # Intent stays recorded and is replayed on the next connect
                logger.warning(
                    f"Subscribe deferred: {exc.message}", extra={"room_id": room_id}
                )
        return True

    def unsubscribe_room(self, room_id: str) -> None:
        """Drop a room's intent and handlers; network failures are logged only."""
        if self._rooms.pop(room_id, None) is None:
            return
        if not self.connection.is_connected:
            return
        try:
            self.connection.send_frame(
                {"type": FrameType.UNSUBSCRIBE.value, "room_id": room_id}
            )
            self.connection.send(CommandType.LEAVE_ROOM, {"roomId": room_id})
        except RealtimeError as exc:
            logger.warning(f"Unsubscribe not sent: {exc.message}", extra={"room_id": room_id})

    def clear(self) -> None:
        self._rooms.clear()

    async def deliver_history(self, room_id: str, messages: List[Dict[str, Any]]) -> None:
        intent = self._rooms.get(room_id)
        if intent is None:
            return
        for handler in list(intent.handlers):
            await self._call(handler, "on_history", room_id, messages)

    # ------------------------------------------------------------------
    # ConnectionListener
    # ------------------------------------------------------------------

    async def on_connect(self, session: SessionInfo) -> None:
        for room_id in list(self._rooms):
            try:
                self._send_subscribe(room_id)
            except RealtimeError as exc:
                logger.warning(f"Replay failed: {exc.message}", extra={"room_id": room_id})
                return
        if self._rooms:
            logger.info(f"Replayed {len(self._rooms)} room subscriptions")

    async def on_teardown(self) -> None:
        for room_id in list(self._rooms):
            self.unsubscribe_room(room_id)
        self.clear()

    async def on_disconnect(self, error: RealtimeError) -> None:
        for intent in list(self._rooms.values()):
            for handler in list(intent.handlers):
                await self._call(handler, "on_disconnect", error)

    async def on_frame(self, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("type")
        if frame_type == FrameType.EVENT.value:
            await self._dispatch_event(frame)
        elif frame_type == FrameType.SUBSCRIBED.value:
            intent = self._rooms.get(frame.get("room_id"))
            if intent is not None:
                for handler in list(intent.handlers):
                    await self._call(
                        handler, "on_subscribed", intent.room_id, list(frame.get("channels") or [])
                    )
        elif frame_type == FrameType.REVOKED.value:
            room_id = frame.get("room_id")
            intent = self._rooms.pop(room_id, None)
            if intent is not None:
                logger.info("Subscription revoked", extra={"room_id": room_id})
                for handler in intent.handlers:
                    await self._call(handler, "on_revoked", room_id, str(frame.get("reason", "")))
        elif frame_type == FrameType.ERROR.value:
            await self._handle_error(frame)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _send_subscribe(self, room_id: str) -> None:
        self.connection.send_frame({"type": FrameType.SUBSCRIBE.value, "room_id": room_id})

    async def _dispatch_event(self, frame: Dict[str, Any]) -> None:
        try:
            event = Event.from_dict(frame)
        except MalformedPayload as exc:
            logger.warning(f"Dropping malformed event: {exc.message}")
            return

        intent = self._rooms.get(event.room_id)
        if intent is None:
            # Already unsubscribed; the hub may still flush queued events
            return
        if event.sequence is not None:
            intent.last_sequence = max(intent.last_sequence or 0, event.sequence)

        hook = _KIND_HOOKS[event.kind]
        for handler in list(intent.handlers):
            await self._call(handler, hook, event)

    async def _handle_error(self, frame: Dict[str, Any]) -> None:
        room_id = frame.get("room_id")
        code = frame.get("code")
        # Publish failures carry a request id and leave the subscription alone
        if not room_id or code not in _REJECTION_CODES or frame.get("request_id"):
            logger.warning(
                f"Hub reported error: {frame.get('message')}",
                extra={"error_code": code, "request_id": frame.get("request_id")},
            )
            return
        intent = self._rooms.pop(room_id, None)
        if intent is None:
            return
        error = RealtimeError.from_dict(frame)
        logger.info(
            f"Subscription rejected: {error.message}",
            extra={"room_id": room_id, "error_code": code},
        )
        for handler in intent.handlers:
            await self._call(handler, "on_rejected", room_id, error)

    async def _call(self, handler: RoomEventHandler, hook: str, *args: Any) -> None:
        try:
            await getattr(handler, hook)(*args)
        except Exception as e:
            logger.error(f"Room handler {hook} failed: {e}", exc_info=True)
