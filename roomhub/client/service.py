"""High-level realtime client.

Wraps a ``ConnectionManager`` and its ``SubscriptionRegistry`` behind one
object exposing the chat commands, and reconciles room history after a
reconnect when a ``MessageHistoryClient`` is supplied.

Example::

    client = RealtimeClient("ws://localhost:8000/api/v1/realtime/ws")
    await client.connect(token)
    client.subscribe_room("R1", MyHandler())
    client.send_message("R1", "hello")
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from roomhub.client.connection import ConnectionListener, ConnectionManager, SessionInfo
from roomhub.client.history import MessageHistoryClient
from roomhub.client.registry import RoomEventHandler, SubscriptionRegistry
from roomhub.core.errors import NotConnected, RealtimeError
from roomhub.core.realtime.protocol import CommandType

logger = logging.getLogger(__name__)


class RealtimeClient(ConnectionListener):
    def __init__(
        self,
        url: str,
        history: Optional[MessageHistoryClient] = None,
        connection: Optional[ConnectionManager] = None,
        **connection_options: Any,
    ):
        self.connection = connection or ConnectionManager(url, **connection_options)
        self.registry = SubscriptionRegistry(self.connection)
        self.history = history
        self._token: Optional[str] = None
        self._has_connected = False
        self.connection.add_listener(self)

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    async def connect(self, token: str) -> SessionInfo:
        self._token = token
        return await self.connection.connect(token)

    async def reconnect(self, token: Optional[str] = None) -> SessionInfo:
        """Reconnect after an unexpected drop; recorded rooms are replayed."""
        token = token or self._token
        if not token:
            raise NotConnected("No token to reconnect with")
        return await self.connect(token)

    async def disconnect(self) -> None:
        await self.connection.disconnect()
        self._has_connected = False

    async def close(self) -> None:
        await self.disconnect()
        if self.history is not None:
            await self.history.close()

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    def subscribe_room(self, room_id: str, handler: Optional[RoomEventHandler] = None) -> bool:
        return self.registry.subscribe_room(room_id, handler)

    def unsubscribe_room(self, room_id: str) -> None:
        self.registry.unsubscribe_room(room_id)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def send_message(self, room_id: str, text: str, **fields: Any) -> str:
        return self.connection.send(
            CommandType.SEND_MESSAGE, {**fields, "roomId": room_id, "text": text}
        )

    def join_room(self, room_id: str) -> str:
        return self.connection.send(CommandType.JOIN_ROOM, {"roomId": room_id})

    def leave_room(self, room_id: str) -> str:
        return self.connection.send(CommandType.LEAVE_ROOM, {"roomId": room_id})

    def send_typing(self, room_id: str, is_typing: bool, username: Optional[str] = None) -> str:
        body: Dict[str, Any] = {"roomId": room_id, "isTyping": is_typing}
        if username:
            body["username"] = username
        return self.connection.send(CommandType.SEND_TYPING, body)

    def edit_message(self, room_id: str, message_id: str, new_text: str) -> str:
        return self.connection.send(
            CommandType.EDIT_MESSAGE,
            {"roomId": room_id, "messageId": message_id, "newText": new_text},
        )

    def delete_message(self, room_id: str, message_id: str) -> str:
        return self.connection.send(
            CommandType.DELETE_MESSAGE, {"roomId": room_id, "messageId": message_id}
        )

    def start_video_call(self, room_id: str, video_call_data: Optional[Dict[str, Any]] = None) -> str:
        return self.connection.send(
            CommandType.START_VIDEO_CALL,
            {"roomId": room_id, "videoCallData": video_call_data or {}},
        )

    def end_video_call(self, room_id: str, video_call_data: Optional[Dict[str, Any]] = None) -> str:
        return self.connection.send(
            CommandType.END_VIDEO_CALL,
            {"roomId": room_id, "videoCallData": video_call_data or {}},
        )

    # ------------------------------------------------------------------
    # ConnectionListener
    # ------------------------------------------------------------------

    async def on_connect(self, session: SessionInfo) -> None:
        reconnected = self._has_connected
        self._has_connected = True
        if reconnected and self.history is not None:
            await self.reconcile()

    async def reconcile(self) -> None:
        """Fetch recent messages for every recorded room and hand them to its handlers."""
        if self.history is None or not self._token:
            return
        for room_id in sorted(self.registry.rooms()):
            try:
                messages = await self.history.recent_messages(room_id, self._token)
            except RealtimeError as exc:
                logger.warning(
                    f"History reconciliation failed: {exc.message}",
                    extra={"room_id": room_id, "error_code": exc.code.value},
                )
                continue
            await self.registry.deliver_history(room_id, messages)
