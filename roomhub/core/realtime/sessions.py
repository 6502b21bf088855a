"""Server-side session management.

Features:
- Authenticated handshake (bearer JWT) before the upgrade is accepted
- One FIFO outbound queue and writer task per session
- Heartbeat reaping of silent sessions and of sessions whose token expired
- Frame and command dispatch into the Event Router and Presence Tracker
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from roomhub.core.errors import (
    AuthExpired,
    Forbidden,
    MalformedPayload,
    RealtimeError,
    TransportFailure,
)
from roomhub.core.realtime.auth import TokenVerifier
from roomhub.core.realtime.events import Event
from roomhub.core.realtime.presence import PresenceTracker
from roomhub.core.realtime.protocol import (
    CLOSE_AUTH_EXPIRED,
    CLOSE_HEARTBEAT_TIMEOUT,
    CLOSE_NORMAL,
    CLOSE_SLOW_CONSUMER,
    CLOSE_TOO_MANY_SESSIONS,
    CommandType,
    FrameType,
    SessionState,
    StreamKind,
    decode_frame,
    encode_frame,
    require_room_id,
)
from roomhub.core.realtime.router import EventRouter
from roomhub.utils import metrics

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Session:
    """One authenticated live connection."""

    session_id: str
    user_id: str
    websocket: WebSocket
    state: SessionState = SessionState.CONNECTING
    connected_at: float = field(default_factory=time.time)
    last_heartbeat: float = field(default_factory=time.time)
    token_expires_at: Optional[float] = None
    max_queue: int = 1000
    on_failure: Optional[Callable[["Session", int], None]] = None

    def __post_init__(self) -> None:
        self._outbound: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self._writer_task: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    def enqueue(self, frame: Dict[str, Any]) -> bool:
        """Queue a frame for this session without waiting on the socket."""
        if self.state is SessionState.CLOSED:
            return False
        try:
            self._outbound.put_nowait(frame)
            return True
        except asyncio.QueueFull:
            logger.warning(
                "Outbound queue full, dropping slow session",
                extra={"session_id": self.session_id, "user_id": self.user_id},
            )
            if self.on_failure:
                self.on_failure(self, CLOSE_SLOW_CONSUMER)
            return False

    def start_writer(self) -> None:
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._write_loop())

    async def _write_loop(self) -> None:
        while True:
            frame = await self._outbound.get()
            try:
                await self.websocket.send_text(encode_frame(frame))
            except Exception as e:
                logger.warning(
                    f"Failed to write to session: {e}",
                    extra={"session_id": self.session_id},
                )
                if self.on_failure:
                    self.on_failure(self, CLOSE_NORMAL)
                return

    async def stop_writer(self) -> None:
        if self._writer_task is not None:
            self._writer_task.cancel()
            try:
                await self._writer_task
            except asyncio.CancelledError:
                pass
            self._writer_task = None


CommandHandler = Callable[[Session, str, Dict[str, Any]], Awaitable[Event]]


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


class SessionManager:
    """Owns every live session and feeds their frames to the router."""

    def __init__(
        self,
        router: EventRouter,
        presence: PresenceTracker,
        verifier: TokenVerifier,
        heartbeat_interval: float = 15.0,
        heartbeat_timeout: float = 45.0,
        max_outbound_queue: int = 1000,
        max_sessions_per_user: int = 10,
    ):
        self.router = router
        self.presence = presence
        self.verifier = verifier
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.max_outbound_queue = max_outbound_queue
        self.max_sessions_per_user = max_sessions_per_user

        self._sessions: Dict[str, Session] = {}
        self._user_sessions: Dict[str, Set[str]] = {}

        self._heartbeat_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._running = False

        self._commands: Dict[CommandType, CommandHandler] = {
            CommandType.SEND_MESSAGE: self._send_message,
            CommandType.JOIN_ROOM: self._join_room,
            CommandType.LEAVE_ROOM: self._leave_room,
            CommandType.SEND_TYPING: self._send_typing,
            CommandType.EDIT_MESSAGE: self._edit_message,
            CommandType.DELETE_MESSAGE: self._delete_message,
            CommandType.START_VIDEO_CALL: self._start_video_call,
            CommandType.END_VIDEO_CALL: self._end_video_call,
        }

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("Session manager started")

    async def stop(self) -> None:
        self._running = False
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        for session_id in list(self._sessions):
            await self.close(session_id, code=CLOSE_NORMAL)
        logger.info("Session manager stopped")

    async def open(self, websocket: WebSocket, token: Optional[str]) -> Session:
        """Verify the token, accept the upgrade and register the session.

        Raises:
            AuthExpired: token missing, malformed, badly signed or expired
            Forbidden: the user already holds too many sessions
        """
        try:
            claims = self.verifier.verify(token)
        except AuthExpired as exc:
            metrics.realtime_sessions_total.labels(status="auth_failed").inc()
            logger.info(f"Handshake rejected: {exc.message}")
            await websocket.close(code=CLOSE_AUTH_EXPIRED, reason="auth_expired")
            raise

        if len(self._user_sessions.get(claims.user_id, set())) >= self.max_sessions_per_user:
            metrics.realtime_sessions_total.labels(status="limited").inc()
            error = Forbidden(f"User {claims.user_id} has too many sessions")
            # Accept first so the client sees the 4429 close instead of an HTTP 403
            await websocket.accept()
            await websocket.send_text(
                encode_frame({"type": FrameType.ERROR.value, **error.to_dict()})
            )
            await websocket.close(code=CLOSE_TOO_MANY_SESSIONS, reason="too_many_sessions")
            raise error

        await websocket.accept()

        session = Session(
            session_id=uuid.uuid4().hex,
            user_id=claims.user_id,
            websocket=websocket,
            token_expires_at=claims.expires_at,
            max_queue=self.max_outbound_queue,
            on_failure=self._schedule_close,
        )
        session.state = SessionState.OPEN
        self._sessions[session.session_id] = session
        self._user_sessions.setdefault(session.user_id, set()).add(session.session_id)
        session.start_writer()

        session.enqueue(
            {
                "type": FrameType.CONNECTED.value,
                "session_id": session.session_id,
                "user_id": session.user_id,
                "heartbeat_interval": self.heartbeat_interval,
                "timestamp": time.time(),
            }
        )
        await self.presence.session_opened(session.user_id)

        metrics.realtime_sessions_total.labels(status="opened").inc()
        metrics.realtime_sessions_active.inc()
        logger.info(
            "Session opened",
            extra={"session_id": session.session_id, "user_id": session.user_id},
        )
        return session

    async def close(
        self,
        session_id: str,
        code: int = CLOSE_NORMAL,
        error: Optional[RealtimeError] = None,
    ) -> None:
        """Tear a session down; safe to call more than once."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        session.state = SessionState.CLOSED

        user_sessions = self._user_sessions.get(session.user_id)
        if user_sessions is not None:
            user_sessions.discard(session_id)
            if not user_sessions:
                del self._user_sessions[session.user_id]

        await self.router.handle_disconnect(session_id)
        await self.presence.session_closed(session.user_id)
        await session.stop_writer()

        try:
            if error is not None:
                await session.websocket.send_text(
                    encode_frame({"type": FrameType.ERROR.value, **error.to_dict()})
                )
            await session.websocket.close(code=code)
        except Exception as e:
            # Peer already gone
            logger.debug(f"Close on dead socket: {e}", extra={"session_id": session_id})

        metrics.realtime_sessions_active.dec()
        logger.info(
            "Session closed",
            extra={"session_id": session_id, "user_id": session.user_id, "close_code": code},
        )

    def _schedule_close(self, session: Session, code: int) -> None:
        task = asyncio.create_task(self.close(session.session_id, code=code))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def serve(self, websocket: WebSocket, token: Optional[str]) -> None:
        """Run one connection from handshake to teardown."""
        try:
            session = await self.open(websocket, token)
        except RealtimeError:
            return

        try:
            while session.is_open:
                raw = await websocket.receive_text()
                await self.handle_frame(session, raw)
        except WebSocketDisconnect:
            logger.info("Client disconnected", extra={"session_id": session.session_id})
        except Exception:
            logger.exception("Session loop error", extra={"session_id": session.session_id})
        finally:
            await self.close(session.session_id)

    async def handle_frame(self, session: Session, raw: Any) -> None:
        """Handle one inbound frame; errors go back to this session only."""
        session.last_heartbeat = time.time()
        request_id = None
        room_id = None
        try:
            frame = decode_frame(raw)
            request_id = frame.get("request_id")
            frame_type = FrameType(frame["type"])

            if frame_type is FrameType.PING:
                session.enqueue({"type": FrameType.PONG.value, "timestamp": time.time()})

            elif frame_type is FrameType.SUBSCRIBE:
                room_id = require_room_id(frame)
                channels = await self.router.handle_subscribe(session, room_id)
                self.presence.touch(room_id, session.user_id)
                session.enqueue(
                    {
                        "type": FrameType.SUBSCRIBED.value,
                        "room_id": room_id,
                        "channels": channels,
                        "request_id": request_id,
                    }
                )

            elif frame_type is FrameType.UNSUBSCRIBE:
                room_id = require_room_id(frame)
                await self.router.handle_unsubscribe(session, room_id)
                session.enqueue(
                    {
                        "type": FrameType.UNSUBSCRIBED.value,
                        "room_id": room_id,
                        "request_id": request_id,
                    }
                )

            elif frame_type is FrameType.PUBLISH:
                await self._handle_command(session, frame)

            else:
                raise MalformedPayload(f"Frame type {frame_type.value} is not accepted from clients")

        except MalformedPayload as exc:
            metrics.realtime_malformed_frames_total.inc()
            logger.warning(
                f"Malformed frame: {exc.message}",
                extra={"session_id": session.session_id, "error_code": exc.code.value},
            )
            self._send_error(session, exc, request_id, room_id)
        except RealtimeError as exc:
            logger.info(
                f"Request rejected: {exc.message}",
                extra={
                    "session_id": session.session_id,
                    "room_id": room_id,
                    "error_code": exc.code.value,
                },
            )
            self._send_error(session, exc, request_id, room_id)

    async def _handle_command(self, session: Session, frame: Dict[str, Any]) -> None:
        try:
            command = CommandType(frame.get("command"))
        except ValueError as exc:
            raise MalformedPayload(f"Unknown command: {frame.get('command')!r}") from exc

        body = frame.get("body")
        if body is None:
            body = {}
        if not isinstance(body, dict):
            raise MalformedPayload("Command body must be an object")

        room_id = require_room_id(body)
        try:
            event = await self._commands[command](session, room_id, body)
        except RealtimeError as exc:
            exc.details.setdefault("room_id", room_id)
            exc.details.setdefault("command", command.value)
            raise

        self.presence.touch(room_id, session.user_id)
        session.enqueue(
            {
                "type": FrameType.ACK.value,
                "request_id": frame.get("request_id"),
                "command": command.value,
                "room_id": room_id,
                "event_id": event.event_id,
                "sequence": event.sequence,
            }
        )

    def _send_error(
        self,
        session: Session,
        error: RealtimeError,
        request_id: Optional[str],
        room_id: Optional[str],
    ) -> None:
        frame: Dict[str, Any] = {"type": FrameType.ERROR.value, **error.to_dict()}
        if request_id is not None:
            frame["request_id"] = request_id
        room = room_id or error.details.get("room_id")
        if room is not None:
            frame["room_id"] = room
        session.enqueue(frame)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _send_message(self, session: Session, room_id: str, body: Dict[str, Any]) -> Event:
        text = body.get("text")
        if not isinstance(text, str) or not text.strip():
            raise MalformedPayload("send-message requires text")
        payload = {**body, "roomId": room_id, "senderId": session.user_id}
        return await self.router.handle_publish(session, room_id, StreamKind.MESSAGE, payload)

    async def _join_room(self, session: Session, room_id: str, body: Dict[str, Any]) -> Event:
        event = await self.router.handle_publish(
            session,
            room_id,
            StreamKind.MESSAGE,
            {
                "roomId": room_id,
                "system": True,
                "action": "joined",
                "userId": session.user_id,
                "text": "A user joined the room",
            },
        )
        session.enqueue(
            {"type": FrameType.ROOM_JOINED.value, "room_id": room_id, "status": "joined"}
        )
        return event

    async def _leave_room(self, session: Session, room_id: str, body: Dict[str, Any]) -> Event:
        return await self.router.handle_publish(
            session,
            room_id,
            StreamKind.MESSAGE,
            {
                "roomId": room_id,
                "system": True,
                "action": "left",
                "userId": session.user_id,
                "text": "A user left the room",
            },
        )

    async def _send_typing(self, session: Session, room_id: str, body: Dict[str, Any]) -> Event:
        username = body.get("username")
        return await self.presence.set_typing(
            room_id,
            session.user_id,
            _parse_bool(body.get("isTyping")),
            session=session,
            username=username if isinstance(username, str) else None,
        )

    async def _edit_message(self, session: Session, room_id: str, body: Dict[str, Any]) -> Event:
        if not body.get("messageId") or not isinstance(body.get("newText"), str):
            raise MalformedPayload("edit-message requires messageId and newText")
        payload = {**body, "roomId": room_id, "editedBy": session.user_id}
        return await self.router.handle_publish(session, room_id, StreamKind.EDIT, payload)

    async def _delete_message(self, session: Session, room_id: str, body: Dict[str, Any]) -> Event:
        if not body.get("messageId"):
            raise MalformedPayload("delete-message requires messageId")
        payload = {**body, "roomId": room_id, "deletedBy": session.user_id}
        return await self.router.handle_publish(session, room_id, StreamKind.DELETE, payload)

    async def _start_video_call(self, session: Session, room_id: str, body: Dict[str, Any]) -> Event:
        return await self.router.start_video_call(session, room_id, body.get("videoCallData"))

    async def _end_video_call(self, session: Session, room_id: str, body: Dict[str, Any]) -> Event:
        return await self.router.end_video_call(session, room_id, body.get("videoCallData"))

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def reap(self, now: Optional[float] = None) -> int:
        """Close silent sessions and sessions whose token has expired."""
        now = now if now is not None else time.time()
        stale: List[str] = []
        expired: List[str] = []
        for session_id, session in self._sessions.items():
            if session.token_expires_at is not None and now >= session.token_expires_at:
                expired.append(session_id)
            elif now - session.last_heartbeat > self.heartbeat_timeout:
                stale.append(session_id)

        for session_id in expired:
            logger.info("Closing session with expired token", extra={"session_id": session_id})
            await self.close(session_id, code=CLOSE_AUTH_EXPIRED, error=AuthExpired("Token expired"))
        for session_id in stale:
            logger.info("Disconnecting stale session", extra={"session_id": session_id})
            await self.close(
                session_id,
                code=CLOSE_HEARTBEAT_TIMEOUT,
                error=TransportFailure("Heartbeat timed out"),
            )
        return len(stale) + len(expired)

    async def _heartbeat_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.heartbeat_interval)
                await self.reap()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Heartbeat loop error: {e}")

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def get_user_sessions(self, user_id: str) -> List[str]:
        return list(self._user_sessions.get(user_id, set()))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active_sessions": len(self._sessions),
            "users_connected": len(self._user_sessions),
        }
