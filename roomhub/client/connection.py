"""Client-side connection management.

``ConnectionManager`` owns one authenticated transport: it performs the
handshake, funnels every outbound frame through a single FIFO writer task,
keeps the link alive with ping frames and reports lifecycle changes to
``ConnectionListener`` observers. It never reconnects or resubscribes on its
own; that decision belongs to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from jose import jwt
from jose.exceptions import JWTError

from roomhub.client.transport import Transport, WebSocketTransport
from roomhub.core.config import Settings, get_settings
from roomhub.core.errors import (
    AuthExpired,
    ErrorCode,
    MalformedPayload,
    NotConnected,
    RealtimeError,
    TransportFailure,
)
from roomhub.core.realtime.protocol import (
    CommandType,
    FrameType,
    SessionState,
    decode_frame,
    encode_frame,
)

logger = logging.getLogger(__name__)


@dataclass
class SessionInfo:
    session_id: str
    user_id: str
    heartbeat_interval: float
    connected_at: float = field(default_factory=time.time)


class ConnectionListener:
    """Observer for connection lifecycle; override the hooks you need."""

    async def on_connect(self, session: SessionInfo) -> None:
        pass

    async def on_disconnect(self, error: RealtimeError) -> None:
        """The connection dropped without ``disconnect()`` being called."""

    async def on_error(self, error: RealtimeError) -> None:
        pass

    async def on_frame(self, frame: Dict[str, Any]) -> None:
        pass

    async def on_teardown(self) -> None:
        """``disconnect()`` was called; the transport is still writable."""


def check_token(token: Optional[str], now: Optional[float] = None) -> Dict[str, Any]:
    """Reject tokens that cannot possibly be accepted before dialing out.

    The signature is not checked here; only the hub can verify it.
    """
    if not token or not isinstance(token, str):
        raise AuthExpired("Missing bearer token")
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError as exc:
        raise AuthExpired("Malformed bearer token") from exc
    exp = claims.get("exp")
    if isinstance(exp, (int, float)) and exp <= (now if now is not None else time.time()):
        raise AuthExpired("Token expired")
    return claims


class ConnectionManager:
    """One live connection to the realtime hub."""

    def __init__(
        self,
        url: str,
        transport_factory: Callable[[], Transport] = WebSocketTransport,
        handshake_timeout: float = 10.0,
        heartbeat_interval: Optional[float] = None,
        heartbeat_timeout: float = 45.0,
        max_outbound_queue: int = 1000,
    ):
        self.url = url
        self.transport_factory = transport_factory
        self.handshake_timeout = handshake_timeout
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.max_outbound_queue = max_outbound_queue

        self.state = SessionState.CLOSED
        self.session: Optional[SessionInfo] = None
        self._listeners: List[ConnectionListener] = []
        self._transport: Optional[Transport] = None
        self._outbound: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self._last_received = 0.0

    @classmethod
    def from_settings(
        cls, url: str, settings: Optional[Settings] = None, **kwargs: Any
    ) -> "ConnectionManager":
        """Build a manager using the configured handshake, heartbeat and queue limits."""
        settings = settings or get_settings()
        kwargs.setdefault("handshake_timeout", settings.HANDSHAKE_TIMEOUT_SECONDS)
        kwargs.setdefault("heartbeat_timeout", settings.HEARTBEAT_TIMEOUT_SECONDS)
        kwargs.setdefault("max_outbound_queue", settings.MAX_OUTBOUND_QUEUE)
        return cls(url, **kwargs)

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.OPEN

    def add_listener(self, listener: ConnectionListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ConnectionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, token: str) -> SessionInfo:
        """Open the transport and complete the handshake.

        Raises:
            AuthExpired: the token is malformed, expired or rejected by the hub
            TransportFailure: the upgrade was refused or timed out
        """
        if self.is_connected and self.session is not None:
            return self.session
        if self.state is SessionState.CONNECTING:
            raise TransportFailure("Connection attempt already in progress")

        self.state = SessionState.CONNECTING
        transport: Optional[Transport] = None
        try:
            check_token(token)
            transport = self.transport_factory()
            await transport.open(self.url, {"Authorization": f"Bearer {token}"})
            try:
                frame = await asyncio.wait_for(
                    self._await_connected(transport), self.handshake_timeout
                )
            except asyncio.TimeoutError as exc:
                raise TransportFailure("Handshake timed out") from exc
        except BaseException as exc:
            # Also covers cancellation, so a later connect() is never locked out
            self.state = SessionState.CLOSED
            if transport is not None:
                await transport.close()
            if isinstance(exc, RealtimeError):
                logger.warning(
                    f"Connect failed: {exc.message}", extra={"error_code": exc.code.value}
                )
                await self._notify("on_error", exc)
            raise

        self._transport = transport
        self.session = SessionInfo(
            session_id=str(frame.get("session_id", "")),
            user_id=str(frame.get("user_id", "")),
            heartbeat_interval=float(
                self.heartbeat_interval or frame.get("heartbeat_interval") or 15.0
            ),
        )
        self._outbound = asyncio.Queue(maxsize=self.max_outbound_queue)
        self._last_received = time.monotonic()
        self.state = SessionState.OPEN
        self._tasks = [
            asyncio.create_task(self._read_loop()),
            asyncio.create_task(self._write_loop()),
            asyncio.create_task(self._heartbeat_loop()),
        ]
        logger.info(
            "Connected",
            extra={"session_id": self.session.session_id, "user_id": self.session.user_id},
        )
        await self._notify("on_connect", self.session)
        return self.session

    async def disconnect(self) -> None:
        """Scoped teardown; always succeeds locally."""
        if self.state is SessionState.CLOSED and self._transport is None:
            return

        if self.is_connected:
            await self._notify("on_teardown")
            await self._drain(timeout=1.0)

        self.state = SessionState.CLOSED
        await self._shutdown()
        logger.info("Disconnected")

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send(
        self,
        destination: Union[CommandType, str],
        body: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> str:
        """Queue a publish; returns its request id without waiting on the network.

        Raises:
            NotConnected: the session is not open
            MalformedPayload: unknown destination
        """
        try:
            command = CommandType(destination)
        except ValueError as exc:
            raise MalformedPayload(f"Unknown destination: {destination!r}") from exc
        request_id = request_id or uuid.uuid4().hex
        self.send_frame(
            {
                "type": FrameType.PUBLISH.value,
                "command": command.value,
                "body": body or {},
                "request_id": request_id,
            }
        )
        return request_id

    def send_frame(self, frame: Dict[str, Any]) -> None:
        if not self.is_connected or self._outbound is None:
            raise NotConnected("Connection is not open")
        try:
            self._outbound.put_nowait(frame)
        except asyncio.QueueFull as exc:
            raise TransportFailure("Outbound queue is full") from exc

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _await_connected(self, transport: Transport) -> Dict[str, Any]:
        while True:
            try:
                frame = decode_frame(await transport.recv())
            except MalformedPayload as exc:
                logger.warning(f"Dropping malformed handshake frame: {exc.message}")
                continue
            if frame["type"] == FrameType.CONNECTED.value:
                return frame
            if frame["type"] == FrameType.ERROR.value:
                raise RealtimeError.from_dict(frame)

    async def _read_loop(self) -> None:
        transport = self._transport
        try:
            while True:
                raw = await transport.recv()
                self._last_received = time.monotonic()
                try:
                    frame = decode_frame(raw)
                except MalformedPayload as exc:
                    logger.warning(f"Dropping malformed frame: {exc.message}")
                    continue

                if frame["type"] == FrameType.PONG.value:
                    continue
                if (
                    frame["type"] == FrameType.ERROR.value
                    and frame.get("code") == ErrorCode.AUTH_EXPIRED.value
                    and not frame.get("room_id")
                    and not frame.get("request_id")
                ):
                    await self._terminate(RealtimeError.from_dict(frame))
                    return
                await self._notify("on_frame", frame)
        except RealtimeError as exc:
            await self._terminate(exc)

    async def _write_loop(self) -> None:
        transport = self._transport
        queue = self._outbound
        while True:
            frame = await queue.get()
            try:
                await transport.send(encode_frame(frame))
            except RealtimeError as exc:
                await self._terminate(exc)
                return
            finally:
                queue.task_done()

    async def _heartbeat_loop(self) -> None:
        interval = self.session.heartbeat_interval if self.session else 15.0
        while self.is_connected:
            await asyncio.sleep(interval)
            if time.monotonic() - self._last_received > self.heartbeat_timeout:
                await self._terminate(TransportFailure("Heartbeat timeout"))
                return
            try:
                self.send_frame({"type": FrameType.PING.value})
            except RealtimeError as exc:
                await self._terminate(exc)
                return

    async def _drain(self, timeout: float) -> None:
        if self._outbound is None:
            return
        try:
            await asyncio.wait_for(self._outbound.join(), timeout)
        except asyncio.TimeoutError:
            logger.debug("Outbound queue not drained before teardown")

    async def _terminate(self, error: RealtimeError) -> None:
        """Unexpected loss of the connection."""
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        logger.warning(
            f"Connection lost: {error.message}", extra={"error_code": error.code.value}
        )
        await self._shutdown()
        await self._notify("on_disconnect", error)

    async def _shutdown(self) -> None:
        current = asyncio.current_task()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()
        for task in tasks:
            if task is not current:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()
        self._outbound = None
        self.session = None

    async def _notify(self, hook: str, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                await getattr(listener, hook)(*args)
            except Exception as e:
                logger.error(f"Connection listener {hook} failed: {e}", exc_info=True)
