"""Client transports.

``Transport`` is the seam between the Connection Manager and the network;
``WebSocketTransport`` is the production implementation built on the
``websockets`` asyncio client. Every network failure surfaces as a
``RealtimeError`` so callers never see library-specific exceptions.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus, InvalidURI
from websockets.protocol import State

from roomhub.core.errors import AuthExpired, Forbidden, RealtimeError, TransportFailure
from roomhub.core.realtime.protocol import (
    CLOSE_AUTH_EXPIRED,
    CLOSE_HEARTBEAT_TIMEOUT,
    CLOSE_NORMAL,
    CLOSE_TOO_MANY_SESSIONS,
)

logger = logging.getLogger(__name__)


class Transport(ABC):
    """A bidirectional text-frame pipe."""

    @abstractmethod
    async def open(self, url: str, headers: Dict[str, str]) -> None:
        ...

    @abstractmethod
    async def send(self, text: str) -> None:
        ...

    @abstractmethod
    async def recv(self) -> Union[str, bytes]:
        ...

    @abstractmethod
    async def close(self, code: int = CLOSE_NORMAL) -> None:
        ...

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...


def error_for_close(code: Optional[int], reason: str = "") -> RealtimeError:
    """Map a close code received from the hub to the matching error."""
    if code == CLOSE_AUTH_EXPIRED:
        return AuthExpired(reason or "Session token expired")
    if code == CLOSE_HEARTBEAT_TIMEOUT:
        return TransportFailure(reason or "Heartbeat timeout", {"close_code": code})
    if code == CLOSE_TOO_MANY_SESSIONS:
        return Forbidden(reason or "Too many sessions", {"close_code": code})
    return TransportFailure(
        f"Connection closed ({code}{': ' + reason if reason else ''})",
        {"close_code": code},
    )


class WebSocketTransport(Transport):
    def __init__(self, open_timeout: float = 10.0, max_size: Optional[int] = 2**20):
        self.open_timeout = open_timeout
        self.max_size = max_size
        self._ws: Optional[ClientConnection] = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    async def open(self, url: str, headers: Dict[str, str]) -> None:
        try:
            self._ws = await connect(
                url,
                additional_headers=headers,
                open_timeout=self.open_timeout,
                # Liveness is handled by application-level ping frames
                ping_interval=None,
                max_size=self.max_size,
            )
        except InvalidStatus as exc:
            status = exc.response.status_code
            if status in (401, 403):
                raise AuthExpired(f"Upgrade refused with HTTP {status}") from exc
            raise TransportFailure(
                f"Upgrade refused with HTTP {status}", {"status": status}
            ) from exc
        except (InvalidHandshake, InvalidURI, OSError, asyncio.TimeoutError) as exc:
            raise TransportFailure(f"Could not connect to {url}: {exc}") from exc

    async def send(self, text: str) -> None:
        if self._ws is None:
            raise TransportFailure("Transport is not open")
        try:
            await self._ws.send(text)
        except ConnectionClosed as exc:
            raise self._closed_error(exc) from exc

    async def recv(self) -> Union[str, bytes]:
        if self._ws is None:
            raise TransportFailure("Transport is not open")
        try:
            message = await self._ws.recv()
        except ConnectionClosed as exc:
            raise self._closed_error(exc) from exc
        # Binary frames are left for decode_frame to validate
        return message

    async def close(self, code: int = CLOSE_NORMAL) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close(code=code)
        except (ConnectionClosed, OSError) as e:
            logger.debug(f"Error closing websocket: {e}")

    @staticmethod
    def _closed_error(exc: ConnectionClosed) -> RealtimeError:
        if exc.rcvd is None:
            return TransportFailure("Connection lost")
        return error_for_close(exc.rcvd.code, exc.rcvd.reason)
