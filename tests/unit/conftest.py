import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

import pytest

from roomhub.client.connection import ConnectionListener, SessionInfo
from roomhub.client.registry import RoomEventHandler
from roomhub.client.transport import Transport
from roomhub.core.errors import RealtimeError, TransportFailure


class FakeTransport(Transport):
    """In-process transport; the test plays the hub by pushing frames."""

    def __init__(self, handshake: Optional[Dict[str, Any]] = None, refuse: Optional[Exception] = None):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.refuse = refuse
        self.opened_with: Optional[Tuple[str, Dict[str, str]]] = None
        self.closed_code: Optional[int] = None
        self._open = False
        if handshake is not None:
            self.push(handshake)

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self, url: str, headers: Dict[str, str]) -> None:
        self.opened_with = (url, headers)
        if self.refuse is not None:
            raise self.refuse
        self._open = True

    async def send(self, text: str) -> None:
        if not self._open:
            raise TransportFailure("closed")
        self.sent.append(json.loads(text))

    async def recv(self) -> str:
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            self._open = False
            raise item
        return item

    async def close(self, code: int = 1000) -> None:
        self._open = False
        self.closed_code = code

    def push(self, frame: Any) -> None:
        self.incoming.put_nowait(json.dumps(frame) if isinstance(frame, dict) else frame)

    def drop(self, error: Optional[RealtimeError] = None) -> None:
        self.push(error or TransportFailure("Connection lost"))

    def frames(self, frame_type: Optional[str] = None) -> List[Dict[str, Any]]:
        return [f for f in self.sent if frame_type is None or f.get("type") == frame_type]


def connected_frame(session_id: str = "sess-1", user_id: str = "A", heartbeat_interval: float = 15):
    return {
        "type": "connected",
        "session_id": session_id,
        "user_id": user_id,
        "heartbeat_interval": heartbeat_interval,
    }


class RecordingListener(ConnectionListener):
    def __init__(self):
        self.calls: List[Tuple[str, Any]] = []

    async def on_connect(self, session: SessionInfo) -> None:
        self.calls.append(("connect", session))

    async def on_disconnect(self, error: RealtimeError) -> None:
        self.calls.append(("disconnect", error))

    async def on_error(self, error: RealtimeError) -> None:
        self.calls.append(("error", error))

    async def on_frame(self, frame: Dict[str, Any]) -> None:
        self.calls.append(("frame", frame))

    async def on_teardown(self) -> None:
        self.calls.append(("teardown", None))

    def names(self) -> List[str]:
        return [name for name, _ in self.calls]


class RecordingHandler(RoomEventHandler):
    def __init__(self):
        self.calls: List[Tuple[str, Any]] = []

    async def on_message(self, event):
        self.calls.append(("message", event))

    async def on_typing(self, event):
        self.calls.append(("typing", event))

    async def on_edit(self, event):
        self.calls.append(("edit", event))

    async def on_delete(self, event):
        self.calls.append(("delete", event))

    async def on_video_signal(self, event):
        self.calls.append(("video", event))

    async def on_subscribed(self, room_id, channels):
        self.calls.append(("subscribed", room_id))

    async def on_rejected(self, room_id, error):
        self.calls.append(("rejected", error))

    async def on_revoked(self, room_id, reason):
        self.calls.append(("revoked", reason))

    async def on_disconnect(self, error):
        self.calls.append(("disconnect", error))

    async def on_history(self, room_id, messages):
        self.calls.append(("history", messages))

    def names(self) -> List[str]:
        return [name for name, _ in self.calls]


@pytest.fixture
def transports():
    """Factory that hands out a fresh pre-handshaken FakeTransport per connect."""
    created: List[FakeTransport] = []

    def factory() -> FakeTransport:
        transport = FakeTransport(handshake=connected_frame(session_id=f"sess-{len(created) + 1}"))
        created.append(transport)
        return transport

    factory.created = created
    return factory


@pytest.fixture
def fake_transport():
    return FakeTransport


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def handler():
    return RecordingHandler


async def settle(delay: float = 0.01) -> None:
    await asyncio.sleep(delay)


@pytest.fixture
def flush():
    return settle
