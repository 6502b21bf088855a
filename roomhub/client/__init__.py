"""Asyncio client for the realtime hub."""

from roomhub.client.connection import ConnectionListener, ConnectionManager, SessionInfo
from roomhub.client.history import MessageHistoryClient
from roomhub.client.registry import RoomEventHandler, SubscriptionRegistry
from roomhub.client.service import RealtimeClient
from roomhub.client.transport import Transport, WebSocketTransport

__all__ = [
    "ConnectionListener",
    "ConnectionManager",
    "SessionInfo",
    "MessageHistoryClient",
    "RoomEventHandler",
    "SubscriptionRegistry",
    "RealtimeClient",
    "Transport",
    "WebSocketTransport",
]
