"""Realtime messaging and presence hub.

Provides:
- Channel addressing and the JSON frame protocol
- Per-room event routing with membership checks
- Typing and online presence
- Session lifecycle (handshake, heartbeat, teardown)
- Recent-activity sinks
"""

from roomhub.core.realtime.activity import (
    ActivitySink,
    InMemoryActivitySink,
    RedisActivitySink,
)
from roomhub.core.realtime.auth import TokenClaims, TokenVerifier
from roomhub.core.realtime.context import RealtimeContext
from roomhub.core.realtime.events import Event
from roomhub.core.realtime.membership import (
    HttpMembershipAuthority,
    InMemoryMembershipAuthority,
    MembershipAuthority,
    MembershipChange,
    MembershipChangeType,
    RoomSnapshot,
)
from roomhub.core.realtime.presence import PresenceState, PresenceTracker
from roomhub.core.realtime.protocol import (
    Channel,
    CommandType,
    FrameType,
    SessionState,
    StreamKind,
    room_channels,
)
from roomhub.core.realtime.router import EventRouter, FanoutPolicy, RoomHub
from roomhub.core.realtime.sessions import Session, SessionManager

__all__ = [
    # Protocol
    "Channel",
    "CommandType",
    "FrameType",
    "SessionState",
    "StreamKind",
    "room_channels",
    "Event",
    # Auth
    "TokenClaims",
    "TokenVerifier",
    # Membership
    "MembershipAuthority",
    "InMemoryMembershipAuthority",
    "HttpMembershipAuthority",
    "MembershipChange",
    "MembershipChangeType",
    "RoomSnapshot",
    # Router
    "EventRouter",
    "FanoutPolicy",
    "RoomHub",
    # Presence
    "PresenceState",
    "PresenceTracker",
    # Sessions
    "Session",
    "SessionManager",
    # Activity
    "ActivitySink",
    "InMemoryActivitySink",
    "RedisActivitySink",
    # Wiring
    "RealtimeContext",
]
