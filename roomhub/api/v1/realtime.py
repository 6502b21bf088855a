"""Realtime API endpoints.

Provides endpoints for:
- The WebSocket session (handshake, subscriptions, publishes)
- Hub statistics
- Room presence and recent activity
- The membership-change webhook called by the room service
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, WebSocket
from pydantic import BaseModel, Field

from roomhub.api.dependencies import get_admin_token, get_realtime
from roomhub.core.realtime.auth import token_from_handshake
from roomhub.core.realtime.context import RealtimeContext
from roomhub.core.realtime.membership import MembershipChange, MembershipChangeType

logger = logging.getLogger(__name__)
router = APIRouter(tags=["realtime"])


class MembershipChangeRequest(BaseModel):
    """Membership change pushed by the room service."""

    change: MembershipChangeType = Field(..., description="joined|left|kicked|room_deleted")
    user_id: Optional[str] = Field(None, description="Affected user (omit for room_deleted)")


class MembershipChangeResponse(BaseModel):
    room_id: str
    change: MembershipChangeType
    revoked_sessions: int


class RealtimeStatsResponse(BaseModel):
    active_sessions: int
    users_connected: int
    users_online: int
    typing: int
    rooms_tracked: int
    rooms_with_subscribers: int
    sessions_subscribed: int
    subscriptions: int


class PresenceEntry(BaseModel):
    user_id: str
    username: Optional[str] = None
    online: bool
    is_typing: bool
    last_seen_at: float


class RoomPresenceResponse(BaseModel):
    room_id: str
    users: List[PresenceEntry]


class RoomActivityResponse(BaseModel):
    room_id: str
    sequence: int
    events: List[Dict[str, Any]]


@router.websocket("/ws")
async def realtime_websocket(websocket: WebSocket) -> None:
    """Main realtime endpoint.

    Authentication: ``Authorization: Bearer <jwt>`` header or ``?token=<jwt>``.

    Frame protocol:
    - Subscribe: {"type": "subscribe", "room_id": "R1"}
    - Unsubscribe: {"type": "unsubscribe", "room_id": "R1"}
    - Publish: {"type": "publish", "command": "send-message", "body": {...}, "request_id": "..."}
    - Ping: {"type": "ping"}
    """
    context = get_realtime(websocket)
    token = token_from_handshake(websocket.headers, websocket.query_params)
    await context.sessions.serve(websocket, token)


@router.get("/stats", response_model=RealtimeStatsResponse)
async def realtime_stats(
    context: RealtimeContext = Depends(get_realtime),
) -> RealtimeStatsResponse:
    """Session, presence and routing statistics."""
    return RealtimeStatsResponse(
        **context.sessions.get_stats(),
        **context.presence.get_stats(),
        **context.router.get_stats(),
    )


@router.get("/rooms/{room_id}/presence", response_model=RoomPresenceResponse)
async def room_presence(
    room_id: str,
    context: RealtimeContext = Depends(get_realtime),
) -> RoomPresenceResponse:
    users = [
        PresenceEntry(
            user_id=state.user_id,
            username=state.username,
            online=context.presence.is_online(state.user_id),
            is_typing=state.is_typing,
            last_seen_at=state.last_seen_at,
        )
        for state in context.presence.room_presence(room_id)
    ]
    return RoomPresenceResponse(room_id=room_id, users=users)


@router.get("/rooms/{room_id}/activity", response_model=RoomActivityResponse)
async def room_activity(
    room_id: str,
    limit: int = Query(50, ge=1, le=500),
    context: RealtimeContext = Depends(get_realtime),
) -> RoomActivityResponse:
    """Recent sequenced events from the first configured sink."""
    events: List[Dict[str, Any]] = []
    if context.sinks:
        events = await context.sinks[0].recent(room_id, limit=limit)
    return RoomActivityResponse(
        room_id=room_id,
        sequence=context.router.current_sequence(room_id),
        events=events,
    )


@router.post("/rooms/{room_id}/membership", response_model=MembershipChangeResponse)
async def membership_changed(
    room_id: str,
    request: MembershipChangeRequest,
    _admin: str = Depends(get_admin_token),
    context: RealtimeContext = Depends(get_realtime),
) -> MembershipChangeResponse:
    """Webhook: the room service reports a join, leave, kick or deletion."""
    change = MembershipChange(room_id=room_id, change=request.change, user_id=request.user_id)
    before = context.router.subscribers(room_id)
    await context.authority.notify_change(change)
    revoked = len(before - context.router.subscribers(room_id))
    logger.info(
        "Membership change received",
        extra={"room_id": room_id, "user_id": request.user_id},
    )
    return MembershipChangeResponse(room_id=room_id, change=request.change, revoked_sessions=revoked)
