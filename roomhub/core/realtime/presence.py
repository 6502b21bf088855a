"""Presence Tracker.

Ephemeral typing and online state. Nothing here is persisted; losing it on
restart only costs a few stale indicators.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from roomhub.core.realtime.events import Event
from roomhub.core.realtime.membership import MembershipChange, MembershipChangeType
from roomhub.core.realtime.protocol import StreamKind
from roomhub.core.realtime.router import EventRouter, Subscriber

logger = logging.getLogger(__name__)

PresenceListener = Callable[[str, bool], Union[Awaitable[None], None]]


@dataclass
class PresenceState:
    room_id: str
    user_id: str
    is_typing: bool = False
    username: Optional[str] = None
    last_seen_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roomId": self.room_id,
            "userId": self.user_id,
            "username": self.username,
            "isTyping": self.is_typing,
            "lastSeenAt": self.last_seen_at,
        }


class PresenceTracker:
    """Tracks typing flags per (room, user) and online status per user."""

    def __init__(self, router: EventRouter, typing_ttl: float = 5.0):
        self._router = router
        self.typing_ttl = typing_ttl

        self._states: Dict[Tuple[str, str], PresenceState] = {}
        self._expiry_tasks: Dict[Tuple[str, str], asyncio.Task] = {}
        self._session_counts: Dict[str, int] = {}
        self._listeners: List[PresenceListener] = []
        router.authority.on_change(self.handle_membership_change)

    def on_presence(self, listener: PresenceListener) -> None:
        """Register a callback fired with (user_id, online) on online transitions."""
        self._listeners.append(listener)

    def _state(self, room_id: str, user_id: str) -> PresenceState:
        key = (room_id, user_id)
        state = self._states.get(key)
        if state is None:
            state = self._states[key] = PresenceState(room_id=room_id, user_id=user_id)
        return state

    async def set_typing(
        self,
        room_id: str,
        user_id: str,
        is_typing: bool,
        session: Optional[Subscriber] = None,
        username: Optional[str] = None,
    ) -> Event:
        """Update the typing flag and fan it out on the room's typing stream.

        With a session the publish goes through the router's membership check;
        state is only touched once the publish has been accepted.
        """
        body = {
            "roomId": room_id,
            "userId": user_id,
            "username": username,
            "isTyping": is_typing,
        }
        if session is not None:
            event = await self._router.handle_publish(session, room_id, StreamKind.TYPING, body)
        else:
            event = await self._router.broadcast(
                room_id, StreamKind.TYPING, body, sender_user_id=user_id
            )

        state = self._state(room_id, user_id)
        state.is_typing = is_typing
        state.last_seen_at = time.time()
        if username:
            state.username = username

        self._cancel_expiry((room_id, user_id))
        if is_typing:
            self._expiry_tasks[(room_id, user_id)] = asyncio.create_task(
                self._expire_after((room_id, user_id))
            )
        return event

    def _cancel_expiry(self, key: Tuple[str, str]) -> None:
        task = self._expiry_tasks.pop(key, None)
        if task is not None and not task.done():
            task.cancel()

    async def _expire_after(self, key: Tuple[str, str]) -> None:
        await asyncio.sleep(self.typing_ttl)
        # A refresh arriving from here on must not cancel the expiry broadcast
        if self._expiry_tasks.get(key) is asyncio.current_task():
            del self._expiry_tasks[key]
        await self._clear_typing(key, expired=True)
        if not self.is_online(key[1]):
            self._states.pop(key, None)

    async def _clear_typing(self, key: Tuple[str, str], expired: bool = False) -> None:
        state = self._states.get(key)
        if state is None or not state.is_typing:
            return
        state.is_typing = False
        room_id, user_id = key
        body = {
            "roomId": room_id,
            "userId": user_id,
            "username": state.username,
            "isTyping": False,
        }
        if expired:
            body["expired"] = True
        try:
            await self._router.broadcast(room_id, StreamKind.TYPING, body, sender_user_id=user_id)
        except Exception:
            logger.exception(
                "Failed to broadcast typing stop",
                extra={"room_id": room_id, "user_id": user_id},
            )

    def touch(self, room_id: str, user_id: str) -> None:
        self._state(room_id, user_id).last_seen_at = time.time()

    async def session_opened(self, user_id: str) -> bool:
        """Returns True when this is the user's first live session."""
        count = self._session_counts.get(user_id, 0) + 1
        self._session_counts[user_id] = count
        if count == 1:
            await self._notify(user_id, True)
            return True
        return False

    async def session_closed(self, user_id: str) -> bool:
        """Returns True when the user's last live session went away."""
        count = self._session_counts.get(user_id, 0) - 1
        if count > 0:
            self._session_counts[user_id] = count
            return False
        self._session_counts.pop(user_id, None)

        for key in list(self._states):
            if key[1] != user_id:
                continue
            self._cancel_expiry(key)
            await self._clear_typing(key)
            self._states.pop(key, None)
        await self._notify(user_id, False)
        return True

    async def handle_membership_change(self, change: MembershipChange) -> None:
        """Forget typing and presence state a leave, kick or room deletion made stale."""
        if not change.change.revokes_access:
            return
        deleted = change.change is MembershipChangeType.ROOM_DELETED
        for key in list(self._states):
            room_id, user_id = key
            if room_id != change.room_id or not (deleted or user_id == change.user_id):
                continue
            self._cancel_expiry(key)
            # A deleted room has no audience left for the stop
            if not deleted:
                await self._clear_typing(key)
            self._states.pop(key, None)

    async def _notify(self, user_id: str, online: bool) -> None:
        logger.info("Presence changed", extra={"user_id": user_id})
        for listener in list(self._listeners):
            try:
                result = listener(user_id, online)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Presence listener failed", extra={"user_id": user_id})

    def is_online(self, user_id: str) -> bool:
        return self._session_counts.get(user_id, 0) > 0

    def online_users(self) -> Set[str]:
        return set(self._session_counts)

    def is_typing(self, room_id: str, user_id: str) -> bool:
        state = self._states.get((room_id, user_id))
        return bool(state and state.is_typing)

    def room_presence(self, room_id: str) -> List[PresenceState]:
        return [state for (rid, _), state in self._states.items() if rid == room_id]

    async def close(self) -> None:
        for key in list(self._expiry_tasks):
            self._cancel_expiry(key)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "users_online": len(self._session_counts),
            "typing": sum(1 for state in self._states.values() if state.is_typing),
        }
