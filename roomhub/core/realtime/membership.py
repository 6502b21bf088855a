"""Room Membership Authority.

The single source of truth for who may subscribe to or publish into a room.
The router calls ``lookup`` once per request and never keeps the result, so a
leave or kick is visible on the very next request. Changes are also pushed to
listeners so the router can drop now-invalid subscriptions proactively.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Set, Union

import httpx

from roomhub.core.errors import TransportFailure

logger = logging.getLogger(__name__)


class MembershipChangeType(str, Enum):
    JOINED = "joined"
    LEFT = "left"
    KICKED = "kicked"
    ROOM_DELETED = "room_deleted"

    @property
    def revokes_access(self) -> bool:
        return self is not MembershipChangeType.JOINED


@dataclass(frozen=True)
class MembershipChange:
    room_id: str
    change: MembershipChangeType
    user_id: Optional[str] = None


@dataclass(frozen=True)
class RoomSnapshot:
    """Read-only view of a room's access list, valid for one request."""

    room_id: str
    admin_id: Optional[str]
    members: FrozenSet[str]
    video_call_enabled: bool = True

    def is_member(self, user_id: str) -> bool:
        return user_id in self.members

    def is_admin(self, user_id: str) -> bool:
        return self.admin_id is not None and self.admin_id == user_id


MembershipListener = Callable[[MembershipChange], Union[Awaitable[None], None]]


class MembershipAuthority(ABC):
    """Abstract membership source."""

    def __init__(self) -> None:
        self._listeners: List[MembershipListener] = []

    @abstractmethod
    async def lookup(self, room_id: str) -> Optional[RoomSnapshot]:
        """Fetch the current access list, or None when the room does not exist."""

    async def room_exists(self, room_id: str) -> bool:
        return await self.lookup(room_id) is not None

    async def is_member(self, user_id: str, room_id: str) -> bool:
        snapshot = await self.lookup(room_id)
        return snapshot is not None and snapshot.is_member(user_id)

    async def is_admin(self, user_id: str, room_id: str) -> bool:
        snapshot = await self.lookup(room_id)
        return snapshot is not None and snapshot.is_admin(user_id)

    def on_change(self, listener: MembershipListener) -> None:
        self._listeners.append(listener)

    async def notify_change(self, change: MembershipChange) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(change)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(
                    "Membership listener failed",
                    extra={"room_id": change.room_id, "user_id": change.user_id},
                )

    async def close(self) -> None:
        """Release any client resources."""


@dataclass
class RoomRecord:
    """Room access record kept by the in-memory authority."""

    room_id: str
    admin_id: str
    members: Set[str] = field(default_factory=set)
    max_members: int = 100
    video_call_enabled: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        # Admin is automatically a member
        self.members.add(self.admin_id)

    def add_member(self, user_id: str) -> bool:
        """Returns False if the room is full."""
        if user_id in self.members:
            return True
        if len(self.members) >= self.max_members:
            return False
        self.members.add(user_id)
        return True

    def snapshot(self) -> RoomSnapshot:
        return RoomSnapshot(
            room_id=self.room_id,
            admin_id=self.admin_id,
            members=frozenset(self.members),
            video_call_enabled=self.video_call_enabled,
        )


class InMemoryMembershipAuthority(MembershipAuthority):
    """Membership kept in process; used for single-instance deployments and tests."""

    def __init__(self) -> None:
        super().__init__()
        self._rooms: Dict[str, RoomRecord] = {}

    async def lookup(self, room_id: str) -> Optional[RoomSnapshot]:
        record = self._rooms.get(room_id)
        return record.snapshot() if record else None

    def create_room(
        self,
        room_id: str,
        admin_id: str,
        members: Optional[Set[str]] = None,
        max_members: int = 100,
        video_call_enabled: bool = True,
    ) -> RoomRecord:
        if room_id in self._rooms:
            return self._rooms[room_id]
        record = RoomRecord(
            room_id=room_id,
            admin_id=admin_id,
            members=set(members or ()),
            max_members=max_members,
            video_call_enabled=video_call_enabled,
        )
        self._rooms[room_id] = record
        logger.info("Created room", extra={"room_id": room_id, "user_id": admin_id})
        return record

    async def delete_room(self, room_id: str) -> bool:
        if self._rooms.pop(room_id, None) is None:
            return False
        await self.notify_change(
            MembershipChange(room_id=room_id, change=MembershipChangeType.ROOM_DELETED)
        )
        return True

    async def add_member(self, room_id: str, user_id: str) -> bool:
        record = self._rooms.get(room_id)
        if record is None or not record.add_member(user_id):
            return False
        await self.notify_change(
            MembershipChange(room_id=room_id, change=MembershipChangeType.JOINED, user_id=user_id)
        )
        return True

    async def remove_member(self, room_id: str, user_id: str, kicked: bool = False) -> bool:
        record = self._rooms.get(room_id)
        if record is None or user_id not in record.members:
            return False
        record.members.discard(user_id)
        change = MembershipChangeType.KICKED if kicked else MembershipChangeType.LEFT
        await self.notify_change(MembershipChange(room_id=room_id, change=change, user_id=user_id))
        return True


class HttpMembershipAuthority(MembershipAuthority):
    """Reads membership from the REST room endpoint.

    Expects ``GET {base_url}/rooms/{room_id}`` to answer with the room
    service's ``{"success": ..., "data": {"id", "adminId", "members", ...}}``
    envelope. Change notifications arrive through the membership webhook.
    """

    def __init__(
        self,
        base_url: str,
        service_token: str = "",
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__()
        headers = {"Accept": "application/json"}
        if service_token:
            headers["Authorization"] = f"Bearer {service_token}"
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout
        )

    async def lookup(self, room_id: str) -> Optional[RoomSnapshot]:
        try:
            response = await self._client.get(f"/rooms/{room_id}")
            if response.status_code == 404:
                return None
            # The room service answers unknown rooms with 400 + success=false
            if response.status_code != 400:
                response.raise_for_status()
            envelope: Dict[str, Any] = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(f"Membership lookup failed for room {room_id}: {exc}")
            raise TransportFailure("Membership service unavailable", {"room_id": room_id}) from exc

        if envelope.get("success") is False or not envelope.get("data"):
            return None
        data = envelope["data"]
        admin_id = data.get("adminId")
        members = {str(m) for m in data.get("members") or []}
        if admin_id:
            members.add(str(admin_id))
        return RoomSnapshot(
            room_id=str(data.get("id") or room_id),
            admin_id=str(admin_id) if admin_id else None,
            members=frozenset(members),
            video_call_enabled=bool(data.get("videoCallEnabled", True)),
        )

    async def close(self) -> None:
        await self._client.aclose()
