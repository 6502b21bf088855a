"""Event Router: authoritative per-room fan-out.

Each room gets one ``RoomHub`` holding its subscriber sets, sequence counter
and video-call state. All mutation of a hub and every sequence assignment
happens under that hub's lock, so every subscriber of a (room, kind) stream
sees the same order and no two events of a room share a sequence number.
Rooms never share mutable state.

Fan-out only enqueues onto each session's outbound queue; it never awaits a
socket, so one slow subscriber cannot stall a room.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    List,
    Optional,
    Protocol,
    Set,
    Union,
)

from roomhub.core.errors import Forbidden, NotFound, RealtimeError
from roomhub.core.realtime.events import Event
from roomhub.core.realtime.membership import (
    MembershipAuthority,
    MembershipChange,
    MembershipChangeType,
    RoomSnapshot,
)
from roomhub.core.realtime.protocol import FrameType, StreamKind, room_channels
from roomhub.utils import metrics

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    """What the router needs from a session."""

    session_id: str
    user_id: str

    @property
    def is_open(self) -> bool: ...

    def enqueue(self, frame: Dict[str, Any]) -> bool: ...


EventObserver = Callable[[Event], Union[Awaitable[None], None]]
BodyBuilder = Callable[["RoomHub"], Dict[str, Any]]


@dataclass(frozen=True)
class FanoutPolicy:
    """Which kinds skip the sender's own sessions.

    Typing indicators go to everyone but the typist; every other kind is
    echoed to the sender so all of their devices stay consistent.
    """

    exclude_sender: FrozenSet[StreamKind] = frozenset({StreamKind.TYPING})

    def should_deliver(self, event: Event, subscriber: Subscriber) -> bool:
        if event.kind in self.exclude_sender and event.sender_user_id is not None:
            return subscriber.user_id != event.sender_user_id
        return True


@dataclass(eq=False)
class RoomHub:
    """Serialized state for one room."""

    room_id: str
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    sequence: int = 0
    subscribers: Dict[StreamKind, Dict[str, Subscriber]] = field(
        default_factory=lambda: {kind: {} for kind in StreamKind}
    )
    video_call_room_id: Optional[str] = None
    video_call_started_by: Optional[str] = None

    def next_sequence(self) -> int:
        self.sequence += 1
        return self.sequence

    def add(self, subscriber: Subscriber) -> bool:
        """Add to every kind; False if already subscribed."""
        added = False
        for members in self.subscribers.values():
            if subscriber.session_id not in members:
                members[subscriber.session_id] = subscriber
                added = True
        return added

    def remove(self, session_id: str) -> Optional[Subscriber]:
        removed = None
        for members in self.subscribers.values():
            removed = members.pop(session_id, None) or removed
        return removed

    def session_ids(self, kind: StreamKind = StreamKind.MESSAGE) -> Set[str]:
        return set(self.subscribers[kind])

    def subscriber_count(self) -> int:
        return len(self.subscribers[StreamKind.MESSAGE])


class EventRouter:
    """Routes published events to the subscribers of their channel."""

    def __init__(
        self,
        authority: MembershipAuthority,
        policy: Optional[FanoutPolicy] = None,
    ):
        self._authority = authority
        self._policy = policy or FanoutPolicy()

        # room_id -> hub; hubs are only created, or dropped when the room is deleted
        self._rooms: Dict[str, RoomHub] = {}
        self._session_rooms: Dict[str, Set[str]] = {}
        self._observers: List[EventObserver] = []
        # Bumped on every revoking membership change; subscribes re-check on mismatch
        self._revocations = 0

        authority.on_change(self.handle_membership_change)

    @property
    def authority(self) -> MembershipAuthority:
        return self._authority

    def add_observer(self, observer: EventObserver) -> None:
        """Receive every sequenced event (recent-activity read models)."""
        self._observers.append(observer)

    def _hub(self, room_id: str) -> RoomHub:
        hub = self._rooms.get(room_id)
        if hub is None:
            hub = self._rooms[room_id] = RoomHub(room_id=room_id)
        return hub

    async def _authorize(
        self,
        subscriber: Subscriber,
        room_id: str,
        require_admin: bool = False,
    ) -> RoomSnapshot:
        """One membership lookup per request; nothing is cached."""
        try:
            snapshot = await self._authority.lookup(room_id)
            if snapshot is None:
                raise NotFound(f"Room {room_id} not found", {"room_id": room_id})
            if not snapshot.is_member(subscriber.user_id):
                raise Forbidden(
                    f"User is not a member of room {room_id}", {"room_id": room_id}
                )
            if require_admin and not snapshot.is_admin(subscriber.user_id):
                raise Forbidden(
                    f"Only the admin of room {room_id} may do this", {"room_id": room_id}
                )
        except RealtimeError as exc:
            metrics.realtime_requests_rejected_total.labels(code=exc.code.value).inc()
            raise
        return snapshot

    async def handle_subscribe(self, subscriber: Subscriber, room_id: str) -> List[str]:
        """Subscribe a session to every stream of a room.

        Returns:
            The channel names now active for the session.

        Raises:
            NotFound: the room does not exist
            Forbidden: the session's user is not a member
        """
        revocations = self._revocations
        await self._authorize(subscriber, room_id)

        hub = self._hub(room_id)
        async with hub.lock:
            if self._revocations != revocations:
                # A leave, kick or deletion landed while the lookup was in flight
                await self._authorize(subscriber, room_id)
            current = self._rooms.setdefault(room_id, hub)
            if current is hub:
                if not subscriber.is_open:
                    return []
                if hub.add(subscriber):
                    self._session_rooms.setdefault(subscriber.session_id, set()).add(room_id)
                    logger.debug(
                        "Session subscribed",
                        extra={"session_id": subscriber.session_id, "room_id": room_id},
                    )
        if current is not hub:
            # The room was deleted and recreated meanwhile; join its new hub
            return await self.handle_subscribe(subscriber, room_id)
        return [channel.name for channel in room_channels(room_id)]

    async def handle_unsubscribe(self, subscriber: Subscriber, room_id: str) -> bool:
        hub = self._rooms.get(room_id)
        if hub is None:
            return False
        async with hub.lock:
            removed = hub.remove(subscriber.session_id) is not None
        rooms = self._session_rooms.get(subscriber.session_id)
        if rooms is not None:
            rooms.discard(room_id)
            if not rooms:
                del self._session_rooms[subscriber.session_id]
        return removed

    async def handle_publish(
        self,
        subscriber: Subscriber,
        room_id: str,
        kind: StreamKind,
        body: Dict[str, Any],
    ) -> Event:
        """Publish into a room after re-checking membership.

        The sender does not need to be subscribed to the room.
        """
        await self._authorize(subscriber, room_id)
        return await self._emit(
            room_id,
            kind,
            lambda hub: body,
            sender_user_id=subscriber.user_id,
            sender_session_id=subscriber.session_id,
        )

    async def broadcast(
        self,
        room_id: str,
        kind: StreamKind,
        body: Dict[str, Any],
        sender_user_id: Optional[str] = None,
    ) -> Event:
        """Server-originated fan-out (presence expiry etc.); no membership check."""
        return await self._emit(room_id, kind, lambda hub: body, sender_user_id=sender_user_id)

    async def start_video_call(
        self,
        subscriber: Subscriber,
        room_id: str,
        video_call_data: Optional[Any] = None,
    ) -> Event:
        """Only the room admin may start a call, and only if calls are enabled."""
        snapshot = await self._authorize(subscriber, room_id, require_admin=True)
        if not snapshot.video_call_enabled:
            metrics.realtime_requests_rejected_total.labels(code=Forbidden.code.value).inc()
            raise Forbidden("Video calls are disabled for this room", {"room_id": room_id})

        def build(hub: RoomHub) -> Dict[str, Any]:
            if hub.video_call_room_id is None:
                hub.video_call_room_id = uuid.uuid4().hex
                hub.video_call_started_by = subscriber.user_id
            return {
                "action": "video_call_started",
                "roomId": room_id,
                "videoCallRoomId": hub.video_call_room_id,
                "startedBy": hub.video_call_started_by,
                "videoCallData": video_call_data,
            }

        return await self._emit(
            room_id,
            StreamKind.VIDEO_SIGNAL,
            build,
            sender_user_id=subscriber.user_id,
            sender_session_id=subscriber.session_id,
        )

    async def end_video_call(
        self,
        subscriber: Subscriber,
        room_id: str,
        video_call_data: Optional[Any] = None,
    ) -> Event:
        await self._authorize(subscriber, room_id)

        def build(hub: RoomHub) -> Dict[str, Any]:
            call_room_id = hub.video_call_room_id
            hub.video_call_room_id = None
            hub.video_call_started_by = None
            return {
                "action": "video_call_ended",
                "roomId": room_id,
                "videoCallRoomId": call_room_id,
                "endedBy": subscriber.user_id,
                "videoCallData": video_call_data,
            }

        return await self._emit(
            room_id,
            StreamKind.VIDEO_SIGNAL,
            build,
            sender_user_id=subscriber.user_id,
            sender_session_id=subscriber.session_id,
        )

    async def _emit(
        self,
        room_id: str,
        kind: StreamKind,
        build_body: BodyBuilder,
        sender_user_id: Optional[str] = None,
        sender_session_id: Optional[str] = None,
    ) -> Event:
        hub = self._hub(room_id)
        async with hub.lock:
            sequence = hub.next_sequence() if kind.sequenced else None
            event = Event.create(
                kind=kind,
                room_id=room_id,
                body=build_body(hub),
                sequence=sequence,
                sender_user_id=sender_user_id,
                sender_session_id=sender_session_id,
            )
            delivered = self._fanout_locked(hub, event)

        metrics.realtime_events_published_total.labels(kind=kind.value).inc()
        logger.debug(
            "Event published",
            extra={
                "room_id": room_id,
                "kind": kind.value,
                "sequence": sequence,
                "session_id": sender_session_id,
            },
        )
        if delivered:
            metrics.realtime_events_delivered_total.labels(kind=kind.value).inc(delivered)

        if kind.sequenced:
            await self._notify_observers(event)
        return event

    def _fanout_locked(self, hub: RoomHub, event: Event) -> int:
        frame = event.to_frame()
        delivered = 0
        for subscriber in list(hub.subscribers[event.kind].values()):
            if not self._policy.should_deliver(event, subscriber):
                continue
            if subscriber.enqueue(frame):
                delivered += 1
        return delivered

    async def _notify_observers(self, event: Event) -> None:
        for observer in list(self._observers):
            try:
                result = observer(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(
                    "Event observer failed",
                    extra={"room_id": event.room_id, "sequence": event.sequence},
                )

    async def handle_disconnect(self, session_id: str) -> int:
        """Drop a session from every subscriber set it belongs to.

        Returns:
            Number of rooms the session was removed from
        """
        room_ids = self._session_rooms.pop(session_id, set())
        count = 0
        for room_id in room_ids:
            hub = self._rooms.get(room_id)
            if hub is None:
                continue
            async with hub.lock:
                if hub.remove(session_id) is not None:
                    count += 1
        if count:
            logger.debug(
                "Session removed from rooms", extra={"session_id": session_id}
            )
        return count

    async def handle_membership_change(self, change: MembershipChange) -> int:
        """Drop subscriptions that a leave, kick or room deletion made invalid."""
        if not change.change.revokes_access:
            return 0
        self._revocations += 1
        hub = self._rooms.get(change.room_id)
        if hub is None:
            return 0

        async with hub.lock:
            if change.change is MembershipChangeType.ROOM_DELETED:
                victims = list(hub.subscribers[StreamKind.MESSAGE].values())
            else:
                victims = [
                    sub
                    for sub in hub.subscribers[StreamKind.MESSAGE].values()
                    if sub.user_id == change.user_id
                ]
            for victim in victims:
                hub.remove(victim.session_id)
            if change.change is MembershipChangeType.ROOM_DELETED:
                self._rooms.pop(change.room_id, None)

        for victim in victims:
            rooms = self._session_rooms.get(victim.session_id)
            if rooms is not None:
                rooms.discard(change.room_id)
                if not rooms:
                    del self._session_rooms[victim.session_id]
            victim.enqueue(
                {
                    "type": FrameType.REVOKED.value,
                    "room_id": change.room_id,
                    "reason": change.change.value,
                }
            )

        if victims:
            metrics.realtime_subscriptions_revoked_total.labels(
                reason=change.change.value
            ).inc(len(victims))
            logger.info(
                "Revoked room subscriptions",
                extra={"room_id": change.room_id, "user_id": change.user_id},
            )
        return len(victims)

    def subscribers(self, room_id: str, kind: StreamKind = StreamKind.MESSAGE) -> Set[str]:
        hub = self._rooms.get(room_id)
        return hub.session_ids(kind) if hub else set()

    def session_rooms(self, session_id: str) -> Set[str]:
        return set(self._session_rooms.get(session_id, set()))

    def current_sequence(self, room_id: str) -> int:
        hub = self._rooms.get(room_id)
        return hub.sequence if hub else 0

    def active_video_call(self, room_id: str) -> Optional[str]:
        hub = self._rooms.get(room_id)
        return hub.video_call_room_id if hub else None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "rooms_tracked": len(self._rooms),
            "rooms_with_subscribers": sum(
                1 for hub in self._rooms.values() if hub.subscriber_count()
            ),
            "sessions_subscribed": len(self._session_rooms),
            "subscriptions": sum(len(rooms) for rooms in self._session_rooms.values()),
        }
