"""Application-level wiring of the realtime hub.

One ``RealtimeContext`` is built per application and stored on
``app.state``; nothing in the hub is a module-level singleton.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from roomhub.core.config import Settings
from roomhub.core.realtime.activity import ActivitySink, create_activity_sink
from roomhub.core.realtime.auth import TokenVerifier
from roomhub.core.realtime.membership import (
    HttpMembershipAuthority,
    InMemoryMembershipAuthority,
    MembershipAuthority,
)
from roomhub.core.realtime.presence import PresenceTracker
from roomhub.core.realtime.router import EventRouter
from roomhub.core.realtime.sessions import SessionManager

logger = logging.getLogger(__name__)


@dataclass
class RealtimeContext:
    authority: MembershipAuthority
    router: EventRouter
    presence: PresenceTracker
    sessions: SessionManager
    sinks: List[ActivitySink]

    @classmethod
    def build(
        cls,
        settings: Settings,
        authority: Optional[MembershipAuthority] = None,
        sinks: Optional[List[ActivitySink]] = None,
    ) -> "RealtimeContext":
        if authority is None:
            if settings.MEMBERSHIP_BACKEND == "http":
                authority = HttpMembershipAuthority(
                    settings.ROOM_API_URL,
                    service_token=settings.ROOM_API_TOKEN,
                    timeout=settings.ROOM_API_TIMEOUT_SECONDS,
                )
            else:
                authority = InMemoryMembershipAuthority()

        if sinks is None:
            sinks = [
                create_activity_sink(
                    settings.ACTIVITY_BACKEND,
                    url=settings.REDIS_URL,
                    history_limit=settings.ACTIVITY_HISTORY_LIMIT,
                )
            ]

        router = EventRouter(authority)
        for sink in sinks:
            router.add_observer(sink.record)

        presence = PresenceTracker(router, typing_ttl=settings.TYPING_TTL_SECONDS)
        sessions = SessionManager(
            router,
            presence,
            TokenVerifier(settings.JWT_SECRET, settings.JWT_ALGORITHM),
            heartbeat_interval=settings.HEARTBEAT_INTERVAL_SECONDS,
            heartbeat_timeout=settings.HEARTBEAT_TIMEOUT_SECONDS,
            max_outbound_queue=settings.MAX_OUTBOUND_QUEUE,
            max_sessions_per_user=settings.MAX_SESSIONS_PER_USER,
        )
        return cls(
            authority=authority,
            router=router,
            presence=presence,
            sessions=sessions,
            sinks=sinks,
        )

    async def start(self) -> None:
        await self.sessions.start()
        logger.info("Realtime hub started")

    async def stop(self) -> None:
        await self.sessions.stop()
        await self.presence.close()
        for sink in self.sinks:
            await sink.close()
        await self.authority.close()
        logger.info("Realtime hub stopped")
