"""Tests for the membership authorities."""

from __future__ import annotations

import httpx
import pytest


class TestInMemoryAuthority:
    @pytest.mark.asyncio
    async def test_admin_is_member(self, authority):
        snapshot = await authority.lookup("R1")

        assert snapshot.is_member("A")
        assert snapshot.is_admin("A")
        assert snapshot.is_member("B")
        assert not snapshot.is_admin("B")
        assert not snapshot.is_member("C")

    @pytest.mark.asyncio
    async def test_unknown_room(self, authority):
        assert await authority.lookup("nope") is None
        assert not await authority.room_exists("nope")
        assert not await authority.is_member("A", "nope")

    @pytest.mark.asyncio
    async def test_changes_are_pushed(self, authority):
        from roomhub.core.realtime.membership import MembershipChangeType

        seen = []
        authority.on_change(seen.append)

        assert await authority.add_member("R1", "C")
        assert await authority.remove_member("R1", "B", kicked=True)
        assert await authority.remove_member("R1", "C")
        assert await authority.delete_room("R2")

        assert [(c.room_id, c.change, c.user_id) for c in seen] == [
            ("R1", MembershipChangeType.JOINED, "C"),
            ("R1", MembershipChangeType.KICKED, "B"),
            ("R1", MembershipChangeType.LEFT, "C"),
            ("R2", MembershipChangeType.ROOM_DELETED, None),
        ]
        assert not await authority.is_member("B", "R1")

    @pytest.mark.asyncio
    async def test_full_room_rejects_member(self):
        from roomhub.core.realtime.membership import InMemoryMembershipAuthority

        auth = InMemoryMembershipAuthority()
        auth.create_room("R1", admin_id="A", max_members=1)

        assert not await auth.add_member("R1", "B")

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self, authority):
        from roomhub.core.realtime.membership import MembershipChange, MembershipChangeType

        def broken(change):
            raise RuntimeError("boom")

        seen = []
        authority.on_change(broken)
        authority.on_change(seen.append)
        await authority.notify_change(MembershipChange("R1", MembershipChangeType.LEFT, "B"))

        assert len(seen) == 1

    def test_revoking_changes(self):
        from roomhub.core.realtime.membership import MembershipChangeType

        assert not MembershipChangeType.JOINED.revokes_access
        assert MembershipChangeType.LEFT.revokes_access
        assert MembershipChangeType.KICKED.revokes_access
        assert MembershipChangeType.ROOM_DELETED.revokes_access


def _room_service(handler):
    return httpx.AsyncClient(
        base_url="http://rooms.test/api", transport=httpx.MockTransport(handler)
    )


class TestHttpAuthority:
    @pytest.mark.asyncio
    async def test_parses_room_envelope(self):
        from roomhub.core.realtime.membership import HttpMembershipAuthority

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/rooms/R1"
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "data": {
                        "id": "R1",
                        "adminId": "A",
                        "members": ["B"],
                        "videoCallEnabled": False,
                    },
                },
            )

        auth = HttpMembershipAuthority("http://rooms.test/api", client=_room_service(handler))
        snapshot = await auth.lookup("R1")
        await auth.close()

        assert snapshot.members == frozenset({"A", "B"})
        assert snapshot.is_admin("A")
        assert snapshot.video_call_enabled is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,payload",
        [
            (404, {"success": False}),
            (400, {"success": False, "message": "Room not found"}),
            (200, {"success": True, "data": None}),
        ],
    )
    async def test_missing_room(self, status, payload):
        from roomhub.core.realtime.membership import HttpMembershipAuthority

        auth = HttpMembershipAuthority(
            "http://rooms.test/api",
            client=_room_service(lambda request: httpx.Response(status, json=payload)),
        )
        assert await auth.lookup("R1") is None

    @pytest.mark.asyncio
    async def test_service_failure_is_transport_failure(self):
        from roomhub.core.errors import TransportFailure
        from roomhub.core.realtime.membership import HttpMembershipAuthority

        auth = HttpMembershipAuthority(
            "http://rooms.test/api",
            client=_room_service(lambda request: httpx.Response(503, text="down")),
        )
        with pytest.raises(TransportFailure):
            await auth.lookup("R1")
