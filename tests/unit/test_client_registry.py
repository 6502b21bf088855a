"""Tests for the client SubscriptionRegistry."""

from __future__ import annotations

import pytest


@pytest.fixture
def setup(transports):
    from roomhub.client.connection import ConnectionManager
    from roomhub.client.registry import SubscriptionRegistry

    manager = ConnectionManager("ws://hub.test/ws", transport_factory=transports)
    return manager, SubscriptionRegistry(manager)


def _event(kind="message", room_id="R1", sequence=1, **body):
    return {
        "type": "event",
        "event_id": f"e{sequence}",
        "kind": kind,
        "channel": f"room/{room_id}",
        "room_id": room_id,
        "sequence": sequence,
        "body": body,
        "timestamp": 1.0,
    }


class TestIntent:
    @pytest.mark.asyncio
    async def test_offline_subscribe_is_flushed_on_connect(self, setup, transports, make_token, flush):
        manager, registry = setup

        assert registry.subscribe_room("R1") is True
        await manager.connect(make_token("A"))
        await flush()

        sent = transports.created[0].sent
        assert sent == [{"type": "subscribe", "room_id": "R1"}]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_online_subscribe_announces_once(self, setup, transports, handler, make_token, flush):
        manager, registry = setup
        await manager.connect(make_token("A"))
        first, second = handler(), handler()

        assert registry.subscribe_room("R1", first) is True
        assert registry.subscribe_room("R1", second) is False
        assert registry.subscribe_room("R1", second) is False
        await flush()

        sent = transports.created[0].sent
        assert [f["type"] for f in sent] == ["subscribe", "publish"]
        assert sent[1]["command"] == "join-room"
        assert sent[1]["body"] == {"roomId": "R1"}

        transports.created[0].push(_event(text="hi"))
        await flush()
        assert first.names() == ["message"]
        assert second.names() == ["message"]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_unsubscribe_sends_unsubscribe_and_leave(self, setup, transports, make_token, flush):
        manager, registry = setup
        await manager.connect(make_token("A"))
        registry.subscribe_room("R1")

        registry.unsubscribe_room("R1")
        registry.unsubscribe_room("R1")
        await flush()

        sent = transports.created[0].sent
        assert [f.get("command", f["type"]) for f in sent] == [
            "subscribe",
            "join-room",
            "unsubscribe",
            "leave-room",
        ]
        assert not registry.is_subscribed("R1")
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_offline_unsubscribe_only_drops_intent(self, setup):
        _, registry = setup
        registry.subscribe_room("R1")
        registry.unsubscribe_room("R1")
        assert registry.rooms() == set()


class TestReplay:
    @pytest.mark.asyncio
    async def test_reconnect_converges_to_intent(self, setup, transports, make_token, flush):
        manager, registry = setup
        await manager.connect(make_token("A"))
        for room in ("R1", "R2", "R3"):
            registry.subscribe_room(room)
        registry.unsubscribe_room("R2")
        await flush()

        transports.created[0].drop()
        await flush()
        assert registry.rooms() == {"R1", "R3"}

        await manager.connect(make_token("A"))
        await flush()

        replayed = transports.created[1].sent
        assert sorted(f["room_id"] for f in replayed) == ["R1", "R3"]
        assert all(f["type"] == "subscribe" for f in replayed)
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_clears_intent(self, setup, transports, make_token, flush):
        manager, registry = setup
        await manager.connect(make_token("A"))
        registry.subscribe_room("R1")
        await flush()

        await manager.disconnect()

        sent = transports.created[0].sent
        assert [f.get("command", f["type"]) for f in sent][-2:] == ["unsubscribe", "leave-room"]
        assert registry.rooms() == set()

        await manager.connect(make_token("A"))
        await flush()
        assert transports.created[1].sent == []
        await manager.disconnect()


class TestDispatch:
    @pytest.mark.asyncio
    async def test_routes_by_kind(self, setup, transports, handler, make_token, flush):
        manager, registry = setup
        h = handler()
        registry.subscribe_room("R1", h)
        await manager.connect(make_token("A"))

        transport = transports.created[0]
        transport.push(_event("message", sequence=1, text="a"))
        transport.push(_event("typing", sequence=None, isTyping=True))
        transport.push(_event("edit", sequence=2, messageId="m"))
        transport.push(_event("delete", sequence=3, messageId="m"))
        transport.push(_event("video-signal", sequence=4, action="video_call_started"))
        await flush()

        assert h.names() == ["message", "typing", "edit", "delete", "video"]
        assert registry.last_sequence("R1") == 4
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_malformed_and_foreign_events_dropped(self, setup, transports, handler, make_token, flush):
        manager, registry = setup
        h = handler()
        registry.subscribe_room("R1", h)
        await manager.connect(make_token("A"))

        transport = transports.created[0]
        transport.push({"type": "event", "kind": "gossip", "room_id": "R1"})
        transport.push(_event("message", room_id="R2", sequence=1))
        transport.push({**_event("message", sequence=2), "body": "flat"})
        transport.push(_event("message", sequence=3, text="ok"))
        await flush()

        assert h.names() == ["message"]
        assert h.calls[0][1].body == {"text": "ok"}
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self, setup, transports, handler, make_token, flush):
        from roomhub.client.registry import RoomEventHandler

        class Broken(RoomEventHandler):
            async def on_message(self, event):
                raise RuntimeError("boom")

        manager, registry = setup
        good = handler()
        registry.subscribe_room("R1", Broken())
        registry.subscribe_room("R1", good)
        await manager.connect(make_token("A"))

        transports.created[0].push(_event(text="hi"))
        await flush()

        assert good.names() == ["message"]
        await manager.disconnect()


class TestServerSignals:
    @pytest.mark.asyncio
    async def test_rejection_removes_intent(self, setup, transports, handler, make_token, flush):
        from roomhub.core.errors import Forbidden

        manager, registry = setup
        h = handler()
        registry.subscribe_room("R1", h)
        await manager.connect(make_token("A"))

        transports.created[0].push(
            {"type": "error", "code": "FORBIDDEN", "message": "not a member", "room_id": "R1"}
        )
        await flush()

        assert h.names() == ["rejected"]
        assert isinstance(h.calls[0][1], Forbidden)
        assert not registry.is_subscribed("R1")
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_intent(self, setup, transports, handler, make_token, flush):
        manager, registry = setup
        h = handler()
        registry.subscribe_room("R1", h)
        await manager.connect(make_token("A"))

        transports.created[0].push(
            {
                "type": "error",
                "code": "FORBIDDEN",
                "message": "admin only",
                "room_id": "R1",
                "request_id": "r1",
            }
        )
        await flush()

        assert h.names() == []
        assert registry.is_subscribed("R1")
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_revoked(self, setup, transports, handler, make_token, flush):
        manager, registry = setup
        h = handler()
        registry.subscribe_room("R1", h)
        await manager.connect(make_token("A"))

        transports.created[0].push({"type": "revoked", "room_id": "R1", "reason": "kicked"})
        await flush()

        assert h.calls == [("revoked", "kicked")]
        assert registry.rooms() == set()
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_subscribed_confirmation(self, setup, transports, handler, make_token, flush):
        manager, registry = setup
        h = handler()
        registry.subscribe_room("R1", h)
        await manager.connect(make_token("A"))

        transports.created[0].push(
            {"type": "subscribed", "room_id": "R1", "channels": ["room/R1", "room/R1/typing"]}
        )
        await flush()

        assert h.calls == [("subscribed", "R1")]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_connection_errors_reach_every_handler(self, setup, transports, handler, make_token, flush):
        manager, registry = setup
        h1, h2 = handler(), handler()
        registry.subscribe_room("R1", h1)
        registry.subscribe_room("R2", h2)
        await manager.connect(make_token("A"))

        transports.created[0].drop()
        await flush()

        assert h1.names() == ["disconnect"]
        assert h2.names() == ["disconnect"]
        assert registry.rooms() == {"R1", "R2"}
