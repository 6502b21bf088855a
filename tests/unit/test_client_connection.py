"""Tests for the client ConnectionManager."""

from __future__ import annotations

import pytest


def _manager(factory, **kwargs):
    from roomhub.client.connection import ConnectionManager

    return ConnectionManager("ws://hub.test/api/v1/realtime/ws", transport_factory=factory, **kwargs)


class TestConnect:
    @pytest.mark.asyncio
    async def test_send_before_connect(self, transports):
        from roomhub.core.errors import NotConnected

        manager = _manager(transports)
        with pytest.raises(NotConnected):
            manager.send("send-message", {"roomId": "R1", "text": "hi"})

    @pytest.mark.asyncio
    async def test_handshake_carries_bearer_token(self, transports, listener, make_token):
        manager = _manager(transports)
        manager.add_listener(listener)
        token = make_token("A")

        session = await manager.connect(token)

        [transport] = transports.created
        assert transport.opened_with[1] == {"Authorization": f"Bearer {token}"}
        assert manager.is_connected
        assert session.session_id == "sess-1"
        assert session.heartbeat_interval == 15
        assert listener.names() == ["connect"]
        await manager.disconnect()

    def test_from_settings(self, transports, monkeypatch):
        from roomhub.client.connection import ConnectionManager
        from roomhub.core.config import reset_settings

        monkeypatch.setenv("HANDSHAKE_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("MAX_OUTBOUND_QUEUE", "7")
        reset_settings()

        manager = ConnectionManager.from_settings(
            "ws://hub.test/ws", transport_factory=transports, heartbeat_timeout=3
        )

        assert manager.handshake_timeout == 2.5
        assert manager.max_outbound_queue == 7
        assert manager.heartbeat_timeout == 3

    @pytest.mark.asyncio
    async def test_connect_twice_reuses_session(self, transports, make_token):
        manager = _manager(transports)
        first = await manager.connect(make_token("A"))
        second = await manager.connect(make_token("A"))

        assert first is second
        assert len(transports.created) == 1
        await manager.disconnect()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", ["", "not-a-token"])
    async def test_malformed_token_never_dials(self, transports, listener, token):
        from roomhub.core.errors import AuthExpired

        manager = _manager(transports)
        manager.add_listener(listener)
        with pytest.raises(AuthExpired):
            await manager.connect(token)

        assert transports.created == []
        assert listener.names() == ["error"]
        assert not manager.is_connected

    @pytest.mark.asyncio
    async def test_expired_token_never_dials(self, transports, make_token):
        from roomhub.core.errors import AuthExpired

        manager = _manager(transports)
        with pytest.raises(AuthExpired, match="expired"):
            await manager.connect(make_token("A", expires_in=-5))
        assert transports.created == []

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, fake_transport, listener, make_token):
        from roomhub.core.errors import TransportFailure
        from roomhub.core.realtime.protocol import SessionState

        silent = fake_transport()
        manager = _manager(lambda: silent, handshake_timeout=0.05)
        manager.add_listener(listener)

        with pytest.raises(TransportFailure, match="timed out"):
            await manager.connect(make_token("A"))

        assert manager.state is SessionState.CLOSED
        assert not silent.is_open
        assert listener.names() == ["error"]

    @pytest.mark.asyncio
    async def test_cancelled_handshake_allows_retry(self, fake_transport, make_token):
        import asyncio

        from roomhub.core.realtime.protocol import SessionState

        silent = fake_transport()
        ready = fake_transport(
            handshake={"type": "connected", "session_id": "s2", "user_id": "A", "heartbeat_interval": 15}
        )
        pool = iter([silent, ready])
        manager = _manager(lambda: next(pool), handshake_timeout=10)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(manager.connect(make_token("A")), 0.05)

        assert manager.state is SessionState.CLOSED
        assert not silent.is_open

        session = await manager.connect(make_token("A"))
        assert session.session_id == "s2"
        assert manager.is_connected
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_unexpected_open_error_resets_state(self, fake_transport, listener, make_token):
        from roomhub.core.realtime.protocol import SessionState

        manager = _manager(lambda: fake_transport(refuse=ValueError("bad uri")))
        manager.add_listener(listener)

        with pytest.raises(ValueError):
            await manager.connect(make_token("A"))

        assert manager.state is SessionState.CLOSED
        assert listener.names() == []

    @pytest.mark.asyncio
    async def test_hub_rejects_token(self, fake_transport, make_token):
        from roomhub.core.errors import AuthExpired

        transport = fake_transport(
            handshake={"type": "error", "code": "AUTH_EXPIRED", "message": "Token expired"}
        )
        manager = _manager(lambda: transport)

        with pytest.raises(AuthExpired):
            await manager.connect(make_token("A"))
        assert not transport.is_open

    @pytest.mark.asyncio
    async def test_refused_upgrade(self, fake_transport, make_token):
        from roomhub.core.errors import TransportFailure

        manager = _manager(lambda: fake_transport(refuse=TransportFailure("HTTP 502")))
        with pytest.raises(TransportFailure):
            await manager.connect(make_token("A"))
        assert not manager.is_connected


class TestSending:
    @pytest.mark.asyncio
    async def test_sends_are_fifo(self, transports, make_token, flush):
        manager = _manager(transports)
        await manager.connect(make_token("A"))

        ids = [
            manager.send("send-message", {"roomId": "R1", "text": str(i)})
            for i in range(20)
        ]
        await flush()

        sent = transports.created[0].frames("publish")
        assert [f["request_id"] for f in sent] == ids
        assert [f["body"]["text"] for f in sent] == [str(i) for i in range(20)]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_unknown_destination(self, transports, make_token):
        from roomhub.core.errors import MalformedPayload

        manager = _manager(transports)
        await manager.connect(make_token("A"))
        with pytest.raises(MalformedPayload):
            manager.send("/app/chat.shout", {})
        await manager.disconnect()


class TestDrops:
    @pytest.mark.asyncio
    async def test_transport_drop_fires_on_disconnect(self, transports, listener, make_token, flush):
        from roomhub.core.errors import NotConnected, TransportFailure

        manager = _manager(transports)
        manager.add_listener(listener)
        await manager.connect(make_token("A"))

        transports.created[0].drop()
        await flush()

        assert listener.names() == ["connect", "disconnect"]
        assert isinstance(listener.calls[-1][1], TransportFailure)
        assert not manager.is_connected
        with pytest.raises(NotConnected):
            manager.send("send-message", {"roomId": "R1", "text": "late"})

    @pytest.mark.asyncio
    async def test_forced_auth_expiry(self, transports, listener, make_token, flush):
        from roomhub.core.errors import AuthExpired

        manager = _manager(transports)
        manager.add_listener(listener)
        await manager.connect(make_token("A"))

        transports.created[0].push({"type": "error", "code": "AUTH_EXPIRED", "message": "Token expired"})
        await flush()

        name, error = listener.calls[-1]
        assert name == "disconnect"
        assert isinstance(error, AuthExpired)

    @pytest.mark.asyncio
    async def test_room_level_errors_do_not_drop(self, transports, listener, make_token, flush):
        manager = _manager(transports)
        manager.add_listener(listener)
        await manager.connect(make_token("A"))

        transports.created[0].push({"type": "error", "code": "FORBIDDEN", "message": "no", "room_id": "R1"})
        await flush()

        assert listener.names() == ["connect", "frame"]
        assert manager.is_connected
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_malformed_frames_are_dropped(self, transports, listener, make_token, flush):
        manager = _manager(transports)
        manager.add_listener(listener)
        await manager.connect(make_token("A"))

        transport = transports.created[0]
        transport.push("{nope")
        transport.push(b'{"type":"ack","request_id":"\xff"}')
        transport.push({"type": "ack", "request_id": "r1"})
        await flush()

        assert listener.names() == ["connect", "frame"]
        assert listener.calls[-1][1]["request_id"] == "r1"
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self, transports, listener, make_token):
        from roomhub.client.connection import ConnectionListener

        class Broken(ConnectionListener):
            async def on_connect(self, session):
                raise RuntimeError("boom")

        manager = _manager(transports)
        manager.add_listener(Broken())
        manager.add_listener(listener)
        await manager.connect(make_token("A"))

        assert listener.names() == ["connect"]
        await manager.disconnect()


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_pings_while_idle(self, transports, make_token, flush):
        manager = _manager(transports, heartbeat_interval=0.02, heartbeat_timeout=5)
        await manager.connect(make_token("A"))

        await flush(0.1)

        assert len(transports.created[0].frames("ping")) >= 2
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_silence_terminates(self, transports, listener, make_token, flush):
        from roomhub.core.errors import TransportFailure

        manager = _manager(transports, heartbeat_interval=0.02, heartbeat_timeout=0.05)
        manager.add_listener(listener)
        await manager.connect(make_token("A"))

        await flush(0.2)

        name, error = listener.calls[-1]
        assert name == "disconnect"
        assert isinstance(error, TransportFailure)
        assert "Heartbeat" in error.message


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_scoped_teardown(self, transports, listener, make_token):
        manager = _manager(transports)
        manager.add_listener(listener)
        await manager.connect(make_token("A"))

        await manager.disconnect()

        assert listener.names() == ["connect", "teardown"]
        assert not transports.created[0].is_open
        assert manager.session is None

    @pytest.mark.asyncio
    async def test_disconnect_when_idle(self, transports):
        manager = _manager(transports)
        await manager.disconnect()
        assert not manager.is_connected
