"""
Tests for the Takaro control channel.

The socket is replaced by a MockWebSocket so message handling, send gating
and the reconnect schedule can be checked without a network.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from palbridge.channel import (
    BASE_RECONNECT_DELAY,
    MAX_RECONNECT_DELAY,
    ChannelState,
    ControlChannelClient,
    backoff_delay,
)


class MockWebSocket:
    """Records frames written by the client."""

    def __init__(self, block_time: float = 0):
        self.block_time = block_time
        self.sent_messages = []
        self.closed = False

    async def send(self, message: str):
        if self.block_time > 0:
            await asyncio.sleep(self.block_time)
        self.sent_messages.append(json.loads(message))

    async def close(self):
        self.closed = True


def _client(**kwargs) -> ControlChannelClient:
    kwargs.setdefault("log_callback", lambda message, level: None)
    return ControlChannelClient("wss://takaro.test/", identity_token="ident", **kwargs)


def _open(client: ControlChannelClient, ws: MockWebSocket, ready: bool = True):
    client._on_open(ws)
    client.state = ChannelState.READY if ready else ChannelState.CONNECTING


class TestBackoff:
    """Reconnect delay schedule."""

    def test_doubles_from_base(self):
        assert [backoff_delay(n) for n in (1, 2, 3, 4)] == [3.0, 6.0, 12.0, 24.0]

    def test_monotonic_and_capped(self):
        delays = [backoff_delay(n) for n in range(1, 20)]
        assert delays == sorted(delays)
        assert max(delays) == MAX_RECONNECT_DELAY

    def test_attempt_below_one_uses_base(self):
        assert backoff_delay(0) == BASE_RECONNECT_DELAY

    def test_schedule_adds_bounded_jitter(self):
        client = _client()
        for attempt in range(1, 10):
            delay = client._schedule_reconnect()
            base = backoff_delay(attempt)
            assert base <= delay <= base * 1.25
        assert client.reconnect_attempts == 9

    def test_open_resets_attempts(self):
        client = _client()
        client._schedule_reconnect()
        client._schedule_reconnect()

        client._on_open(MockWebSocket())

        assert client.reconnect_attempts == 0

    def test_close_returns_to_idle(self):
        client = _client()
        _open(client, MockWebSocket())

        client._on_close()

        assert client.state is ChannelState.IDLE
        assert client.ws is None
        assert client.reconnect_attempts == 0


class TestIdentify:
    """Identify handshake and READY transition."""

    @pytest.mark.asyncio
    async def test_identify_includes_registration_token(self):
        client = _client(registration_token="reg")
        ws = MockWebSocket()
        _open(client, ws, ready=False)

        await client._send_identify()

        assert ws.sent_messages == [
            {"type": "identify", "payload": {"identityToken": "ident", "registrationToken": "reg"}}
        ]

    @pytest.mark.asyncio
    async def test_identify_without_registration_token(self):
        client = _client()
        ws = MockWebSocket()
        _open(client, ws, ready=False)

        await client._send_identify()

        assert ws.sent_messages[0]["payload"] == {"identityToken": "ident"}

    @pytest.mark.asyncio
    async def test_identify_response_sets_ready(self):
        client = _client()
        _open(client, MockWebSocket(), ready=False)

        await client.handle_message({"type": "identifyResponse", "payload": {}})

        assert client.ready

    @pytest.mark.asyncio
    async def test_identify_error_stays_not_ready(self):
        client = _client()
        _open(client, MockWebSocket(), ready=False)

        await client.handle_message({"type": "identifyResponse", "payload": {"error": "bad token"}})

        assert client.state is ChannelState.CONNECTING


class TestMessages:
    """Inbound message handling."""

    @pytest.mark.asyncio
    async def test_ping_gets_pong(self):
        client = _client()
        ws = MockWebSocket()
        _open(client, ws, ready=False)

        await client.handle_raw(json.dumps({"type": "ping"}))

        assert ws.sent_messages == [{"type": "pong"}]

    @pytest.mark.asyncio
    async def test_malformed_json_is_dropped(self):
        client = _client()
        _open(client, MockWebSocket())

        await client.handle_raw("{not json")
        await client.handle_raw("[1, 2]")

        assert client.metrics.errors == 2
        assert client.ready

    @pytest.mark.asyncio
    async def test_request_runs_handler_as_task(self):
        on_request = AsyncMock()
        client = _client(on_request=on_request)
        _open(client, MockWebSocket())
        message = {"type": "request", "requestId": "r1", "payload": {"action": "getPlayers"}}

        await client.handle_message(message)
        await asyncio.gather(*client._request_tasks)

        on_request.assert_awaited_once_with(message)

    @pytest.mark.asyncio
    async def test_unknown_type_is_ignored(self):
        client = _client()
        ws = MockWebSocket()
        _open(client, ws)

        await client.handle_message({"type": "somethingNew"})

        assert ws.sent_messages == []


class TestSend:
    """Outbound gating and write failures."""

    @pytest.mark.asyncio
    async def test_send_when_not_ready_returns_false(self):
        client = _client()
        ws = MockWebSocket()
        _open(client, ws, ready=False)

        assert await client.send({"type": "response", "requestId": "r1", "payload": []}) is False
        assert ws.sent_messages == []

    @pytest.mark.asyncio
    async def test_send_without_socket_returns_false(self):
        assert await _client().send({"type": "gameEvent"}) is False

    @pytest.mark.asyncio
    async def test_send_response_counts(self):
        client = _client()
        ws = MockWebSocket()
        _open(client, ws)

        assert await client.send({"type": "response", "requestId": "r1", "payload": []})
        assert client.metrics.responses_sent == 1

    @pytest.mark.asyncio
    async def test_game_event_envelope(self):
        client = _client()
        ws = MockWebSocket()
        _open(client, ws)

        await client.send_game_event("player-connected", {"player": {"gameId": "steam_1"}})

        assert ws.sent_messages == [{
            "type": "gameEvent",
            "payload": {"type": "player-connected", "data": {"player": {"gameId": "steam_1"}}},
        }]

    @pytest.mark.asyncio
    async def test_blocked_write_times_out(self):
        client = _client()
        _open(client, MockWebSocket(block_time=10.0))

        assert await client._write({"type": "pong"}, timeout=0.05) is False
        assert client.metrics.errors == 1


class TestLifecycle:
    """Connection loop start and stop."""

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self):
        client = _client()
        with patch.object(client, "_connect_once", AsyncMock()), \
                patch.object(client, "_schedule_reconnect", return_value=60.0):
            first = client.connect()
            second = client.connect()
            assert first is second
            await client.disconnect()

        assert client.state is ChannelState.IDLE

    @pytest.mark.asyncio
    async def test_disconnect_closes_socket(self):
        client = _client()
        ws = MockWebSocket()
        _open(client, ws)

        await client.disconnect()

        assert ws.closed
        assert client.ws is None
        assert not client.ready

    @pytest.mark.asyncio
    async def test_failed_identify_drops_connection(self):
        logs = []
        client = _client(log_callback=lambda message, level: logs.append((level, message)))
        ws = MockWebSocket()
        ws.send = AsyncMock(side_effect=OSError("broken pipe"))
        connection = MagicMock()
        connection.__aenter__ = AsyncMock(return_value=ws)
        connection.__aexit__ = AsyncMock(return_value=False)

        with patch("palbridge.channel.websockets.connect", return_value=connection):
            await client._connect_once()

        assert ("error", "Could not send identify message") in logs
        assert client.state is ChannelState.IDLE
        assert client.ws is None
