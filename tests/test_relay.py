"""
Tests for the local relay the Lua mod polls.

Requests go through httpx.ASGITransport, so the app runs on the test's own
event loop alongside the handlers waiting on it.
"""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from palbridge.actions import ActionHandlers
from palbridge.context import BridgeContext
from palbridge.players import PlayerRecord
from palbridge.queues import LocationQueue
from palbridge.relay import create_relay_app


def _context(timeout=1.0) -> BridgeContext:
    context = BridgeContext(palworld=AsyncMock(), locations=LocationQueue(timeout=timeout))
    context.directory.upsert(PlayerRecord(game_id="steam_1", name="Aria", player_id="p1"))
    context.emit_event = AsyncMock(return_value=True)
    return context


def _client(context: BridgeContext) -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=create_relay_app(context))
    return httpx.AsyncClient(transport=transport, base_url="http://relay.test")


class TestTeleportQueueEndpoint:
    """GET /teleport-queue drains the queue."""

    @pytest.mark.asyncio
    async def test_pop_all(self):
        context = _context()
        context.teleports.enqueue_to_player("Aria", "Bjorn")

        async with _client(context) as client:
            first = (await client.get("/teleport-queue")).json()
            second = (await client.get("/teleport-queue")).json()

        assert [item["sourcePlayer"] for item in first["items"]] == ["Aria"]
        assert second == {"items": []}


class TestLocationEndpoints:
    """Location queue polling and responses."""

    @pytest.mark.asyncio
    async def test_location_lookup_end_to_end(self):
        context = _context()
        handlers = ActionHandlers(context)

        async with _client(context) as client:
            lookup = asyncio.create_task(handlers.get_player_location({"gameId": "steam_1"}))
            await asyncio.sleep(0)

            requests = (await client.get("/location-queue")).json()["requests"]
            assert len(requests) == 1
            assert list(requests[0])[:3] == ["playerId", "playerName", "requestId"]

            response = await client.post("/location-response", json={
                "requestId": requests[0]["requestId"],
                "x": 10, "y": 20, "z": 5,
                "playerName": "Aria",
            })
            assert response.json() == {"success": True}

            assert await lookup == {"x": 10, "y": 20, "z": 5}
            assert (await client.get("/location-queue")).json() == {"requests": []}

    @pytest.mark.asyncio
    async def test_unknown_request_id_is_404(self):
        async with _client(_context()) as client:
            response = await client.post("/location-response", json={
                "requestId": "loc_missing", "x": 1, "y": 2, "z": 3,
            })

        assert response.status_code == 404
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_missing_request_id_is_rejected(self):
        async with _client(_context()) as client:
            response = await client.post("/location-response", json={"x": 1, "y": 2, "z": 3})

        assert response.status_code == 422


class TestIngest:
    """Reports posted by the Lua mod."""

    @pytest.mark.asyncio
    async def test_chat_becomes_chat_message_event(self):
        context = _context()

        async with _client(context) as client:
            response = await client.post("/chat", json={
                "type": "chat", "playerName": "Aria", "message": "hi all", "category": 2,
            })

        assert response.json() == {"success": True}
        event_type, data = context.emit_event.await_args.args
        assert event_type == "chat-message"
        assert data["msg"] == "hi all"
        assert data["channel"] == "team"
        assert data["player"]["gameId"] == "steam_1"

    @pytest.mark.asyncio
    async def test_root_path_accepts_reports(self):
        context = _context()

        async with _client(context) as client:
            await client.post("/", json={"type": "player_death", "playerName": "Aria"})

        context.emit_event.assert_awaited_once()
        assert context.emit_event.await_args.args[0] == "player-death"

    @pytest.mark.asyncio
    async def test_unknown_player_is_dropped(self):
        context = _context()

        async with _client(context) as client:
            response = await client.post("/chat", json={"type": "chat", "playerName": "Ghost", "message": "?"})

        assert response.json()["success"] is False
        context.emit_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inventory_is_stored(self):
        context = _context()

        async with _client(context) as client:
            await client.post("/chat", json={
                "type": "inventory", "playerName": "Aria", "inventory": [{"id": "Wood", "count": 3}],
            })

        assert context.directory.inventory("steam_1") == [{"id": "Wood", "count": 3}]

    @pytest.mark.asyncio
    async def test_connect_hook_is_acknowledged_only(self):
        context = _context()

        async with _client(context) as client:
            response = await client.post("/chat", json={"type": "player_connect", "playerName": "Aria"})

        assert response.json() == {"success": True}
        context.emit_event.assert_not_awaited()


class TestHealth:
    """GET /health."""

    @pytest.mark.asyncio
    async def test_health(self):
        context = _context()
        context.teleports.enqueue_to_player("Aria", "Bjorn")

        async with _client(context) as client:
            data = (await client.get("/health")).json()

        assert data["status"] == "ok"
        assert data["takaro"] == "idle"
        assert data["players"] == 1
        assert data["queuedTeleports"] == 1
        assert "requestsReceived" in data["metrics"]
