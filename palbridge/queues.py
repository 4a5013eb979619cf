"""Work queues polled by the TakaroChat Lua mod.

The Lua mod runs inside the game server and cannot accept connections, so
the bridge parks work here and the mod pulls it over the local relay once
per tick. There are two flavors:

TeleportQueue
    Fire-and-forget. Takaro gets an optimistic ack at enqueue time; the mod's
    poll returns and clears everything queued so far (pop-all).

LocationQueue
    Request/response with a deadline. Pending requests stay visible to every
    poll until the mod posts a matching response or the deadline passes, and
    exactly one of the two removes them. Only one lookup per player may be in
    flight, since concurrent lookups for the same player could not be told
    apart by the mod.

Nothing here survives a restart; callers already apply their own timeouts.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Returned when a location cannot be resolved. Takaro modules treat an
# all-zero position as "location unavailable".
UNKNOWN_LOCATION = {"x": 0, "y": 0, "z": 0}

DEFAULT_LOCATION_TIMEOUT = 5.0


def _iso_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_request_id(prefix: str = "loc") -> str:
    """Generate a unique correlation id, e.g. loc_1718000000000_9f2c1a3b."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


# =============================================================================
# Fire-and-forget: teleports
# =============================================================================


class TeleportQueue:
    """Pop-all queue of teleports for the Lua mod to execute."""

    def __init__(self):
        self._items: list[dict[str, Any]] = []

    def enqueue_to_player(self, source_player: str, target_player: str) -> dict[str, Any]:
        """Queue a teleport of source_player to target_player's position."""
        item = {
            "sourcePlayer": source_player,
            "targetPlayer": target_player,
            "timestamp": _iso_timestamp(),
        }
        self._items.append(item)
        logger.info(f"Queued teleport {source_player} -> {target_player}")
        return item

    def enqueue_to_coordinates(self, source_player: str, x: float, y: float, z: float) -> dict[str, Any]:
        """Queue a teleport of source_player to fixed coordinates."""
        item = {
            "sourcePlayer": source_player,
            "x": float(x),
            "y": float(y),
            "z": float(z),
            "timestamp": _iso_timestamp(),
        }
        self._items.append(item)
        logger.info(f"Queued teleport {source_player} -> ({x:.1f}, {y:.1f}, {z:.1f})")
        return item

    def pop_all(self) -> list[dict[str, Any]]:
        """Return every queued teleport and clear the queue."""
        items, self._items = self._items, []
        if items:
            logger.debug(f"Teleport queue drained ({len(items)} items)")
        return items

    def __len__(self) -> int:
        return len(self._items)


# =============================================================================
# Correlated request/response: locations
# =============================================================================


@dataclass
class LocationRequest:
    """A location lookup waiting for the Lua mod."""
    request_id: str
    player_id: str
    player_name: str = ""
    timestamp: str = field(default_factory=_iso_timestamp)

    def to_json(self) -> dict[str, Any]:
        # The Lua mod pattern-matches playerId, playerName, requestId in this order
        return {
            "playerId": self.player_id,
            "playerName": self.player_name,
            "requestId": self.request_id,
            "timestamp": self.timestamp,
        }


@dataclass
class LocationResponse:
    """A position posted back by the Lua mod."""
    request_id: str
    payload: dict[str, Any]
    timestamp: str = field(default_factory=_iso_timestamp)


class LocationQueue:
    """Correlated location lookups with timeout eviction.

    A waiting lookup is woken by a per-request future that post_response()
    resolves, so the relay can keep serving the polls and posts that
    eventually satisfy it.
    """

    def __init__(self, timeout: float = DEFAULT_LOCATION_TIMEOUT):
        self.timeout = timeout
        self._pending: list[LocationRequest] = []
        self._responses: list[LocationResponse] = []
        self._in_flight: set[str] = set()
        self._waiters: dict[str, asyncio.Future] = {}

    # -- consumer side (relay endpoints) --------------------------------------

    def pending(self) -> list[dict[str, Any]]:
        """Snapshot of pending requests. Polling does not remove them."""
        return [request.to_json() for request in self._pending]

    def responses(self) -> list[LocationResponse]:
        return list(self._responses)

    def post_response(self, request_id: str, payload: dict[str, Any]) -> bool:
        """Record a response from the Lua mod.

        Returns:
            False if no pending request has this id (late or unknown response).
        """
        if self._find_pending(request_id) is None:
            logger.warning(f"Dropping location response for unknown request {request_id}")
            return False

        self._responses.append(LocationResponse(request_id=request_id, payload=dict(payload)))
        waiter = self._waiters.get(request_id)
        if waiter and not waiter.done():
            waiter.set_result(None)
        return True

    # -- producer side (action handlers) --------------------------------------

    def is_in_flight(self, player_id: str) -> bool:
        return player_id in self._in_flight

    def request(
        self,
        player_id: str,
        player_name: str = "",
        request_id: Optional[str] = None,
    ) -> Optional[LocationRequest]:
        """Enqueue a lookup and mark the player in flight.

        Returns:
            The new LocationRequest, or None if a lookup for this player is
            already in flight.
        """
        if player_id in self._in_flight:
            logger.info(f"Location lookup for {player_name or player_id} already in flight")
            return None

        request = LocationRequest(
            request_id=request_id or generate_request_id(),
            player_id=player_id,
            player_name=player_name,
        )
        self._pending.append(request)
        self._in_flight.add(player_id)
        logger.debug(f"Location request {request.request_id} queued for {player_name or player_id}")
        return request

    async def wait(self, request_id: str, timeout: Optional[float] = None) -> dict[str, Any]:
        """Wait for the response to a queued request.

        The pending entry and in-flight mark are removed on every exit path:
        match, deadline, or cancellation.

        Returns:
            The posted payload, or a copy of UNKNOWN_LOCATION on timeout.
        """
        request = self._find_pending(request_id)
        if request is None:
            return dict(UNKNOWN_LOCATION)

        timeout = self.timeout if timeout is None else timeout
        try:
            response = self._take_response(request_id)
            if response is None:
                waiter = asyncio.get_running_loop().create_future()
                self._waiters[request_id] = waiter
                try:
                    await asyncio.wait_for(waiter, timeout=timeout)
                except asyncio.TimeoutError:
                    logger.warning(
                        f"Location request {request_id} for {request.player_name or request.player_id} "
                        f"timed out after {timeout:.1f}s"
                    )
                    return dict(UNKNOWN_LOCATION)
                response = self._take_response(request_id)

            if response is None:
                return dict(UNKNOWN_LOCATION)
            return response.payload
        finally:
            self._waiters.pop(request_id, None)
            self._evict(request)

    async def lookup(
        self,
        player_id: str,
        player_name: str = "",
        request_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """Enqueue a lookup and wait for it.

        A lookup for a player that is already in flight returns
        UNKNOWN_LOCATION immediately instead of waiting.
        """
        request = self.request(player_id, player_name, request_id)
        if request is None:
            return dict(UNKNOWN_LOCATION)
        return await self.wait(request.request_id, timeout=timeout)

    # -- internals ------------------------------------------------------------

    def _find_pending(self, request_id: str) -> Optional[LocationRequest]:
        for request in self._pending:
            if request.request_id == request_id:
                return request
        return None

    def _take_response(self, request_id: str) -> Optional[LocationResponse]:
        """Pop the first response for request_id; later duplicates are discarded."""
        matches = [r for r in self._responses if r.request_id == request_id]
        if not matches:
            return None
        self._responses = [r for r in self._responses if r.request_id != request_id]
        if len(matches) > 1:
            logger.debug(f"Discarded {len(matches) - 1} duplicate responses for {request_id}")
        return matches[0]

    def _evict(self, request: LocationRequest) -> None:
        self._pending = [p for p in self._pending if p.request_id != request.request_id]
        self._responses = [r for r in self._responses if r.request_id != request.request_id]
        self._in_flight.discard(request.player_id)
