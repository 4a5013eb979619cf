"""Presence reconciler.

Palworld offers no connect/disconnect stream the bridge can subscribe to,
only a full list of online players. The reconciler polls that list on a
timer and diffs it against the previous poll to produce Takaro
player-connected / player-disconnected events.

The first poll after start only records a baseline, so players already
online when the bridge boots are not announced as a burst of connects.
A player who leaves and rejoins between two polls is not seen at all;
that is the resolution limit of snapshot diffing.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .players import PlayerDirectory, PlayerRecord

logger = logging.getLogger(__name__)

PLAYER_CONNECTED = "player-connected"
PLAYER_DISCONNECTED = "player-disconnected"

SnapshotFetcher = Callable[[], Awaitable[list[dict[str, Any]]]]
EventSink = Callable[[str, dict[str, Any]], Awaitable[Any]]


class PresenceReconciler:
    """Turns periodic player snapshots into connect/disconnect events."""

    def __init__(
        self,
        directory: PlayerDirectory,
        fetch_players: SnapshotFetcher,
        emit: EventSink,
        interval: float = 10.0,
    ):
        self.directory = directory
        self.fetch_players = fetch_players
        self.emit = emit
        self.interval = interval
        self._last_known: Optional[set[str]] = None
        self._running = False

    @property
    def last_known(self) -> set[str]:
        return set(self._last_known or ())

    @property
    def has_baseline(self) -> bool:
        return self._last_known is not None

    def reset(self) -> None:
        """Forget the baseline; the next poll emits nothing."""
        self._last_known = None

    def diff(self, current: set[str]) -> tuple[set[str], set[str]]:
        """Replace the known set with current.

        Returns:
            (connected, disconnected) gameIds. Both are empty on the first
            call after start or reset().
        """
        previous = self._last_known
        self._last_known = set(current)
        if previous is None:
            logger.info(f"Presence baseline: {len(current)} players online")
            return set(), set()
        return current - previous, previous - current

    async def poll(self) -> list[tuple[str, str]]:
        """Fetch one snapshot, update the directory and emit the differences.

        A failed fetch skips the cycle and keeps the previous set, so an API
        outage does not read as everyone disconnecting.

        Returns:
            The (event_type, gameId) pairs that were emitted.
        """
        try:
            players = await self.fetch_players()
        except Exception as e:
            logger.warning(f"Presence poll skipped: {e}")
            return []

        current: set[str] = set()
        for player in players:
            if not isinstance(player, dict):
                logger.warning(f"Skipping malformed player entry: {player!r}")
                continue
            record = PlayerRecord.from_rest(player)
            if not record.game_id:
                continue
            self.directory.upsert(record)
            current.add(record.game_id)

        connected, disconnected = self.diff(current)

        emitted = []
        for game_id in sorted(connected):
            if await self._emit(PLAYER_CONNECTED, game_id):
                emitted.append((PLAYER_CONNECTED, game_id))
        for game_id in sorted(disconnected):
            if await self._emit(PLAYER_DISCONNECTED, game_id):
                emitted.append((PLAYER_DISCONNECTED, game_id))
        return emitted

    async def _emit(self, event_type: str, game_id: str) -> bool:
        record = self.directory.lookup(game_id)
        if record is None:
            logger.warning(f"Dropping {event_type} for {game_id}: no directory entry")
            return False
        logger.info(f"{event_type}: {record.name} ({game_id})")
        await self.emit(event_type, {"player": record.to_takaro()})
        return True

    async def run(self) -> None:
        """Poll every `interval` seconds until stop() is called."""
        self._running = True
        logger.info(f"Started presence polling (every {self.interval:g}s)")
        while self._running:
            try:
                await self.poll()
            except Exception:
                logger.exception("Presence poll failed")
            await asyncio.sleep(self.interval)

    def stop(self) -> None:
        self._running = False
