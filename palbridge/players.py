"""Player directory.

Best-effort cache mapping a player's Takaro gameId (the Palworld userId) to
the most recently observed display name and in-game playerId. The Lua mod
only knows display names and playerIds, while Takaro addresses players by
gameId, so every lookup in either direction goes through here.

Records are never pruned: players who left keep their last mapping so that
late disconnect events and lookups still resolve.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class PlayerRecord:
    """Last known identity of a player."""
    game_id: str
    name: str
    player_id: str = ""
    ip: Optional[str] = None
    ping: Optional[float] = None

    @classmethod
    def from_rest(cls, player: dict[str, Any]) -> "PlayerRecord":
        """Build a record from a Palworld REST /players entry."""
        return cls(
            game_id=str(player.get("userId") or ""),
            name=str(player.get("name") or ""),
            player_id=str(player.get("playerId") or ""),
            ip=player.get("ip") or None,
            ping=player.get("ping"),
        )

    def to_takaro(self) -> dict[str, Any]:
        """Serialize as a Takaro IGamePlayer."""
        data: dict[str, Any] = {
            "gameId": self.game_id,
            "name": self.name,
            "platformId": f"palworld:{self.game_id}",
            "steamId": self.game_id,
        }
        if self.ip:
            data["ip"] = self.ip
        if self.ping is not None:
            data["ping"] = self.ping
        return data


@dataclass
class PlayerDirectory:
    """Index of PlayerRecords by gameId, playerId and display name."""
    _by_game_id: dict[str, PlayerRecord] = field(default_factory=dict)
    _by_player_id: dict[str, str] = field(default_factory=dict)
    _by_name: dict[str, str] = field(default_factory=dict)
    _inventories: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    def upsert(self, record: PlayerRecord) -> None:
        """Insert or overwrite the record for record.game_id."""
        if not record.game_id:
            logger.warning(f"Ignoring player record without gameId: {record.name!r}")
            return

        previous = self._by_game_id.get(record.game_id)
        if previous and previous.name != record.name:
            logger.info(f"Player {record.game_id} renamed: {previous.name} -> {record.name}")
            # Old name keeps pointing here unless someone else takes it
        self._by_game_id[record.game_id] = record
        if record.player_id:
            self._by_player_id[record.player_id] = record.game_id
        if record.name:
            self._by_name[record.name] = record.game_id

    def lookup(self, key: str) -> Optional[PlayerRecord]:
        """Resolve a gameId, playerId or display name to the last known record."""
        if not key:
            return None
        record = self._by_game_id.get(key)
        if record:
            return record
        game_id = self._by_player_id.get(key) or self._by_name.get(key)
        if game_id:
            return self._by_game_id.get(game_id)
        return None

    def all(self) -> list[PlayerRecord]:
        return list(self._by_game_id.values())

    def set_inventory(self, name: str, items: list[dict[str, Any]]) -> bool:
        """Store the inventory snapshot the Lua mod posted for a display name."""
        record = self.lookup(name)
        if not record:
            logger.debug(f"Inventory for unknown player {name!r} dropped")
            return False
        self._inventories[record.game_id] = items
        return True

    def inventory(self, game_id: str) -> list[dict[str, Any]]:
        return list(self._inventories.get(game_id, []))

    def __len__(self) -> int:
        return len(self._by_game_id)
