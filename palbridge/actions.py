"""Takaro actions and their handlers.

Every action Takaro may send is a member of Action, with a pydantic model for
its arguments where it takes any. ActionHandlers.table() maps each member to
a coroutine; the dispatcher never routes on raw strings.
"""

import json
import logging
import shlex
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from .context import BridgeContext
from .exceptions import HandlerError, PalworldAPIError
from .players import PlayerRecord
from .queues import UNKNOWN_LOCATION

logger = logging.getLogger(__name__)


class Action(str, Enum):
    """Actions Takaro sends in `request` messages."""
    TEST_REACHABILITY = "testReachability"
    GET_PLAYERS = "getPlayers"
    GET_PLAYER = "getPlayer"
    GET_PLAYER_LOCATION = "getPlayerLocation"
    GET_PLAYER_INVENTORY = "getPlayerInventory"
    SEND_MESSAGE = "sendMessage"
    EXECUTE_COMMAND = "executeCommand"
    EXECUTE_CONSOLE_COMMAND = "executeConsoleCommand"
    KICK_PLAYER = "kickPlayer"
    BAN_PLAYER = "banPlayer"
    UNBAN_PLAYER = "unbanPlayer"
    TELEPORT_PLAYER = "teleportPlayer"
    SHUTDOWN = "shutdown"
    # Palworld's API has nothing to back these
    LIST_BANS = "listBans"
    LIST_ITEMS = "listItems"
    LIST_ENTITIES = "listEntities"
    LIST_LOCATIONS = "listLocations"


STUB_ACTIONS = (Action.LIST_BANS, Action.LIST_ITEMS, Action.LIST_ENTITIES, Action.LIST_LOCATIONS)

Handler = Callable[[Any], Awaitable[Any]]


# =============================================================================
# Argument models
# =============================================================================


class _Args(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class PlayerArgs(_Args):
    """Player reference; accepts {gameId}, {userId} or {player: {gameId}}."""
    game_id: str = Field(validation_alias=AliasChoices("gameId", "userId"))
    reason: str = ""

    @model_validator(mode="before")
    @classmethod
    def _flatten_player(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("player"), dict):
            merged = dict(data["player"])
            merged.update({k: v for k, v in data.items() if k != "player"})
            return merged
        return data


class TeleportArgs(PlayerArgs):
    x: float
    y: float
    z: float


class CommandArgs(_Args):
    command: str = ""
    message: str = ""


class MessageArgs(_Args):
    message: str
    opts: dict[str, Any] = Field(default_factory=dict)


def parse_args(model: type[_Args], raw: Any) -> Any:
    """Validate raw request args (object or JSON string) against model."""
    if raw is None:
        raw = {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as e:
            raise HandlerError(f"Invalid arguments: {e.msg}") from e
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        first = e.errors()[0]
        field_name = ".".join(str(part) for part in first.get("loc", ())) or "args"
        raise HandlerError(f"Invalid arguments ({field_name}): {first.get('msg')}") from e


def format_location(location: dict[str, Any]) -> str:
    return f"X: {round(location['x'])}, Y: {round(location['y'])}, Z: {round(location['z'])}"


# =============================================================================
# Handlers
# =============================================================================


class ActionHandlers:
    """Handlers for every Action, bound to one BridgeContext."""

    def __init__(self, context: BridgeContext):
        self.context = context

    def table(self) -> dict[Action, Handler]:
        table: dict[Action, Handler] = {
            Action.TEST_REACHABILITY: self.test_reachability,
            Action.GET_PLAYERS: self.get_players,
            Action.GET_PLAYER: self.get_player,
            Action.GET_PLAYER_LOCATION: self.get_player_location,
            Action.GET_PLAYER_INVENTORY: self.get_player_inventory,
            Action.SEND_MESSAGE: self.send_message,
            Action.EXECUTE_COMMAND: self.execute_command,
            Action.EXECUTE_CONSOLE_COMMAND: self.execute_command,
            Action.KICK_PLAYER: self.kick_player,
            Action.BAN_PLAYER: self.ban_player,
            Action.UNBAN_PLAYER: self.unban_player,
            Action.TELEPORT_PLAYER: self.teleport_player,
            Action.SHUTDOWN: self.shutdown,
        }
        for action in STUB_ACTIONS:
            table[action] = self.empty_list
        return table

    def _require_player(self, key: str) -> PlayerRecord:
        record = self.context.directory.lookup(key)
        if record is None:
            raise HandlerError(f"Player not found: {key}")
        return record

    async def test_reachability(self, args: Any) -> dict[str, Any]:
        monitor = self.context.monitor
        online = monitor.online if monitor else await self.context.palworld.is_reachable()
        return {
            "connectable": online,
            "reason": None if online else "Palworld server not running",
        }

    async def get_players(self, args: Any) -> list[dict[str, Any]]:
        try:
            players = await self.context.palworld.players()
        except PalworldAPIError as e:
            logger.error(f"Failed to get players: {e}")
            return []

        result = []
        for player in players:
            record = PlayerRecord.from_rest(player)
            if not record.game_id:
                continue
            self.context.directory.upsert(record)
            result.append(record.to_takaro())
        return result

    async def get_player(self, args: Any) -> Optional[dict[str, Any]]:
        player = parse_args(PlayerArgs, args)
        record = self.context.directory.lookup(player.game_id)
        return record.to_takaro() if record else None

    async def get_player_location(self, args: Any) -> dict[str, Any]:
        player = parse_args(PlayerArgs, args)
        record = self.context.directory.lookup(player.game_id)
        if record is None:
            logger.warning(f"Location requested for unknown player {player.game_id}")
            return dict(UNKNOWN_LOCATION)
        return await self._locate(record)

    async def _locate(self, record: PlayerRecord) -> dict[str, Any]:
        location = await self.context.locations.lookup(record.player_id or record.game_id, record.name)
        return {"x": location.get("x", 0), "y": location.get("y", 0), "z": location.get("z", 0)}

    async def get_player_inventory(self, args: Any) -> list[dict[str, Any]]:
        player = parse_args(PlayerArgs, args)
        return [
            {"code": str(item.get("id", "")), "amount": int(item.get("count", 0))}
            for item in self.context.directory.inventory(player.game_id)
        ]

    async def send_message(self, args: Any) -> dict[str, Any]:
        message = parse_args(MessageArgs, args)
        await self.context.palworld.announce(message.message)
        return {"success": True, "rawResult": "Message announced"}

    async def kick_player(self, args: Any) -> dict[str, Any]:
        player = parse_args(PlayerArgs, args)
        await self.context.palworld.kick(player.game_id, player.reason or "You have been kicked from the server")
        return {"success": True}

    async def ban_player(self, args: Any) -> dict[str, Any]:
        player = parse_args(PlayerArgs, args)
        await self.context.palworld.ban(player.game_id, player.reason or "You have been banned from the server")
        return {"success": True}

    async def unban_player(self, args: Any) -> dict[str, Any]:
        player = parse_args(PlayerArgs, args)
        await self.context.palworld.unban(player.game_id)
        return {"success": True}

    async def teleport_player(self, args: Any) -> dict[str, Any]:
        teleport = parse_args(TeleportArgs, args)
        record = self._require_player(teleport.game_id)
        self.context.teleports.enqueue_to_coordinates(record.name, teleport.x, teleport.y, teleport.z)
        return {"success": True}

    async def shutdown(self, args: Any) -> dict[str, Any]:
        await self.context.palworld.shutdown(10, "Server shutting down")
        return {"success": True}

    async def empty_list(self, args: Any) -> list:
        return []

    # =========================================================================
    # Console commands
    # =========================================================================

    async def execute_command(self, args: Any) -> dict[str, Any]:
        """Run a console command typed in Takaro or issued by a Takaro module.

        Palworld has no console over REST, so the bridge understands a small
        vocabulary itself:

            location <gameId>                 live position via the Lua mod
            teleportplayer <name> <x> <y> <z> teleport to coordinates
            teleport <source> <target>        teleport to another player
            announce|say|broadcast <text>     server-wide message
            save                              save the world
            shutdown [seconds] [message]      graceful shutdown
        """
        command_args = parse_args(CommandArgs, args)
        command = (command_args.command or command_args.message).strip()
        if not command:
            return {"success": False, "rawResult": "Empty command"}

        try:
            parts = shlex.split(command)
        except ValueError:
            parts = command.split()
        verb, params = parts[0].lower(), parts[1:]
        text = command.partition(" ")[2].strip()

        logger.info(f"Executing command: {command}")
        try:
            if verb == "location":
                return await self._command_location(params)
            if verb == "teleportplayer":
                return self._command_teleport_coordinates(params)
            if verb == "teleport":
                return self._command_teleport_player(params)
            if verb in ("announce", "say", "broadcast"):
                await self.context.palworld.announce(text)
                return {"success": True, "rawResult": "Message announced"}
            if verb == "save":
                await self.context.palworld.save()
                return {"success": True, "rawResult": "World saved"}
            if verb == "shutdown":
                wait = int(params[0]) if params and params[0].isdigit() else 10
                message = " ".join(params[1:]) if len(params) > 1 else "Server shutting down"
                await self.context.palworld.shutdown(wait, message)
                return {"success": True, "rawResult": "Server shutdown initiated"}
        except PalworldAPIError as e:
            return {"success": False, "rawResult": f"Error: {e}"}

        return {"success": False, "rawResult": "Command not supported"}

    async def _command_location(self, params: list[str]) -> dict[str, Any]:
        if not params:
            return {"success": False, "rawResult": "Usage: location <gameId>"}
        record = self.context.directory.lookup(params[0])
        if record is None:
            return {"success": False, "rawResult": f"Player not found: {params[0]}", **UNKNOWN_LOCATION}
        location = await self._locate(record)
        found = location != UNKNOWN_LOCATION
        return {
            "success": found,
            "rawResult": format_location(location) if found else f"Location unavailable for {record.name}",
            **location,
        }

    def _command_teleport_coordinates(self, params: list[str]) -> dict[str, Any]:
        # Names are sent unquoted and may contain spaces; the last three tokens are coordinates
        if len(params) < 4:
            return {"success": False, "rawResult": "Usage: teleportplayer <name> <x> <y> <z>"}
        try:
            x, y, z = (float(value) for value in params[-3:])
        except ValueError:
            return {"success": False, "rawResult": "Coordinates must be numbers"}
        key = " ".join(params[:-3])
        record = self.context.directory.lookup(key)
        name = record.name if record else key
        self.context.teleports.enqueue_to_coordinates(name, x, y, z)
        return {"success": True, "rawResult": f"Teleport queued for {name}"}

    def _command_teleport_player(self, params: list[str]) -> dict[str, Any]:
        if len(params) != 2:
            return {"success": False, "rawResult": "Usage: teleport <source> <target>"}
        names = []
        for key in params:
            record = self.context.directory.lookup(key)
            names.append(record.name if record else key)
        self.context.teleports.enqueue_to_player(names[0], names[1])
        return {"success": True, "rawResult": f"Teleport queued: {names[0]} -> {names[1]}"}
