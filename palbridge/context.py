"""Shared bridge state.

One BridgeContext is built at startup and handed to every component, so the
queues, player cache and connection handle have a single owner and tests can
build their own instance instead of patching module globals.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Optional, TYPE_CHECKING

from .config import BridgeSettings
from .monitor import ServerMonitor
from .palworld import PalworldClient
from .players import PlayerDirectory
from .queues import LocationQueue, TeleportQueue

if TYPE_CHECKING:
    from .channel import ControlChannelClient


@dataclass
class BridgeMetrics:
    """Counters reported by /health and the CLI stats line."""
    requests_received: int = 0
    responses_sent: int = 0
    errors: int = 0
    last_request_time: float = field(default_factory=time.time)
    start_time: float = field(default_factory=time.time)

    def record_request(self) -> None:
        self.requests_received += 1
        self.last_request_time = time.time()

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestsReceived": self.requests_received,
            "responsesSent": self.responses_sent,
            "errors": self.errors,
            "uptimeSeconds": int(time.time() - self.start_time),
        }


@dataclass
class BridgeContext:
    """Everything the handlers, relay and timers share."""
    palworld: PalworldClient
    settings: Optional[BridgeSettings] = None
    directory: PlayerDirectory = field(default_factory=PlayerDirectory)
    teleports: TeleportQueue = field(default_factory=TeleportQueue)
    locations: LocationQueue = field(default_factory=LocationQueue)
    metrics: BridgeMetrics = field(default_factory=BridgeMetrics)
    monitor: Optional[ServerMonitor] = None
    channel: Optional["ControlChannelClient"] = None

    @classmethod
    def from_settings(cls, settings: BridgeSettings) -> "BridgeContext":
        palworld = PalworldClient(
            settings.palworld_base_url,
            username=settings.palworld_username,
            password=settings.palworld_password,
        )
        return cls(
            palworld=palworld,
            settings=settings,
            locations=LocationQueue(timeout=settings.location_timeout),
            monitor=ServerMonitor(palworld, interval=settings.server_check_interval),
        )

    @property
    def channel_state(self) -> str:
        return self.channel.state.value if self.channel else "idle"

    async def emit_event(self, event_type: str, data: dict[str, Any]) -> bool:
        """Send a game event to Takaro. False when the channel is not ready."""
        if self.channel is None:
            return False
        return await self.channel.send_game_event(event_type, data)

    async def close(self) -> None:
        if self.monitor:
            self.monitor.stop()
        if self.channel:
            await self.channel.disconnect()
        await self.palworld.close()
