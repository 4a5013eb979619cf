"""Periodic reachability check for the Palworld server."""

import asyncio
import logging

from .palworld import PalworldClient

logger = logging.getLogger(__name__)


class ServerMonitor:
    """Keeps a cached `online` flag for testReachability."""

    def __init__(self, client: PalworldClient, interval: float = 5.0):
        self.client = client
        self.interval = interval
        self.online = False
        self._running = False

    async def check(self) -> bool:
        was_online = self.online
        self.online = await self.client.is_reachable()
        if self.online != was_online:
            logger.info(f"Palworld server status changed: {'ONLINE' if self.online else 'OFFLINE'}")
        return self.online

    async def run(self) -> None:
        self._running = True
        logger.info(f"Started server monitoring (checking every {self.interval:g}s)")
        while self._running:
            try:
                await self.check()
            except Exception:
                logger.exception("Server check failed")
            await asyncio.sleep(self.interval)

    def stop(self) -> None:
        self._running = False
