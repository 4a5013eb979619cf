#!/usr/bin/env python3
"""Palworld Takaro Bridge CLI - headless bridge for a Palworld dedicated server.

Usage:
    palbridge
    palbridge --config /path/to/TakaroConfig.txt
    palbridge --identity-token xxx --palworld-password secret
    palbridge --check-tokens

Configuration is read from TakaroConfig.txt in the working directory, then
from environment variables; command-line flags win over both:
    IDENTITY_TOKEN       Takaro identity token (required)
    REGISTRATION_TOKEN   Takaro registration token (first connection only)
    PALWORLD_HOST        Palworld REST API host (default: 127.0.0.1)
    PALWORLD_PORT        Palworld REST API port (default: 8212)
    PALWORLD_USERNAME    REST API user (default: admin)
    PALWORLD_PASSWORD    REST API password (AdminPassword)
    RELAY_PORT           Port the TakaroChat Lua mod polls (default: 3001)
"""

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import replace
from datetime import datetime
from typing import Optional

from . import __version__
from .actions import ActionHandlers
from .channel import ControlChannelClient
from .config import BridgeSettings, get_config_path, load_config, load_config_file
from .context import BridgeContext
from .dispatcher import RequestDispatcher
from .exceptions import ConfigError
from .presence import PresenceReconciler
from .relay import create_relay_server

log = logging.getLogger("palbridge")


def setup_logging(log_file: Optional[str], verbose: bool = False) -> None:
    """Log to the console and, if set, to log_file."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )


def describe_token(name: str, value: str) -> str:
    """One-line diagnostic for a token without revealing it."""
    if not value:
        return f"{name}: not set"
    problems = []
    if value != value.strip():
        problems.append("leading/trailing whitespace")
    if value[0] in "\"'" or value[-1] in "\"'":
        problems.append("wrapped in quotes")
    masked = f"{value[:4]}...{value[-4:]}" if len(value) > 12 else "*" * len(value)
    status = ", ".join(problems) if problems else "ok"
    return f"{name}: {masked} ({len(value)} chars, {status})"


class BridgeCLI:
    """Headless bridge: control channel, relay and timers on one event loop."""

    def __init__(self, settings: BridgeSettings):
        self.settings = settings
        self.context = BridgeContext.from_settings(settings)

        self.dispatcher = RequestDispatcher(
            ActionHandlers(self.context).table(),
            send=self._send,
            metrics=self.context.metrics,
        )
        self.channel = ControlChannelClient(
            settings.takaro_url,
            identity_token=settings.identity_token,
            registration_token=settings.registration_token,
            on_request=self.dispatcher.dispatch,
            metrics=self.context.metrics,
            log_callback=self._log_channel,
        )
        self.context.channel = self.channel
        self.reconciler = PresenceReconciler(
            self.context.directory,
            fetch_players=self.context.palworld.players,
            emit=self.context.emit_event,
            interval=settings.presence_interval,
        )
        self.relay = create_relay_server(self.context, settings.relay_host, settings.relay_port)

        self._tasks: list[asyncio.Task] = []
        self._running = False
        self._start_time: Optional[datetime] = None

    async def _send(self, message: dict) -> bool:
        return await self.channel.send(message)

    def _log_channel(self, message: str, level: str) -> None:
        levels = {"error": logging.ERROR, "warn": logging.WARNING}
        log.log(levels.get(level, logging.INFO), message)

    async def run(self) -> int:
        """Run the bridge. Returns exit code."""
        self._start_time = datetime.now()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda: asyncio.create_task(self._shutdown()))
            except NotImplementedError:
                # Windows event loops have no signal handlers
                pass

        log.info("=" * 50)
        log.info(f"Palworld-Takaro Bridge v{__version__} starting...")
        log.info("=" * 50)
        log.info(f"Palworld REST API: {self.settings.palworld_base_url}")
        log.info(f"Relay for TakaroChat: http://{self.settings.relay_host}:{self.settings.relay_port}")

        try:
            relay_task = asyncio.create_task(self.relay.serve())
            self._tasks = [
                relay_task,
                asyncio.create_task(self.context.monitor.run()),
                asyncio.create_task(self.reconciler.run()),
                self.channel.connect(),
            ]

            self._running = True
            while self._running:
                await asyncio.sleep(1)
                if relay_task.done():
                    if self.relay.should_exit:
                        # uvicorn caught SIGINT/SIGTERM itself
                        log.info("Shutting down...")
                        return 0
                    log.error(f"Relay server stopped (is port {self.settings.relay_port} in use?)")
                    return 1
                self._log_stats()

            return 0

        except Exception as e:
            log.error(f"Fatal error: {e}")
            return 1
        finally:
            await self._cleanup()

    def _log_stats(self) -> None:
        """Log periodic stats (every 60 seconds)."""
        if not self._start_time:
            return

        elapsed = (datetime.now() - self._start_time).total_seconds()
        if int(elapsed) % 60 == 0 and int(elapsed) > 0:
            metrics = self.context.metrics
            log.info(
                f"Stats: {int(elapsed // 60)}m uptime | "
                f"{metrics.requests_received} requests | "
                f"{metrics.responses_sent} responses | "
                f"{metrics.errors} errors | "
                f"{len(self.context.directory)} known players"
            )

    async def _shutdown(self) -> None:
        """Graceful shutdown."""
        if not self._running:
            return

        log.info("Shutting down...")
        self._running = False

    async def _cleanup(self) -> None:
        """Stop timers, the relay and the control channel."""
        self.reconciler.stop()
        self.relay.should_exit = True
        await self.context.close()
        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        log.info("Goodbye!")


def build_settings(args: argparse.Namespace) -> BridgeSettings:
    """Resolve settings from config file/env, then apply CLI overrides."""
    settings = BridgeSettings.from_config(identity_token=args.identity_token)
    overrides = {
        "registration_token": args.registration_token,
        "palworld_host": args.palworld_host,
        "palworld_port": args.palworld_port,
        "palworld_password": args.palworld_password,
        "relay_port": args.relay_port,
    }
    return replace(settings, **{k: v for k, v in overrides.items() if v is not None})


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Palworld Takaro Bridge - connects a Palworld server to Takaro",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  palbridge                                 # uses ./TakaroConfig.txt
  palbridge --config C:\\bridge\\TakaroConfig.txt
  palbridge --relay-port 3002 -v
  palbridge --check-tokens                  # diagnose token problems
        """,
    )
    parser.add_argument("--config", help="Path to TakaroConfig.txt (default: ./TakaroConfig.txt)")
    parser.add_argument("--identity-token", help="Takaro identity token")
    parser.add_argument("--registration-token", help="Takaro registration token")
    parser.add_argument("--palworld-host", help="Palworld REST API host")
    parser.add_argument("--palworld-port", type=int, help="Palworld REST API port")
    parser.add_argument("--palworld-password", help="Palworld REST API password")
    parser.add_argument("--relay-port", type=int, help="Port for the TakaroChat Lua mod")
    parser.add_argument(
        "--check-tokens",
        action="store_true",
        help="Print a diagnostic of the configured tokens and exit",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    loaded = load_config_file(args.config)
    config = load_config()
    setup_logging(config["LOG_FILE"], verbose=args.verbose)

    if loaded:
        log.info(f"Loaded configuration from {get_config_path(args.config)}")
    else:
        log.warning(f"{get_config_path(args.config)} not found, using environment only")

    if args.check_tokens:
        print(describe_token("IDENTITY_TOKEN", args.identity_token or config["IDENTITY_TOKEN"]))
        print(describe_token("REGISTRATION_TOKEN", args.registration_token or config["REGISTRATION_TOKEN"]))
        sys.exit(0)

    try:
        settings = build_settings(args)
    except ConfigError as e:
        log.error(f"{e}. Set IDENTITY_TOKEN in TakaroConfig.txt or pass --identity-token")
        sys.exit(1)

    exit_code = asyncio.run(BridgeCLI(settings).run())
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
