"""WebSocket control channel to Takaro.

This is the core of the bridge. It:
1. Maintains a single persistent WebSocket connection to Takaro
2. Identifies with the server's identity (and registration) token
3. Hands `request` messages to the dispatcher, each as its own task
4. Sends responses and game events back
5. Reconnects with jittered exponential backoff whenever the socket closes
"""

import asyncio
import json
import logging
import random
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import websockets
from rich.console import Console

from .context import BridgeMetrics
from .exceptions import ProtocolError, TransportError

logger = logging.getLogger(__name__)
console = Console()

BASE_RECONNECT_DELAY = 3.0
MAX_RECONNECT_DELAY = 60.0
JITTER_RATIO = 0.25

RequestHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class ChannelState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"


def backoff_delay(
    attempt: int,
    base_delay: float = BASE_RECONNECT_DELAY,
    max_delay: float = MAX_RECONNECT_DELAY,
) -> float:
    """Reconnect delay before jitter: min(max_delay, base_delay * 2^(attempt-1))."""
    attempt = max(attempt, 1)
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


class ControlChannelClient:
    """
    Owns the WebSocket connection to Takaro.

    State moves IDLE -> CONNECTING on each attempt and CONNECTING -> READY
    once Takaro accepts the identify message. Any close drops back to IDLE
    and schedules the next attempt.
    """

    def __init__(
        self,
        url: str,
        identity_token: str,
        registration_token: str = "",
        on_request: Optional[RequestHandler] = None,
        metrics: Optional[BridgeMetrics] = None,
        base_delay: float = BASE_RECONNECT_DELAY,
        max_delay: float = MAX_RECONNECT_DELAY,
        log_callback: Callable[[str, str], None] | None = None,
    ):
        self.url = url
        self.identity_token = identity_token
        self.registration_token = registration_token
        self.on_request = on_request
        self.metrics = metrics or BridgeMetrics()
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.log_callback = log_callback

        self.ws: Any = None
        self.state = ChannelState.IDLE
        self.reconnect_attempts = 0
        self._running = False
        self._task: asyncio.Task | None = None
        self._request_tasks: set[asyncio.Task] = set()

    def _log(self, message: str, level: str = "info"):
        """Log a message through callback or fallback to console."""
        if self.log_callback:
            self.log_callback(message, level)
        else:
            color_map = {
                "info": "cyan",
                "success": "green",
                "error": "red",
                "warn": "yellow",
            }
            color = color_map.get(level, "white")
            console.print(f"[{color}]{message}[/{color}]")

    @property
    def ready(self) -> bool:
        return self.state is ChannelState.READY

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    def connect(self) -> asyncio.Task:
        """Start the connection loop. No-op if it is already running."""
        if self._task and not self._task.done():
            return self._task
        self._task = asyncio.create_task(self.run())
        return self._task

    async def run(self):
        """Connect and keep reconnecting until disconnect() is called."""
        self._running = True
        while self._running:
            await self._connect_once()
            if not self._running:
                break
            delay = self._schedule_reconnect()
            await asyncio.sleep(delay)

    async def _connect_once(self):
        """Single connection attempt; returns when the socket closes."""
        self.state = ChannelState.CONNECTING
        self._log(f"Connecting to Takaro at {self.url} (attempt {self.reconnect_attempts + 1})", "warn")

        try:
            async with websockets.connect(self.url, ping_interval=30, ping_timeout=10) as ws:
                self._on_open(ws)
                if not await self._send_identify():
                    raise TransportError("Could not send identify message")
                async for raw in ws:
                    await self.handle_raw(raw)
                self._log("Disconnected from Takaro", "warn")
        except asyncio.CancelledError:
            raise
        except TransportError as e:
            self._log(str(e), "error")
        except websockets.exceptions.InvalidStatus as e:
            # Server rejected the upgrade (e.g., 401, 502)
            logger.error("WebSocket connection rejected: HTTP %s", e.response.status_code)
            self._log(f"Takaro rejected connection: HTTP {e.response.status_code}", "error")
        except websockets.exceptions.InvalidURI as e:
            self._log(f"Invalid Takaro URL: {e}", "error")
        except websockets.exceptions.ConnectionClosed as e:
            self._log(f"Connection to Takaro closed: {e}", "warn")
        except websockets.exceptions.WebSocketException as e:
            self._log(f"Takaro WebSocket error: {e}", "error")
        except (OSError, asyncio.TimeoutError) as e:
            self._log(f"Network error: {str(e) or type(e).__name__}", "error")
        except Exception as e:
            logger.exception("Unexpected control channel error")
            self._log(f"{type(e).__name__}: {e}", "error")
        finally:
            self._on_close()

    def _on_open(self, ws: Any) -> None:
        self.ws = ws
        self.reconnect_attempts = 0
        self._log("Connected to Takaro WebSocket", "success")

    def _on_close(self) -> None:
        if self.state is not ChannelState.IDLE:
            self.state = ChannelState.IDLE
        self.ws = None

    def _schedule_reconnect(self) -> float:
        """Count the attempt and return the jittered delay before it."""
        self.reconnect_attempts += 1
        delay = backoff_delay(self.reconnect_attempts, self.base_delay, self.max_delay)
        delay += random.uniform(0, JITTER_RATIO * delay)
        self._log(f"Scheduling reconnect attempt {self.reconnect_attempts} in {round(delay)}s", "warn")
        return delay

    async def disconnect(self):
        """Stop reconnecting and close the connection."""
        self._running = False
        ws = self.ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing Takaro socket: {e}")
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._on_close()
        self._log("Disconnected from Takaro", "warn")

    # =========================================================================
    # Inbound messages
    # =========================================================================

    async def handle_raw(self, raw: Any) -> None:
        """Parse one frame and handle it. Malformed frames are logged and dropped."""
        try:
            try:
                message = json.loads(raw)
            except (json.JSONDecodeError, TypeError, UnicodeDecodeError) as e:
                raise ProtocolError(f"Failed to parse Takaro message: {e}") from e
            if not isinstance(message, dict):
                raise ProtocolError(f"Unexpected Takaro frame: {type(message).__name__}")
        except ProtocolError as e:
            self.metrics.errors += 1
            logger.error(str(e))
            return

        await self.handle_message(message)

    async def handle_message(self, message: dict[str, Any]) -> None:
        msg_type = message.get("type")
        logger.debug(f"Received from Takaro: {msg_type}")

        if msg_type == "identifyResponse":
            self._handle_identify_response(message)

        elif msg_type == "connected":
            self._log("Takaro confirmed connection", "info")

        elif msg_type == "request":
            self._start_request(message)

        elif msg_type == "ping":
            await self._write({"type": "pong"})

        elif msg_type == "error":
            self._log(f"Takaro error: {json.dumps(message.get('payload', message))}", "error")

        else:
            logger.warning(f"Unknown message type from Takaro: {msg_type}")

    def _handle_identify_response(self, message: dict[str, Any]) -> None:
        payload = message.get("payload") or {}
        error = payload.get("error") if isinstance(payload, dict) else None
        if error:
            self._log(f"Identification failed: {error}", "error")
            return
        self.state = ChannelState.READY
        self._log("Successfully identified with Takaro", "success")

    def _start_request(self, message: dict[str, Any]) -> None:
        """Run the request as its own task so slow handlers don't block the socket."""
        if self.on_request is None:
            logger.error(f"No request handler; dropping request {message.get('requestId')}")
            return
        task = asyncio.create_task(self._run_request(message))
        self._request_tasks.add(task)
        task.add_done_callback(self._request_tasks.discard)

    async def _run_request(self, message: dict[str, Any]) -> None:
        try:
            await self.on_request(message)
        except Exception:
            self.metrics.errors += 1
            logger.exception(f"Request {message.get('requestId')} failed")

    # =========================================================================
    # Outbound messages
    # =========================================================================

    async def _send_identify(self) -> bool:
        payload = {"identityToken": self.identity_token}
        if self.registration_token:
            payload["registrationToken"] = self.registration_token
        self._log("Sending identify message to Takaro", "info")
        return await self._write({"type": "identify", "payload": payload})

    async def send(self, message: dict[str, Any]) -> bool:
        """Send a message once identified. Never raises.

        Returns:
            False if the channel is not READY or the write failed.
        """
        if self.state is not ChannelState.READY or self.ws is None:
            logger.error(f"Cannot send {message.get('type')} to Takaro - not connected")
            return False

        sent = await self._write(message)
        if sent and message.get("type") == "response":
            self.metrics.responses_sent += 1
        return sent

    async def send_game_event(self, event_type: str, data: dict[str, Any]) -> bool:
        return await self.send({
            "type": "gameEvent",
            "payload": {"type": event_type, "data": data},
        })

    async def _write(self, data: dict[str, Any], timeout: float = 5.0) -> bool:
        """Write a frame with a timeout so a blocked socket can't stall handlers."""
        ws = self.ws
        if ws is None:
            return False
        try:
            await asyncio.wait_for(ws.send(json.dumps(data)), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            self.metrics.errors += 1
            logger.error(f"WebSocket send timed out after {timeout}s")
        except Exception as e:
            self.metrics.errors += 1
            logger.error(f"Failed to send message to Takaro: {e}")
        return False
