"""Local HTTP relay for the TakaroChat Lua mod.

The mod cannot receive connections, so it polls these endpoints once per
tick (config.BridgeURL, http://localhost:3001/chat by default):

    GET  /teleport-queue      pop-all teleports        {"items": [...]}
    GET  /location-queue      pending location lookups {"requests": [...]}
    POST /location-response   answer one lookup
    POST /chat, POST /        chat, death and inventory reports
    GET  /health              bridge status

The relay runs on the same event loop as the control channel, so a handler
waiting on a location lookup never blocks the poll that answers it.
"""

import logging
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .context import BridgeContext

logger = logging.getLogger(__name__)

CHAT_CATEGORIES = {1: "Say", 2: "Guild", 3: "Global"}

# Palworld chat category -> Takaro chat channel
TAKARO_CHANNELS = {"say": "local", "guild": "team", "global": "global"}


class LocationResponseBody(BaseModel):
    """Body the Lua mod posts to /location-response."""
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(alias="requestId", min_length=1)
    x: float
    y: float
    z: float
    player_name: str = Field(default="", alias="playerName")
    timestamp: Optional[str] = None


class IngestBody(BaseModel):
    """Event the Lua mod posts to /chat (chat.lua, events.lua, inventory.lua)."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str
    player_name: str = Field(default="", alias="playerName")
    message: str = ""
    category: int = 3
    category_name: str = Field(default="", alias="categoryName")
    inventory: list[dict[str, Any]] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[str] = None


def create_relay_app(context: BridgeContext) -> FastAPI:
    """Build the relay app bound to one BridgeContext."""
    app = FastAPI(title="Palworld Takaro Bridge", version=__version__)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": __version__,
            "takaro": context.channel_state,
            "palworldOnline": context.monitor.online if context.monitor else None,
            "players": len(context.directory),
            "pendingLocations": len(context.locations.pending()),
            "queuedTeleports": len(context.teleports),
            "metrics": context.metrics.to_dict(),
        }

    @app.get("/teleport-queue")
    async def teleport_queue():
        return {"items": context.teleports.pop_all()}

    @app.get("/location-queue")
    async def location_queue():
        return {"requests": context.locations.pending()}

    @app.post("/location-response")
    async def location_response(body: LocationResponseBody):
        accepted = context.locations.post_response(
            body.request_id,
            {"x": body.x, "y": body.y, "z": body.z},
        )
        if not accepted:
            return JSONResponse(
                status_code=404,
                content={"success": False, "error": f"No pending request {body.request_id}"},
            )
        logger.debug(f"Location for {body.player_name or body.request_id}: ({body.x:.1f}, {body.y:.1f}, {body.z:.1f})")
        return {"success": True}

    async def ingest(body: IngestBody):
        return await handle_ingest(context, body)

    app.post("/chat")(ingest)
    app.post("/")(ingest)

    return app


async def handle_ingest(context: BridgeContext, body: IngestBody) -> dict[str, Any]:
    """Route one Lua report to the directory or straight to Takaro."""
    record = context.directory.lookup(body.player_name)

    if body.type == "inventory":
        stored = context.directory.set_inventory(body.player_name, body.inventory)
        return {"success": stored}

    if body.type in ("player_connect", "player_disconnect"):
        # Presence events come from the reconciler; hooks only refresh logs
        logger.debug(f"Lua reported {body.type} for {body.player_name}")
        return {"success": True}

    if record is None:
        logger.warning(f"Dropping {body.type} from unknown player {body.player_name!r}")
        return {"success": False, "error": "Unknown player"}

    if body.type == "chat":
        category = (body.category_name or CHAT_CATEGORIES.get(body.category, "Global")).lower()
        sent = await context.emit_event("chat-message", {
            "player": record.to_takaro(),
            "msg": body.message,
            "channel": TAKARO_CHANNELS.get(category, "global"),
        })
        return {"success": sent}

    if body.type == "player_death":
        sent = await context.emit_event("player-death", {"player": record.to_takaro()})
        return {"success": sent}

    logger.warning(f"Unknown ingest type: {body.type}")
    return {"success": False, "error": f"Unknown type: {body.type}"}


def create_relay_server(context: BridgeContext, host: str = "127.0.0.1", port: int = 3001) -> uvicorn.Server:
    """Create a uvicorn server for the relay that runs on the caller's loop."""
    config = uvicorn.Config(
        app=create_relay_app(context),
        host=host,
        port=port,
        log_level="warning",
        access_log=False,
    )
    return uvicorn.Server(config)
