"""Client for the Palworld dedicated server REST API.

Wraps the admin endpoints under /v1/api (basic auth, JSON bodies) used by
the action handlers, the presence reconciler and the server monitor.
"""

import logging
from typing import Any, Optional

import httpx

from .exceptions import PalworldAPIError

logger = logging.getLogger(__name__)

API_PREFIX = "/v1/api"

# Older server builds and some reverse proxies expose players elsewhere
PLAYER_ENDPOINTS = ["/v1/api/players", "/api/players", "/players"]


class PalworldClient:
    """
    Async client for the Palworld REST API.

    Every method raises PalworldAPIError on HTTP or network failure, so
    action handlers can report the message back to Takaro.
    """

    def __init__(
        self,
        base_url: str,
        username: str = "admin",
        password: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("Palworld base URL is required")
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=httpx.BasicAuth(username, password),
            headers={"Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client. Call on shutdown."""
        await self.client.aclose()

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Any:
        try:
            response = await self.client.request(method, path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            body = e.response.text[:200]
            raise PalworldAPIError(
                f"HTTP {e.response.status_code} from {path}: {body}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise PalworldAPIError(f"{method} {path} failed: {str(e) or type(e).__name__}") from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    # =========================================================================
    # Queries
    # =========================================================================

    async def info(self) -> dict[str, Any]:
        """GET /info: server name, version and description."""
        return await self._request("GET", f"{API_PREFIX}/info") or {}

    async def players(self) -> list[dict[str, Any]]:
        """Full snapshot of online players.

        Tries each known players endpoint in turn, moving on only on 404.
        """
        last_error: PalworldAPIError | None = None
        for endpoint in PLAYER_ENDPOINTS:
            try:
                data = await self._request("GET", endpoint)
            except PalworldAPIError as e:
                if e.status_code == 404:
                    last_error = e
                    continue
                raise
            if isinstance(data, dict):
                return list(data.get("players") or [])
            return []
        raise last_error or PalworldAPIError("No players endpoint available")

    async def is_reachable(self) -> bool:
        try:
            await self.info()
            return True
        except PalworldAPIError as e:
            logger.debug(f"Palworld server unreachable: {e}")
            return False

    # =========================================================================
    # Admin actions
    # =========================================================================

    async def announce(self, message: str) -> None:
        await self._request("POST", f"{API_PREFIX}/announce", {"message": message})

    async def kick(self, user_id: str, message: str = "You have been kicked from the server") -> None:
        await self._request("POST", f"{API_PREFIX}/kick", {"userid": user_id, "message": message})

    async def ban(self, user_id: str, message: str = "You have been banned from the server") -> None:
        await self._request("POST", f"{API_PREFIX}/ban", {"userid": user_id, "message": message})

    async def unban(self, user_id: str) -> None:
        await self._request("POST", f"{API_PREFIX}/unban", {"userid": user_id})

    async def save(self) -> None:
        await self._request("POST", f"{API_PREFIX}/save")

    async def shutdown(self, wait_seconds: int = 10, message: str = "Server shutting down") -> None:
        await self._request(
            "POST", f"{API_PREFIX}/shutdown", {"waittime": wait_seconds, "message": message}
        )
