"""HTTP transport between a POS client and the sync server.

Every call is a single attempt. Failures are classified so callers can
tell "could not reach the server" (``NetworkError``) apart from "the
server said no" (``RemoteError``); retrying is the orchestrator's job.
"""

import logging
from datetime import datetime
from typing import Any

import httpx

from ..clock import to_iso
from ..errors import AuthenticationError, NetworkError, RemoteError
from ..models import Entity, PullResult, PushResult, SyncOperation

logger = logging.getLogger(__name__)


class SyncTransport:
    """Async client for the push, pull and collection endpoints."""

    def __init__(
        self,
        base_url: str,
        api_token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the transport.

        Args:
            base_url: Base URL of the sync server (e.g. "http://pos-server:8000").
            api_token: Bearer token sent with every request.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (mock or ASGI in tests).
        """
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"User-Agent": "possync-client/0.1"}
            if self.api_token:
                headers["Authorization"] = f"Bearer {self.api_token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        path: str,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make a single HTTP request and decode the JSON response.

        Args:
            method: HTTP method (GET, POST).
            path: URL path appended to the base URL.
            json_data: Optional JSON body.
            params: Optional query parameters.

        Returns:
            Decoded JSON body.

        Raises:
            NetworkError: The server could not be reached.
            AuthenticationError: The server answered 401 or 403.
            RemoteError: The server answered with any other error status.
        """
        client = self._get_client()

        try:
            response = await client.request(method, path, json=json_data, params=params)
        except httpx.ConnectError as e:
            logger.warning(f"Connection failed: {method} {path}: {e}")
            raise NetworkError(f"Connection failed: {e}") from e
        except httpx.TimeoutException as e:
            logger.warning(f"Request timeout: {method} {path}")
            raise NetworkError(f"Request timeout: {e}") from e
        except httpx.TransportError as e:
            logger.warning(f"Transport error: {method} {path}: {e}")
            raise NetworkError(f"Transport error: {e}") from e

        if response.status_code >= 400:
            try:
                body = response.json()
                detail = body.get("detail", body) if isinstance(body, dict) else body
            except ValueError:
                detail = response.text
            if response.status_code in (401, 403):
                logger.error("Authentication failed - check the API token")
                raise AuthenticationError(response.status_code, detail)
            raise RemoteError(response.status_code, detail)

        return response.json()

    async def push(
        self, client_id: str, operations: list[SyncOperation]
    ) -> PushResult:
        """Submit operations to ``POST /sync/push``."""
        payload = {
            "clientId": client_id,
            "operations": [op.to_dict() for op in operations],
        }
        data = await self.request("POST", "/sync/push", payload)
        return PushResult.from_dict(data)

    async def pull(self, since: datetime | None = None, limit: int = 1000) -> PullResult:
        """Fetch changes from ``GET /sync/pull``."""
        params: dict[str, Any] = {"limit": limit}
        if since is not None:
            params["since"] = to_iso(since)
        data = await self.request("GET", "/sync/pull", params=params)
        return PullResult.from_dict(data)

    async def fetch_collection(self, entity: Entity) -> list[dict[str, Any]]:
        """Fetch the server's current collection for an entity."""
        data = await self.request("GET", f"/api/collections/{entity.collection}")
        return list(data.get("records", []))

    async def check_health(self) -> bool:
        """Check if the server is reachable."""
        try:
            await self.request("GET", "/api/health")
            return True
        except (NetworkError, RemoteError):
            return False
