"""Tests for the HTTP sync transport."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from possync.client import SyncTransport
from possync.errors import AuthenticationError, NetworkError, RemoteError
from possync.models import Entity, SyncAction, SyncOperation


def make_transport(handler, api_token: str | None = "secret") -> SyncTransport:
    return SyncTransport(
        "http://pos-server:8000/",
        api_token=api_token,
        transport=httpx.MockTransport(handler),
    )


class TestSyncTransportRequest:
    """Tests for request classification."""

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self):
        """Test the API token is sent as a bearer header."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"status": "ok"})

        transport = make_transport(handler)
        try:
            assert await transport.request("GET", "/api/health") == {"status": "ok"}
        finally:
            await transport.aclose()

        assert seen["auth"] == "Bearer secret"
        assert seen["url"] == "http://pos-server:8000/api/health"

    @pytest.mark.asyncio
    async def test_no_token_no_header(self):
        """Test no Authorization header is sent without a token."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={})

        transport = make_transport(handler, api_token=None)
        await transport.request("GET", "/api/health")
        await transport.aclose()

        assert seen["auth"] is None

    @pytest.mark.asyncio
    async def test_connect_error_is_network_error(self):
        """Test an unreachable server raises NetworkError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        transport = make_transport(handler)
        with pytest.raises(NetworkError):
            await transport.request("GET", "/api/health")
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_timeout_is_network_error(self):
        """Test a timeout raises NetworkError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        transport = make_transport(handler)
        with pytest.raises(NetworkError):
            await transport.request("GET", "/api/health")
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_server_error_is_remote_error(self):
        """Test a 5xx answer raises RemoteError with its detail."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"detail": "database locked"})

        transport = make_transport(handler)
        with pytest.raises(RemoteError) as exc_info:
            await transport.request("POST", "/sync/push", {})
        await transport.aclose()

        assert exc_info.value.status_code == 500
        assert exc_info.value.detail == "database locked"
        assert not isinstance(exc_info.value, NetworkError)

    @pytest.mark.asyncio
    async def test_unauthorized_is_authentication_error(self):
        """Test a 401 answer raises AuthenticationError."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"detail": "Invalid API token"})

        transport = make_transport(handler)
        with pytest.raises(AuthenticationError):
            await transport.request("GET", "/sync/pull")
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        """Test a plain-text error body is kept as the detail."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="Bad Gateway")

        transport = make_transport(handler)
        with pytest.raises(RemoteError) as exc_info:
            await transport.request("GET", "/sync/pull")
        await transport.aclose()

        assert exc_info.value.detail == "Bad Gateway"


class TestSyncTransportEndpoints:
    """Tests for the typed endpoint wrappers."""

    @pytest.mark.asyncio
    async def test_push(self):
        """Test push sends camelCase operations and parses the result."""
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "processed": 1,
                    "createdServerIds": {"op-1": "srv-1"},
                    "conflicts": [],
                    "errors": [],
                },
            )

        operation = SyncOperation(
            op_id="op-1",
            entity=Entity.PRODUCT,
            action=SyncAction.CREATE,
            payload={"name": "Cola"},
            client_updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            client_id="client_1",
        )

        transport = make_transport(handler)
        result = await transport.push("client_1", [operation])
        await transport.aclose()

        assert captured["body"]["clientId"] == "client_1"
        wire_op = captured["body"]["operations"][0]
        assert wire_op["opId"] == "op-1"
        assert wire_op["entity"] == "product"
        assert wire_op["clientUpdatedAt"].startswith("2024-01-01T00:00:00")
        assert result.processed == 1
        assert result.created_server_ids == {"op-1": "srv-1"}

    @pytest.mark.asyncio
    async def test_pull(self):
        """Test pull passes since and limit and parses changes."""
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["params"] = dict(request.url.params)
            return httpx.Response(
                200,
                json={
                    "changes": [
                        {
                            "entity": "product",
                            "id": "p1",
                            "action": "update",
                            "data": {"id": "p1", "price": 2},
                            "updatedAt": "2024-01-01T10:00:00.000000+00:00",
                            "deleted": False,
                        }
                    ],
                    "lastSyncTime": "2024-01-01T10:00:00.000000+00:00",
                    "hasMore": True,
                },
            )

        transport = make_transport(handler)
        result = await transport.pull(
            since=datetime(2024, 1, 1, tzinfo=timezone.utc), limit=1
        )
        await transport.aclose()

        assert captured["params"]["limit"] == "1"
        assert captured["params"]["since"].startswith("2024-01-01T00:00:00")
        assert result.has_more is True
        assert result.changes[0].entity == Entity.PRODUCT
        assert result.changes[0].data == {"id": "p1", "price": 2}

    @pytest.mark.asyncio
    async def test_fetch_collection(self):
        """Test fetching a collection uses its plural path."""
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["path"] = request.url.path
            return httpx.Response(
                200, json={"collection": "inventory", "count": 1, "records": [{"id": "m1"}]}
            )

        transport = make_transport(handler)
        records = await transport.fetch_collection(Entity.INVENTORY_MOVEMENT)
        await transport.aclose()

        assert captured["path"] == "/api/collections/inventory"
        assert records == [{"id": "m1"}]

    @pytest.mark.asyncio
    async def test_check_health_false_when_unreachable(self):
        """Test check_health reports False instead of raising."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        transport = make_transport(handler)
        assert await transport.check_health() is False
        await transport.aclose()
