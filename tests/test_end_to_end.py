"""End-to-end tests: offline clients syncing against an in-process server."""

import asyncio
from contextlib import asynccontextmanager

import pytest

from possync.config import CacheConfig, Config, QueueConfig, RemoteConfig

# Only run tests if fastapi is installed
pytest.importorskip("fastapi")


import httpx
from possync.client import OfflineClient
from possync.models import ConflictType, Entity, SyncOperation
from possync.server import Store, create_app


@pytest.fixture
def store():
    """Create an in-memory server store."""
    s = Store(":memory:")
    s.connect()
    yield s
    s.close()


@pytest.fixture
def app(store):
    return create_app(Config(), store=store)


@pytest.fixture
def make_client(app):
    """Factory for clients talking to the app in-process."""

    def factory(online: bool = True, client_id: str = "") -> OfflineClient:
        config = Config(
            remote=RemoteConfig(url="http://possync.test"),
            queue=QueueConfig(db_path=":memory:"),
            cache=CacheConfig(db_path=":memory:"),
        )
        config.client.client_id = client_id
        return OfflineClient(
            config,
            http_transport=httpx.ASGITransport(app=app),
            initially_online=online,
        )

    return factory


@asynccontextmanager
async def running(*clients: OfflineClient):
    try:
        yield clients
    finally:
        for client in clients:
            await client.stop()


class TestOfflineFirst:
    """Tests for queueing offline and draining later."""

    @pytest.mark.asyncio
    async def test_offline_create_then_drain(self, make_client, store):
        """Test an offline create reaches the server once back online."""
        client = make_client(online=False)
        async with running(client):
            response = await client.gateway.post("products", {"name": "Cola", "price": 2.5})

            assert response.status == 202
            assert client.get_queue_size() == 1
            pending = client.get_cached_collection("products")
            assert pending[0]["pending"] is True
            assert store.repository(Entity.PRODUCT).find_many() == []

            client.connectivity.set_online(True)
            report = await client.drain_now()

            assert report.drained == [response.request_id]
            assert client.get_queue_size() == 0

            server_records = store.repository(Entity.PRODUCT).find_many()
            assert len(server_records) == 1
            cached = client.get_cached_collection(Entity.PRODUCT)
            assert [r["id"] for r in cached] == [server_records[0].id]
            assert cached[0]["version"] == 1

    @pytest.mark.asyncio
    async def test_fifo_order_preserved(self, make_client, store):
        """Test queued operations are applied in enqueue order."""
        client = make_client(online=False)
        async with running(client):
            await client.gateway.post("products", {"name": "Cola", "price": 2.5, "stock": 10})
            await asyncio.sleep(0.01)
            await client.gateway.post("shifts", {"openingCash": 100})

            client.connectivity.set_online(True)
            await client.drain_now()

            products = store.repository(Entity.PRODUCT).find_many()
            shifts = store.repository(Entity.SHIFT).find_many()
            assert products[0].created_at <= shifts[0].created_at

    @pytest.mark.asyncio
    async def test_offline_sku_only_product(self, make_client, store):
        """Test a product created offline from a SKU ends up cached under its server id."""
        client = make_client(online=False)
        async with running(client):
            await client.enqueue("create", "product", {"sku": "X1"})
            assert client.get_queue_size() == 1

            client.connectivity.set_online(True)
            report = await client.drain_now()

            assert report.conflicts == []
            assert report.rejected == []
            assert client.get_queue_size() == 0
            server_records = store.repository(Entity.PRODUCT).find_many()
            cached = client.get_cached_collection("products")
            assert [r["id"] for r in cached] == [server_records[0].id]
            assert cached[0]["sku"] == "X1"
            assert not cached[0]["id"].startswith("pending:")

    @pytest.mark.asyncio
    async def test_offline_table_session_drains(self, make_client, store):
        """Test a session started and paused offline syncs without conflicts."""
        client = make_client()
        async with running(client):
            created = await client.gateway.post("tables", {"tableNumber": 4})
            table_id = created.data["id"]

            client.connectivity.force_offline()
            await asyncio.sleep(0.01)
            await client.gateway.post(f"tables/{table_id}/start")
            await asyncio.sleep(0.01)
            await client.gateway.post(f"tables/{table_id}/pause")
            assert client.get_queue_size() == 2

            client.connectivity.force_offline(False)
            report = await client.drain_now()

            assert report.conflicts == []
            assert len(report.drained) == 2
            assert client.get_queue_size() == 0
            table = store.repository(Entity.TABLE).find_by_id(table_id)
            assert table.data["status"] == "PAUSED"
            assert client.get_cached_collection("tables")[0]["status"] == "PAUSED"

    @pytest.mark.asyncio
    async def test_online_enqueue_drains_immediately(self, make_client, store):
        """Test enqueue while online drains right away."""
        client = make_client()
        async with running(client):
            response = await client.enqueue("create", "games", {"name": "Pool"})

            assert response.queued is True
            assert client.get_queue_size() == 0
            assert len(store.repository(Entity.GAME).find_many()) == 1

    @pytest.mark.asyncio
    async def test_lost_response_is_not_duplicated(self, make_client, store):
        """Test replaying an op the server already applied creates nothing new."""
        client = make_client()
        async with running(client):
            op_id = client.queue.enqueue("create", "sales", {"total": 12, "paymentMethod": "CASH"})
            operation = SyncOperation.from_queued(client.queue.get(op_id), client.client_id)

            # The push lands but the client never sees the answer
            await client.transport.push(client.client_id, [operation])
            report = await client.drain_now()

            assert report.drained == [op_id]
            assert len(store.repository(Entity.SALE).find_many()) == 1


class TestOnlineGateway:
    """Tests for direct online calls through the gateway."""

    @pytest.mark.asyncio
    async def test_online_create_and_read(self, make_client):
        """Test an online create is visible to a following read."""
        client = make_client()
        async with running(client):
            created = await client.gateway.post("games", {"name": "Pool", "defaultRate": 10})
            listed = await client.gateway.get("games")
            single = await client.gateway.get(f"games/{created.data['id']}")

            assert created.status == 201
            assert listed.from_cache is False
            assert listed.data[0]["name"] == "Pool"
            assert listed.data[0]["rate_type"] == "PER_HOUR"
            assert single.data["id"] == created.data["id"]

    @pytest.mark.asyncio
    async def test_offline_read_serves_cache(self, make_client):
        """Test reads keep working after connectivity drops."""
        client = make_client()
        async with running(client):
            await client.gateway.post("games", {"name": "Pool"})
            await client.gateway.get("games")

            client.connectivity.force_offline()
            response = await client.gateway.get("games")

            assert response.from_cache is True
            assert response.data[0]["name"] == "Pool"


class TestMultipleClients:
    """Tests for two terminals sharing one server."""

    @pytest.mark.asyncio
    async def test_stale_transition_is_a_conflict(self, make_client):
        """Test a queued transition that no longer applies comes back as a conflict."""
        till = make_client(client_id="till")
        tablet = make_client(online=False, client_id="tablet")
        async with running(till, tablet):
            created = await till.gateway.post("tables", {"tableNumber": 3})
            table_id = created.data["id"]
            await asyncio.sleep(0.01)

            queued = await tablet.gateway.post(f"tables/{table_id}/pause")
            assert queued.queued is True

            tablet.connectivity.set_online(True)
            report = await tablet.drain_now()

            assert report.conflicts[0].conflict_type == ConflictType.STATE
            assert report.conflicts[0].op_id == queued.request_id
            assert tablet.get_queue_size() == 0
            cached = tablet.get_cached_collection("tables")
            assert cached[0]["status"] == "AVAILABLE"

    @pytest.mark.asyncio
    async def test_pull_brings_other_clients_changes(self, make_client):
        """Test a pull picks up records written by another client."""
        till = make_client(client_id="till")
        tablet = make_client(client_id="tablet")
        async with running(till, tablet):
            await till.gateway.post("expenses", {"category": "Supplies", "amount": 20, "description": "Chalk"})

            count = await tablet.pull()

            assert count == 1
            expenses = tablet.get_cached_collection("expenses")
            assert expenses[0]["description"] == "Chalk"
            assert expenses[0]["last_modified_by"] == "till"
            assert tablet.get_status()["last_sync_time"] is not None


class TestClientStatus:
    """Tests for client identity and status reporting."""

    @pytest.mark.asyncio
    async def test_generated_client_id_is_persisted(self, make_client):
        """Test a missing client id is generated and stored."""
        client = make_client()
        async with running(client):
            assert client.client_id.startswith("client_")
            assert client.cache.get_meta("client_id") == client.client_id

    @pytest.mark.asyncio
    async def test_status_listener(self, make_client):
        """Test subscribers get a fresh status on state changes."""
        client = make_client()
        statuses = []
        client.subscribe(statuses.append)
        async with running(client):
            client.connectivity.force_offline()

            assert statuses[-1]["online"] is False
            assert statuses[-1]["forced_offline"] is True
            assert statuses[-1]["client_id"] == client.client_id

    @pytest.mark.asyncio
    async def test_start_and_stop(self, make_client):
        """Test the background loop starts online and stops cleanly."""
        client = make_client()
        await client.start()
        try:
            assert client.connectivity.is_online is True
            assert client.orchestrator.is_running is True
        finally:
            await client.stop()

        assert client.orchestrator.is_running is False
