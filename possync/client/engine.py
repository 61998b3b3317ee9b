"""Offline client: the facade POS screens talk to.

Wires the queue, cache, transport, connectivity monitor, gateway and
orchestrator together from one ``Config`` and owns their lifecycle.
"""

import logging
import uuid
from collections.abc import Callable
from typing import Any

import httpx

from ..clock import to_iso
from ..config import Config
from ..models import DrainReport, Entity, SyncAction
from .cache import LocalCache
from .connectivity import ConnectivityMonitor
from .gateway import ApiGateway, GatewayResponse
from .orchestrator import SyncOrchestrator
from .queue import OperationQueue
from .transport import SyncTransport

logger = logging.getLogger(__name__)

CLIENT_ID_KEY = "client_id"

StatusListener = Callable[[dict[str, Any]], None]


class OfflineClient:
    """Offline-first client for one POS terminal."""

    def __init__(
        self,
        config: Config,
        http_transport: httpx.AsyncBaseTransport | None = None,
        initially_online: bool = True,
    ):
        """Initialize the client.

        Args:
            config: Loaded configuration.
            http_transport: Optional httpx transport (mock or ASGI in tests).
            initially_online: Connectivity assumed before the first probe.
        """
        self.config = config
        self.queue = OperationQueue(config.queue.db_path)
        self.cache = LocalCache(config.cache.db_path)
        self.transport = SyncTransport(
            config.remote.url,
            api_token=config.remote.api_token,
            timeout=config.remote.timeout_seconds,
            transport=http_transport,
        )
        self.connectivity = ConnectivityMonitor(
            self.transport,
            interval_seconds=config.sync.connectivity_check_interval_seconds,
            initially_online=initially_online,
        )
        self.client_id = self._resolve_client_id()

        self.gateway = ApiGateway(
            self.transport, self.queue, self.cache, self.connectivity, self.client_id
        )
        self.orchestrator = SyncOrchestrator(
            self.queue,
            self.cache,
            self.transport,
            self.connectivity,
            self.client_id,
            max_retries=config.queue.max_retries,
            pull_limit=config.sync.pull_limit,
        )

    def _resolve_client_id(self) -> str:
        if self.config.client.client_id:
            return self.config.client.client_id

        client_id = self.cache.get_meta(CLIENT_ID_KEY)
        if not client_id:
            client_id = f"client_{uuid.uuid4().hex[:12]}"
            self.cache.set_meta(CLIENT_ID_KEY, client_id)
            logger.info(f"Generated client id {client_id}")
        return client_id

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Probe connectivity and start background drains and probes."""
        online = await self.connectivity.check()
        logger.info(
            f"Client {self.client_id} starting "
            f"({'online' if online else 'offline'}, {self.queue.size()} queued)"
        )

        await self.connectivity.start()
        await self.orchestrator.start_periodic(
            self.config.sync.drain_interval_seconds,
            pull=self.config.sync.pull_enabled,
        )

    async def stop(self) -> None:
        """Stop background work and release resources."""
        await self.orchestrator.stop()
        await self.connectivity.stop()
        await self.transport.aclose()
        self.queue.close()
        self.cache.close()

    # ==================== Presentation interface ====================

    async def enqueue(
        self,
        method: SyncAction | str,
        resource: str,
        payload: dict[str, Any] | None = None,
    ) -> GatewayResponse:
        """Queue a mutation and drain right away when online."""
        response = self.gateway.enqueue(method, resource, payload)
        if self.connectivity.is_online:
            await self.orchestrator.drain()
        return response

    async def drain_now(self) -> DrainReport | None:
        """Drain the queue immediately."""
        return await self.orchestrator.drain()

    async def pull(self) -> int:
        """Pull server changes since the stored watermark."""
        return await self.orchestrator.pull_changes()

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Call ``listener`` with a fresh status on every state change.

        State changes are connectivity transitions and drain start/finish.

        Returns:
            A function that removes the listener.
        """

        def notify(*_: Any) -> None:
            listener(self.get_status())

        unsubscribers = [
            self.connectivity.subscribe(notify),
            self.orchestrator.subscribe(notify),
        ]

        def unsubscribe() -> None:
            for unsub in unsubscribers:
                unsub()

        return unsubscribe

    def get_cached_collection(self, entity: Entity | str) -> list[dict[str, Any]]:
        """Return the cached records for an entity or collection name."""
        if not isinstance(entity, Entity):
            entity = Entity.from_name(entity)
        return self.cache.get(entity)

    def get_queue_size(self) -> int:
        return self.queue.size()

    def get_status(self) -> dict[str, Any]:
        """Snapshot of connectivity, queue and sync state."""
        watermark = self.orchestrator.get_watermark()
        last_report = self.orchestrator.last_report
        return {
            "client_id": self.client_id,
            "online": self.connectivity.is_online,
            "forced_offline": self.connectivity.forced_offline,
            "state": self.orchestrator.state.value,
            "queue_size": self.queue.size(),
            "last_sync_time": to_iso(watermark) if watermark else None,
            "last_drain": last_report.to_dict() if last_report else None,
            "remote_url": self.transport.base_url,
        }
