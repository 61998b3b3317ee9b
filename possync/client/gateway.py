"""API gateway facade used by POS screens.

Callers issue reads and writes against logical resources (``products``,
``tables/5/start``) without caring whether the server is reachable. Reads
fall back to the local cache; writes fall back to the durable queue and
come back as "accepted, pending" responses.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from ..clock import to_millis, utcnow
from ..errors import ConflictError, NetworkError, NoCachedDataError, OperationRejectedError
from ..models import QueuedOperation, ResourcePath, SyncAction, SyncOperation
from .cache import LocalCache
from .connectivity import ConnectivityMonitor
from .optimistic import apply_confirmed_operation, apply_pending_operation
from .queue import OperationQueue
from .transport import SyncTransport

logger = logging.getLogger(__name__)


@dataclass
class GatewayResponse:
    """Result of a gateway call."""

    data: Any
    status: int = 200
    from_cache: bool = False
    queued: bool = False
    request_id: str | None = None


class ApiGateway:
    """Routes calls to the network, the cache or the queue."""

    def __init__(
        self,
        transport: SyncTransport,
        queue: OperationQueue,
        cache: LocalCache,
        connectivity: ConnectivityMonitor,
        client_id: str,
    ):
        self._transport = transport
        self._queue = queue
        self._cache = cache
        self._connectivity = connectivity
        self._client_id = client_id

    # ==================== Reads ====================

    async def get(self, resource: str) -> GatewayResponse:
        """Read a collection, or one record of it.

        Args:
            resource: ``collection`` or ``collection/id``.

        Returns:
            Network data when reachable, otherwise the cached snapshot.

        Raises:
            NoCachedDataError: Offline and nothing is cached.
            NetworkError: The network call failed and nothing is cached.
            RemoteError: The server answered with an error status.
        """
        path = ResourcePath.parse(resource)

        if self._connectivity.is_online:
            try:
                records = await self._transport.fetch_collection(path.entity)
            except NetworkError:
                cached = self._cache.get(path.entity)
                if not cached:
                    raise
                logger.info(f"Serving {path.entity.value} from cache after network failure")
                return self._select(path, cached, from_cache=True)

            self._cache.replace_all(path.entity, records)
            return self._select(path, records, from_cache=False)

        cached = self._cache.get(path.entity)
        if not cached:
            raise NoCachedDataError(f"No cached data for {path.entity.collection}")
        return self._select(path, cached, from_cache=True)

    @staticmethod
    def _select(
        path: ResourcePath, records: list[dict[str, Any]], from_cache: bool
    ) -> GatewayResponse:
        if path.record_id is None:
            return GatewayResponse(data=records, from_cache=from_cache)

        for record in records:
            if str(record.get("id")) == path.record_id:
                return GatewayResponse(data=record, from_cache=from_cache)
        return GatewayResponse(data=None, status=404, from_cache=from_cache)

    # ==================== Writes ====================

    async def post(self, resource: str, payload: dict[str, Any] | None = None) -> GatewayResponse:
        """Create a record, or run a command such as ``tables/5/start``."""
        path = ResourcePath.parse(resource)
        action = SyncAction.CREATE if path.record_id is None else SyncAction.UPDATE
        return await self.mutate(action, resource, payload)

    async def put(self, resource: str, payload: dict[str, Any] | None = None) -> GatewayResponse:
        return await self.mutate(SyncAction.UPDATE, resource, payload)

    async def patch(self, resource: str, payload: dict[str, Any] | None = None) -> GatewayResponse:
        return await self.mutate(SyncAction.UPDATE, resource, payload)

    async def delete(self, resource: str, payload: dict[str, Any] | None = None) -> GatewayResponse:
        return await self.mutate(SyncAction.DELETE, resource, payload)

    async def mutate(
        self,
        action: SyncAction,
        resource: str,
        payload: dict[str, Any] | None = None,
    ) -> GatewayResponse:
        """Apply a mutating call, online or not.

        Online, the call goes to the server as a one-operation push and only
        a network-class failure diverts it to the queue. Offline, it is
        queued without a network attempt.

        Returns:
            The server's result, or a 202 response with ``queued=True``.

        Raises:
            ConflictError: The server kept its own state.
            OperationRejectedError: The server refused the operation.
            RemoteError: The server answered with an error status.
        """
        ResourcePath.parse(resource)
        payload = dict(payload or {})
        op_id = str(uuid.uuid4())

        if not self._connectivity.is_online:
            return self.enqueue(action, resource, payload, op_id)

        queued = QueuedOperation(
            id=op_id,
            method=action,
            resource=resource,
            payload=payload,
            enqueued_at=to_millis(utcnow()),
        )
        operation = SyncOperation.from_queued(queued, self._client_id)

        try:
            result = await self._transport.push(self._client_id, [operation])
        except NetworkError as e:
            logger.info(f"Network failure on {action.value} {resource}, queueing: {e}")
            # Same op id, so a push that did land is deduplicated on replay
            return self.enqueue(action, resource, payload, op_id)

        for conflict in result.conflicts:
            if conflict.op_id == op_id:
                raise ConflictError(conflict)
        for error in result.errors:
            if error.op_id == op_id:
                raise OperationRejectedError(op_id, error.error)

        server_id = result.created_server_ids.get(op_id)
        record = apply_confirmed_operation(self._cache, operation, server_id)

        if action == SyncAction.CREATE:
            return GatewayResponse(data=record, status=201)
        return GatewayResponse(data=record, status=200)

    def enqueue(
        self,
        action: SyncAction | str,
        resource: str,
        payload: dict[str, Any] | None = None,
        op_id: str | None = None,
    ) -> GatewayResponse:
        """Queue a mutating call and mirror it into the cache.

        Returns:
            A 202 response carrying the queued operation's id.
        """
        action = SyncAction(action)
        op_id = self._queue.enqueue(action, resource, payload, op_id=op_id)
        queued = self._queue.get(op_id)
        if queued is not None:
            apply_pending_operation(self._cache, queued)

        logger.info(f"Queued {action.value} {resource} as {op_id}")
        return GatewayResponse(
            data={"queued": True, "requestId": op_id},
            status=202,
            queued=True,
            request_id=op_id,
        )
