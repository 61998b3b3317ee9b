"""Server side of ``POST /sync/push``.

Each operation runs in its own transaction and succeeds or fails on its
own; a bad operation never aborts the rest of the batch.
"""

import logging
from datetime import timedelta

from ..errors import OperationFailed, UnknownEntityError
from ..models import Entity, OperationError, PushResult, SyncAction
from .conflicts import ConflictDetected, ConflictResolver
from .handlers import HandlerRegistry, OperationContext
from .schemas import SyncOperationIn
from .store import Store

logger = logging.getLogger(__name__)


class PushHandler:
    """Applies batches of client operations to the store."""

    def __init__(
        self,
        store: Store,
        registry: HandlerRegistry,
        idempotency_enabled: bool = True,
        idempotency_retention_hours: int = 24,
    ):
        """Initialize the push handler.

        Args:
            store: Store the operations are applied to.
            registry: Entity handlers, already validated.
            idempotency_enabled: Skip operations already applied for the
                same ``(clientId, opId)``.
            idempotency_retention_hours: How long applied operations are
                remembered.
        """
        self.store = store
        self.registry = registry
        self.idempotency_enabled = idempotency_enabled
        self.idempotency_retention = timedelta(hours=idempotency_retention_hours)

    def push(self, client_id: str, operations: list[SyncOperationIn]) -> PushResult:
        """Apply operations in order.

        Returns:
            Processed count, server ids of created records, conflicts and
            per-operation errors.
        """
        result = PushResult()

        for op in operations:
            self._process(client_id, op, result)

        if self.idempotency_enabled:
            self.store.purge_processed(self.store.now() - self.idempotency_retention)

        logger.info(
            f"Push from {client_id}: {len(operations)} operations, "
            f"processed={result.processed}, conflicts={len(result.conflicts)}, "
            f"errors={len(result.errors)}"
        )
        return result

    def _process(self, client_id: str, op: SyncOperationIn, result: PushResult) -> None:
        if self.idempotency_enabled:
            seen = self.store.find_processed(client_id, op.op_id)
            if seen is not None:
                logger.debug(f"Operation {op.op_id} from {client_id} already applied")
                result.processed += 1
                if op.action == SyncAction.CREATE and seen["server_id"]:
                    result.created_server_ids[op.op_id] = seen["server_id"]
                return

        entity: Entity | None = None
        try:
            entity = Entity.from_name(op.entity)
            handler = self.registry.get(entity)
            payload = handler.validate(op.action, op.payload)
            ctx = OperationContext(
                op_id=op.op_id,
                client_id=op.client_id or client_id,
                client_updated_at=op.client_updated_at,
                store=self.store,
            )

            with self.store.transaction():
                server_id = handler.apply(ctx, op.action, payload)
                if self.idempotency_enabled:
                    self.store.record_processed(client_id, op.op_id, entity, server_id)

        except ConflictDetected as detected:
            result.conflicts.append(
                ConflictResolver.to_record(op.op_id, entity, op.action, op.payload, detected)
            )
            return
        except (OperationFailed, UnknownEntityError) as e:
            logger.warning(f"Rejected {op.action.value} {op.entity} ({op.op_id}): {e}")
            result.errors.append(OperationError(op_id=op.op_id, error=str(e)))
            return
        except Exception as e:
            logger.error(f"Failed to apply operation {op.op_id}: {e}", exc_info=True)
            result.errors.append(OperationError(op_id=op.op_id, error=str(e)))
            return

        result.processed += 1
        if op.action == SyncAction.CREATE:
            result.created_server_ids[op.op_id] = server_id
