"""Optimistic updates applied to the local cache before server confirmation.

Two groups live here: generic helpers that mirror a queued or confirmed
operation into the cache, and factories for the common POS screen actions
(table session transitions, new sales, stock adjustments).
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..clock import to_iso, utcnow
from ..models import Entity, QueuedOperation, SyncAction, SyncOperation
from .cache import LocalCache

Records = list[dict[str, Any]]

PENDING_PREFIX = "pending:"

# Payload keys that describe the operation rather than the record
_CONTROL_KEYS = ("transition", "version")


def pending_record_id(op_id: str) -> str:
    """Provisional cache id for a record created while offline."""
    return f"{PENDING_PREFIX}{op_id}"


def _record_fields(payload: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in payload.items() if k not in _CONTROL_KEYS}


def apply_pending_operation(cache: LocalCache, op: QueuedOperation) -> None:
    """Mirror a just-queued operation into the cache."""
    path = op.path
    fields = _record_fields(op.payload)

    if op.method == SyncAction.CREATE:
        record_id = str(fields.get("id") or pending_record_id(op.id))
        cache.upsert_record(path.entity, {**fields, "id": record_id, "pending": True})
    elif op.method == SyncAction.UPDATE:
        record_id = path.record_id or fields.get("id")
        if record_id is not None:
            cache.upsert_record(path.entity, {**fields, "id": str(record_id)})
    elif op.method == SyncAction.DELETE:
        record_id = path.record_id or fields.get("id")
        if record_id is not None:
            cache.remove_record(path.entity, str(record_id))


def apply_confirmed_operation(
    cache: LocalCache,
    operation: SyncOperation,
    server_id: str | None,
) -> dict[str, Any] | None:
    """Mirror a server-accepted operation into the cache.

    Creates replace their provisional record with one carrying the
    server-assigned id.

    Returns:
        The record as written, or None for deletes.
    """
    fields = _record_fields(operation.payload)
    record_id = server_id or fields.get("id")

    if operation.action == SyncAction.DELETE:
        if record_id is not None:
            cache.remove_record(operation.entity, str(record_id))
        return None

    if record_id is None:
        return None

    record = {**fields, "id": str(record_id)}
    if operation.action == SyncAction.CREATE:
        record["pending"] = False
        provisional = fields.get("id") or pending_record_id(operation.op_id)
        cache.upsert_record(operation.entity, record, replace_id=str(provisional))
    else:
        cache.upsert_record(operation.entity, record)
    return record


@dataclass
class OptimisticUpdate:
    """A cache mutation applied before the server confirms it."""

    entity: Entity
    update_fn: Callable[[Records], Records]


def apply_optimistic_update(cache: LocalCache, update: OptimisticUpdate) -> Records:
    """Apply an optimistic update to the cache and its view listeners."""
    return cache.update(update.entity, update.update_fn)


def _map_table(table_id: str, change: Callable[[dict[str, Any]], dict[str, Any] | None]):
    def update_fn(tables: Records) -> Records:
        result = []
        for table in tables:
            if str(table.get("id")) == str(table_id):
                changed = change(table)
                result.append({**table, **changed} if changed else table)
            else:
                result.append(table)
        return result

    return update_fn


def start_table_update(table_id: str, rate_per_hour: float) -> OptimisticUpdate:
    """Mark a table as occupied from now on."""
    return OptimisticUpdate(
        entity=Entity.TABLE,
        update_fn=_map_table(
            table_id,
            lambda table: {
                "status": "OCCUPIED",
                "started_at": to_iso(utcnow()),
                "rate_per_hour": rate_per_hour,
                "paused_at": None,
                "last_resumed_at": None,
                "total_paused_ms": 0,
                "current_charge": 0,
            },
        ),
    )


def pause_table_update(table_id: str, current_charge: float | None = None) -> OptimisticUpdate:
    """Pause an occupied table, freezing its charge."""

    def change(table: dict[str, Any]) -> dict[str, Any] | None:
        if table.get("status") != "OCCUPIED":
            return None
        update = {"status": "PAUSED", "paused_at": to_iso(utcnow())}
        if current_charge is not None:
            update["current_charge"] = -(-current_charge // 1)
        return update

    return OptimisticUpdate(entity=Entity.TABLE, update_fn=_map_table(table_id, change))


def resume_table_update(table_id: str) -> OptimisticUpdate:
    """Resume a paused table."""

    def change(table: dict[str, Any]) -> dict[str, Any] | None:
        if table.get("status") != "PAUSED":
            return None
        return {
            "status": "OCCUPIED",
            "last_resumed_at": to_iso(utcnow()),
            "paused_at": None,
        }

    return OptimisticUpdate(entity=Entity.TABLE, update_fn=_map_table(table_id, change))


def stop_table_update(table_id: str) -> OptimisticUpdate:
    """Check a table out and make it available again."""
    return OptimisticUpdate(
        entity=Entity.TABLE,
        update_fn=_map_table(
            table_id,
            lambda table: {
                "status": "AVAILABLE",
                "started_at": None,
                "paused_at": None,
                "last_resumed_at": None,
                "total_paused_ms": 0,
                "current_charge": 0,
            },
        ),
    )


def add_sale_update(sale: dict[str, Any]) -> OptimisticUpdate:
    """Append a sale to the cached sales list."""
    return OptimisticUpdate(entity=Entity.SALE, update_fn=lambda sales: [*sales, sale])


def product_stock_update(product_id: str, quantity_change: int) -> OptimisticUpdate:
    """Adjust a product's cached stock, never below zero."""

    def update_fn(products: Records) -> Records:
        result = []
        for product in products:
            if str(product.get("id")) == str(product_id):
                stock = max(0, int(product.get("stock") or 0) + quantity_change)
                result.append({**product, "stock": stock})
            else:
                result.append(product)
        return result

    return OptimisticUpdate(entity=Entity.PRODUCT, update_fn=update_fn)
