"""Entity handlers and the registry the push handler dispatches through."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, time
from typing import Any, ClassVar

from pydantic import ValidationError

from ..clock import parse_iso, to_iso, to_utc
from ..errors import OperationFailed
from ..models import ConflictType, Entity, SyncAction
from .conflicts import ConflictDetected, ConflictResolver
from .schemas import PAYLOAD_SCHEMAS, EntityPayload
from .store import Repository, Store, StoredRecord

logger = logging.getLogger(__name__)


@dataclass
class OperationContext:
    """Who submitted an operation, and when the client made the change."""

    op_id: str
    client_id: str
    client_updated_at: datetime
    store: Store


class EntityHandler(ABC):
    """Applies create/update/delete operations for one entity type."""

    entity: ClassVar[Entity]
    natural_keys: ClassVar[tuple[str, ...]] = ()
    watermark_field: ClassVar[str] = "updated_at"

    def __init__(self, resolver: ConflictResolver | None = None):
        self.resolver = resolver or ConflictResolver()

    @property
    def schema(self) -> type[EntityPayload]:
        return PAYLOAD_SCHEMAS[self.entity]

    def repository(self, ctx: OperationContext) -> Repository:
        return ctx.store.repository(self.entity)

    def validate(self, action: SyncAction, payload: dict[str, Any]) -> EntityPayload:
        """Validate a raw payload against the entity's schema.

        Raises:
            OperationFailed: The payload is invalid for this action.
        """
        try:
            model = self.schema.model_validate(payload)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise OperationFailed(f"Invalid {self.entity.value} payload: {problems}") from e

        if action == SyncAction.CREATE:
            missing = model.missing_for_create()
            if missing:
                raise OperationFailed(
                    f"Missing required {self.entity.value} fields: {', '.join(missing)}"
                )
        elif not model.id:
            raise OperationFailed(f"{self.entity.value} {action.value} requires an id")
        return model

    def apply(self, ctx: OperationContext, action: SyncAction, payload: EntityPayload) -> str:
        """Dispatch an action.

        Returns:
            Id of the affected record.
        """
        if action == SyncAction.CREATE:
            return self.create(ctx, payload)
        if action == SyncAction.UPDATE:
            return self.update(ctx, payload)
        return self.delete(ctx, payload)

    @abstractmethod
    def create(self, ctx: OperationContext, payload: EntityPayload) -> str:
        pass

    @abstractmethod
    def update(self, ctx: OperationContext, payload: EntityPayload) -> str:
        pass

    @abstractmethod
    def delete(self, ctx: OperationContext, payload: EntityPayload) -> str:
        pass


class StandardHandler(EntityHandler):
    """Mutable entity: natural-key checked creates, last-writer-wins updates,
    soft deletes."""

    def prepare_create(self, ctx: OperationContext, data: dict[str, Any]) -> dict[str, Any]:
        return data

    def prepare_update(
        self, ctx: OperationContext, existing: StoredRecord, data: dict[str, Any]
    ) -> dict[str, Any]:
        return data

    def _load(self, ctx: OperationContext, payload: EntityPayload) -> StoredRecord:
        existing = self.repository(ctx).find_by_id(payload.id)
        if existing is None:
            raise OperationFailed(f"{self.entity.value} {payload.id} not found")
        return existing

    def create(self, ctx: OperationContext, payload: EntityPayload) -> str:
        repo = self.repository(ctx)
        data = payload.to_data()
        self.resolver.check_create(repo, data, self.natural_keys)

        data = self.prepare_create(ctx, data)
        record = repo.create(
            data,
            modified_by=ctx.client_id,
            record_id=data.get("id"),
            written_at=ctx.client_updated_at,
        )
        return record.id

    def update(self, ctx: OperationContext, payload: EntityPayload) -> str:
        repo = self.repository(ctx)
        existing = self._load(ctx, payload)
        data = payload.to_data()

        self.resolver.check_write(existing, ctx.client_updated_at, payload.version)
        self.resolver.check_key_change(repo, existing, data, self.natural_keys)

        data = self.prepare_update(ctx, existing, data)
        repo.update(
            existing.id, data, modified_by=ctx.client_id, written_at=ctx.client_updated_at
        )
        return existing.id

    def delete(self, ctx: OperationContext, payload: EntityPayload) -> str:
        repo = self.repository(ctx)
        existing = repo.find_by_id(payload.id, include_deleted=True)
        if existing is None:
            raise OperationFailed(f"{self.entity.value} {payload.id} not found")
        if existing.deleted:
            return existing.id

        self.resolver.check_write(existing, ctx.client_updated_at, payload.version)
        repo.update(
            existing.id,
            {},
            modified_by=ctx.client_id,
            deleted=True,
            written_at=ctx.client_updated_at,
        )
        return existing.id


class AppendOnlyHandler(EntityHandler):
    """Log-like entity: records are only ever created."""

    watermark_field: ClassVar[str] = "created_at"

    def prepare_create(self, ctx: OperationContext, data: dict[str, Any]) -> dict[str, Any]:
        return data

    def create(self, ctx: OperationContext, payload: EntityPayload) -> str:
        repo = self.repository(ctx)
        data = payload.to_data()
        self.resolver.check_create(repo, data, self.natural_keys)

        data = self.prepare_create(ctx, data)
        record = repo.create(
            data,
            modified_by=ctx.client_id,
            record_id=data.get("id"),
            written_at=ctx.client_updated_at,
        )
        return record.id

    def update(self, ctx: OperationContext, payload: EntityPayload) -> str:
        raise OperationFailed(f"{self.entity.value} records are append-only")

    def delete(self, ctx: OperationContext, payload: EntityPayload) -> str:
        raise OperationFailed(f"{self.entity.value} records are append-only")


class ProductHandler(StandardHandler):
    entity = Entity.PRODUCT
    natural_keys = ("sku", "barcode")

    def prepare_create(self, ctx: OperationContext, data: dict[str, Any]) -> dict[str, Any]:
        data.setdefault("stock", 0)
        return data


class GameHandler(StandardHandler):
    entity = Entity.GAME
    natural_keys = ("name",)

    def prepare_create(self, ctx: OperationContext, data: dict[str, Any]) -> dict[str, Any]:
        data.setdefault("rate_type", "PER_HOUR")
        data.setdefault("is_active", True)
        return data


class ExpenseHandler(StandardHandler):
    entity = Entity.EXPENSE

    def prepare_create(self, ctx: OperationContext, data: dict[str, Any]) -> dict[str, Any]:
        data.setdefault("date", to_iso(ctx.client_updated_at))
        return data


class ShiftHandler(StandardHandler):
    entity = Entity.SHIFT

    def prepare_create(self, ctx: OperationContext, data: dict[str, Any]) -> dict[str, Any]:
        data.setdefault("status", "ACTIVE")
        data.setdefault("started_at", to_iso(ctx.client_updated_at))
        return data

    def delete(self, ctx: OperationContext, payload: EntityPayload) -> str:
        raise OperationFailed("Shifts cannot be deleted")


# Allowed source statuses and resulting status for each table transition
TABLE_TRANSITIONS: dict[str, tuple[tuple[str, ...], str]] = {
    "start": (("AVAILABLE",), "OCCUPIED"),
    "pause": (("OCCUPIED",), "PAUSED"),
    "resume": (("PAUSED",), "OCCUPIED"),
    "stop": (("OCCUPIED", "PAUSED"), "AVAILABLE"),
}


class TableHandler(StandardHandler):
    entity = Entity.TABLE
    natural_keys = ("table_number",)

    def prepare_create(self, ctx: OperationContext, data: dict[str, Any]) -> dict[str, Any]:
        data.pop("transition", None)
        data.setdefault("status", "AVAILABLE")
        return data

    def prepare_update(
        self, ctx: OperationContext, existing: StoredRecord, data: dict[str, Any]
    ) -> dict[str, Any]:
        transition = data.pop("transition", None)
        if transition is None:
            return data

        allowed, target = TABLE_TRANSITIONS[transition]
        current = existing.data.get("status", "AVAILABLE")
        if current not in allowed:
            raise ConflictDetected(
                ConflictType.STATE,
                f"Cannot {transition} table {existing.data.get('table_number')} "
                f"while it is {current}",
                existing.to_dict(),
            )

        at = to_iso(ctx.client_updated_at)
        data["status"] = target

        if transition == "start":
            data.update(
                started_at=data.get("started_at") or at,
                paused_at=None,
                last_resumed_at=None,
                total_paused_ms=0,
            )
        elif transition == "pause":
            data["paused_at"] = at
        elif transition == "resume":
            paused_at = existing.data.get("paused_at")
            paused_ms = int(existing.data.get("total_paused_ms") or 0)
            if paused_at:
                elapsed = to_utc(ctx.client_updated_at) - parse_iso(paused_at)
                paused_ms += max(0, int(elapsed.total_seconds() * 1000))
            data.update(paused_at=None, last_resumed_at=at, total_paused_ms=paused_ms)
        else:
            data.update(
                started_at=None,
                paused_at=None,
                last_resumed_at=None,
                total_paused_ms=0,
                current_charge=0,
            )

        logger.debug(f"Table {existing.id}: {current} -> {target} ({transition})")
        return data


class SaleHandler(AppendOnlyHandler):
    entity = Entity.SALE

    def prepare_create(self, ctx: OperationContext, data: dict[str, Any]) -> dict[str, Any]:
        data["receipt_number"] = self._next_receipt_number(ctx)
        return data

    def _next_receipt_number(self, ctx: OperationContext) -> str:
        now = ctx.store.now()
        start_of_day = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
        count = self.repository(ctx).count_since("created_at", start_of_day)
        return f"RCP-{now:%Y%m%d}-{count + 1:04d}"


class InventoryMovementHandler(AppendOnlyHandler):
    entity = Entity.INVENTORY_MOVEMENT

    def prepare_create(self, ctx: OperationContext, data: dict[str, Any]) -> dict[str, Any]:
        products = ctx.store.repository(Entity.PRODUCT)
        product = products.find_by_id(data["product_id"])
        if product is None:
            raise OperationFailed(f"product {data['product_id']} not found")

        stock = int(product.data.get("stock") or 0) + int(data["change"])
        if stock < 0:
            raise OperationFailed(
                f"Insufficient stock for product {product.id}: "
                f"{product.data.get('stock', 0)} available, change {data['change']}"
            )

        products.update(product.id, {"stock": stock}, modified_by=ctx.client_id)
        data["resulting_stock"] = stock
        return data


class HandlerRegistry:
    """Maps every entity type to exactly one handler."""

    def __init__(self) -> None:
        self._handlers: dict[Entity, EntityHandler] = {}

    def register(self, handler: EntityHandler) -> None:
        """Register a handler, replacing any previous one for its entity."""
        self._handlers[handler.entity] = handler

    def get(self, entity: Entity) -> EntityHandler:
        """Get the handler for an entity.

        Raises:
            OperationFailed: No handler is registered.
        """
        handler = self._handlers.get(entity)
        if handler is None:
            raise OperationFailed(f"No handler registered for {entity.value}")
        return handler

    def list_handlers(self) -> list[EntityHandler]:
        return [self._handlers[e] for e in Entity if e in self._handlers]

    def validate(self) -> None:
        """Check that every entity type has a handler.

        Raises:
            ValueError: If any entity type is unhandled.
        """
        missing = [e.value for e in Entity if e not in self._handlers]
        if missing:
            raise ValueError(f"No sync handler for: {', '.join(missing)}")


def default_registry(resolver: ConflictResolver | None = None) -> HandlerRegistry:
    """Build the registry with the built-in handlers, validated."""
    resolver = resolver or ConflictResolver()
    registry = HandlerRegistry()
    for handler_cls in (
        ProductHandler,
        SaleHandler,
        InventoryMovementHandler,
        TableHandler,
        ShiftHandler,
        GameHandler,
        ExpenseHandler,
    ):
        registry.register(handler_cls(resolver))
    registry.validate()
    return registry
