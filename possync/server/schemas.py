"""Pydantic schemas for the sync endpoints and entity payloads.

Request bodies use camelCase on the wire; validated payloads are dumped
with snake_case field names, which is how records are stored.
"""

from datetime import datetime
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..models import Entity, SyncAction


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EntityPayload(WireModel):
    """Base for entity payloads.

    Every field is optional so the same model validates partial updates;
    ``required_on_create`` lists the fields a create must carry.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )

    required_on_create: ClassVar[tuple[str, ...]] = ()

    id: str | None = None
    version: int | None = Field(default=None, ge=1)

    def missing_for_create(self) -> list[str]:
        return [name for name in self.required_on_create if getattr(self, name) is None]

    def to_data(self) -> dict[str, Any]:
        """Fields the client actually sent, JSON-ready, snake_case."""
        return self.model_dump(exclude_unset=True, mode="json")


class ProductPayload(EntityPayload):
    """A product is identified by its name or its SKU; price can follow later."""

    def missing_for_create(self) -> list[str]:
        if self.name is None and self.sku is None:
            return ["name or sku"]
        return []

    name: str | None = None
    sku: str | None = None
    barcode: str | None = None
    description: str | None = None
    category: str | None = None
    price: float | None = Field(default=None, ge=0)
    cost: float | None = Field(default=None, ge=0)
    stock: int | None = Field(default=None, ge=0)
    image_url: str | None = None


class SaleItemPayload(WireModel):
    product_id: str
    quantity: int = Field(ge=1)
    unit_price: float
    discount: float | None = None
    tax: float | None = None
    subtotal: float
    notes: str | None = None


class SalePayload(EntityPayload):
    required_on_create: ClassVar[tuple[str, ...]] = ("total", "payment_method")

    table_id: str | None = None
    shift_id: str | None = None
    subtotal: float | None = None
    discount: float | None = None
    tax: float | None = None
    total: float | None = None
    payment_method: Literal["CASH", "CARD", "MOBILE", "MIXED"] | None = None
    cash_received: float | None = None
    change: float | None = None
    notes: str | None = None
    client_id: str | None = None
    items: list[SaleItemPayload] | None = None


class InventoryMovementPayload(EntityPayload):
    required_on_create: ClassVar[tuple[str, ...]] = ("product_id", "change", "reason")

    product_id: str | None = None
    change: int | None = None  # positive adds stock, negative removes it
    reason: str | None = Field(default=None, min_length=1)


class TablePayload(EntityPayload):
    required_on_create: ClassVar[tuple[str, ...]] = ("table_number",)

    table_number: int | None = Field(default=None, ge=1)
    status: Literal["AVAILABLE", "OCCUPIED", "PAUSED"] | None = None
    game_id: str | None = None
    rate_per_hour: float | None = Field(default=None, ge=0)
    started_at: datetime | None = None
    paused_at: datetime | None = None
    last_resumed_at: datetime | None = None
    total_paused_ms: int | None = Field(default=None, ge=0)
    current_charge: float | None = None
    transition: Literal["start", "pause", "resume", "stop"] | None = None


class ShiftPayload(EntityPayload):
    required_on_create: ClassVar[tuple[str, ...]] = ("opening_cash",)

    opening_cash: float | None = None
    closing_cash: float | None = None
    status: Literal["ACTIVE", "CLOSED"] | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    notes: str | None = None


class GamePayload(EntityPayload):
    required_on_create: ClassVar[tuple[str, ...]] = ("name",)

    name: str | None = None
    description: str | None = None
    rate_type: Literal["PER_HOUR", "PER_MINUTE"] | None = None
    default_rate: float | None = Field(default=None, ge=0)
    is_active: bool | None = None


class ExpensePayload(EntityPayload):
    required_on_create: ClassVar[tuple[str, ...]] = ("category", "amount", "description")

    category: str | None = None
    amount: float | None = Field(default=None, ge=0)
    description: str | None = None
    date: datetime | None = None
    receipt_url: str | None = None


PAYLOAD_SCHEMAS: dict[Entity, type[EntityPayload]] = {
    Entity.PRODUCT: ProductPayload,
    Entity.SALE: SalePayload,
    Entity.INVENTORY_MOVEMENT: InventoryMovementPayload,
    Entity.TABLE: TablePayload,
    Entity.SHIFT: ShiftPayload,
    Entity.GAME: GamePayload,
    Entity.EXPENSE: ExpensePayload,
}


class SyncOperationIn(WireModel):
    """One operation of a push request.

    ``entity`` stays a plain string so an unknown entity fails only its own
    operation instead of the whole request.
    """

    op_id: str = Field(min_length=1)
    entity: str
    action: SyncAction
    payload: dict[str, Any] = Field(default_factory=dict)
    client_updated_at: datetime
    client_id: str | None = None


class SyncPushRequest(WireModel):
    client_id: str = Field(min_length=1)
    operations: list[SyncOperationIn] = Field(default_factory=list)
