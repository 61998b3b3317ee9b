"""Domain and wire types shared by the sync client and server.

Wire dictionaries use the camelCase keys of the push/pull protocol;
Python attributes are snake_case.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .clock import from_millis, parse_iso, to_iso, utcnow
from .errors import UnknownEntityError


class Entity(Enum):
    """Entity types the engine knows how to synchronize."""

    PRODUCT = "product"
    SALE = "sale"
    INVENTORY_MOVEMENT = "inventory_movement"
    TABLE = "table"
    SHIFT = "shift"
    GAME = "game"
    EXPENSE = "expense"

    @property
    def collection(self) -> str:
        """Collection name used in resource paths (``products``)."""
        return _COLLECTIONS[self]

    @classmethod
    def from_name(cls, name: str) -> "Entity":
        """Resolve an entity from its value or its collection name.

        Raises:
            UnknownEntityError: If the name matches neither.
        """
        key = name.strip().strip("/").lower()
        for entity in cls:
            if key == entity.value or key == entity.collection:
                return entity
        raise UnknownEntityError(f"Unknown entity type: {name}")


_COLLECTIONS = {
    Entity.PRODUCT: "products",
    Entity.SALE: "sales",
    Entity.INVENTORY_MOVEMENT: "inventory",
    Entity.TABLE: "tables",
    Entity.SHIFT: "shifts",
    Entity.GAME: "games",
    Entity.EXPENSE: "expenses",
}


class SyncAction(Enum):
    """Mutating verbs carried by queued and wire operations."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ConflictType(Enum):
    """Why the server refused to apply an operation."""

    TIMESTAMP = "timestamp"
    VERSION = "version"
    STATE = "state"


class DrainState(Enum):
    """Processing state of the sync orchestrator."""

    IDLE = "idle"
    DRAINING = "draining"


@dataclass(frozen=True)
class ResourcePath:
    """A parsed logical resource such as ``tables/5/start``."""

    entity: Entity
    record_id: str | None = None
    command: str | None = None

    @classmethod
    def parse(cls, resource: str) -> "ResourcePath":
        """Split ``collection[/id[/command]]`` into its parts."""
        parts = [p for p in resource.strip().strip("/").split("/") if p]
        if not parts:
            raise UnknownEntityError("Empty resource path")
        if len(parts) > 3:
            raise UnknownEntityError(f"Unsupported resource path: {resource}")

        return cls(
            entity=Entity.from_name(parts[0]),
            record_id=parts[1] if len(parts) > 1 else None,
            command=parts[2] if len(parts) > 2 else None,
        )


@dataclass
class QueuedOperation:
    """A pending client-originated side effect in the durable queue."""

    id: str
    method: SyncAction
    resource: str
    payload: dict[str, Any]
    enqueued_at: int  # epoch milliseconds, strictly increasing
    retry_count: int = 0

    @property
    def path(self) -> ResourcePath:
        return ResourcePath.parse(self.resource)

    @property
    def entity(self) -> Entity:
        return self.path.entity

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for display and serialization."""
        return {
            "id": self.id,
            "method": self.method.value,
            "resource": self.resource,
            "payload": self.payload,
            "enqueuedAt": self.enqueued_at,
            "retryCount": self.retry_count,
        }


@dataclass
class SyncOperation:
    """Wire form of one operation submitted to ``POST /sync/push``."""

    op_id: str
    entity: Entity
    action: SyncAction
    payload: dict[str, Any]
    client_updated_at: datetime
    client_id: str

    @classmethod
    def from_queued(cls, op: QueuedOperation, client_id: str) -> "SyncOperation":
        """Build the wire operation for a queued one.

        The resource's record id and command are folded into the payload
        (``id`` and ``transition``). A client-side ``updatedAt`` in the
        payload becomes ``clientUpdatedAt``; otherwise the enqueue time
        is used.
        """
        path = op.path
        payload = dict(op.payload)

        if path.record_id is not None:
            payload.setdefault("id", path.record_id)
        if path.command is not None:
            payload["transition"] = path.command

        client_updated_at = from_millis(op.enqueued_at)
        for key in ("updatedAt", "updated_at"):
            value = payload.pop(key, None)
            if value:
                client_updated_at = (
                    value if isinstance(value, datetime) else parse_iso(str(value))
                )

        return cls(
            op_id=op.id,
            entity=path.entity,
            action=op.method,
            payload=payload,
            client_updated_at=client_updated_at,
            client_id=client_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "opId": self.op_id,
            "entity": self.entity.value,
            "action": self.action.value,
            "payload": self.payload,
            "clientUpdatedAt": to_iso(self.client_updated_at),
            "clientId": self.client_id,
        }


@dataclass
class ConflictRecord:
    """An operation the server refused because its own state wins."""

    op_id: str
    entity: Entity
    action: SyncAction
    conflict_type: ConflictType
    client_data: dict[str, Any]
    server_data: dict[str, Any]
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "opId": self.op_id,
            "entity": self.entity.value,
            "action": self.action.value,
            "conflictType": self.conflict_type.value,
            "clientData": self.client_data,
            "serverData": self.server_data,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConflictRecord":
        return cls(
            op_id=data["opId"],
            entity=Entity(data["entity"]),
            action=SyncAction(data["action"]),
            conflict_type=ConflictType(data["conflictType"]),
            client_data=data.get("clientData") or {},
            server_data=data.get("serverData") or {},
            message=data.get("message", ""),
        )


@dataclass
class OperationError:
    """A per-operation failure reported by the push handler."""

    op_id: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"opId": self.op_id, "error": self.error}


@dataclass
class EntityChange:
    """One record changed on the server since a pull watermark."""

    entity: Entity
    id: str
    action: SyncAction
    data: dict[str, Any]
    updated_at: datetime
    deleted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity.value,
            "id": self.id,
            "action": self.action.value,
            "data": self.data,
            "updatedAt": to_iso(self.updated_at),
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntityChange":
        return cls(
            entity=Entity(data["entity"]),
            id=str(data["id"]),
            action=SyncAction(data["action"]),
            data=data.get("data") or {},
            updated_at=parse_iso(data["updatedAt"]),
            deleted=bool(data.get("deleted", False)),
        )


@dataclass
class PushResult:
    """Response of ``POST /sync/push``."""

    processed: int = 0
    created_server_ids: dict[str, str] = field(default_factory=dict)
    conflicts: list[ConflictRecord] = field(default_factory=list)
    errors: list[OperationError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "createdServerIds": dict(self.created_server_ids),
            "conflicts": [c.to_dict() for c in self.conflicts],
            "errors": [e.to_dict() for e in self.errors],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PushResult":
        return cls(
            processed=int(data.get("processed", 0)),
            created_server_ids={
                str(k): str(v) for k, v in (data.get("createdServerIds") or {}).items()
            },
            conflicts=[ConflictRecord.from_dict(c) for c in data.get("conflicts", [])],
            errors=[
                OperationError(op_id=e["opId"], error=e.get("error", ""))
                for e in data.get("errors", [])
            ],
        )


@dataclass
class PullResult:
    """Response of ``GET /sync/pull``."""

    changes: list[EntityChange] = field(default_factory=list)
    last_sync_time: datetime = field(default_factory=utcnow)
    has_more: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "changes": [c.to_dict() for c in self.changes],
            "lastSyncTime": to_iso(self.last_sync_time),
            "hasMore": self.has_more,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PullResult":
        return cls(
            changes=[EntityChange.from_dict(c) for c in data.get("changes", [])],
            last_sync_time=parse_iso(data["lastSyncTime"]),
            has_more=bool(data.get("hasMore", False)),
        )


@dataclass
class DrainReport:
    """What a single drain pass did to the queue."""

    drained: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    conflicts: list[ConflictRecord] = field(default_factory=list)
    rejected: list[OperationError] = field(default_factory=list)
    evicted: int = 0
    halted_offline: bool = False
    refreshed: list[Entity] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return (
            len(self.drained) + len(self.failed)
            + len(self.conflicts) + len(self.rejected)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "drained": list(self.drained),
            "failed": list(self.failed),
            "conflicts": [c.to_dict() for c in self.conflicts],
            "rejected": [r.to_dict() for r in self.rejected],
            "evicted": self.evicted,
            "haltedOffline": self.halted_offline,
            "refreshed": [e.value for e in self.refreshed],
        }
