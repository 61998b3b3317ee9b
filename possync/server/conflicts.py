"""Conflict detection for incoming sync operations.

The server always wins: a conflicting operation is reported back to the
client and not applied. Nothing is merged field by field.
"""

import logging
from datetime import datetime
from typing import Any

from ..clock import to_iso, to_utc
from ..models import ConflictRecord, ConflictType, Entity, SyncAction
from .store import Repository, StoredRecord

logger = logging.getLogger(__name__)


class ConflictDetected(Exception):
    """Raised inside a handler when server state wins over the operation."""

    def __init__(
        self,
        conflict_type: ConflictType,
        message: str,
        server_data: dict[str, Any] | None = None,
    ):
        self.conflict_type = conflict_type
        self.message = message
        self.server_data = server_data or {}
        super().__init__(message)


class ConflictResolver:
    """Checks creates, updates and deletes against the stored state."""

    def check_create(
        self,
        repo: Repository,
        data: dict[str, Any],
        natural_keys: tuple[str, ...] = (),
    ) -> None:
        """Reject a create that would duplicate an active record.

        Raises:
            ConflictDetected: A natural key or the client-chosen id is taken.
        """
        for key in natural_keys:
            value = data.get(key)
            if value is None:
                continue
            existing = repo.find_by_key(key, value)
            if existing is not None:
                raise ConflictDetected(
                    ConflictType.STATE,
                    f"{repo.entity.value} with same {key} already exists",
                    existing.to_dict(),
                )

        record_id = data.get("id")
        if record_id:
            existing = repo.find_by_id(str(record_id), include_deleted=True)
            if existing is not None:
                raise ConflictDetected(
                    ConflictType.STATE,
                    f"{repo.entity.value} {record_id} already exists",
                    existing.to_dict(),
                )

    def check_write(
        self,
        existing: StoredRecord,
        client_updated_at: datetime,
        base_version: int | None = None,
    ) -> None:
        """Apply last-writer-wins to an update or delete.

        Args:
            existing: Current server record.
            client_updated_at: When the client made the change.
            base_version: Version the client edited, if it sent one.

        Raises:
            ConflictDetected: The server record moved on since the client's
                edit.
        """
        if base_version is not None and base_version != existing.version:
            raise ConflictDetected(
                ConflictType.VERSION,
                f"Client edited version {base_version}, server is at {existing.version}",
                existing.to_dict(),
            )

        client_time = to_utc(client_updated_at)
        if existing.written_at > client_time:
            raise ConflictDetected(
                ConflictType.TIMESTAMP,
                f"Server version is newer ({to_iso(existing.written_at)} > "
                f"{to_iso(client_time)})",
                existing.to_dict(),
            )

    def check_key_change(
        self,
        repo: Repository,
        existing: StoredRecord,
        data: dict[str, Any],
        natural_keys: tuple[str, ...] = (),
    ) -> None:
        """Reject an update that moves a natural key onto another record."""
        for key in natural_keys:
            value = data.get(key)
            if value is None or value == existing.data.get(key):
                continue
            other = repo.find_by_key(key, value)
            if other is not None and other.id != existing.id:
                raise ConflictDetected(
                    ConflictType.STATE,
                    f"{repo.entity.value} with same {key} already exists",
                    other.to_dict(),
                )

    @staticmethod
    def to_record(
        op_id: str,
        entity: Entity,
        action: SyncAction,
        client_data: dict[str, Any],
        detected: ConflictDetected,
    ) -> ConflictRecord:
        logger.info(
            f"{detected.conflict_type.value} conflict on {entity.value} "
            f"{action.value} ({op_id}): {detected.message}"
        )
        return ConflictRecord(
            op_id=op_id,
            entity=entity,
            action=action,
            conflict_type=detected.conflict_type,
            client_data=client_data,
            server_data=detected.server_data,
            message=detected.message,
        )
