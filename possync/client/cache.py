"""Read-through cache of the last known server collections.

Each entity type has exactly one snapshot row holding the full collection.
Fetches replace snapshots wholesale; the optimistic-update helpers are the
only way to change part of a snapshot, and every write is pushed to the
subscribed view listeners.
"""

import json
import logging
import sqlite3
from collections.abc import Callable
from pathlib import Path
from typing import Any

from ..clock import to_iso, utcnow
from ..models import Entity

logger = logging.getLogger(__name__)

CacheListener = Callable[[Entity, list[dict[str, Any]]], None]

CACHE_SCHEMA = """
-- One full collection per entity type
CREATE TABLE IF NOT EXISTS snapshots (
    entity TEXT PRIMARY KEY,
    records TEXT NOT NULL,
    record_count INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);

-- Client identity and sync watermarks
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class LocalCache:
    """SQLite-backed snapshot cache keyed by entity type."""

    def __init__(self, db_path: str | Path):
        """Initialize the cache.

        Args:
            db_path: Path to SQLite database file (``:memory:`` for tests).
        """
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._listeners: list[CacheListener] = []

    def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(CACHE_SCHEMA)
        self._conn.commit()

        logger.info(f"LocalCache connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    # ==================== Listeners ====================

    def subscribe(self, listener: CacheListener) -> Callable[[], None]:
        """Register a view listener called after every snapshot write.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, entity: Entity, records: list[dict[str, Any]]) -> None:
        for listener in list(self._listeners):
            try:
                listener(entity, records)
            except Exception as e:
                logger.error(f"Cache listener failed for {entity.value}: {e}")

    # ==================== Snapshots ====================

    def get(self, entity: Entity) -> list[dict[str, Any]]:
        """Return the cached collection for an entity (possibly empty)."""
        conn = self._ensure_connected()

        row = conn.execute(
            "SELECT records FROM snapshots WHERE entity = ?", (entity.value,)
        ).fetchone()
        return json.loads(row["records"]) if row else []

    def _write(self, entity: Entity, records: list[dict[str, Any]]) -> None:
        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT OR REPLACE INTO snapshots (entity, records, record_count, updated_at)
            VALUES (?, ?, ?, ?)
            """,
            (entity.value, json.dumps(records), len(records), to_iso(utcnow())),
        )
        conn.commit()

    def replace_all(self, entity: Entity, records: list[dict[str, Any]]) -> None:
        """Atomically replace the snapshot for an entity."""
        records = list(records)
        self._write(entity, records)
        logger.debug(f"Replaced {entity.value} snapshot ({len(records)} records)")
        self._notify(entity, records)

    def update(
        self,
        entity: Entity,
        update_fn: Callable[[list[dict[str, Any]]], list[dict[str, Any]]],
    ) -> list[dict[str, Any]]:
        """Apply an optimistic update to a snapshot.

        Args:
            entity: Snapshot to update.
            update_fn: Receives the current records, returns the new ones.

        Returns:
            The records written.
        """
        records = list(update_fn(self.get(entity)))
        self._write(entity, records)
        self._notify(entity, records)
        return records

    def upsert_record(
        self,
        entity: Entity,
        record: dict[str, Any],
        replace_id: str | None = None,
    ) -> None:
        """Insert or merge one record by id.

        Args:
            entity: Snapshot to update.
            record: Record with an ``id``; merged into an existing record.
            replace_id: Provisional id to drop in favour of ``record``.
        """
        record_id = str(record["id"])

        def apply(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
            result = []
            merged = False
            for existing in records:
                existing_id = str(existing.get("id"))
                if replace_id is not None and existing_id == replace_id:
                    if not merged:
                        result.append({**existing, **record})
                        merged = True
                    continue
                if existing_id == record_id:
                    if not merged:
                        result.append({**existing, **record})
                        merged = True
                    continue
                result.append(existing)
            if not merged:
                result.append(dict(record))
            return result

        self.update(entity, apply)

    def remove_record(self, entity: Entity, record_id: str) -> None:
        """Drop one record by id from a snapshot."""
        self.update(
            entity,
            lambda records: [r for r in records if str(r.get("id")) != str(record_id)],
        )

    # ==================== Meta ====================

    def get_meta(self, key: str, default: Any = None) -> Any:
        conn = self._ensure_connected()
        row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return json.loads(row["value"]) if row else default

    def set_meta(self, key: str, value: Any) -> None:
        conn = self._ensure_connected()
        conn.execute(
            "INSERT OR REPLACE INTO meta (key, value, updated_at) VALUES (?, ?, ?)",
            (key, json.dumps(value), to_iso(utcnow())),
        )
        conn.commit()

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics.

        Returns:
            Record counts and last refresh time per cached entity.
        """
        conn = self._ensure_connected()

        cursor = conn.execute(
            "SELECT entity, record_count, updated_at FROM snapshots ORDER BY entity"
        )
        return {
            "collections": {
                row["entity"]: {
                    "records": row["record_count"],
                    "updated_at": row["updated_at"],
                }
                for row in cursor
            }
        }
