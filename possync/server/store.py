"""SQLite document store backing the sync server.

All entity types share one ``records`` table keyed by ``(entity, id)``.
Business fields live in a JSON ``data`` column; sync bookkeeping
(version, soft-delete flag, last writer, timestamps) lives in real columns
so pulls and conflict checks can query it directly.
"""

import json
import logging
import re
import sqlite3
import threading
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from ..clock import parse_iso, to_iso, to_utc, utcnow
from ..models import Entity

logger = logging.getLogger(__name__)

SCHEMA = """
-- Current state of every synchronized record
CREATE TABLE IF NOT EXISTS records (
    entity TEXT NOT NULL,
    id TEXT NOT NULL,
    data TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    deleted INTEGER NOT NULL DEFAULT 0,
    last_modified_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    -- Client time of the last accepted write, used for last-writer-wins
    written_at TEXT NOT NULL,
    PRIMARY KEY (entity, id)
);

CREATE INDEX IF NOT EXISTS idx_records_updated ON records(entity, updated_at);
CREATE INDEX IF NOT EXISTS idx_records_created ON records(entity, created_at);

-- Operations already applied, keyed by the submitting client
CREATE TABLE IF NOT EXISTS processed_ops (
    client_id TEXT NOT NULL,
    op_id TEXT NOT NULL,
    entity TEXT NOT NULL,
    server_id TEXT,
    processed_at TEXT NOT NULL,
    PRIMARY KEY (client_id, op_id)
);

CREATE INDEX IF NOT EXISTS idx_processed_at ON processed_ops(processed_at);
"""

# Keys kept in columns, never inside the JSON data
RESERVED_KEYS = frozenset(
    {
        "id",
        "version",
        "deleted",
        "last_modified_by",
        "created_at",
        "updated_at",
        "written_at",
        "transition",
    }
)

WATERMARK_FIELDS = ("created_at", "updated_at")

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _json_path(field_name: str) -> str:
    if not _FIELD_NAME.match(field_name):
        raise ValueError(f"Invalid field name: {field_name}")
    return f"$.{field_name}"


@dataclass
class StoredRecord:
    """One row of the records table."""

    entity: Entity
    id: str
    data: dict[str, Any]
    version: int
    deleted: bool
    last_modified_by: str | None
    created_at: datetime
    updated_at: datetime
    written_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Flatten into the record shape clients see."""
        return {
            **self.data,
            "id": self.id,
            "version": self.version,
            "deleted": self.deleted,
            "last_modified_by": self.last_modified_by,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }


def _row_to_record(row: sqlite3.Row) -> StoredRecord:
    return StoredRecord(
        entity=Entity(row["entity"]),
        id=row["id"],
        data=json.loads(row["data"]),
        version=row["version"],
        deleted=bool(row["deleted"]),
        last_modified_by=row["last_modified_by"],
        created_at=parse_iso(row["created_at"]),
        updated_at=parse_iso(row["updated_at"]),
        written_at=parse_iso(row["written_at"]),
    )


class Store:
    """SQLite store with a re-entrant unit-of-work primitive."""

    def __init__(
        self,
        db_path: str | Path,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file (``:memory:`` for tests).
            clock: Source of the current time, injectable for tests.
        """
        self.db_path = Path(db_path).expanduser()
        self._clock = clock
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._depth = 0
        self._repositories: dict[Entity, Repository] = {}

    def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode; transactions are managed explicitly below
        self._conn = sqlite3.connect(
            str(self.db_path), check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)

        logger.info(f"Store connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def now(self) -> datetime:
        return to_utc(self._clock())

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Run one statement under the store lock."""
        conn = self._ensure_connected()
        with self._lock:
            return conn.execute(sql, params)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically.

        The outermost block holds a write transaction; nested blocks use
        savepoints so an inner failure only undoes the inner work.
        """
        conn = self._ensure_connected()
        with self._lock:
            if self._depth == 0:
                conn.execute("BEGIN IMMEDIATE")
                self._depth += 1
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                else:
                    conn.execute("COMMIT")
                finally:
                    self._depth -= 1
            else:
                savepoint = f"sp_{self._depth}"
                conn.execute(f"SAVEPOINT {savepoint}")
                self._depth += 1
                try:
                    yield conn
                except BaseException:
                    conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                    raise
                else:
                    conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                finally:
                    self._depth -= 1

    def repository(self, entity: Entity) -> "Repository":
        """Get the repository for an entity type."""
        if entity not in self._repositories:
            self._repositories[entity] = Repository(self, entity)
        return self._repositories[entity]

    # ==================== Idempotency log ====================

    def find_processed(self, client_id: str, op_id: str) -> dict[str, Any] | None:
        """Look up an operation that was already applied."""
        row = self.execute(
            """
            SELECT entity, server_id, processed_at FROM processed_ops
            WHERE client_id = ? AND op_id = ?
            """,
            (client_id, op_id),
        ).fetchone()
        if row is None:
            return None
        return {
            "entity": row["entity"],
            "server_id": row["server_id"],
            "processed_at": row["processed_at"],
        }

    def record_processed(
        self,
        client_id: str,
        op_id: str,
        entity: Entity,
        server_id: str | None,
    ) -> None:
        self.execute(
            """
            INSERT OR REPLACE INTO processed_ops
                (client_id, op_id, entity, server_id, processed_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (client_id, op_id, entity.value, server_id, to_iso(self.now())),
        )

    def purge_processed(self, older_than: datetime) -> int:
        """Forget processed operations recorded before ``older_than``.

        Returns:
            Number of entries removed.
        """
        cursor = self.execute(
            "DELETE FROM processed_ops WHERE processed_at < ?", (to_iso(older_than),)
        )
        if cursor.rowcount:
            logger.info(f"Purged {cursor.rowcount} processed operation entries")
        return cursor.rowcount

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics.

        Returns:
            Active and deleted record counts per entity, plus the size of
            the idempotency log.
        """
        stats: dict[str, Any] = {"entities": {}}
        cursor = self.execute(
            """
            SELECT entity, SUM(deleted = 0) AS active, SUM(deleted = 1) AS deleted
            FROM records GROUP BY entity ORDER BY entity
            """
        )
        for row in cursor.fetchall():
            stats["entities"][row["entity"]] = {
                "active": row["active"] or 0,
                "deleted": row["deleted"] or 0,
            }

        row = self.execute("SELECT COUNT(*) FROM processed_ops").fetchone()
        stats["processed_ops"] = row[0]
        return stats


class Repository:
    """Queries and writes for one entity type."""

    def __init__(self, store: Store, entity: Entity):
        self.store = store
        self.entity = entity

    def find_by_id(self, record_id: str, include_deleted: bool = False) -> StoredRecord | None:
        sql = "SELECT * FROM records WHERE entity = ? AND id = ?"
        if not include_deleted:
            sql += " AND deleted = 0"
        row = self.store.execute(sql, (self.entity.value, str(record_id))).fetchone()
        return _row_to_record(row) if row else None

    def find_by_key(self, field_name: str, value: Any) -> StoredRecord | None:
        """Find the active record whose data field equals ``value``."""
        row = self.store.execute(
            """
            SELECT * FROM records
            WHERE entity = ? AND deleted = 0 AND json_extract(data, ?) = ?
            LIMIT 1
            """,
            (self.entity.value, _json_path(field_name), value),
        ).fetchone()
        return _row_to_record(row) if row else None

    def find_many(
        self,
        filters: dict[str, Any] | None = None,
        since: datetime | None = None,
        watermark_field: str = "updated_at",
        limit: int | None = None,
        include_deleted: bool = True,
    ) -> list[StoredRecord]:
        """Query records ordered by a watermark column.

        Args:
            filters: Data fields that must equal the given values.
            since: Inclusive lower bound on ``watermark_field``.
            watermark_field: ``updated_at`` or ``created_at``.
            limit: Maximum records returned.
            include_deleted: Include soft-deleted records.

        Returns:
            Matching records, oldest first.
        """
        if watermark_field not in WATERMARK_FIELDS:
            raise ValueError(f"Invalid watermark field: {watermark_field}")

        clauses = ["entity = ?"]
        params: list[Any] = [self.entity.value]

        if since is not None:
            clauses.append(f"{watermark_field} >= ?")
            params.append(to_iso(since))
        if not include_deleted:
            clauses.append("deleted = 0")
        for key, value in (filters or {}).items():
            clauses.append("json_extract(data, ?) = ?")
            params.extend([_json_path(key), value])

        sql = (
            f"SELECT * FROM records WHERE {' AND '.join(clauses)} "
            f"ORDER BY {watermark_field} ASC, id ASC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        cursor = self.store.execute(sql, tuple(params))
        return [_row_to_record(row) for row in cursor.fetchall()]

    def count_since(self, watermark_field: str, since: datetime) -> int:
        if watermark_field not in WATERMARK_FIELDS:
            raise ValueError(f"Invalid watermark field: {watermark_field}")
        row = self.store.execute(
            f"SELECT COUNT(*) FROM records WHERE entity = ? AND {watermark_field} >= ?",
            (self.entity.value, to_iso(since)),
        ).fetchone()
        return row[0]

    def create(
        self,
        data: dict[str, Any],
        modified_by: str | None = None,
        record_id: str | None = None,
        written_at: datetime | None = None,
    ) -> StoredRecord:
        """Insert a new record.

        Args:
            data: Business fields; reserved keys are dropped.
            modified_by: Client id of the writer.
            record_id: Id to use; a new uuid when omitted.
            written_at: Client time of the write; the server time when omitted.

        Returns:
            The stored record.
        """
        record_id = str(record_id or uuid.uuid4())
        clean = {k: v for k, v in data.items() if k not in RESERVED_KEYS}
        now = self.store.now()

        self.store.execute(
            """
            INSERT INTO records (
                entity, id, data, version, deleted, last_modified_by,
                created_at, updated_at, written_at
            ) VALUES (?, ?, ?, 1, 0, ?, ?, ?, ?)
            """,
            (
                self.entity.value,
                record_id,
                json.dumps(clean),
                modified_by,
                to_iso(now),
                to_iso(now),
                to_iso(written_at or now),
            ),
        )
        logger.debug(f"Created {self.entity.value} {record_id}")
        return self.find_by_id(record_id)

    def update(
        self,
        record_id: str,
        data: dict[str, Any],
        modified_by: str | None = None,
        bump_version: bool = True,
        deleted: bool | None = None,
        written_at: datetime | None = None,
    ) -> StoredRecord | None:
        """Merge fields into an existing record.

        Args:
            record_id: Record to update (deleted records included).
            data: Fields to merge; reserved keys are dropped.
            modified_by: Client id of the writer.
            bump_version: Increment the version counter.
            deleted: New soft-delete flag, unchanged when None.
            written_at: Client time of the write. The stored value only moves
                forward; side effects that pass None leave it unchanged.

        Returns:
            The updated record, or None if it does not exist.
        """
        existing = self.find_by_id(record_id, include_deleted=True)
        if existing is None:
            return None

        merged = {**existing.data}
        merged.update({k: v for k, v in data.items() if k not in RESERVED_KEYS})
        version = existing.version + 1 if bump_version else existing.version
        is_deleted = existing.deleted if deleted is None else deleted
        last_write = existing.written_at
        if written_at is not None:
            last_write = max(last_write, to_utc(written_at))

        self.store.execute(
            """
            UPDATE records
            SET data = ?, version = ?, deleted = ?, last_modified_by = ?, updated_at = ?,
                written_at = ?
            WHERE entity = ? AND id = ?
            """,
            (
                json.dumps(merged),
                version,
                int(is_deleted),
                modified_by,
                to_iso(self.store.now()),
                to_iso(last_write),
                self.entity.value,
                existing.id,
            ),
        )
        logger.debug(f"Updated {self.entity.value} {existing.id} to version {version}")
        return self.find_by_id(existing.id, include_deleted=True)
