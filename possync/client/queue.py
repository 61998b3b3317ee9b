"""Durable FIFO queue of pending mutating operations.

Operations that cannot reach the server are appended here and drained
later in strict enqueue order. Ordering uses a monotonic millisecond
clock that never goes backwards, even across restarts or wall-clock
adjustments.
"""

import json
import logging
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any

from ..models import QueuedOperation, SyncAction

logger = logging.getLogger(__name__)

QUEUE_SCHEMA = """
-- Pending operations, read in enqueued_at order
CREATE TABLE IF NOT EXISTS queued_operations (
    id TEXT PRIMARY KEY,
    method TEXT NOT NULL,
    resource TEXT NOT NULL,
    payload TEXT NOT NULL,
    enqueued_at INTEGER NOT NULL UNIQUE,
    retry_count INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_queue_enqueued ON queued_operations(enqueued_at);
"""


class OperationQueue:
    """SQLite-backed append-only queue with FIFO reads.

    Every operation gets an ``enqueued_at`` strictly greater than the
    previous one, so reading by ``enqueued_at`` reproduces enqueue order.
    """

    def __init__(self, db_path: str | Path):
        """Initialize the queue.

        Args:
            db_path: Path to SQLite database file (``:memory:`` for tests).
        """
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._last_enqueued_at: int = 0

    def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(QUEUE_SCHEMA)
        self._conn.commit()

        # Resume the ordering clock from the newest queued entry
        cursor = self._conn.execute("SELECT MAX(enqueued_at) FROM queued_operations")
        row = cursor.fetchone()
        if row[0] is not None:
            self._last_enqueued_at = row[0]

        logger.info(
            f"OperationQueue connected to {self.db_path}, "
            f"pending={self.size()}"
        )

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    def _next_timestamp(self) -> int:
        """Return a millisecond timestamp strictly after the previous one."""
        now = int(time.time() * 1000)
        self._last_enqueued_at = max(now, self._last_enqueued_at + 1)
        return self._last_enqueued_at

    @staticmethod
    def _row_to_operation(row: sqlite3.Row) -> QueuedOperation:
        return QueuedOperation(
            id=row["id"],
            method=SyncAction(row["method"]),
            resource=row["resource"],
            payload=json.loads(row["payload"]),
            enqueued_at=row["enqueued_at"],
            retry_count=row["retry_count"],
        )

    def enqueue(
        self,
        method: SyncAction | str,
        resource: str,
        payload: dict[str, Any] | None = None,
        op_id: str | None = None,
    ) -> str:
        """Append an operation to the queue.

        Args:
            method: Create, update or delete.
            resource: Logical target, e.g. ``products`` or ``tables/5/start``.
            payload: Business data for the operation.
            op_id: Client-generated id; a new uuid when omitted.

        Returns:
            The id of the queued operation.
        """
        conn = self._ensure_connected()

        op_id = op_id or str(uuid.uuid4())
        method = SyncAction(method)
        enqueued_at = self._next_timestamp()

        conn.execute(
            """
            INSERT INTO queued_operations (
                id, method, resource, payload, enqueued_at, retry_count
            ) VALUES (?, ?, ?, ?, ?, 0)
            """,
            (op_id, method.value, resource, json.dumps(payload or {}), enqueued_at),
        )
        conn.commit()

        logger.debug(f"Enqueued {method.value} {resource} as {op_id} at {enqueued_at}")
        return op_id

    def list_all(self) -> list[QueuedOperation]:
        """Return every pending operation, oldest first."""
        conn = self._ensure_connected()

        cursor = conn.execute(
            """
            SELECT id, method, resource, payload, enqueued_at, retry_count
            FROM queued_operations
            ORDER BY enqueued_at ASC
            """
        )
        return [self._row_to_operation(row) for row in cursor]

    def get(self, op_id: str) -> QueuedOperation | None:
        """Get a queued operation by id."""
        conn = self._ensure_connected()

        row = conn.execute(
            """
            SELECT id, method, resource, payload, enqueued_at, retry_count
            FROM queued_operations WHERE id = ?
            """,
            (op_id,),
        ).fetchone()
        return self._row_to_operation(row) if row else None

    def remove(self, op_id: str) -> None:
        """Remove an operation. Unknown ids are ignored."""
        conn = self._ensure_connected()
        conn.execute("DELETE FROM queued_operations WHERE id = ?", (op_id,))
        conn.commit()

    def increment_retry(self, op_id: str) -> int:
        """Increment an operation's retry counter.

        Returns:
            The new retry count, or 0 if the operation no longer exists.
        """
        conn = self._ensure_connected()

        cursor = conn.execute(
            "UPDATE queued_operations SET retry_count = retry_count + 1 WHERE id = ?",
            (op_id,),
        )
        conn.commit()
        if cursor.rowcount == 0:
            return 0

        row = conn.execute(
            "SELECT retry_count FROM queued_operations WHERE id = ?", (op_id,)
        ).fetchone()
        return row[0] if row else 0

    def size(self) -> int:
        """Number of pending operations."""
        conn = self._ensure_connected()
        return conn.execute("SELECT COUNT(*) FROM queued_operations").fetchone()[0]

    def evict_exceeding(self, max_retries: int) -> int:
        """Drop operations whose retry count is above ``max_retries``.

        Evicted operations are lost; each one is logged so the loss can be
        traced.

        Returns:
            Number of operations evicted.
        """
        conn = self._ensure_connected()

        rows = conn.execute(
            """
            SELECT id, method, resource, retry_count FROM queued_operations
            WHERE retry_count > ?
            """,
            (max_retries,),
        ).fetchall()
        if not rows:
            return 0

        for row in rows:
            logger.warning(
                f"Evicting {row['method']} {row['resource']} ({row['id']}) "
                f"after {row['retry_count']} failed attempts"
            )

        cursor = conn.execute(
            "DELETE FROM queued_operations WHERE retry_count > ?", (max_retries,)
        )
        conn.commit()
        return cursor.rowcount

    def clear(self) -> int:
        """Remove every pending operation.

        Returns:
            Number of operations removed.
        """
        conn = self._ensure_connected()
        cursor = conn.execute("DELETE FROM queued_operations")
        conn.commit()
        if cursor.rowcount:
            logger.warning(f"Cleared {cursor.rowcount} pending operations")
        return cursor.rowcount

    def get_stats(self) -> dict[str, Any]:
        """Get queue statistics.

        Returns:
            Dictionary with pending count, oldest entry and retry histogram.
        """
        conn = self._ensure_connected()

        stats: dict[str, Any] = {"pending": self.size()}

        row = conn.execute(
            "SELECT MIN(enqueued_at) FROM queued_operations"
        ).fetchone()
        stats["oldest_enqueued_at"] = row[0]

        cursor = conn.execute(
            """
            SELECT retry_count, COUNT(*) FROM queued_operations
            GROUP BY retry_count ORDER BY retry_count
            """
        )
        stats["by_retry_count"] = {r[0]: r[1] for r in cursor}

        cursor = conn.execute(
            "SELECT resource, COUNT(*) FROM queued_operations GROUP BY resource"
        )
        stats["by_resource"] = {r[0]: r[1] for r in cursor}

        if self.db_path.exists():
            stats["db_size_mb"] = round(
                self.db_path.stat().st_size / (1024 * 1024), 2
            )

        return stats
