"""Server side of ``GET /sync/pull``."""

import logging
from datetime import datetime, timedelta

from ..clock import to_utc
from ..models import EntityChange, PullResult, SyncAction
from .handlers import HandlerRegistry
from .store import Store

logger = logging.getLogger(__name__)


class PullHandler:
    """Collects records changed since a watermark across every entity."""

    def __init__(
        self,
        store: Store,
        registry: HandlerRegistry,
        default_pull_hours: int = 24,
        default_limit: int = 1000,
        max_limit: int = 5000,
    ):
        self.store = store
        self.registry = registry
        self.default_pull_hours = default_pull_hours
        self.default_limit = default_limit
        self.max_limit = max_limit

    def pull(self, since: datetime | None = None, limit: int | None = None) -> PullResult:
        """Return changes at or after ``since``, oldest first.

        Changes from all entity types are merged by (timestamp, entity, id)
        and cut at ``limit``. ``lastSyncTime`` is the last returned
        timestamp while more changes remain, otherwise the server's current
        time taken before querying.

        Args:
            since: Inclusive watermark; defaults to ``default_pull_hours`` ago.
            limit: Maximum changes; clamped to ``[1, max_limit]``.

        Returns:
            The changes, the next watermark and whether more remain.
        """
        now = self.store.now()
        since = to_utc(since) if since else now - timedelta(hours=self.default_pull_hours)
        limit = max(1, min(limit or self.default_limit, self.max_limit))

        candidates = []
        for handler in self.registry.list_handlers():
            repo = self.store.repository(handler.entity)
            records = repo.find_many(
                since=since, watermark_field=handler.watermark_field, limit=limit
            )
            for record in records:
                ts = (
                    record.created_at
                    if handler.watermark_field == "created_at"
                    else record.updated_at
                )
                candidates.append((ts, handler.entity.value, record.id, record))

        candidates.sort(key=lambda c: (c[0], c[1], c[2]))
        selected = candidates[:limit]

        changes = [
            EntityChange(
                entity=record.entity,
                id=record.id,
                action=SyncAction.DELETE if record.deleted else SyncAction.UPDATE,
                data=record.to_dict(),
                updated_at=ts,
                deleted=record.deleted,
            )
            for ts, _, _, record in selected
        ]

        has_more = len(changes) == limit
        last_sync_time = selected[-1][0] if has_more else now

        logger.debug(
            f"Pull since {since.isoformat()}: {len(changes)} changes, has_more={has_more}"
        )
        return PullResult(changes=changes, last_sync_time=last_sync_time, has_more=has_more)
