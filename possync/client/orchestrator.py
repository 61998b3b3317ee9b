"""Sync orchestrator: drains the durable queue and pulls remote changes.

One drain runs at a time. A drain walks a snapshot of the queue in enqueue
order and submits each operation on its own, so one failing operation
never blocks the ones behind it. Network failures leave the operation
queued for the next drain; operations the server resolved (accepted,
conflicted or rejected) leave the queue for good.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from ..clock import parse_iso, to_iso, utcnow
from ..errors import NetworkError, RemoteError, UnknownEntityError
from ..models import (
    DrainReport,
    DrainState,
    Entity,
    EntityChange,
    OperationError,
    SyncOperation,
)
from .cache import LocalCache
from .connectivity import ConnectivityMonitor
from .optimistic import apply_confirmed_operation, apply_pending_operation
from .queue import OperationQueue
from .transport import SyncTransport

logger = logging.getLogger(__name__)

WATERMARK_KEY = "last_sync_time"

StateListener = Callable[[DrainState], None]
ReportListener = Callable[[DrainReport], None]


class SyncOrchestrator:
    """Drives queue drains, pulls and the periodic sync loop."""

    def __init__(
        self,
        queue: OperationQueue,
        cache: LocalCache,
        transport: SyncTransport,
        connectivity: ConnectivityMonitor,
        client_id: str,
        max_retries: int = 3,
        pull_limit: int = 1000,
        default_pull_hours: int = 24,
    ):
        """Initialize the orchestrator.

        Args:
            queue: Durable queue of pending operations.
            cache: Local cache updated with confirmed and pulled records.
            transport: HTTP transport to the sync server.
            connectivity: Source of the online/offline state.
            client_id: Stable id of this client, sent with every push.
            max_retries: Failed attempts tolerated before an operation is
                evicted.
            pull_limit: Maximum changes requested per pull page.
            default_pull_hours: How far back the first pull reaches.
        """
        self._queue = queue
        self._cache = cache
        self._transport = transport
        self._connectivity = connectivity
        self._client_id = client_id
        self.max_retries = max_retries
        self.pull_limit = pull_limit
        self.default_pull_hours = default_pull_hours

        self._state = DrainState.IDLE
        self._draining = False
        self._state_listeners: list[StateListener] = []
        self._report_listeners: list[ReportListener] = []
        self._last_report: DrainReport | None = None

        self._running = False
        self._interval = 5.0
        self._pull_enabled = True
        self._task: asyncio.Task | None = None
        self._ticks: set[asyncio.Task] = set()
        self._unsubscribe_connectivity: Callable[[], None] | None = None

    @property
    def state(self) -> DrainState:
        return self._state

    @property
    def is_draining(self) -> bool:
        return self._draining

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_report(self) -> DrainReport | None:
        return self._last_report

    # ==================== Listeners ====================

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener for idle/draining transitions.

        Returns:
            A function that removes the listener.
        """
        self._state_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return unsubscribe

    def add_report_listener(self, listener: ReportListener) -> Callable[[], None]:
        """Register a listener for finished drain reports.

        Returns:
            A function that removes the listener.
        """
        self._report_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._report_listeners:
                self._report_listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: DrainState) -> None:
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Drain state listener failed: {e}")

    def _publish_report(self, report: DrainReport) -> None:
        self._last_report = report
        for listener in list(self._report_listeners):
            try:
                listener(report)
            except Exception as e:
                logger.error(f"Drain report listener failed: {e}")

    # ==================== Drain ====================

    async def drain(self) -> DrainReport | None:
        """Run one drain pass over the queue.

        Returns:
            The pass's report, or None if a drain was already running or
            the client is offline.
        """
        if self._draining:
            logger.debug("Drain already in progress, skipping")
            return None
        if not self._connectivity.is_online:
            logger.debug("Offline, skipping drain")
            return None

        self._draining = True
        self._set_state(DrainState.DRAINING)
        try:
            report = await self._drain_pass()
        finally:
            self._draining = False
            self._set_state(DrainState.IDLE)

        self._publish_report(report)
        return report

    async def _drain_pass(self) -> DrainReport:
        report = DrainReport()
        operations = self._queue.list_all()
        affected: list[Entity] = []

        if operations:
            logger.info(f"Draining {len(operations)} queued operations")

        for op in operations:
            context = {"client_id": self._client_id, "op_id": op.id}
            if not self._connectivity.is_online:
                report.halted_offline = True
                logger.info(
                    f"Went offline during drain, {self._queue.size()} operations left queued"
                )
                break

            try:
                operation = SyncOperation.from_queued(op, self._client_id)
            except UnknownEntityError as e:
                self._queue.remove(op.id)
                report.rejected.append(OperationError(op_id=op.id, error=str(e)))
                logger.error(f"Dropping unroutable operation {op.id}: {e}", extra=context)
                continue

            try:
                result = await self._transport.push(self._client_id, [operation])
            except (NetworkError, RemoteError) as e:
                retries = self._queue.increment_retry(op.id)
                report.failed.append(op.id)
                logger.warning(
                    f"Push of {op.method.value} {op.resource} failed "
                    f"(attempt {retries}): {e}",
                    extra=context,
                )
                continue

            conflict = next((c for c in result.conflicts if c.op_id == op.id), None)
            error = next((e for e in result.errors if e.op_id == op.id), None)

            self._queue.remove(op.id)
            context["entity"] = operation.entity
            if operation.entity not in affected:
                affected.append(operation.entity)

            if conflict is not None:
                report.conflicts.append(conflict)
                logger.warning(
                    f"Conflict on {op.method.value} {op.resource}: "
                    f"{conflict.conflict_type.value} ({conflict.message})",
                    extra=context,
                )
            elif error is not None:
                report.rejected.append(error)
                logger.error(
                    f"Server rejected {op.method.value} {op.resource}: {error.error}",
                    extra=context,
                )
            else:
                apply_confirmed_operation(
                    self._cache, operation, result.created_server_ids.get(op.id)
                )
                report.drained.append(op.id)
                logger.debug(
                    f"Drained {op.method.value} {op.resource} ({op.id})", extra=context
                )

        report.evicted = self._queue.evict_exceeding(self.max_retries)

        if report.drained or report.conflicts or report.rejected:
            report.refreshed = await self._refresh(affected)

        logger.info(
            f"Drain finished: drained={len(report.drained)}, failed={len(report.failed)}, "
            f"conflicts={len(report.conflicts)}, rejected={len(report.rejected)}, "
            f"evicted={report.evicted}"
        )
        return report

    async def _refresh(self, entities: list[Entity]) -> list[Entity]:
        """Re-fetch collections touched by a drain.

        Operations still queued for a refreshed entity are replayed on top
        of the fresh snapshot so their optimistic records stay visible.
        """
        refreshed = []
        for entity in entities:
            if not self._connectivity.is_online:
                break
            try:
                records = await self._transport.fetch_collection(entity)
            except (NetworkError, RemoteError) as e:
                logger.warning(f"Refresh of {entity.collection} failed: {e}")
                continue

            self._cache.replace_all(entity, records)
            for op in self._queue.list_all():
                try:
                    pending_entity = op.entity
                except UnknownEntityError:
                    continue
                if pending_entity == entity:
                    apply_pending_operation(self._cache, op)
            refreshed.append(entity)
        return refreshed

    # ==================== Pull ====================

    def get_watermark(self) -> datetime | None:
        """Timestamp of the last completed pull, if any."""
        value = self._cache.get_meta(WATERMARK_KEY)
        return parse_iso(value) if value else None

    async def pull_changes(self, since: datetime | None = None) -> int:
        """Pull server changes into the cache.

        Args:
            since: Starting watermark; defaults to the stored one, or
                ``default_pull_hours`` ago on first use.

        Returns:
            Number of changes applied.

        Raises:
            NetworkError: The server could not be reached.
            RemoteError: The server answered with an error status.
        """
        if since is None:
            since = self.get_watermark() or (
                utcnow() - timedelta(hours=self.default_pull_hours)
            )

        total = 0
        while True:
            result = await self._transport.pull(since, self.pull_limit)
            self._apply_changes(result.changes)
            total += len(result.changes)

            advanced = result.last_sync_time > since
            if advanced:
                since = result.last_sync_time
            self._cache.set_meta(WATERMARK_KEY, to_iso(since))

            if not result.has_more:
                break
            if not advanced:
                logger.warning(
                    f"Pull watermark stuck at {to_iso(since)} with more changes pending"
                )
                break

        if total:
            logger.info(f"Pulled {total} changes, watermark now {to_iso(since)}")
        return total

    def _apply_changes(self, changes: list[EntityChange]) -> None:
        by_entity: dict[Entity, list[EntityChange]] = {}
        for change in changes:
            by_entity.setdefault(change.entity, []).append(change)

        for entity, entity_changes in by_entity.items():

            def merge(
                records: list[dict[str, Any]],
                entity_changes: list[EntityChange] = entity_changes,
            ) -> list[dict[str, Any]]:
                merged = {str(r.get("id")): r for r in records}
                for change in entity_changes:
                    if change.deleted:
                        merged.pop(change.id, None)
                    else:
                        merged[change.id] = {**merged.get(change.id, {}), **change.data}
                return list(merged.values())

            self._cache.update(entity, merge)
            logger.debug(f"Applied {len(entity_changes)} changes to {entity.collection}")

    # ==================== Periodic loop ====================

    async def tick(self) -> DrainReport | None:
        """Drain, then pull when enabled and still online."""
        report = await self.drain()
        if self._pull_enabled and self._connectivity.is_online:
            try:
                await self.pull_changes()
            except (NetworkError, RemoteError) as e:
                logger.warning(f"Pull failed: {e}")
        return report

    async def _safe_tick(self) -> None:
        try:
            await self.tick()
        except Exception as e:
            logger.error(f"Sync tick failed: {e}", exc_info=True)

    def _schedule_tick(self) -> asyncio.Task:
        task = asyncio.create_task(self._safe_tick())
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)
        return task

    def _on_connectivity_change(self, online: bool) -> None:
        if not online or not self._running:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Connectivity restored outside the event loop, waiting for timer")
            return
        logger.info("Connectivity restored, draining queue")
        self._schedule_tick()

    async def start_periodic(self, interval_seconds: float = 5.0, pull: bool = True) -> None:
        """Start timer-driven drains plus drains on reconnect."""
        if self._running:
            return

        self._running = True
        self._interval = interval_seconds
        self._pull_enabled = pull
        self._unsubscribe_connectivity = self._connectivity.subscribe(
            self._on_connectivity_change
        )
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Sync orchestrator started (interval={interval_seconds}s, pull={pull})"
        )

    async def stop(self) -> None:
        """Stop scheduling drains. A drain already running completes."""
        self._running = False
        if self._unsubscribe_connectivity:
            self._unsubscribe_connectivity()
            self._unsubscribe_connectivity = None

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._ticks:
            await asyncio.gather(*list(self._ticks), return_exceptions=True)
        logger.info("Sync orchestrator stopped")

    async def _run_loop(self) -> None:
        while self._running:
            # Shielded so cancelling the timer never interrupts a drain
            await asyncio.shield(self._schedule_tick())
            await asyncio.sleep(self._interval)
