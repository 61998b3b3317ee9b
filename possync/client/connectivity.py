"""Connectivity tracking for the POS client.

The monitor holds the client's current view of "online": the last health
probe result, overridden by a forced-offline switch used for testing and
for operators who want to stop all network traffic.
"""

import asyncio
import logging
from collections.abc import Callable

from .transport import SyncTransport

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor:
    """Tracks online/offline state and announces transitions."""

    def __init__(
        self,
        transport: SyncTransport | None = None,
        interval_seconds: float = 10.0,
        initially_online: bool = True,
    ):
        """Initialize the monitor.

        Args:
            transport: Transport used for health probes; without one the
                state only changes through ``set_online``.
            interval_seconds: Seconds between background probes.
            initially_online: State assumed before the first probe.
        """
        self._transport = transport
        self._interval = interval_seconds
        self._online = initially_online
        self._forced_offline = False
        self._listeners: list[ConnectivityListener] = []
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def is_online(self) -> bool:
        return self._online and not self._forced_offline

    @property
    def forced_offline(self) -> bool:
        return self._forced_offline

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register a listener called with the new state on every transition.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _apply(self, online: bool | None = None, forced_offline: bool | None = None) -> None:
        was_online = self.is_online
        if online is not None:
            self._online = online
        if forced_offline is not None:
            self._forced_offline = forced_offline

        now_online = self.is_online
        if now_online == was_online:
            return

        if now_online:
            logger.info("Connectivity restored")
        else:
            logger.warning("Connectivity lost, operating offline")

        for listener in list(self._listeners):
            try:
                listener(now_online)
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}")

    def set_online(self, online: bool) -> None:
        """Record the result of a connectivity observation."""
        self._apply(online=online)

    def force_offline(self, enabled: bool = True) -> None:
        """Simulate being offline regardless of the network state."""
        logger.info(f"Forced offline mode {'enabled' if enabled else 'disabled'}")
        self._apply(forced_offline=enabled)

    async def check(self) -> bool:
        """Probe the server once and update the state.

        Returns:
            The resulting online state.
        """
        if self._transport is None:
            return self.is_online

        reachable = await self._transport.check_health()
        self.set_online(reachable)
        return self.is_online

    async def start(self) -> None:
        """Start probing in the background."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Connectivity monitor started (interval={self._interval}s)")

    async def stop(self) -> None:
        """Stop background probing."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Connectivity monitor stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.check()
            except Exception as e:
                logger.error(f"Connectivity probe failed: {e}", exc_info=True)

            await asyncio.sleep(self._interval)
