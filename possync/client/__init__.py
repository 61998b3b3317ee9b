"""Client side of the sync engine.

Provides the pieces a POS terminal runs while it may be offline:
- Durable operation queue and read-through cache (SQLite)
- Gateway that routes calls to the network, the cache or the queue
- Orchestrator that drains the queue and pulls remote changes
"""

from .cache import LocalCache
from .connectivity import ConnectivityMonitor
from .engine import OfflineClient
from .gateway import ApiGateway, GatewayResponse
from .optimistic import OptimisticUpdate, apply_optimistic_update
from .orchestrator import SyncOrchestrator
from .queue import OperationQueue
from .transport import SyncTransport

__all__ = [
    "ApiGateway",
    "ConnectivityMonitor",
    "GatewayResponse",
    "LocalCache",
    "OfflineClient",
    "OperationQueue",
    "OptimisticUpdate",
    "SyncOrchestrator",
    "SyncTransport",
    "apply_optimistic_update",
]
