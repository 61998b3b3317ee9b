"""Server side of the sync engine.

Provides the push/pull reconciliation protocol on top of a SQLite
document store, with per-entity handlers and conflict detection.
"""

from .app import create_app
from .conflicts import ConflictDetected, ConflictResolver
from .handlers import EntityHandler, HandlerRegistry, default_registry
from .pull import PullHandler
from .push import PushHandler
from .store import Repository, Store, StoredRecord

__all__ = [
    "ConflictDetected",
    "ConflictResolver",
    "EntityHandler",
    "HandlerRegistry",
    "PullHandler",
    "PushHandler",
    "Repository",
    "Store",
    "StoredRecord",
    "create_app",
    "default_registry",
]
