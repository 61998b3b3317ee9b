"""FastAPI application exposing the sync protocol."""

import logging
from datetime import datetime
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .. import __version__
from ..clock import to_iso
from ..config import Config
from ..errors import UnknownEntityError
from ..models import Entity
from .handlers import HandlerRegistry, default_registry
from .pull import PullHandler
from .push import PushHandler
from .schemas import SyncPushRequest
from .store import Store

logger = logging.getLogger(__name__)


def create_app(
    config: Config | None = None,
    store: Store | None = None,
    registry: HandlerRegistry | None = None,
) -> FastAPI:
    """Create the sync server application.

    Args:
        config: Application configuration; defaults when omitted.
        store: Optional Store, otherwise opened at ``server.db_path``.
        registry: Optional handler registry, otherwise the built-in one.

    Returns:
        Configured FastAPI application.

    Raises:
        ValueError: If the registry leaves an entity type unhandled.
    """
    config = config or Config()
    store = store or Store(config.server.db_path)
    registry = registry or default_registry()
    registry.validate()

    server_config = config.server
    push_handler = PushHandler(
        store,
        registry,
        idempotency_enabled=server_config.idempotency_enabled,
        idempotency_retention_hours=server_config.idempotency_retention_hours,
    )
    pull_handler = PullHandler(
        store,
        registry,
        default_pull_hours=server_config.default_pull_hours,
        default_limit=server_config.default_pull_limit,
        max_limit=server_config.max_pull_limit,
    )

    app = FastAPI(
        title="possync",
        description="Offline-first synchronization server for POS clients",
        version=__version__,
    )

    # Store references for route handlers and tests
    app.state.config = config
    app.state.store = store
    app.state.registry = registry

    api_tokens = set(server_config.api_tokens)
    if not api_tokens:
        logger.warning("No API tokens configured, sync endpoints are open")

    bearer = HTTPBearer(auto_error=False)

    async def require_token(
        credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    ) -> None:
        if not api_tokens:
            return
        if credentials is None or credentials.credentials not in api_tokens:
            raise HTTPException(
                status_code=401,
                detail="Invalid or missing API token",
                headers={"WWW-Authenticate": "Bearer"},
            )

    authenticated = [Depends(require_token)]

    # ==================== Sync protocol ====================

    @app.post("/sync/push", dependencies=authenticated)
    async def sync_push(request: SyncPushRequest) -> dict[str, Any]:
        """Apply a batch of client operations."""
        result = push_handler.push(request.client_id, request.operations)
        return result.to_dict()

    @app.get("/sync/pull", dependencies=authenticated)
    async def sync_pull(
        since: datetime | None = None,
        limit: int | None = Query(default=None, ge=1),
    ) -> dict[str, Any]:
        """Return changes since a watermark."""
        return pull_handler.pull(since, limit).to_dict()

    # ==================== Collections ====================

    @app.get("/api/collections/{collection}", dependencies=authenticated)
    async def api_collection(collection: str, include_deleted: bool = False) -> dict[str, Any]:
        """Current records of one collection."""
        try:
            entity = Entity.from_name(collection)
        except UnknownEntityError as e:
            raise HTTPException(status_code=404, detail=str(e))

        records = store.repository(entity).find_many(include_deleted=include_deleted)
        return {
            "collection": entity.collection,
            "count": len(records),
            "records": [r.to_dict() for r in records],
        }

    @app.get("/api/stats", dependencies=authenticated)
    async def api_stats() -> dict[str, Any]:
        """Get store statistics."""
        stats: dict[str, Any] = {"timestamp": to_iso(store.now())}
        stats.update(store.get_stats())
        return stats

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check used by client connectivity probes.

        Always returns 200 OK; store problems are reported in the body.
        """
        health: dict[str, Any] = {
            "status": "ok",
            "timestamp": to_iso(store.now()),
            "version": __version__,
            "components": {
                "handlers": [h.entity.value for h in registry.list_handlers()],
            },
        }

        try:
            stats = store.get_stats()
            health["components"]["store_records"] = sum(
                e["active"] for e in stats["entities"].values()
            )
        except Exception as e:
            health["status"] = "degraded"
            health["components"]["store_error"] = str(e)

        return health

    return app
