"""FastAPI status application for the UI and notification layers."""

import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException

from ..session import LedgerSession
from ..store.models import OperationStatus

logger = logging.getLogger(__name__)


def create_app(session: LedgerSession) -> FastAPI:
    """Create the status API application.

    Args:
        session: Open session whose sync state is exposed.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="ledgersync",
        description="Sync status and control for a local ledger replica",
        version="0.1.0",
    )

    # Store references for route handlers
    app.state.session = session

    @app.get("/api/status")
    async def api_status() -> dict[str, Any]:
        """Current sync status."""
        status = session.get_sync_status()
        status["device_id"] = session.store.device_id
        status["scheduler"] = session.scheduler.get_status()
        status["timestamp"] = datetime.now().isoformat()
        return status

    @app.post("/api/sync")
    async def api_sync() -> dict[str, Any]:
        """Run a sync cycle now and return its result."""
        result = await session.force_sync()
        return result.to_dict()

    @app.get("/api/queue")
    async def api_queue(status: str | None = None, limit: int = 50) -> dict[str, Any]:
        """Queue counts and the next operations in dispatch order."""
        try:
            statuses = [OperationStatus(status)] if status else None
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")

        operations = session.queue.get_operations(statuses)
        return {
            **session.queue.get_queue_status(),
            "operations": [op.to_dict() for op in operations[:limit]],
        }

    @app.get("/api/conflicts")
    async def api_conflicts() -> dict[str, Any]:
        """Conflicts detected this session that are still unresolved."""
        conflicts = session.driver.get_open_conflicts()
        return {
            "count": len(conflicts),
            "conflicts": [item.to_dict() for item in conflicts],
        }

    @app.get("/api/conflicts/history")
    async def api_conflict_history(
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> dict[str, Any]:
        """Resolved conflicts, oldest first."""
        try:
            history = session.detector.get_conflict_history(entity_type, entity_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {
            "count": len(history),
            "resolutions": [r.to_dict() for r in history],
        }

    @app.get("/api/conflicts/stats")
    async def api_conflict_stats() -> dict[str, Any]:
        return session.detector.get_conflict_stats()

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint.

        Always returns 200 OK; problems are reported in the body.
        """
        health = session.store.check_storage_health()
        return {
            "status": "ok" if health["is_healthy"] else "degraded",
            "timestamp": datetime.now().isoformat(),
            **health,
        }

    return app
