"""FastAPI application for solver health, stats and metrics."""

import logging
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, Response

from offramp_solver import __version__
from offramp_solver.data.models import normalize_intent_id
from offramp_solver.execution.ledger import IntentStatus
from offramp_solver.services.context import SolverContext

logger = logging.getLogger(__name__)


def create_app(context: SolverContext) -> FastAPI:
    """Build the status API around a running solver context.

    Endpoints are async so ledger reads share the loop thread with the
    orchestrator.
    """
    app = FastAPI(
        title="Off-ramp Solver API",
        description="Health, readiness and ledger status for the off-ramp solver",
        version=__version__,
    )
    ledger = context.ledger
    health_status = context.health

    @app.get("/")
    async def root() -> dict[str, Any]:
        """Root endpoint."""
        return {
            "name": "offramp-solver",
            "version": __version__,
            "solver": context.solver_address,
            "dry_run": context.settings.dry_run,
        }

    @app.get("/health")
    async def health() -> Any:
        """Health check endpoint.

        Returns:
            Health status information, 503 when unhealthy.
        """
        status_dict = health_status.to_dict()
        if status_dict["status"] == "unhealthy":
            return JSONResponse(status_code=503, content=status_dict)
        return status_dict

    @app.get("/ready")
    async def ready() -> Any:
        if not health_status.ready:
            return JSONResponse(status_code=503, content={"ready": False})
        return {"ready": True}

    @app.get("/stats")
    async def stats() -> dict[str, Any]:
        """Intent counts by status, alert count and scan cursor."""
        try:
            return ledger.get_stats()
        except Exception as e:
            logger.error(f"Error getting stats: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/intents")
    async def list_intents(status: str | None = None, limit: int = 50) -> dict[str, Any]:
        try:
            status_filter = IntentStatus(status.lower()) if status else None
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status {status!r}")
        intents = ledger.list_intents(status_filter, limit=min(max(limit, 1), 500))
        return {"count": len(intents), "intents": [i.to_dict() for i in intents]}

    @app.get("/intents/{intent_id}")
    async def get_intent(intent_id: str) -> dict[str, Any]:
        try:
            normalized = normalize_intent_id(intent_id)
        except ValueError:
            raise HTTPException(status_code=400, detail="Intent id must be 32 bytes of hex")
        intent = ledger.get_intent(normalized)
        if intent is None:
            raise HTTPException(status_code=404, detail="Intent not found")
        data = intent.to_dict()
        data["quotes"] = [
            {
                "route": q.route.name,
                "fiat_amount": q.fiat_amount,
                "fee": str(q.fee),
                "estimated_time": q.estimated_time,
                "expires_at": q.expires_at.isoformat(),
                "submitted_on_chain": q.submitted_on_chain,
                "tx_hash": q.tx_hash,
            }
            for q in ledger.get_quotes(normalized)
        ]
        return data

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=context.metrics.render(), media_type=context.metrics.content_type)

    return app
