"""Health check endpoints for the bridge."""

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from review_bridge.errors import StorageError

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, str]:
    """Basic health check - returns ok if the service is running."""
    return {"status": "ok"}


@router.get("/health/ready")
async def ready(request: Request) -> JSONResponse:
    """
    Readiness check - verifies the storage backend is usable.

    Checks:
    - Connectivity: a trivial query succeeds
    - Schema version: migrations are neither pending nor ahead
    - Transactions: begin/rollback round-trip
    """
    bridge = request.app.state.bridge
    try:
        report = await bridge.health()
    except StorageError as e:
        return JSONResponse(status_code=503, content={"status": "unavailable", "error": str(e)})

    body: dict[str, Any] = report.to_dict()
    body["status"] = "ready" if report.healthy else "degraded"
    body["running"] = bridge.is_running
    return JSONResponse(status_code=200 if report.healthy else 503, content=body)


@router.get("/stats")
async def stats(request: Request) -> dict[str, Any]:
    """Per-app polling status and reply queue counts."""
    bridge = request.app.state.bridge
    return {"apps": await bridge.get_all_processing_stats()}
