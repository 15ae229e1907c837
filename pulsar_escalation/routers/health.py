"""Health check endpoints for container orchestration."""

from typing import Any

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse

from pulsar_escalation.core.migrations import check_migrations_current
from pulsar_escalation.database import check_database_connection

router = APIRouter(tags=["Health"])


def _worker_state(request: Request) -> str:
    worker = getattr(request.app.state, "escalation_worker", None)
    if worker is None:
        return "absent"
    return "running" if worker.running else "stopped"


@router.get("/health", response_model=None)
async def health_check(request: Request) -> Response:
    """
    Health check with database and escalation worker status.

    Returns 200 with {"status": "healthy"} when the database is reachable,
    503 with {"status": "degraded"} otherwise.
    """
    db_connected = await check_database_connection()
    worker = _worker_state(request)

    if db_connected:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "status": "healthy",
                "database": "connected",
                "escalation_worker": worker,
            },
        )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "degraded",
            "database": "disconnected",
            "escalation_worker": worker,
        },
    )


@router.get("/health/live")
async def liveness_probe() -> dict[str, Any]:
    """Liveness probe; does not touch external dependencies."""
    return {"status": "alive"}


@router.get("/health/ready", response_model=None)
async def readiness_probe() -> Response:
    """Readiness probe; ready once the database is reachable and migrated."""
    if not await check_database_connection():
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "database": "disconnected"},
        )
    if not await check_migrations_current():
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "database": "connected",
                "migrations": "pending",
            },
        )
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"status": "ready", "database": "connected", "migrations": "current"},
    )
