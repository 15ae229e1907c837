"""Pulsar escalation service (FastAPI application)."""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pulsar_escalation import __version__
from pulsar_escalation.config import settings
from pulsar_escalation.database import close_database, get_session_maker
from pulsar_escalation.logging_config import get_logger, setup_logging
from pulsar_escalation.middleware import CorrelationIdMiddleware
from pulsar_escalation.routers import alerts, escalation, health, oncall
from pulsar_escalation.services.escalation_engine import EscalationEngine
from pulsar_escalation.services.escalation_worker import EscalationWorker
from pulsar_escalation.services.notification_dispatcher import (
    HttpNotificationDispatcher,
)

setup_logging(
    log_format=settings.log_format,
    log_level=settings.log_level,
    service_name=settings.service_name,
)
logger = get_logger(__name__)


def build_escalation_worker() -> EscalationWorker:
    """Wire the engine, its dispatcher and the worker from settings."""
    engine = EscalationEngine(
        session_maker=get_session_maker(),
        dispatcher=HttpNotificationDispatcher.from_settings(settings),
        settings=settings,
    )
    return EscalationWorker(
        engine,
        interval_seconds=settings.escalation_tick_interval_seconds,
        grace_seconds=settings.escalation_shutdown_grace_seconds,
        cleanup_interval_hours=settings.dnd_cleanup_interval_hours,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Migrations are applied by `alembic upgrade head` before the server starts
    worker = build_escalation_worker()
    app.state.escalation_worker = worker

    if settings.escalation_worker_enabled:
        worker.start()
    else:
        logger.info("Escalation worker disabled; ticks run only on demand")

    logger.info("Pulsar escalation service started")

    yield

    logger.info("Shutting down Pulsar escalation service...")
    await worker.stop()
    await close_database()
    logger.info("Pulsar escalation service shutdown complete")


app = FastAPI(
    title="Pulsar Escalation Engine",
    description="Alert escalation and on-call resolution",
    version=__version__,
    lifespan=lifespan,
)

# Middleware (order matters: first added = last executed)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

app.include_router(health.router)
app.include_router(alerts.router)
app.include_router(oncall.router)
app.include_router(escalation.router)


@app.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint."""
    return {
        "name": "Pulsar Escalation Engine",
        "version": __version__,
        "docs": "/docs",
    }
