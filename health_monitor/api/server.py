"""FastAPI server hosting the monitor's own health endpoint and status API."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from health_monitor import __version__
from health_monitor.api.health_routes import health_router
from health_monitor.config import settings
from health_monitor.health.scheduler import build_monitor
from health_monitor.redis_client import close_redis
from health_monitor.registry import ServiceRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the monitor loop with the server, stop it on shutdown."""
    registry = ServiceRegistry()
    registry.load()
    app.state.registry = registry

    monitor = build_monitor(registry)
    app.state.monitor = monitor

    # StartupError propagates: never serve with unknown incident state
    await monitor.start()

    yield

    # Shutdown
    await monitor.stop()
    await monitor.publisher.close()
    monitor.store.close()
    monitor.notifications.store.close()
    await close_redis()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Health Monitor",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api")

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        """Liveness of the monitor itself."""
        monitor = request.app.state.monitor
        state = monitor.status()
        ok = state["running"] and state["last_error"] is None
        return {
            "status": "healthy" if ok else "degraded",
            "service": settings.source_service,
            "version": __version__,
            "scheduler": state,
        }

    return app


app = create_app()
