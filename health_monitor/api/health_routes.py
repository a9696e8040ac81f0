"""API routes for the aggregated status view, incidents and check history.

Endpoints:
  GET  /api/status              — cached aggregated snapshot (all services)
  GET  /api/status/{service}    — one service + 24h uptime
  GET  /api/services            — configured services
  GET  /api/incidents           — recent + open incidents
  GET  /api/history/{service}   — durable check history
  POST /api/check               — run one monitor cycle now
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, HTTPException, Request

logger = logging.getLogger(__name__)

health_router = APIRouter()


def _fallback_snapshot(monitor: Any) -> dict[str, Any] | None:
    """The loop's last snapshot, unless it is older than the cache TTL would allow."""
    snapshot = monitor.last_snapshot
    if snapshot is None:
        return None
    age = datetime.now(timezone.utc) - datetime.fromisoformat(snapshot.last_updated)
    if age > timedelta(seconds=monitor.window.snapshot_ttl):
        return None
    return snapshot.to_dict()


async def _load_snapshot(request: Request) -> dict[str, Any]:
    """Cached snapshot; the loop's in-process snapshot stands in only while the cache is unreachable."""
    monitor = request.app.state.monitor
    try:
        snapshot = await monitor.window.get_snapshot()
    except Exception as e:
        logger.warning("Status cache unavailable: %s", e)
        snapshot = _fallback_snapshot(monitor)

    if snapshot is None:
        snapshot = {
            "status": "unknown",
            "services": [],
            "lastUpdated": None,
            "checkIntervalMs": int(monitor.interval * 1000),
        }
    return snapshot


@health_router.get("/status")
async def get_status(request: Request) -> dict[str, Any]:
    """Aggregated status of every monitored service."""
    return await _load_snapshot(request)


@health_router.get("/services")
def list_services(request: Request) -> dict[str, Any]:
    """Configured services being monitored."""
    return {"services": request.app.state.registry.to_dict()}


@health_router.get("/status/{service}")
async def get_service_status(service: str, request: Request) -> dict[str, Any]:
    registry = request.app.state.registry
    store = request.app.state.monitor.store

    definition = registry.get(service)
    if not definition:
        raise HTTPException(status_code=404, detail=f"Service not found: {service}")

    snapshot = await _load_snapshot(request)
    entry = next((s for s in snapshot["services"] if s["service"] == service), None)
    return {
        "service": service,
        "displayName": definition.display_name,
        "status": entry["status"] if entry else "unknown",
        "current": entry,
        "uptime_24h": store.get_uptime_24h(service),
    }


@health_router.get("/incidents")
def list_incidents(
    request: Request, service: str | None = None, limit: int = 50,
) -> dict[str, Any]:
    """Recent incidents (open + resolved) with durations."""
    store = request.app.state.monitor.store
    return {
        "incidents": [i.to_dict() for i in store.get_incidents(service, limit)],
        "open": [i.to_dict() for i in store.get_unresolved_incidents()],
    }


@health_router.get("/history/{service}")
def check_history(service: str, request: Request, limit: int = 100) -> dict[str, Any]:
    """Time series of raw check results for one service."""
    registry = request.app.state.registry
    store = request.app.state.monitor.store
    if not registry.get(service):
        raise HTTPException(status_code=404, detail=f"Service not found: {service}")
    return {
        "service": service,
        "uptime_24h": store.get_uptime_24h(service),
        "history": store.get_history(service, limit),
    }


@health_router.post("/check")
async def trigger_check(request: Request) -> dict[str, Any]:
    """Run a full monitor cycle immediately."""
    monitor = request.app.state.monitor
    report = await monitor.run_cycle()
    if report.skipped:
        raise HTTPException(status_code=409, detail="A monitor cycle is already in progress")
    return report.to_dict()
