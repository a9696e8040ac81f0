"""Sliding window store — last K check results per service in Redis.

Each service keeps a capped list (RPUSH + LTRIM) with a TTL refreshed on
every push, so a dead monitor's state expires instead of going stale.
Status is debounced by counting, not by streaks: a status is reported once
`threshold` of the last K results agree.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import redis.asyncio as aioredis

from health_monitor.config import settings
from health_monitor.health.checker import CheckResult, Status, utc_now
from health_monitor.registry import ServiceDefinition

logger = logging.getLogger(__name__)

_SEVERITY = {Status.HEALTHY: 0, Status.DEGRADED: 1, Status.UNHEALTHY: 2}


# ── Evaluation ───────────────────────────────────────────────────────────────


def evaluate_window(results: Iterable[CheckResult], threshold: int | None = None) -> Status:
    """Debounced status for a window: unhealthy beats degraded beats healthy."""
    threshold = threshold or settings.failure_threshold
    unhealthy = degraded = 0
    for r in results:
        if r.status == Status.UNHEALTHY:
            unhealthy += 1
        elif r.status == Status.DEGRADED:
            degraded += 1

    if unhealthy >= threshold:
        return Status.UNHEALTHY
    if degraded >= threshold:
        return Status.DEGRADED
    return Status.HEALTHY


def worst_status(statuses: Iterable[Status]) -> Status:
    """Overall status is the worst per-service status (healthy when empty)."""
    return max(statuses, key=_SEVERITY.__getitem__, default=Status.HEALTHY)


@dataclass
class ServiceStatus:
    """Per-service rollup recomputed from the window every cycle."""

    service: str
    display_name: str
    status: Status
    last_check: str | None = None
    last_response_time: float | None = None
    recent_results: list[Status] = field(default_factory=list)
    error: str | None = None

    @property
    def is_healthy(self) -> bool:
        return self.status == Status.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "service": self.service,
            "displayName": self.display_name,
            "status": self.status.value,
            "lastCheck": self.last_check,
            "lastResponseTime": self.last_response_time,
            "recentResults": [s.value for s in self.recent_results],
        }
        if self.error:
            d["error"] = self.error
        return d


@dataclass
class StatusSnapshot:
    """Aggregated view cached for external status readers."""

    status: Status
    services: list[ServiceStatus]
    check_interval_ms: int
    last_updated: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "services": [s.to_dict() for s in self.services],
            "lastUpdated": self.last_updated,
            "checkIntervalMs": self.check_interval_ms,
        }


# ── Store ────────────────────────────────────────────────────────────────────


class SlidingWindowStore:
    """Redis-backed ring buffer of recent results, one list per service."""

    def __init__(
        self,
        redis: aioredis.Redis,
        services: list[ServiceDefinition],
        window_size: int | None = None,
        threshold: int | None = None,
        window_ttl: int | None = None,
        snapshot_ttl: int | None = None,
        key_prefix: str | None = None,
        check_interval_ms: int | None = None,
    ) -> None:
        self.redis = redis
        self.services = services
        self.window_size = window_size or settings.window_size
        self.threshold = threshold or settings.failure_threshold
        self.window_ttl = window_ttl or settings.window_ttl_seconds
        self.snapshot_ttl = snapshot_ttl or settings.snapshot_ttl_seconds
        self.key_prefix = key_prefix or settings.redis_key_prefix
        self.check_interval_ms = check_interval_ms or settings.check_interval_ms
        self._display_names = {s.name: s.display_name for s in services}

    def window_key(self, service: str) -> str:
        return f"{self.key_prefix}:window:{service}"

    @property
    def snapshot_key(self) -> str:
        return f"{self.key_prefix}:status:snapshot"

    # -- Window -------------------------------------------------------------

    async def push_result(self, result: CheckResult) -> None:
        """Append a result, keep the newest K entries, refresh the TTL."""
        key = self.window_key(result.service)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.rpush(key, json.dumps(result.to_dict()))
            pipe.ltrim(key, -self.window_size, -1)
            pipe.expire(key, self.window_ttl)
            await pipe.execute()

    async def get_window(self, service: str) -> list[CheckResult]:
        """Current window for a service, oldest first."""
        raw = await self.redis.lrange(self.window_key(service), -self.window_size, -1)
        window = []
        for item in raw:
            try:
                window.append(CheckResult.from_dict(json.loads(item)))
            except (ValueError, KeyError, TypeError):
                logger.warning("Dropping malformed window entry for %s: %.120s", service, item)
        return window

    async def evaluate_service(self, service: str) -> ServiceStatus:
        """Debounced status for one service from its current window."""
        window = await self.get_window(service)
        latest = window[-1] if window else None
        return ServiceStatus(
            service=service,
            display_name=self._display_names.get(service, service),
            status=evaluate_window(window, self.threshold),
            last_check=latest.timestamp if latest else None,
            last_response_time=latest.response_time_ms if latest else None,
            recent_results=[r.status for r in window],
            error=latest.error if latest else None,
        )

    # -- Aggregation --------------------------------------------------------

    async def evaluate_and_aggregate(self) -> StatusSnapshot:
        """Evaluate every configured service and cache the rolled-up snapshot."""
        statuses = list(await asyncio.gather(
            *(self.evaluate_service(s.name) for s in self.services)
        ))
        snapshot = StatusSnapshot(
            status=worst_status(s.status for s in statuses),
            services=statuses,
            check_interval_ms=self.check_interval_ms,
        )

        try:
            await self.redis.set(
                self.snapshot_key, json.dumps(snapshot.to_dict()), ex=self.snapshot_ttl,
            )
        except Exception as e:
            # Readers fall back to the in-process snapshot
            logger.warning("Failed to cache status snapshot: %s", e)

        return snapshot

    async def get_snapshot(self) -> dict[str, Any] | None:
        """Cached snapshot for external readers, or None once it has expired."""
        raw = await self.redis.get(self.snapshot_key)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Cached status snapshot is not valid JSON")
            return None
