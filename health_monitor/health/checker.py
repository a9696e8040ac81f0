"""Health checker — polls service health endpoints and classifies results.

Each poll produces exactly one CheckResult:
  healthy   — 2xx and body {"status": "healthy"}
  degraded  — 2xx and body {"status": "degraded"}
  unhealthy — everything else (transport error, timeout, non-2xx, bad body)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx

from health_monitor.config import settings
from health_monitor.registry import ServiceDefinition

logger = logging.getLogger(__name__)


# ── Models ───────────────────────────────────────────────────────────────────


class Status(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class CheckResult:
    """Result of a single health poll for one service."""

    service: str
    status: Status
    response_time_ms: float
    timestamp: str = field(default_factory=utc_now)
    error: str | None = None
    checks: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "status": self.status.value,
            "response_time_ms": self.response_time_ms,
            "timestamp": self.timestamp,
            "error": self.error,
            "checks": self.checks,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CheckResult":
        return cls(
            service=data["service"],
            status=Status(data["status"]),
            response_time_ms=float(data.get("response_time_ms", 0.0)),
            timestamp=data.get("timestamp") or utc_now(),
            error=data.get("error"),
            checks=data.get("checks"),
        )


# ── Checker ──────────────────────────────────────────────────────────────────


class HealthChecker:
    """Polls every configured service concurrently with a per-check timeout."""

    def __init__(
        self,
        services: list[ServiceDefinition],
        timeout_ms: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.services = services
        self.timeout_ms = timeout_ms or settings.check_timeout_ms
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_ms / 1000,
            follow_redirects=True,
            transport=self._transport,
        )

    async def check_service(
        self,
        service: ServiceDefinition,
        client: httpx.AsyncClient | None = None,
    ) -> CheckResult:
        """GET the service's health endpoint and classify the response."""
        if client is None:
            async with self._client() as own_client:
                return await self.check_service(service, own_client)

        t0 = time.perf_counter()
        try:
            # httpx timeouts are per phase; wait_for bounds the whole request
            resp = await asyncio.wait_for(
                client.get(service.health_url, headers={"Accept": "application/json"}),
                timeout=self.timeout_ms / 1000,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            return CheckResult(
                service=service.name,
                status=Status.UNHEALTHY,
                response_time_ms=_elapsed_ms(t0),
                error=f"Health check timed out after {self.timeout_ms}ms",
            )
        except Exception as e:
            return CheckResult(
                service=service.name,
                status=Status.UNHEALTHY,
                response_time_ms=_elapsed_ms(t0),
                error=str(e) or type(e).__name__,
            )

        latency = _elapsed_ms(t0)
        status, error, checks = _classify(resp)
        return CheckResult(
            service=service.name,
            status=status,
            response_time_ms=latency,
            error=error,
            checks=checks,
        )

    async def check_all(self) -> list[CheckResult]:
        """Check every service concurrently; one result per service, always."""
        if not self.services:
            return []

        async with self._client() as client:
            outcomes = await asyncio.gather(
                *(self.check_service(s, client) for s in self.services),
                return_exceptions=True,
            )

        results: list[CheckResult] = []
        for service, outcome in zip(self.services, outcomes):
            if isinstance(outcome, CheckResult):
                results.append(outcome)
                continue
            logger.error("Health check for %s failed unexpectedly: %r", service.name, outcome)
            results.append(CheckResult(
                service=service.name,
                status=Status.UNHEALTHY,
                response_time_ms=0.0,
                error=f"Unexpected check failure: {outcome}",
            ))
        return results


# ── Helpers ──────────────────────────────────────────────────────────────────


def _elapsed_ms(t0: float) -> float:
    return round((time.perf_counter() - t0) * 1000, 1)


def _classify(resp: httpx.Response) -> tuple[Status, str | None, dict[str, Any] | None]:
    """Map an HTTP response onto (status, error, checks)."""
    try:
        body = resp.json()
    except Exception:
        body = None
    if not isinstance(body, dict):
        body = None

    checks = body.get("checks") if body else None
    if not isinstance(checks, dict):
        checks = None
    reported_error = body.get("error") if body else None

    if not resp.is_success:
        return Status.UNHEALTHY, reported_error or f"HTTP {resp.status_code}", checks

    if body is None:
        return Status.UNHEALTHY, "Invalid health response body", None

    reported = body.get("status")
    if reported == Status.HEALTHY.value:
        return Status.HEALTHY, None, checks
    if reported == Status.DEGRADED.value:
        return Status.DEGRADED, reported_error, checks
    return Status.UNHEALTHY, reported_error or f"Service reported status: {reported}", checks
