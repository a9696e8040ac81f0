"""Tests for the monitor loop: full cycles against mocked services."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import httpx
import pytest

from conftest import FakeRedis, published
from health_monitor.errors import StartupError
from health_monitor.events.publisher import (
    INCIDENT_OPENED,
    INCIDENT_RESOLVED,
    SERVICE_RECOVERED,
    SERVICE_UNHEALTHY,
    EventPublisher,
)
from health_monitor.health.checker import CheckResult, HealthChecker, Status
from health_monitor.health.incidents import IncidentManager
from health_monitor.health.scheduler import MonitorLoop
from health_monitor.health.store import HealthStore, Incident
from health_monitor.health.window import SlidingWindowStore
from health_monitor.notifications.manager import NotificationManager
from health_monitor.notifications.store import Notification, NotificationStore
from health_monitor.registry import ServiceDefinition

HOSTS = {"ats.test": "ats-service", "billing.test": "billing-service"}


class FakeServices:
    """MockTransport handler whose per-service health can be flipped between cycles."""

    def __init__(self) -> None:
        self.status = {"ats-service": "healthy", "billing-service": "healthy"}
        self.gate: asyncio.Event | None = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.gate is not None:
            await self.gate.wait()
        status = self.status[HOSTS[request.url.host]]
        if status == "down":
            return httpx.Response(503, json={"status": "unhealthy", "error": "db down"})
        return httpx.Response(200, json={"status": status})


@pytest.fixture
def fake_services() -> FakeServices:
    return FakeServices()


@pytest.fixture
def monitor(
    fake_services: FakeServices,
    services: list[ServiceDefinition],
    window: SlidingWindowStore,
    health_store: HealthStore,
    incident_manager: IncidentManager,
    notification_manager: NotificationManager,
    publisher: EventPublisher,
) -> MonitorLoop:
    checker = HealthChecker(services, timeout_ms=2000, transport=httpx.MockTransport(fake_services))
    return MonitorLoop(
        checker, window, health_store, incident_manager, notification_manager, publisher,
        interval_ms=20, prune_interval_seconds=3600,
    )


async def _cycles(monitor: MonitorLoop, fake_services: FakeServices, *ats_statuses: str) -> None:
    for s in ats_statuses:
        fake_services.status["ats-service"] = s
        report = await monitor.run_cycle()
        assert report.error is None


class TestOutageLifecycle:
    @pytest.mark.asyncio
    async def test_sustained_outage_opens_one_incident_and_one_notice(
        self,
        monitor: MonitorLoop,
        fake_services: FakeServices,
        health_store: HealthStore,
        notification_store: NotificationStore,
        fake_redis: FakeRedis,
    ) -> None:
        await _cycles(monitor, fake_services, "healthy", "healthy", "down", "down")
        assert health_store.get_unresolved_incidents() == []
        assert published(fake_redis, SERVICE_UNHEALTHY) == []

        await _cycles(monitor, fake_services, "down")

        assert monitor.last_snapshot.status == Status.UNHEALTHY
        [incident] = health_store.get_unresolved_incidents()
        assert incident.service_name == "ats-service"
        assert incident.severity == "unhealthy"

        [notice] = notification_store.list_active()
        assert notice.service_name == "ats-service"
        assert notice.severity == "error"

        events = published(fake_redis, SERVICE_UNHEALTHY)
        assert len(events) == 1
        payload = json.loads(events[0]["envelope"])["payload"]
        assert payload["incident_id"] == incident.id
        assert len(published(fake_redis, INCIDENT_OPENED)) == 1

        # Still down: nothing new
        await _cycles(monitor, fake_services, "down")
        assert len(health_store.get_incidents()) == 1
        assert len(published(fake_redis, SERVICE_UNHEALTHY)) == 1

    @pytest.mark.asyncio
    async def test_recovery_resolves_incident_and_clears_notice(
        self,
        monitor: MonitorLoop,
        fake_services: FakeServices,
        health_store: HealthStore,
        notification_store: NotificationStore,
        fake_redis: FakeRedis,
    ) -> None:
        await _cycles(monitor, fake_services, "healthy", "healthy", "down", "down", "down")
        [incident] = health_store.get_unresolved_incidents()

        # Window still holds three failures until the third healthy result
        await _cycles(monitor, fake_services, "healthy", "healthy")
        assert health_store.get_unresolved_incidents() != []

        await _cycles(monitor, fake_services, "healthy")

        assert monitor.last_snapshot.status == Status.HEALTHY
        assert health_store.get_unresolved_incidents() == []
        assert health_store.get_incident(incident.id).resolved_at is not None
        assert notification_store.list_active() == []
        assert len(published(fake_redis, SERVICE_RECOVERED)) == 1

        [resolved] = published(fake_redis, INCIDENT_RESOLVED)
        assert json.loads(resolved["envelope"])["payload"]["incident_id"] == incident.id

    @pytest.mark.asyncio
    async def test_healthy_cycle_clears_orphaned_notice(
        self, monitor: MonitorLoop, notification_store: NotificationStore, fake_redis: FakeRedis,
    ) -> None:
        notification_store.create(Notification(
            severity="error", title="down", message="down",
            metadata={"service_name": "ats-service", "display_name": "ATS Service", "error": None},
        ))

        await monitor.run_cycle()
        assert notification_store.list_active() == []
        assert published(fake_redis, SERVICE_RECOVERED) == []


class TestCycleFailures:
    @pytest.mark.asyncio
    async def test_redis_outage_fails_cycle_and_next_cycle_recovers(
        self, monitor: MonitorLoop, fake_redis: FakeRedis,
    ) -> None:
        fake_redis.down = True
        report = await monitor.run_cycle()
        assert report.error is not None
        assert "ConnectionError" in report.error
        assert monitor.last_error == report.error
        assert monitor.cycles == 1

        fake_redis.down = False
        report = await monitor.run_cycle()
        assert report.error is None
        assert monitor.last_error is None
        assert report.overall_status == Status.HEALTHY

    @pytest.mark.asyncio
    async def test_history_kept_while_window_backend_down(
        self, monitor: MonitorLoop, fake_redis: FakeRedis, health_store: HealthStore,
    ) -> None:
        fake_redis.down = True
        report = await monitor.run_cycle()

        assert report.error is not None
        assert len(health_store.get_history("ats-service")) == 1
        assert len(health_store.get_history("billing-service")) == 1

    @pytest.mark.asyncio
    async def test_retires_state_for_unmonitored_services(
        self, monitor: MonitorLoop, health_store: HealthStore, notification_store: NotificationStore,
    ) -> None:
        incident = health_store.create_incident(Incident(service_name="retired-service", severity="unhealthy"))
        notice = notification_store.create(Notification(
            severity="error", title="down", message="down",
            metadata={"service_name": "retired-service", "display_name": "Retired", "error": None},
        ))

        report = await monitor.run_cycle()
        assert report.error is None
        assert health_store.get_incident(incident.id).resolved_at is not None
        assert notification_store.get(notice.id).is_active is False

    @pytest.mark.asyncio
    async def test_history_write_failure_does_not_abort_cycle(
        self, monitor: MonitorLoop, health_store: HealthStore,
    ) -> None:
        with patch.object(health_store, "record_check", side_effect=sqlite3.OperationalError("disk full")):
            report = await monitor.run_cycle()

        assert report.error is None
        assert report.overall_status == Status.HEALTHY
        assert len(report.results) == 2

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self, monitor: MonitorLoop, fake_services: FakeServices) -> None:
        fake_services.gate = asyncio.Event()
        first = asyncio.create_task(monitor.run_cycle())
        while not monitor.in_flight:
            await asyncio.sleep(0)

        skipped = await monitor.run_cycle()
        assert skipped.skipped is True

        fake_services.gate.set()
        report = await first
        assert report.skipped is False
        assert monitor.cycles == 1

    @pytest.mark.asyncio
    async def test_prunes_old_history(self, monitor: MonitorLoop, health_store: HealthStore) -> None:
        old = (datetime.now(timezone.utc) - timedelta(days=60)).isoformat()
        health_store.record_check(CheckResult(
            service="ats-service", status=Status.HEALTHY, response_time_ms=1.0, timestamp=old,
        ))

        await monitor.run_cycle()
        history = health_store.get_history("ats-service")
        assert len(history) == 1
        assert history[0]["checked_at"] != old


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_runs_cycles_until_stopped(self, monitor: MonitorLoop) -> None:
        await monitor.start()
        assert monitor.is_running
        await asyncio.sleep(0.15)
        await monitor.stop()

        assert not monitor.is_running
        assert monitor.cycles >= 2
        cycles = monitor.cycles
        await asyncio.sleep(0.05)
        assert monitor.cycles == cycles

    @pytest.mark.asyncio
    async def test_status(self, monitor: MonitorLoop) -> None:
        await monitor.run_cycle()
        state = monitor.status()
        assert state["running"] is False
        assert state["cycles"] == 1
        assert state["interval_ms"] == 20
        assert state["event_bus_connected"] is True

    @pytest.mark.asyncio
    async def test_startup_error_propagates(self, monitor: MonitorLoop, health_store: HealthStore) -> None:
        with patch.object(health_store, "get_unresolved_incidents", side_effect=sqlite3.OperationalError("locked")):
            with pytest.raises(StartupError):
                await monitor.start()
        assert not monitor.is_running

    @pytest.mark.asyncio
    async def test_starts_without_event_bus(self, monitor: MonitorLoop, fake_redis: FakeRedis) -> None:
        await monitor.publisher.close()
        fake_redis.down = True
        await monitor.start()
        assert monitor.is_running
        assert monitor.publisher.is_connected is False

        fake_redis.down = False
        await monitor.stop()
