"""Monitor loop — runs one full monitoring cycle every fixed interval.

Cycle: check → window → aggregate → persist → incidents → notifications → publish.

Fixed-rate timer: ticks are aligned to the start time, and a cycle that
overruns the interval causes the missed ticks to be skipped rather than
queued. A lock guards against overlapping cycles (timer vs. manual trigger).
Any exception inside a cycle is logged and the next tick proceeds.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any

import redis.asyncio as aioredis

from health_monitor.config import settings
from health_monitor.events.publisher import INCIDENT_OPENED, INCIDENT_RESOLVED, EventPublisher
from health_monitor.health.checker import CheckResult, HealthChecker, Status, utc_now
from health_monitor.health.incidents import IncidentManager, StatusTransition
from health_monitor.health.store import HealthStore
from health_monitor.health.window import SlidingWindowStore, StatusSnapshot
from health_monitor.notifications.manager import NotificationManager
from health_monitor.notifications.store import NotificationStore
from health_monitor.redis_client import get_redis
from health_monitor.registry import ServiceRegistry

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """Outcome of one monitor cycle."""

    started_at: str = field(default_factory=utc_now)
    duration_ms: float = 0.0
    overall_status: Status | None = None
    results: list[CheckResult] = field(default_factory=list)
    transitions: list[StatusTransition] = field(default_factory=list)
    skipped: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "duration_ms": self.duration_ms,
            "overall_status": self.overall_status.value if self.overall_status else None,
            "results": [r.to_dict() for r in self.results],
            "transitions": [t.to_dict() for t in self.transitions],
            "skipped": self.skipped,
            "error": self.error,
        }


class MonitorLoop:
    """Owns the monitoring timer and the per-cycle pipeline.

    Lifecycle:
        loop = MonitorLoop(checker, window, store, incidents, notifications, publisher)
        await loop.start()
        ...
        await loop.stop()
    """

    def __init__(
        self,
        checker: HealthChecker,
        window: SlidingWindowStore,
        store: HealthStore,
        incidents: IncidentManager,
        notifications: NotificationManager,
        publisher: EventPublisher,
        interval_ms: int | None = None,
        prune_interval_seconds: int | None = None,
    ) -> None:
        self.checker = checker
        self.window = window
        self.store = store
        self.incidents = incidents
        self.notifications = notifications
        self.publisher = publisher
        self.interval = (interval_ms or settings.check_interval_ms) / 1000
        self.prune_interval = prune_interval_seconds or settings.history_prune_interval_seconds

        self.cycles = 0
        self.last_cycle_at: str | None = None
        self.last_error: str | None = None
        self.last_snapshot: StatusSnapshot | None = None

        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._last_prune = 0.0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "cycles": self.cycles,
            "interval_ms": int(self.interval * 1000),
            "last_cycle_at": self.last_cycle_at,
            "last_error": self.last_error,
            "event_bus_connected": self.publisher.is_connected,
        }

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Load durable state, then start the timer. StartupError propagates."""
        if self._running:
            return
        self.incidents.initialize()
        self.notifications.initialize()
        if not await self.publisher.ensure_connected():
            logger.warning("Event bus unavailable at startup, events will be dropped until it recovers")

        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="health-monitor-loop")
        logger.info(
            "Monitor loop started: %d services every %.1fs",
            len(self.checker.services), self.interval,
        )

    async def stop(self) -> None:
        """Stop the timer; an in-flight cycle finishes instead of being cancelled."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("Monitor loop stopped after %d cycles", self.cycles)

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while self._running:
            await self.run_cycle()

            next_tick += self.interval
            now = loop.time()
            if now > next_tick:
                missed = int((now - next_tick) // self.interval) + 1
                next_tick += missed * self.interval
                logger.warning("Monitor cycle overran the interval, skipped %d tick(s)", missed)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=next_tick - now)
            except asyncio.TimeoutError:
                pass

    # -- Cycle --------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        """Run one cycle now; returns a skipped report if one is already running."""
        if self._lock.locked():
            logger.warning("Monitor cycle still in flight, skipping this run")
            return CycleReport(skipped=True)

        async with self._lock:
            report = CycleReport()
            t0 = time.perf_counter()
            try:
                await self._cycle(report)
                self.last_error = None
            except Exception as e:
                logger.exception("Monitor cycle failed")
                report.error = f"{type(e).__name__}: {e}"
                self.last_error = report.error
            report.duration_ms = round((time.perf_counter() - t0) * 1000, 1)

            self.cycles += 1
            self.last_cycle_at = report.started_at
            logger.info(
                "Cycle %d: overall=%s services=%d transitions=%d (%.0fms)",
                self.cycles,
                report.overall_status.value if report.overall_status else "n/a",
                len(report.results), len(report.transitions), report.duration_ms,
            )
            return report

    async def _cycle(self, report: CycleReport) -> None:
        await self.publisher.ensure_connected()
        # An empty registry leaves stored incidents and notices alone
        configured = [s.name for s in self.checker.services] or None

        # 1. poll every service concurrently
        results = await self.checker.check_all()
        report.results = results

        # 2. window, 3. aggregate
        try:
            for r in results:
                await self.window.push_result(r)
            snapshot = await self.window.evaluate_and_aggregate()
        except Exception:
            # Window backend down: keep the raw history, abandon the rest of the cycle
            self._persist(results)
            raise
        self.last_snapshot = snapshot
        report.overall_status = snapshot.status

        # 4. durable history
        self._persist(results)

        # 5. incidents
        self.incidents.reconcile(configured)
        transitions = self.incidents.process_status_changes(snapshot.services)
        report.transitions = transitions

        # 6. notifications
        for s in snapshot.services:
            if s.is_healthy:
                await self.notifications.on_service_recovered(s.service, s.display_name)
            else:
                await self.notifications.on_service_unhealthy(
                    s, incident_id=self.incidents.active.get(s.service),
                )
        self.notifications.cleanup_healthy_services(
            [s.service for s in snapshot.services if s.is_healthy], configured,
        )

        # 7. incident transition events
        for t in transitions:
            event_type = INCIDENT_OPENED if t.opened else INCIDENT_RESOLVED
            await self.publisher.publish(event_type, t.to_dict())

        self._maybe_prune()

    def _persist(self, results: list[CheckResult]) -> None:
        for r in results:
            try:
                self.store.record_check(r)
            except sqlite3.Error as e:
                logger.error("Failed to record check history for %s: %s", r.service, e)

    def _maybe_prune(self) -> None:
        now = time.monotonic()
        if self._last_prune and now - self._last_prune < self.prune_interval:
            return
        self._last_prune = now
        try:
            removed = self.store.prune_history()
        except sqlite3.Error as e:
            logger.warning("Check history pruning failed: %s", e)
            return
        if removed:
            logger.info("Pruned %d check history rows", removed)


def build_monitor(
    registry: ServiceRegistry | None = None,
    redis: aioredis.Redis | None = None,
) -> MonitorLoop:
    """Wire the full pipeline from settings."""
    registry = registry or ServiceRegistry()
    services = registry.load()
    redis = redis or get_redis()

    store = HealthStore()
    publisher = EventPublisher(redis)
    return MonitorLoop(
        checker=HealthChecker(services),
        window=SlidingWindowStore(redis, services),
        store=store,
        incidents=IncidentManager(store),
        notifications=NotificationManager(NotificationStore(), publisher),
        publisher=publisher,
    )
