"""Shared test fixtures."""

from __future__ import annotations

import itertools
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from health_monitor.events.publisher import EventPublisher
from health_monitor.health.checker import CheckResult, Status
from health_monitor.health.incidents import IncidentManager
from health_monitor.health.store import HealthStore
from health_monitor.health.window import SlidingWindowStore
from health_monitor.notifications.manager import NotificationManager
from health_monitor.notifications.store import NotificationStore
from health_monitor.registry import ServiceDefinition


# ── In-memory Redis double ───────────────────────────────────────────────────


def _span(length: int, start: int, end: int) -> slice:
    """Redis inclusive, negative-aware index range as a Python slice."""
    if start < 0:
        start = max(length + start, 0)
    if end < 0:
        end = length + end
    return slice(start, end + 1)


class _FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._ops: list[tuple[str, tuple[Any, ...]]] = []

    async def __aenter__(self) -> "_FakePipeline":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self._ops.clear()

    def rpush(self, key: str, *values: str) -> "_FakePipeline":
        self._ops.append(("rpush", (key, *values)))
        return self

    def ltrim(self, key: str, start: int, end: int) -> "_FakePipeline":
        self._ops.append(("ltrim", (key, start, end)))
        return self

    def expire(self, key: str, seconds: int) -> "_FakePipeline":
        self._ops.append(("expire", (key, seconds)))
        return self

    async def execute(self) -> list[Any]:
        self._redis._check()
        results = []
        for name, args in self._ops:
            results.append(await getattr(self._redis, name)(*args))
        self._ops.clear()
        return results


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the window store and publisher."""

    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = {}
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.streams: dict[str, list[dict[str, str]]] = {}
        self.down = False
        self._ids = itertools.count(1)

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("Connection refused")

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        return _FakePipeline(self)

    async def ping(self) -> bool:
        self._check()
        return True

    async def rpush(self, key: str, *values: str) -> int:
        self._check()
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        self._check()
        lst = self.lists.get(key, [])
        self.lists[key] = lst[_span(len(lst), start, end)]
        return True

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        self._check()
        lst = self.lists.get(key, [])
        return lst[_span(len(lst), start, end)]

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        self.ttls[key] = seconds
        return True

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._check()
        self.values[key] = value
        if ex:
            self.ttls[key] = ex
        return True

    async def get(self, key: str) -> str | None:
        self._check()
        return self.values.get(key)

    async def xadd(self, name: str, fields: dict[str, str], maxlen: int | None = None,
                   approximate: bool = True) -> str:
        self._check()
        entries = self.streams.setdefault(name, [])
        entries.append(dict(fields))
        if maxlen:
            del entries[:-maxlen]
        return f"{next(self._ids)}-0"

    async def aclose(self) -> None:
        pass


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def services() -> list[ServiceDefinition]:
    return [
        ServiceDefinition(name="ats-service", display_name="ATS Service", url="http://ats.test"),
        ServiceDefinition(name="billing-service", display_name="Billing Service", url="http://billing.test"),
    ]


@pytest.fixture
def health_store(tmp_path: Path) -> HealthStore:
    store = HealthStore(db_path=tmp_path / "test_health.db")
    yield store
    store.close()


@pytest.fixture
def notification_store(tmp_path: Path) -> NotificationStore:
    return NotificationStore(db_path=tmp_path / "test_health.db")


@pytest.fixture
def window(fake_redis: FakeRedis, services: list[ServiceDefinition]) -> SlidingWindowStore:
    return SlidingWindowStore(
        fake_redis, services,
        window_size=5, threshold=3, window_ttl=300, snapshot_ttl=60,
        key_prefix="test", check_interval_ms=15_000,
    )


@pytest_asyncio.fixture
async def publisher(fake_redis: FakeRedis) -> EventPublisher:
    pub = EventPublisher(fake_redis, stream_prefix="events", maxlen=100, source_service="health-monitor")
    await pub.connect()
    return pub


@pytest.fixture
def incident_manager(health_store: HealthStore) -> IncidentManager:
    return IncidentManager(health_store)


@pytest.fixture
def notification_manager(
    notification_store: NotificationStore, publisher: EventPublisher,
) -> NotificationManager:
    return NotificationManager(notification_store, publisher)


def make_result(service: str, status: Status, error: str | None = None, ms: float = 12.0) -> CheckResult:
    return CheckResult(service=service, status=status, response_time_ms=ms, error=error)


def published(fake_redis: FakeRedis, event_type: str) -> list[dict[str, str]]:
    return fake_redis.streams.get(f"events:{event_type}", [])
