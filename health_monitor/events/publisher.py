"""Event publisher — best-effort transition events on Redis Streams.

Topic = event type: each event is XADDed to `{prefix}:{event_type}` so
downstream consumers bind a consumer group per topic and get
at-least-once delivery. Publishing never raises into the monitor loop.

Event types:
  system.health.service_unhealthy   — a disruption notice was created
  system.health.service_recovered   — a disruption notice was cleared
  system.health.incident_opened     — an incident was opened (extension)
  system.health.incident_resolved   — an incident was resolved (extension)

The two incident types are additions to the service_unhealthy /
service_recovered pair. They live on their own streams, so consumers bound
only to the first two see exactly one event per outage and one per recovery.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import redis.asyncio as aioredis
from pydantic import BaseModel, Field

from health_monitor.config import settings
from health_monitor.errors import EventBusUnavailable
from health_monitor.health.checker import utc_now

logger = logging.getLogger(__name__)

SERVICE_UNHEALTHY = "system.health.service_unhealthy"
SERVICE_RECOVERED = "system.health.service_recovered"
INCIDENT_OPENED = "system.health.incident_opened"
INCIDENT_RESOLVED = "system.health.incident_resolved"


class EventEnvelope(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    timestamp: str = Field(default_factory=utc_now)
    source_service: str
    payload: dict[str, Any] = Field(default_factory=dict)


class EventPublisher:
    """Publishes EventEnvelopes; a disconnected publisher logs and drops."""

    def __init__(
        self,
        redis: aioredis.Redis,
        stream_prefix: str | None = None,
        maxlen: int | None = None,
        source_service: str | None = None,
    ) -> None:
        self.redis = redis
        self.stream_prefix = stream_prefix or settings.event_stream_prefix
        self.maxlen = maxlen or settings.event_stream_maxlen
        self.source_service = source_service or settings.source_service
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def stream_key(self, event_type: str) -> str:
        return f"{self.stream_prefix}:{event_type}"

    async def connect(self) -> None:
        """Verify the bus is reachable; raises EventBusUnavailable if not."""
        try:
            await self.redis.ping()
        except Exception as e:
            self._connected = False
            raise EventBusUnavailable(f"Event bus unreachable: {e}") from e
        self._connected = True
        logger.info("Event publisher connected (streams %s:*)", self.stream_prefix)

    async def ensure_connected(self) -> bool:
        """Retry the connection if it was never established."""
        if self._connected:
            return True
        try:
            await self.connect()
        except EventBusUnavailable as e:
            logger.debug("%s", e)
        return self._connected

    async def publish(self, event_type: str, payload: dict[str, Any]) -> bool:
        """Wrap payload in an envelope and append it to the topic stream."""
        if not self._connected:
            logger.warning("Event bus not connected, dropping %s event", event_type)
            return False

        envelope = EventEnvelope(
            event_type=event_type,
            source_service=self.source_service,
            payload=payload,
        )
        try:
            await self.redis.xadd(
                self.stream_key(event_type),
                {"event_type": event_type, "envelope": envelope.model_dump_json()},
                maxlen=self.maxlen,
                approximate=True,
            )
        except Exception as e:
            logger.warning("Failed to publish %s event %s: %s", event_type, envelope.event_id, e)
            return False

        logger.info("Published %s (%s)", event_type, envelope.event_id)
        return True

    async def close(self) -> None:
        self._connected = False
