"""Disruption notifications — one active notice per unhealthy service.

Fires on:
- Service turning unhealthy/degraded (creates notice, publishes service_unhealthy)
- Service recovering (deactivates notice, publishes service_recovered)

The `service → notification id` map is only a cache. Every cycle
cleanup_healthy_services() re-reads all active notices from storage and
deactivates those whose service is healthy, which repairs orphans left by
restarts, duplicate writes or a second monitor instance.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Iterable

from health_monitor.errors import StartupError
from health_monitor.events.publisher import SERVICE_RECOVERED, SERVICE_UNHEALTHY, EventPublisher
from health_monitor.health.checker import Status
from health_monitor.health.window import ServiceStatus
from health_monitor.notifications.store import Notification, NotificationStore

logger = logging.getLogger(__name__)

_SEVERITY = {
    Status.UNHEALTHY: "error",
    Status.DEGRADED: "warning",
}


class NotificationManager:
    """Creates and clears service_disruption notifications."""

    def __init__(self, store: NotificationStore, publisher: EventPublisher) -> None:
        self.store = store
        self.publisher = publisher
        self.active: dict[str, str] = {}

    def initialize(self) -> None:
        """Load active disruption notices into the cache."""
        try:
            notifications = self.store.list_active()
        except sqlite3.Error as e:
            raise StartupError(f"Cannot load active notifications: {e}") from e

        self.active = {}
        for n in notifications:
            if n.service_name:
                self.active.setdefault(n.service_name, n.id)
        logger.info("Notification manager initialised: %d active disruptions", len(self.active))

    async def on_service_unhealthy(
        self,
        status: ServiceStatus,
        incident_id: str | None = None,
    ) -> Notification | None:
        """Create a disruption notice unless one is already active (idempotent)."""
        service = status.service
        if service in self.active:
            return None

        try:
            existing = self.store.find_active(service)
        except sqlite3.Error as e:
            logger.error("Failed to look up notification for %s: %s", service, e)
            return None
        if existing is not None:
            # Written by an earlier process or another instance
            self.active[service] = existing.id
            logger.info("Adopted existing disruption notice %s for %s", existing.id, service)
            return None

        severity = _SEVERITY.get(status.status, "error")
        notification = Notification(
            severity=severity,
            title=_title(status),
            message=_message(status),
            metadata={
                "service_name": service,
                "display_name": status.display_name,
                "error": status.error,
            },
        )
        try:
            self.store.create(notification)
        except sqlite3.Error as e:
            logger.error("Failed to create notification for %s: %s", service, e)
            return None

        self.active[service] = notification.id
        logger.warning("Disruption notice created for %s (%s)", service, severity)

        payload: dict[str, Any] = {
            "notification_id": notification.id,
            "service_name": service,
            "display_name": status.display_name,
            "status": status.status.value,
            "severity": severity,
            "error": status.error,
        }
        if incident_id:
            payload["incident_id"] = incident_id
        await self.publisher.publish(SERVICE_UNHEALTHY, payload)
        return notification

    async def on_service_recovered(self, service: str, display_name: str | None = None) -> bool:
        """Deactivate the service's notice if one is active."""
        notification_id = self.active.get(service)
        if notification_id is None:
            return False

        try:
            deactivated = self.store.deactivate(notification_id)
        except sqlite3.Error as e:
            logger.error("Failed to deactivate notification %s for %s: %s", notification_id, service, e)
            return False

        del self.active[service]
        if not deactivated:
            logger.info("Disruption notice %s for %s was already cleared", notification_id, service)
            return False

        logger.info("Disruption notice cleared for %s", service)
        await self.publisher.publish(SERVICE_RECOVERED, {
            "notification_id": notification_id,
            "service_name": service,
            "display_name": display_name or service,
            "status": Status.HEALTHY.value,
        })
        return True

    def cleanup_healthy_services(
        self,
        healthy_services: Iterable[str],
        configured: Iterable[str] | None = None,
    ) -> int:
        """Deactivate every stored active notice whose service is healthy.

        When `configured` is given, notices for services no longer being
        monitored are deactivated too.
        """
        try:
            active = self.store.list_active()
        except sqlite3.Error as e:
            logger.warning("Notification cleanup skipped, storage read failed: %s", e)
            return 0

        healthy = set(healthy_services)
        known = set(configured) if configured is not None else None
        cleared = 0
        for n in active:
            service = n.service_name
            if service is None:
                continue
            if service not in healthy and (known is None or service in known):
                continue
            try:
                deactivated = self.store.deactivate(n.id)
            except sqlite3.Error as e:
                logger.error("Failed to deactivate orphaned notification %s: %s", n.id, e)
                continue
            if self.active.get(service) == n.id:
                del self.active[service]
            if deactivated:
                cleared += 1

        if cleared:
            logger.info("Cleanup deactivated %d orphaned disruption notices", cleared)
        return cleared


def _title(status: ServiceStatus) -> str:
    if status.status == Status.DEGRADED:
        return f"{status.display_name} is degraded"
    return f"{status.display_name} is unavailable"


def _message(status: ServiceStatus) -> str:
    if status.status == Status.DEGRADED:
        return (
            f"{status.display_name} is responding slowly or with reduced functionality. "
            "We are monitoring the situation."
        )
    return (
        f"{status.display_name} is currently experiencing an outage. "
        "Some features may be unavailable while we investigate."
    )
