"""Incident lifecycle — none → open → resolved, one open incident per service.

The `service → incident id` map is a cache of the unresolved rows in
HealthStore. It is rebuilt from storage at startup and on every
reconcile(), and only advances after a successful write.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Iterable

from health_monitor.errors import StartupError
from health_monitor.health.checker import Status
from health_monitor.health.store import HealthStore, Incident
from health_monitor.health.window import ServiceStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusTransition:
    """An incident opening or resolving for a service."""

    service_name: str
    from_status: str
    to_status: str
    incident_id: str
    severity: str

    @property
    def opened(self) -> bool:
        return self.to_status != Status.HEALTHY.value

    @property
    def description(self) -> str:
        return f"{self.from_status} → {self.to_status}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_name": self.service_name,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "incident_id": self.incident_id,
            "severity": self.severity,
        }


class IncidentManager:
    """Opens, updates and resolves incidents from aggregated service status."""

    def __init__(self, store: HealthStore) -> None:
        self.store = store
        self.active: dict[str, str] = {}

    def initialize(self) -> None:
        """Load every unresolved incident so a restart keeps tracking outages."""
        try:
            incidents = self.store.get_unresolved_incidents()
        except sqlite3.Error as e:
            raise StartupError(f"Cannot load open incidents: {e}") from e

        self.active = {}
        for incident in incidents:  # newest first
            self.active.setdefault(incident.service_name, incident.id)
        logger.info("Incident manager initialised: %d open incidents", len(self.active))

    def reconcile(self, configured: Iterable[str] | None = None) -> None:
        """Rebuild the cache from storage and resolve stale open incidents.

        Older duplicates for one service are resolved, and when `configured`
        is given so are incidents for services no longer being monitored.
        """
        try:
            incidents = self.store.get_unresolved_incidents()
        except sqlite3.Error as e:
            logger.warning("Incident reconciliation skipped, storage read failed: %s", e)
            return

        known = set(configured) if configured is not None else None
        fresh: dict[str, str] = {}
        for incident in incidents:
            if known is not None and incident.service_name not in known:
                reason = "unmonitored service"
            elif incident.service_name not in fresh:
                fresh[incident.service_name] = incident.id
                continue
            else:
                # Older duplicate from a racing writer; keep only the newest open
                reason = "duplicate"
            try:
                self.store.resolve_incident(incident.id)
                logger.warning(
                    "Resolved %s incident %s for %s",
                    reason, incident.id, incident.service_name,
                )
            except sqlite3.Error as e:
                logger.error("Failed to resolve %s incident %s: %s", reason, incident.id, e)

        if fresh != self.active:
            logger.info("Incident cache drift repaired: %s -> %s", self.active, fresh)
        self.active = fresh

    def process_status_changes(self, statuses: list[ServiceStatus]) -> list[StatusTransition]:
        """Apply one cycle of aggregated statuses; returns open/resolve transitions."""
        transitions: list[StatusTransition] = []
        for s in statuses:
            incident_id = self.active.get(s.service)

            if not s.is_healthy and incident_id is None:
                t = self._open(s)
            elif s.is_healthy and incident_id is not None:
                t = self._resolve(s.service, incident_id)
            elif not s.is_healthy and incident_id is not None:
                self._update(s, incident_id)
                t = None
            else:
                t = None

            if t is not None:
                transitions.append(t)
        return transitions

    def _open(self, s: ServiceStatus) -> StatusTransition | None:
        incident = Incident(
            service_name=s.service,
            severity=s.status.value,
            error_details=_error_details(s),
        )
        try:
            self.store.create_incident(incident)
        except sqlite3.Error as e:
            logger.error("Failed to create incident for %s: %s", s.service, e)
            return None

        self.active[s.service] = incident.id
        logger.warning("Incident opened for %s (%s): %s", s.service, s.status.value, incident.id)
        return StatusTransition(
            service_name=s.service,
            from_status=Status.HEALTHY.value,
            to_status=s.status.value,
            incident_id=incident.id,
            severity=s.status.value,
        )

    def _update(self, s: ServiceStatus, incident_id: str) -> None:
        try:
            self.store.update_incident(incident_id, s.status.value, _error_details(s))
        except sqlite3.Error as e:
            logger.error("Failed to update incident %s for %s: %s", incident_id, s.service, e)

    def _resolve(self, service: str, incident_id: str) -> StatusTransition | None:
        try:
            incident = self.store.get_incident(incident_id)
            self.store.resolve_incident(incident_id)
        except sqlite3.Error as e:
            logger.error("Failed to resolve incident %s for %s: %s", incident_id, service, e)
            return None

        del self.active[service]
        logger.info("Incident resolved for %s: %s", service, incident_id)
        return StatusTransition(
            service_name=service,
            from_status="incident",
            to_status=Status.HEALTHY.value,
            incident_id=incident_id,
            severity=incident.severity if incident else Status.UNHEALTHY.value,
        )


def _error_details(s: ServiceStatus) -> dict[str, Any]:
    return {
        "error": s.error,
        "last_check": s.last_check,
        "last_response_time": s.last_response_time,
        "recent_results": [r.value for r in s.recent_results],
    }
