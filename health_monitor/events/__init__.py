from .publisher import (
    INCIDENT_OPENED,
    INCIDENT_RESOLVED,
    SERVICE_RECOVERED,
    SERVICE_UNHEALTHY,
    EventEnvelope,
    EventPublisher,
)

__all__ = [
    "EventEnvelope",
    "EventPublisher",
    "INCIDENT_OPENED",
    "INCIDENT_RESOLVED",
    "SERVICE_RECOVERED",
    "SERVICE_UNHEALTHY",
]
