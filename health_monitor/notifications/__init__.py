"""User-facing service disruption notifications."""

from .manager import NotificationManager
from .store import SERVICE_DISRUPTION, Notification, NotificationStore
