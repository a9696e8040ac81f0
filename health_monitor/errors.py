from __future__ import annotations


class StartupError(Exception):
    """Raised when durable state cannot be loaded at startup."""


class EventBusUnavailable(Exception):
    """Raised when the event bus cannot be reached."""
