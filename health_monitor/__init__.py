"""Service health monitor — polls platform services, debounces status, tracks incidents."""

__version__ = "0.1.0"
