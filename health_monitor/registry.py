"""Service registry — loads services.yaml and provides typed definitions.

Single source of truth for the set of services the monitor polls.
Loaded once at startup; definitions are immutable.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from health_monitor.config import settings

logger = logging.getLogger(__name__)


# ── Data models ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ServiceDefinition:
    """A downstream service whose health endpoint is polled."""

    name: str
    display_name: str
    url: str
    health_path: str = "/health"

    @property
    def health_url(self) -> str:
        return f"{self.url.rstrip('/')}{self.health_path}"


# ── Registry ─────────────────────────────────────────────────────────────────


class ServiceRegistry:
    """Loads and caches service definitions from services.yaml."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or settings.services_file
        self._services: list[ServiceDefinition] = []
        self._loaded = False

    def load(self, force: bool = False) -> list[ServiceDefinition]:
        """Parse services.yaml and return the ServiceDefinition list."""
        if self._loaded and not force:
            return self._services

        self._services = []
        if not self._path.exists():
            logger.warning("Services file not found: %s", self._path)
            self._loaded = True
            return self._services

        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except Exception as e:
            logger.error("Failed to parse %s: %s", self._path, e)
            self._loaded = True
            return self._services

        seen: set[str] = set()
        for entry in raw.get("services", []) or []:
            try:
                service = _parse_service(entry)
            except Exception as e:
                logger.warning("Skipping malformed service entry: %s", e)
                continue
            if service.name in seen:
                logger.warning("Skipping duplicate service entry: %s", service.name)
                continue
            seen.add(service.name)
            self._services.append(service)

        self._loaded = True
        logger.info("Loaded %d services from registry", len(self._services))
        return self._services

    @property
    def services(self) -> list[ServiceDefinition]:
        return self.load()

    @property
    def names(self) -> list[str]:
        return [s.name for s in self.services]

    def get(self, name: str) -> ServiceDefinition | None:
        return next((s for s in self.services if s.name == name), None)

    def to_dict(self) -> list[dict[str, Any]]:
        """Serialize all services for the API."""
        return [
            {
                "name": s.name,
                "display_name": s.display_name,
                "url": s.url,
                "health_path": s.health_path,
            }
            for s in self.services
        ]


# ── Parsers ──────────────────────────────────────────────────────────────────


def _parse_service(raw: dict[str, Any]) -> ServiceDefinition:
    name = raw["name"]
    # Deployments override URLs per environment, e.g. ATS_SERVICE_URL
    url = os.environ.get(raw["url_env"], "") if raw.get("url_env") else ""
    url = url or raw.get("url", "")
    if not url:
        raise ValueError(f"service '{name}' has no url")

    health_path = raw.get("health_path", "/health")
    if not health_path.startswith("/"):
        health_path = "/" + health_path

    return ServiceDefinition(
        name=name,
        display_name=raw.get("display_name", name),
        url=url,
        health_path=health_path,
    )
