"""SQLite storage for check history and incidents.

check history is append-only; incidents are one row per continuous
non-healthy period, resolved in place and never reopened.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from health_monitor.config import settings
from health_monitor.health.checker import CheckResult, Status, utc_now

logger = logging.getLogger(__name__)


# ── Models ───────────────────────────────────────────────────────────────────


@dataclass
class Incident:
    """One continuous non-healthy period of a service."""

    service_name: str
    severity: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: str = field(default_factory=utc_now)
    resolved_at: str | None = None
    error_details: dict[str, Any] = field(default_factory=dict)
    updated_at: str = field(default_factory=utc_now)

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Incident":
        details = row.get("error_details") or "{}"
        if isinstance(details, str):
            try:
                details = json.loads(details)
            except ValueError:
                details = {"error": details}
        return cls(
            id=row["id"],
            service_name=row["service_name"],
            severity=row["severity"],
            started_at=row["started_at"],
            resolved_at=row.get("resolved_at"),
            error_details=details,
            updated_at=row.get("updated_at") or row["started_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "service_name": self.service_name,
            "severity": self.severity,
            "started_at": self.started_at,
            "resolved_at": self.resolved_at,
            "error_details": self.error_details,
            "updated_at": self.updated_at,
            "duration_seconds": _duration_seconds(self.started_at, self.resolved_at),
        }


def _duration_seconds(started_at: str, resolved_at: str | None) -> int | None:
    if not resolved_at:
        return None
    try:
        delta = datetime.fromisoformat(resolved_at) - datetime.fromisoformat(started_at)
    except ValueError:
        return None
    return max(int(delta.total_seconds()), 0)


# ── Store ────────────────────────────────────────────────────────────────────


class HealthStore:
    """SQLite-backed storage for check history + incidents."""

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or settings.db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS health_check_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                service_name TEXT NOT NULL,
                status TEXT NOT NULL,
                response_time_ms REAL,
                error_message TEXT,
                checked_at TEXT NOT NULL,
                check_details TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_history_service
                ON health_check_history (service_name, checked_at DESC);

            CREATE TABLE IF NOT EXISTS health_incidents (
                id TEXT PRIMARY KEY,
                service_name TEXT NOT NULL,
                severity TEXT NOT NULL,
                started_at TEXT NOT NULL,
                resolved_at TEXT,
                error_details TEXT,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_incidents_service
                ON health_incidents (service_name, resolved_at);
        """)
        conn.commit()

    # ── Check history ────────────────────────────────────────────────────

    def record_check(self, result: CheckResult) -> None:
        """Append one check result to the history log."""
        conn = self._get_conn()
        conn.execute(
            "INSERT INTO health_check_history "
            "(service_name, status, response_time_ms, error_message, checked_at, check_details) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                result.service, result.status.value, result.response_time_ms,
                result.error, result.timestamp,
                json.dumps(result.checks) if result.checks else None,
            ),
        )
        conn.commit()

    def get_history(self, service_name: str, limit: int = 100) -> list[dict[str, Any]]:
        """Most recent history rows for a service, newest first."""
        rows = self._get_conn().execute(
            "SELECT * FROM health_check_history WHERE service_name = ? "
            "ORDER BY checked_at DESC LIMIT ?",
            (service_name, limit),
        ).fetchall()
        history = []
        for r in rows:
            d = dict(r)
            if d.get("check_details"):
                d["check_details"] = json.loads(d["check_details"])
            history.append(d)
        return history

    def get_uptime_24h(self, service_name: str) -> float:
        """Percentage of healthy checks over the last 24 hours."""
        cutoff = (datetime.now(timezone.utc) - timedelta(hours=24)).isoformat()
        rows = self._get_conn().execute(
            "SELECT status FROM health_check_history "
            "WHERE service_name = ? AND checked_at >= ?",
            (service_name, cutoff),
        ).fetchall()

        if not rows:
            return 100.0  # No data = assume up

        healthy = sum(1 for r in rows if r["status"] == Status.HEALTHY.value)
        return round(healthy / len(rows) * 100, 1)

    def prune_history(self, days: int | None = None) -> int:
        """Delete history rows older than N days; returns rows removed."""
        days = days or settings.history_retention_days
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        conn = self._get_conn()
        cursor = conn.execute(
            "DELETE FROM health_check_history WHERE checked_at < ?", (cutoff,),
        )
        conn.commit()
        return cursor.rowcount

    # ── Incidents ────────────────────────────────────────────────────────

    def create_incident(self, incident: Incident) -> Incident:
        conn = self._get_conn()
        conn.execute(
            "INSERT INTO health_incidents "
            "(id, service_name, severity, started_at, resolved_at, error_details, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                incident.id, incident.service_name, incident.severity,
                incident.started_at, incident.resolved_at,
                json.dumps(incident.error_details), incident.updated_at,
            ),
        )
        conn.commit()
        return incident

    def update_incident(self, incident_id: str, severity: str, error_details: dict[str, Any]) -> None:
        """Refresh severity/details of an ongoing incident."""
        conn = self._get_conn()
        conn.execute(
            "UPDATE health_incidents SET severity = ?, error_details = ?, updated_at = ? "
            "WHERE id = ? AND resolved_at IS NULL",
            (severity, json.dumps(error_details), utc_now(), incident_id),
        )
        conn.commit()

    def resolve_incident(self, incident_id: str, resolved_at: str | None = None) -> None:
        resolved_at = resolved_at or utc_now()
        conn = self._get_conn()
        conn.execute(
            "UPDATE health_incidents SET resolved_at = ?, updated_at = ? "
            "WHERE id = ? AND resolved_at IS NULL",
            (resolved_at, resolved_at, incident_id),
        )
        conn.commit()

    def get_incident(self, incident_id: str) -> Incident | None:
        row = self._get_conn().execute(
            "SELECT * FROM health_incidents WHERE id = ?", (incident_id,),
        ).fetchone()
        return Incident.from_row(dict(row)) if row else None

    def get_unresolved_incidents(self) -> list[Incident]:
        """All open incidents, newest first."""
        rows = self._get_conn().execute(
            "SELECT * FROM health_incidents WHERE resolved_at IS NULL "
            "ORDER BY started_at DESC",
        ).fetchall()
        return [Incident.from_row(dict(r)) for r in rows]

    def get_incidents(self, service_name: str | None = None, limit: int = 50) -> list[Incident]:
        """Recent incidents (open and resolved), optionally for one service."""
        if service_name:
            rows = self._get_conn().execute(
                "SELECT * FROM health_incidents WHERE service_name = ? "
                "ORDER BY started_at DESC LIMIT ?",
                (service_name, limit),
            ).fetchall()
        else:
            rows = self._get_conn().execute(
                "SELECT * FROM health_incidents ORDER BY started_at DESC LIMIT ?", (limit,),
            ).fetchall()
        return [Incident.from_row(dict(r)) for r in rows]

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None
