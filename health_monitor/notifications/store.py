"""Notification storage — SQLite-backed user-facing disruption notices."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from health_monitor.config import settings
from health_monitor.health.checker import utc_now

logger = logging.getLogger(__name__)

SERVICE_DISRUPTION = "service_disruption"
SOURCE = "health-monitor"


@dataclass
class Notification:
    """A site-wide notice shown to users while a service is disrupted."""

    severity: str
    title: str
    message: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    type: str = SERVICE_DISRUPTION
    source: str = SOURCE
    is_active: bool = True
    dismissible: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def service_name(self) -> str | None:
        return self.metadata.get("service_name")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "source": self.source,
            "title": self.title,
            "message": self.message,
            "is_active": self.is_active,
            "dismissible": self.dismissible,
            "metadata": self.metadata,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Notification":
        meta = row.get("metadata", "{}")
        if isinstance(meta, str):
            try:
                meta = json.loads(meta)
            except Exception:
                meta = {}
        return cls(
            id=row["id"],
            type=row.get("type", SERVICE_DISRUPTION),
            severity=row.get("severity", "warning"),
            source=row.get("source", SOURCE),
            title=row.get("title", ""),
            message=row.get("message", ""),
            is_active=bool(row.get("is_active", 0)),
            dismissible=bool(row.get("dismissible", 0)),
            metadata=meta,
            created_at=row.get("created_at", ""),
            updated_at=row.get("updated_at", ""),
        )


class NotificationStore:
    """SQLite-backed notification storage."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        path = Path(db_path or settings.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = str(path)
        self._init_db()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS notifications (
                    id           TEXT PRIMARY KEY,
                    type         TEXT NOT NULL,
                    severity     TEXT NOT NULL,
                    source       TEXT NOT NULL,
                    title        TEXT NOT NULL DEFAULT '',
                    message      TEXT NOT NULL DEFAULT '',
                    is_active    INTEGER NOT NULL DEFAULT 1,
                    dismissible  INTEGER NOT NULL DEFAULT 0,
                    service_name TEXT,
                    metadata     TEXT NOT NULL DEFAULT '{}',
                    created_at   TEXT NOT NULL,
                    updated_at   TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_notifications_active
                ON notifications (type, is_active, service_name)
            """)

    def create(self, notification: Notification) -> Notification:
        with self._conn() as conn:
            conn.execute("""
                INSERT INTO notifications (id, type, severity, source, title, message,
                                           is_active, dismissible, service_name,
                                           metadata, created_at, updated_at)
                VALUES (:id, :type, :severity, :source, :title, :message,
                        :is_active, :dismissible, :service_name,
                        :metadata, :created_at, :updated_at)
            """, {
                **notification.to_dict(),
                "is_active": int(notification.is_active),
                "dismissible": int(notification.dismissible),
                "service_name": notification.service_name,
                "metadata": json.dumps(notification.metadata),
            })
        return notification

    def get(self, notification_id: str) -> Notification | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM notifications WHERE id = ?", (notification_id,)
            ).fetchone()
        return Notification.from_row(dict(row)) if row else None

    def list_active(self, type: str = SERVICE_DISRUPTION) -> list[Notification]:
        """All active notifications of a type, newest first."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE type = ? AND is_active = 1 "
                "ORDER BY created_at DESC",
                (type,)
            ).fetchall()
        return [Notification.from_row(dict(r)) for r in rows]

    def find_active(self, service_name: str, type: str = SERVICE_DISRUPTION) -> Notification | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM notifications "
                "WHERE type = ? AND is_active = 1 AND service_name = ? "
                "ORDER BY created_at DESC LIMIT 1",
                (type, service_name)
            ).fetchone()
        return Notification.from_row(dict(row)) if row else None

    def deactivate(self, notification_id: str) -> bool:
        """Mark a notification inactive; False if it was not active."""
        with self._conn() as conn:
            cursor = conn.execute(
                "UPDATE notifications SET is_active = 0, updated_at = ? "
                "WHERE id = ? AND is_active = 1",
                (utc_now(), notification_id)
            )
        return cursor.rowcount > 0

    def close(self) -> None:
        """No-op — connections are created per-call."""
        pass
