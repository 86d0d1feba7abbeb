"""Incidents and their event log, stored in SQLite."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import timedelta
from typing import Any, Protocol

from ..db import SQLiteStore, from_iso, persistence, to_iso, utcnow
from ..errors import NotFoundError
from .models import (
    ACTIVE_STATUSES,
    Incident,
    IncidentEvent,
    IncidentMetrics,
    IncidentStatus,
    Severity,
)

logger = logging.getLogger(__name__)

_ACTIVE = tuple(s.value for s in ACTIVE_STATUSES)
_UPDATABLE = {"title", "status", "severity", "details", "resolved_at"}


class IncidentRepository(Protocol):
    def find_all(
        self, page: int = 1, limit: int = 10, status: IncidentStatus | None = None,
    ) -> tuple[list[Incident], int]: ...
    def find_active(self) -> list[Incident]: ...
    def find_active_for_check(self, check_id: str) -> Incident | None: ...
    def find_by_id(self, incident_id: str) -> Incident | None: ...
    def create(self, incident: Incident) -> Incident: ...
    def update(self, incident_id: str, **changes: Any) -> Incident: ...
    def add_event(self, event: IncidentEvent) -> IncidentEvent: ...
    def get_events(self, incident_id: str) -> list[IncidentEvent]: ...
    def get_metrics(self) -> IncidentMetrics: ...
    def get_history(self, days: int) -> list[dict[str, Any]]: ...


class IncidentStore(SQLiteStore):
    """SQLite-backed IncidentRepository."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS incidents (
            id               TEXT PRIMARY KEY,
            health_check_id  TEXT NOT NULL,
            title            TEXT NOT NULL,
            status           TEXT NOT NULL,
            severity         TEXT NOT NULL,
            details          TEXT NOT NULL DEFAULT '',
            created_at       TEXT NOT NULL,
            updated_at       TEXT NOT NULL,
            resolved_at      TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_incidents_check
            ON incidents (health_check_id, status);

        CREATE TABLE IF NOT EXISTS incident_events (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            incident_id  TEXT NOT NULL,
            message      TEXT NOT NULL,
            created_at   TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_events_incident
            ON incident_events (incident_id, created_at);
    """

    @persistence
    def find_all(
        self, page: int = 1, limit: int = 10, status: IncidentStatus | None = None,
    ) -> tuple[list[Incident], int]:
        conn = self._get_conn()
        offset = max(page - 1, 0) * limit
        if status:
            total = conn.execute(
                "SELECT COUNT(*) FROM incidents WHERE status = ?", (status.value,),
            ).fetchone()[0]
            rows = conn.execute(
                "SELECT * FROM incidents WHERE status = ? "
                "ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (status.value, limit, offset),
            ).fetchall()
        else:
            total = conn.execute("SELECT COUNT(*) FROM incidents").fetchone()[0]
            rows = conn.execute(
                "SELECT * FROM incidents ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [_row_to_incident(r) for r in rows], total

    @persistence
    def find_active(self) -> list[Incident]:
        rows = self._get_conn().execute(
            "SELECT * FROM incidents WHERE status IN (?, ?, ?) ORDER BY created_at DESC",
            _ACTIVE,
        ).fetchall()
        return [_row_to_incident(r) for r in rows]

    @persistence
    def find_active_for_check(self, check_id: str) -> Incident | None:
        row = self._get_conn().execute(
            "SELECT * FROM incidents WHERE health_check_id = ? AND status IN (?, ?, ?) "
            "ORDER BY created_at DESC LIMIT 1",
            (check_id, *_ACTIVE),
        ).fetchone()
        return _row_to_incident(row) if row else None

    @persistence
    def find_by_id(self, incident_id: str) -> Incident | None:
        row = self._get_conn().execute(
            "SELECT * FROM incidents WHERE id = ?", (incident_id,),
        ).fetchone()
        return _row_to_incident(row) if row else None

    @persistence
    def create(self, incident: Incident) -> Incident:
        if not incident.id:
            incident.id = uuid.uuid4().hex[:12]
        conn = self._get_conn()
        conn.execute(
            "INSERT INTO incidents (id, health_check_id, title, status, severity, details, "
            "created_at, updated_at, resolved_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                incident.id, incident.health_check_id, incident.title,
                incident.status.value, incident.severity.value, incident.details,
                to_iso(incident.created_at), to_iso(incident.updated_at),
                to_iso(incident.resolved_at),
            ),
        )
        conn.commit()
        return incident

    def update(self, incident_id: str, **changes: Any) -> Incident:
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update incident fields: {sorted(unknown)}")
        incident = self.find_by_id(incident_id)
        if incident is None:
            raise NotFoundError("Incident", incident_id)

        for key, value in changes.items():
            if key == "status":
                value = IncidentStatus(value)
            elif key == "severity":
                value = Severity(value)
            setattr(incident, key, value)
        incident.updated_at = utcnow()
        self._write(incident)
        return incident

    @persistence
    def _write(self, incident: Incident) -> None:
        conn = self._get_conn()
        conn.execute(
            "UPDATE incidents SET title = ?, status = ?, severity = ?, details = ?, "
            "updated_at = ?, resolved_at = ? WHERE id = ?",
            (
                incident.title, incident.status.value, incident.severity.value,
                incident.details, to_iso(incident.updated_at),
                to_iso(incident.resolved_at), incident.id,
            ),
        )
        conn.commit()

    # ── Events ────────────────────────────────────────────────────────────

    @persistence
    def add_event(self, event: IncidentEvent) -> IncidentEvent:
        conn = self._get_conn()
        cursor = conn.execute(
            "INSERT INTO incident_events (incident_id, message, created_at) VALUES (?, ?, ?)",
            (event.incident_id, event.message, to_iso(event.created_at)),
        )
        conn.commit()
        event.id = cursor.lastrowid
        return event

    @persistence
    def get_events(self, incident_id: str) -> list[IncidentEvent]:
        rows = self._get_conn().execute(
            "SELECT * FROM incident_events WHERE incident_id = ? ORDER BY created_at, id",
            (incident_id,),
        ).fetchall()
        return [
            IncidentEvent(
                id=r["id"], incident_id=r["incident_id"], message=r["message"],
                created_at=from_iso(r["created_at"]),
            )
            for r in rows
        ]

    # ── Aggregates ────────────────────────────────────────────────────────

    @persistence
    def get_metrics(self) -> IncidentMetrics:
        conn = self._get_conn()
        total = conn.execute("SELECT COUNT(*) FROM incidents").fetchone()[0]
        active = conn.execute(
            "SELECT COUNT(*) FROM incidents WHERE status IN (?, ?, ?)", _ACTIVE,
        ).fetchone()[0]
        resolved = conn.execute(
            "SELECT COUNT(*) FROM incidents WHERE status = ?", (IncidentStatus.RESOLVED.value,),
        ).fetchone()[0]

        cutoff = (utcnow() - timedelta(days=30)).isoformat()
        rows = conn.execute(
            "SELECT created_at, resolved_at FROM incidents "
            "WHERE status = ? AND resolved_at IS NOT NULL AND resolved_at >= ? AND created_at >= ?",
            (IncidentStatus.RESOLVED.value, cutoff, cutoff),
        ).fetchall()
        mttr = 0.0
        if rows:
            minutes = [
                (from_iso(r["resolved_at"]) - from_iso(r["created_at"])).total_seconds() / 60
                for r in rows
            ]
            mttr = round(sum(minutes) / len(minutes), 1)
        return IncidentMetrics(total=total, active=active, resolved=resolved, mttr=mttr)

    @persistence
    def get_history(self, days: int) -> list[dict[str, Any]]:
        """Incident counts per day (YYYY-MM-DD) over the last N days."""
        cutoff = (utcnow() - timedelta(days=days)).isoformat()
        rows = self._get_conn().execute(
            "SELECT substr(created_at, 1, 10) AS day, COUNT(*) AS count FROM incidents "
            "WHERE created_at >= ? GROUP BY day ORDER BY day",
            (cutoff,),
        ).fetchall()
        return [{"date": r["day"], "count": r["count"]} for r in rows]


def _row_to_incident(row: sqlite3.Row) -> Incident:
    return Incident(
        id=row["id"],
        health_check_id=row["health_check_id"],
        title=row["title"],
        status=IncidentStatus(row["status"]),
        severity=Severity(row["severity"]),
        details=row["details"],
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        resolved_at=from_iso(row["resolved_at"]),
    )
