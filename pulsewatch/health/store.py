"""Check definitions and their result time series, stored in SQLite."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import fields
from datetime import timedelta
from typing import Any, Protocol

from ..db import SQLiteStore, from_iso, persistence, to_iso, utcnow
from ..errors import NotFoundError
from .models import CheckKind, HealthCheck, HealthCheckResult, HealthStatus

logger = logging.getLogger(__name__)

_UPDATABLE = {f.name for f in fields(HealthCheck)} - {"id", "created_at", "updated_at"}


class CheckRepository(Protocol):
    def find_all(self, enabled: bool | None = None) -> list[HealthCheck]: ...
    def find_by_id(self, check_id: str) -> HealthCheck | None: ...
    def create(self, check: HealthCheck) -> HealthCheck: ...
    def update(self, check_id: str, **changes: Any) -> HealthCheck: ...
    def delete(self, check_id: str) -> bool: ...
    def save_result(self, result: HealthCheckResult) -> HealthCheckResult: ...
    def get_recent_results(self, check_id: str, limit: int = 3) -> list[HealthCheckResult]: ...
    def get_results_by_check_id(
        self, check_id: str, page: int = 1, limit: int = 10,
    ) -> tuple[list[HealthCheckResult], int]: ...
    def get_latest_results(self) -> list[dict[str, Any]]: ...


class CheckStore(SQLiteStore):
    """SQLite-backed CheckRepository."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS health_checks (
            id                      TEXT PRIMARY KEY,
            name                    TEXT NOT NULL,
            kind                    TEXT NOT NULL,
            enabled                 INTEGER NOT NULL DEFAULT 1,
            check_interval_seconds  INTEGER NOT NULL DEFAULT 300,
            endpoint                TEXT NOT NULL DEFAULT '',
            timeout_ms              INTEGER,
            process_keyword         TEXT NOT NULL DEFAULT '',
            port                    INTEGER,
            custom_command          TEXT NOT NULL DEFAULT '',
            expected_output         TEXT NOT NULL DEFAULT '',
            restart_command         TEXT NOT NULL DEFAULT '',
            notify_on_failure       INTEGER NOT NULL DEFAULT 1,
            created_at              TEXT NOT NULL,
            updated_at              TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS check_results (
            id               INTEGER PRIMARY KEY AUTOINCREMENT,
            health_check_id  TEXT NOT NULL,
            status           TEXT NOT NULL,
            details          TEXT NOT NULL DEFAULT '',
            cpu_usage        REAL,
            memory_usage     REAL,
            response_time_ms REAL,
            created_at       TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_results_check
            ON check_results (health_check_id, created_at DESC, id DESC);
    """

    # ── Checks ────────────────────────────────────────────────────────────

    @persistence
    def find_all(self, enabled: bool | None = None) -> list[HealthCheck]:
        if enabled is None:
            rows = self._get_conn().execute(
                "SELECT * FROM health_checks ORDER BY created_at, name",
            ).fetchall()
        else:
            rows = self._get_conn().execute(
                "SELECT * FROM health_checks WHERE enabled = ? ORDER BY created_at, name",
                (int(enabled),),
            ).fetchall()
        return [_row_to_check(r) for r in rows]

    @persistence
    def find_by_id(self, check_id: str) -> HealthCheck | None:
        row = self._get_conn().execute(
            "SELECT * FROM health_checks WHERE id = ?", (check_id,),
        ).fetchone()
        return _row_to_check(row) if row else None

    @persistence
    def create(self, check: HealthCheck) -> HealthCheck:
        now = utcnow()
        check.created_at = now
        check.updated_at = now
        conn = self._get_conn()
        conn.execute(
            "INSERT INTO health_checks (id, name, kind, enabled, check_interval_seconds, "
            "endpoint, timeout_ms, process_keyword, port, custom_command, expected_output, "
            "restart_command, notify_on_failure, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                check.id, check.name, check.kind.value, int(check.enabled),
                check.check_interval_seconds, check.endpoint, check.timeout_ms,
                check.process_keyword, check.port, check.custom_command,
                check.expected_output, check.restart_command, int(check.notify_on_failure),
                to_iso(check.created_at), to_iso(check.updated_at),
            ),
        )
        conn.commit()
        logger.info("Created health check %s (%s, %s)", check.id, check.name, check.kind.value)
        return check

    def update(self, check_id: str, **changes: Any) -> HealthCheck:
        """Apply field changes to a check. Unknown fields raise ValueError."""
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        current = self.find_by_id(check_id)
        if current is None:
            raise NotFoundError("Health check", check_id)

        values = {**{f: getattr(current, f) for f in _UPDATABLE}, **changes}
        updated = HealthCheck(
            id=check_id, created_at=current.created_at, updated_at=utcnow(), **values,
        )
        self._write(updated)
        return updated

    @persistence
    def _write(self, check: HealthCheck) -> None:
        conn = self._get_conn()
        conn.execute(
            "UPDATE health_checks SET name = ?, kind = ?, enabled = ?, "
            "check_interval_seconds = ?, endpoint = ?, timeout_ms = ?, process_keyword = ?, "
            "port = ?, custom_command = ?, expected_output = ?, restart_command = ?, "
            "notify_on_failure = ?, updated_at = ? WHERE id = ?",
            (
                check.name, check.kind.value, int(check.enabled),
                check.check_interval_seconds, check.endpoint, check.timeout_ms,
                check.process_keyword, check.port, check.custom_command,
                check.expected_output, check.restart_command, int(check.notify_on_failure),
                to_iso(check.updated_at), check.id,
            ),
        )
        conn.commit()

    @persistence
    def delete(self, check_id: str) -> bool:
        conn = self._get_conn()
        cursor = conn.execute("DELETE FROM health_checks WHERE id = ?", (check_id,))
        conn.execute("DELETE FROM check_results WHERE health_check_id = ?", (check_id,))
        conn.commit()
        return cursor.rowcount > 0

    # ── Results ───────────────────────────────────────────────────────────

    @persistence
    def save_result(self, result: HealthCheckResult) -> HealthCheckResult:
        conn = self._get_conn()
        cursor = conn.execute(
            "INSERT INTO check_results "
            "(health_check_id, status, details, cpu_usage, memory_usage, response_time_ms, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                result.health_check_id, result.status.value, result.details,
                result.cpu_usage, result.memory_usage, result.response_time_ms,
                to_iso(result.created_at),
            ),
        )
        conn.commit()
        return HealthCheckResult(
            health_check_id=result.health_check_id,
            status=result.status,
            details=result.details,
            cpu_usage=result.cpu_usage,
            memory_usage=result.memory_usage,
            response_time_ms=result.response_time_ms,
            created_at=result.created_at,
            id=cursor.lastrowid,
        )

    @persistence
    def get_recent_results(self, check_id: str, limit: int = 3) -> list[HealthCheckResult]:
        """Most recent results first."""
        rows = self._get_conn().execute(
            "SELECT * FROM check_results WHERE health_check_id = ? "
            "ORDER BY created_at DESC, id DESC LIMIT ?",
            (check_id, limit),
        ).fetchall()
        return [_row_to_result(r) for r in rows]

    @persistence
    def get_results_by_check_id(
        self, check_id: str, page: int = 1, limit: int = 10,
    ) -> tuple[list[HealthCheckResult], int]:
        conn = self._get_conn()
        total = conn.execute(
            "SELECT COUNT(*) FROM check_results WHERE health_check_id = ?", (check_id,),
        ).fetchone()[0]
        rows = conn.execute(
            "SELECT * FROM check_results WHERE health_check_id = ? "
            "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (check_id, limit, max(page - 1, 0) * limit),
        ).fetchall()
        return [_row_to_result(r) for r in rows], total

    @persistence
    def get_latest_results(self) -> list[dict[str, Any]]:
        """Latest result of every check, joined with the check's name and kind."""
        rows = self._get_conn().execute(
            "SELECT cr.*, hc.name AS check_name, hc.kind AS check_kind "
            "FROM check_results cr "
            "INNER JOIN health_checks hc ON hc.id = cr.health_check_id "
            "WHERE cr.id = ("
            "  SELECT id FROM check_results "
            "  WHERE health_check_id = cr.health_check_id "
            "  ORDER BY created_at DESC, id DESC LIMIT 1"
            ") ORDER BY hc.name",
        ).fetchall()
        latest = []
        for r in rows:
            d = _row_to_result(r).to_dict()
            d["check_name"] = r["check_name"]
            d["check_kind"] = r["check_kind"]
            latest.append(d)
        return latest

    @persistence
    def get_uptime_24h(self, check_id: str) -> float:
        """Percentage of healthy results over the last 24 hours."""
        cutoff = (utcnow() - timedelta(hours=24)).isoformat()
        rows = self._get_conn().execute(
            "SELECT status FROM check_results WHERE health_check_id = ? AND created_at >= ?",
            (check_id, cutoff),
        ).fetchall()
        if not rows:
            return 100.0  # No data = assume up
        healthy = sum(1 for r in rows if r["status"] == HealthStatus.HEALTHY.value)
        return round(healthy / len(rows) * 100, 1)

    @persistence
    def cleanup_old(self, days: int = 30) -> int:
        """Remove results older than N days."""
        cutoff = (utcnow() - timedelta(days=days)).isoformat()
        conn = self._get_conn()
        cursor = conn.execute("DELETE FROM check_results WHERE created_at < ?", (cutoff,))
        conn.commit()
        return cursor.rowcount


def _row_to_check(row: sqlite3.Row) -> HealthCheck:
    return HealthCheck(
        id=row["id"],
        name=row["name"],
        kind=CheckKind(row["kind"]),
        enabled=bool(row["enabled"]),
        check_interval_seconds=row["check_interval_seconds"],
        endpoint=row["endpoint"],
        timeout_ms=row["timeout_ms"],
        process_keyword=row["process_keyword"],
        port=row["port"],
        custom_command=row["custom_command"],
        expected_output=row["expected_output"],
        restart_command=row["restart_command"],
        notify_on_failure=bool(row["notify_on_failure"]),
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


def _row_to_result(row: sqlite3.Row) -> HealthCheckResult:
    return HealthCheckResult(
        id=row["id"],
        health_check_id=row["health_check_id"],
        status=HealthStatus(row["status"]),
        details=row["details"],
        cpu_usage=row["cpu_usage"],
        memory_usage=row["memory_usage"],
        response_time_ms=row["response_time_ms"],
        created_at=from_iso(row["created_at"]),
    )
