"""Incident state machine: investigating → identified → monitoring → resolved.

Resolved is terminal. A check that fails again after its incident was
resolved gets a brand new incident; nothing ever leaves the resolved state.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import Enum
from typing import Any

from ..db import utcnow
from ..errors import NotFoundError
from ..health.models import CheckKind, HealthCheck
from ..health.store import CheckRepository
from .models import Incident, IncidentEvent, IncidentMetrics, IncidentStatus, Severity
from .store import IncidentRepository

logger = logging.getLogger(__name__)

ResolvedCallback = Callable[[Incident, HealthCheck | None], Awaitable[Any]]

_CRITICAL_NAME_HINTS = ("database", "auth")


def severity_for_check(check: HealthCheck) -> Severity:
    """SERVER checks are critical, API checks high; others by name."""
    if check.kind == CheckKind.SERVER:
        return Severity.CRITICAL
    if check.kind == CheckKind.API:
        return Severity.HIGH
    name = check.name.lower()
    if any(hint in name for hint in _CRITICAL_NAME_HINTS):
        return Severity.CRITICAL
    return Severity.HIGH


class IncidentLifecycle:
    """Owns every incident status transition and the incident event log."""

    def __init__(
        self,
        incidents: IncidentRepository,
        checks: CheckRepository,
        on_resolved: ResolvedCallback | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.incidents = incidents
        self.checks = checks
        self.on_resolved = on_resolved
        self._clock = clock

    # -- failure path ----------------------------------------------------------

    def open_or_append(self, check: HealthCheck, details: str) -> Incident:
        """Append to the check's active incident, or open a new one."""
        existing = self.incidents.find_active_for_check(check.id)
        if existing:
            self._event(existing.id, f"Still unhealthy: {details}")
            logger.info("Updated incident %s for check %s", existing.id, check.name)
            return existing

        now = self._clock()
        incident = self.incidents.create(Incident(
            health_check_id=check.id,
            title=f"{check.name} is unhealthy",
            status=IncidentStatus.INVESTIGATING,
            severity=severity_for_check(check),
            details=details,
            created_at=now,
            updated_at=now,
        ))
        self._event(incident.id, f"Incident created: {details}")
        logger.info(
            "Opened incident %s for check %s (severity=%s)",
            incident.id, check.name, incident.severity.value,
        )
        return incident

    # -- manual transitions ----------------------------------------------------

    async def update(self, incident_id: str, **patch: Any) -> Incident:
        """Apply status/severity/title/details changes and log them as an event."""
        current = self._require(incident_id)
        changes = {k: v for k, v in patch.items() if v is not None}
        if not changes:
            raise ValueError("No incident fields to update")
        if "status" in changes:
            changes["status"] = IncidentStatus(changes["status"])
        if "severity" in changes:
            changes["severity"] = Severity(changes["severity"])

        becomes_resolved = (
            changes.get("status") == IncidentStatus.RESOLVED
            and current.status != IncidentStatus.RESOLVED
        )
        if current.status == IncidentStatus.RESOLVED and changes.get("status") not in (
            None, IncidentStatus.RESOLVED,
        ):
            raise ValueError(
                f"Incident {incident_id} is resolved; open a new incident instead of reopening"
            )

        stored = dict(changes)
        if becomes_resolved:
            stored["resolved_at"] = self._clock()
        updated = self.incidents.update(incident_id, **stored)

        description = ", ".join(f"{k}: {_plain(v)}" for k, v in changes.items())
        self._event(incident_id, f"Incident updated: {description}")

        if becomes_resolved:
            await self._notify_resolved(updated)
        return updated

    async def resolve(self, incident_id: str, message: str | None = None) -> Incident:
        """Resolve an incident. Resolving twice keeps the first resolved_at."""
        current = self._require(incident_id)
        if current.status == IncidentStatus.RESOLVED:
            self._event(incident_id, message or "Incident resolved")
            return current

        updated = self.incidents.update(
            incident_id, status=IncidentStatus.RESOLVED, resolved_at=self._clock(),
        )
        self._event(incident_id, message or "Incident resolved")
        logger.info("Resolved incident %s", incident_id)
        await self._notify_resolved(updated)
        return updated

    def add_event(self, incident_id: str, message: str) -> IncidentEvent:
        self._require(incident_id)
        return self._event(incident_id, message)

    # -- queries ---------------------------------------------------------------

    def get(self, incident_id: str) -> tuple[Incident, list[IncidentEvent]]:
        incident = self._require(incident_id)
        return incident, self.incidents.get_events(incident_id)

    def list_all(
        self, page: int = 1, limit: int = 10, status: IncidentStatus | None = None,
    ) -> dict[str, Any]:
        incidents, total = self.incidents.find_all(page, limit, status)
        return {
            "incidents": incidents,
            "total": total,
            "page": page,
            "page_size": limit,
            "total_pages": -(-total // limit) if limit else 0,
        }

    def active(self) -> list[Incident]:
        return self.incidents.find_active()

    def metrics(self) -> IncidentMetrics:
        return self.incidents.get_metrics()

    def history(self, days: int = 30) -> list[dict[str, Any]]:
        return self.incidents.get_history(days)

    # -- internals -------------------------------------------------------------

    def _require(self, incident_id: str) -> Incident:
        incident = self.incidents.find_by_id(incident_id)
        if incident is None:
            raise NotFoundError("Incident", incident_id)
        return incident

    def _event(self, incident_id: str, message: str) -> IncidentEvent:
        return self.incidents.add_event(IncidentEvent(
            incident_id=incident_id, message=message, created_at=self._clock(),
        ))

    async def _notify_resolved(self, incident: Incident) -> None:
        if self.on_resolved is None:
            return
        try:
            check = self.checks.find_by_id(incident.health_check_id)
            await self.on_resolved(incident, check)
        except Exception:
            logger.exception("Resolution notification failed for incident %s", incident.id)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value
