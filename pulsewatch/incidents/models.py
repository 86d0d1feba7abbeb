from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..db import utcnow


class IncidentStatus(str, Enum):
    INVESTIGATING = "investigating"
    IDENTIFIED = "identified"
    MONITORING = "monitoring"
    RESOLVED = "resolved"  # terminal


ACTIVE_STATUSES = (
    IncidentStatus.INVESTIGATING,
    IncidentStatus.IDENTIFIED,
    IncidentStatus.MONITORING,
)


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class Incident:
    """A tracked period of unhealthiness for one check."""

    health_check_id: str
    title: str
    status: IncidentStatus = IncidentStatus.INVESTIGATING
    severity: Severity = Severity.HIGH
    details: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    resolved_at: datetime | None = None
    id: str = ""

    @property
    def is_active(self) -> bool:
        return self.status != IncidentStatus.RESOLVED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "health_check_id": self.health_check_id,
            "title": self.title,
            "status": self.status.value,
            "severity": self.severity.value,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass
class IncidentEvent:
    incident_id: str
    message: str
    created_at: datetime = field(default_factory=utcnow)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class IncidentMetrics:
    total: int
    active: int
    resolved: int
    mttr: float  # mean minutes to resolution, last 30 days
