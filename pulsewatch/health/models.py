"""Check definitions and probe results."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..db import utcnow

MIN_CHECK_INTERVAL = 10


class CheckKind(str, Enum):
    API = "API"
    PROCESS = "PROCESS"
    SERVICE = "SERVICE"
    SERVER = "SERVER"


class HealthStatus(str, Enum):
    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"


@dataclass
class HealthCheck:
    """A monitored target and its kind-specific parameters."""

    name: str
    kind: CheckKind
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    enabled: bool = True
    check_interval_seconds: int = 300

    # API
    endpoint: str = ""
    timeout_ms: int | None = None

    # PROCESS
    process_keyword: str = ""
    port: int | None = None

    # SERVICE
    custom_command: str = ""
    expected_output: str = ""

    restart_command: str = ""
    notify_on_failure: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.kind = CheckKind(self.kind)
        if self.check_interval_seconds < MIN_CHECK_INTERVAL:
            raise ValueError(
                f"check_interval_seconds must be >= {MIN_CHECK_INTERVAL}, "
                f"got {self.check_interval_seconds}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "enabled": self.enabled,
            "check_interval_seconds": self.check_interval_seconds,
            "endpoint": self.endpoint,
            "timeout_ms": self.timeout_ms,
            "process_keyword": self.process_keyword,
            "port": self.port,
            "custom_command": self.custom_command,
            "expected_output": self.expected_output,
            "restart_command": self.restart_command,
            "notify_on_failure": self.notify_on_failure,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class ProbeOutcome:
    """What a probe observed, before it is tied to a check and persisted."""

    healthy: bool
    details: str
    cpu_usage: float | None = None
    memory_usage: float | None = None
    response_time_ms: float | None = None

    @property
    def status(self) -> HealthStatus:
        return HealthStatus.HEALTHY if self.healthy else HealthStatus.UNHEALTHY


@dataclass(frozen=True)
class HealthCheckResult:
    """Immutable snapshot of one probe execution."""

    health_check_id: str
    status: HealthStatus
    details: str = ""
    cpu_usage: float | None = None
    memory_usage: float | None = None
    response_time_ms: float | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: int | None = None

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    @classmethod
    def from_outcome(
        cls, check_id: str, outcome: ProbeOutcome, created_at: datetime | None = None,
    ) -> HealthCheckResult:
        return cls(
            health_check_id=check_id,
            status=outcome.status,
            details=outcome.details,
            cpu_usage=outcome.cpu_usage,
            memory_usage=outcome.memory_usage,
            response_time_ms=outcome.response_time_ms,
            created_at=created_at or utcnow(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "health_check_id": self.health_check_id,
            "status": self.status.value,
            "details": self.details,
            "cpu_usage": self.cpu_usage,
            "memory_usage": self.memory_usage,
            "response_time_ms": self.response_time_ms,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class RestartOutcome:
    success: bool
    details: str
