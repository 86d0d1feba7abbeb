"""Health subsystem: check definitions, probes, SQLite storage."""

from .models import CheckKind, HealthCheck, HealthCheckResult, HealthStatus
from .probes import execute_probe, restart_service
from .store import CheckStore
