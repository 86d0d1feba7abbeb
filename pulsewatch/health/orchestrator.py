"""Runs probes, persists results and hands failures to incidents and alerts.

Probes are blocking (sockets, subprocess, psutil) so each one runs in a
thread pool; the event loop only coordinates.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor

from ..config import settings
from ..errors import NotFoundError
from ..incidents.lifecycle import IncidentLifecycle
from ..notifications.models import AlertItem
from ..notifications.router import NotificationRouter
from .models import HealthCheck, HealthCheckResult, HealthStatus, RestartOutcome
from .probes import execute_probe, restart_service
from .store import CheckRepository

logger = logging.getLogger(__name__)


class HealthCheckOrchestrator:
    def __init__(
        self,
        checks: CheckRepository,
        lifecycle: IncidentLifecycle,
        router: NotificationRouter,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.checks = checks
        self.lifecycle = lifecycle
        self.router = router
        self._executor = executor or ThreadPoolExecutor(max_workers=4)
        self._in_flight: set[str] = set()

    async def execute(self, check: HealthCheck) -> HealthCheckResult:
        """Probe one check and persist the result."""
        loop = asyncio.get_running_loop()
        outcome = await loop.run_in_executor(self._executor, execute_probe, check)
        result = self.checks.save_result(HealthCheckResult.from_outcome(check.id, outcome))
        logger.debug("Check %s: %s (%s)", check.name, result.status.value, result.details)
        return result

    async def run_all(self) -> list[HealthCheckResult]:
        """Sweep every enabled check, one at a time, then alert on the failures."""
        checks = self.checks.find_all(enabled=True)
        logger.info("Running %d health check(s)", len(checks))

        results: list[HealthCheckResult] = []
        alerts: list[AlertItem] = []
        for check in checks:
            if check.id in self._in_flight:
                logger.info("Check %s already running, skipped in sweep", check.name)
                continue
            self._in_flight.add(check.id)
            try:
                result = await self.execute(check)
                results.append(result)
                if not result.is_healthy:
                    item = self._handle_failure(check, result)
                    if check.notify_on_failure:
                        alerts.append(item)
            except Exception:
                logger.exception("Health check %s failed during sweep", check.name)
            finally:
                self._in_flight.discard(check.id)

        if alerts:
            await self.router.notify_unhealthy(alerts)
        logger.info(
            "Sweep finished: %d result(s), %d unhealthy", len(results), len(alerts),
        )
        return results

    async def force_one(self, check_id: str) -> HealthCheckResult | None:
        """Run one check now. Returns None if that check is already running."""
        check = self.checks.find_by_id(check_id)
        if check is None:
            raise NotFoundError("Health check", check_id)
        if check.id in self._in_flight:
            logger.info("Check %s already running, skipped", check.name)
            return None

        self._in_flight.add(check.id)
        try:
            result = await self.execute(check)
            if settings.incidents_on_forced_checks and not result.is_healthy:
                self._handle_failure(check, result)
            return result
        finally:
            self._in_flight.discard(check.id)

    async def restart(self, check_id: str) -> RestartOutcome:
        check = self.checks.find_by_id(check_id)
        if check is None:
            raise NotFoundError("Health check", check_id)
        if not check.restart_command:
            return RestartOutcome(
                success=False, details="No restart command configured for this health check",
            )
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, restart_service, check)

    def is_running(self, check_id: str) -> bool:
        return check_id in self._in_flight

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    def _handle_failure(self, check: HealthCheck, result: HealthCheckResult) -> AlertItem:
        """Open or extend an incident when this failure is new.

        Incident errors are logged and the failure is still returned for alerting.
        """
        item = AlertItem(check=check, result=result)
        try:
            prior = [
                r for r in self.checks.get_recent_results(check.id, limit=3) if r.id != result.id
            ][:2]
            new_failure = len(prior) < 2 or prior[0].status == HealthStatus.HEALTHY
            if not new_failure:
                return item
            incident = self.lifecycle.open_or_append(check, result.details)
        except Exception:
            logger.exception("Incident handling failed for check %s", check.name)
            return item

        item.severity = incident.severity
        return item
