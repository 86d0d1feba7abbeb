"""Health check scheduler: one timer per check plus refresh and sweep loops.

Uses plain asyncio tasks instead of a scheduling library. Every change to
the job map goes through a single control task fed by a queue, so API
handlers, the refresh loop and startup never race each other.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from ..config import settings
from ..errors import NotFoundError, SchedulingError
from .models import HealthCheck, HealthCheckResult
from .orchestrator import HealthCheckOrchestrator
from .store import CheckRepository

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY = 2.0  # seconds, doubled after each failed attempt


class HealthScheduler:
    def __init__(
        self,
        orchestrator: HealthCheckOrchestrator,
        checks: CheckRepository,
        sleep: Sleep = asyncio.sleep,
        refresh_interval: int | None = None,
        sweep_interval: int | None = None,
        default_period: int | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.checks = checks
        self._sleep = sleep
        self.refresh_interval = refresh_interval or settings.refresh_interval_seconds
        self.sweep_interval = sweep_interval or settings.sweep_interval_seconds
        self.default_period = default_period or settings.default_check_interval

        self._jobs: dict[str, asyncio.Task[None]] = {}
        self._periods: dict[str, int] = {}
        self._control: asyncio.Queue[tuple[str, Any, asyncio.Future[None]]] | None = None
        self._control_task: asyncio.Task[None] | None = None
        self._loops: list[asyncio.Task[Any]] = []
        self._sweep_running = False
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def active_job_count(self) -> int:
        return len(self._jobs)

    def scheduled_period(self, check_id: str) -> int | None:
        return self._periods.get(check_id)

    def period_for(self, check: HealthCheck) -> int:
        """Timer period in seconds. Only whole minutes are honoured."""
        interval = check.check_interval_seconds
        if interval > 0 and interval % 60 == 0:
            return interval
        logger.warning(
            "Check %s interval %ds is not a whole number of minutes, using default %ds",
            check.name, interval, self.default_period,
        )
        return self.default_period

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._control = asyncio.Queue()
        self._control_task = asyncio.create_task(self._control_loop(), name="scheduler-control")

        count = await self.initialize_jobs()

        self._loops = [
            asyncio.create_task(
                self._every(self.refresh_interval, self.refresh_jobs, "Job refresh"),
                name="scheduler-refresh",
            ),
            asyncio.create_task(
                self._every(self.sweep_interval, self.run_sweep, "Fallback sweep"),
                name="scheduler-sweep",
            ),
        ]
        if settings.run_sweep_on_start:
            self._loops.append(asyncio.create_task(self.run_sweep(), name="scheduler-initial-sweep"))

        logger.info(
            "Health scheduler started: %d job(s), refresh every %ds, sweep every %ds",
            count, self.refresh_interval, self.sweep_interval,
        )

    async def stop(self) -> None:
        self._running = False
        tasks = [*self._jobs.values(), *self._loops]
        if self._control_task:
            tasks.append(self._control_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._fail_pending("Scheduler stopped")
        self._jobs.clear()
        self._periods.clear()
        self._loops.clear()
        self._control_task = None
        self._control = None
        logger.info("Health scheduler stopped")

    # -- job management ------------------------------------------------------

    async def initialize_jobs(self) -> int:
        """Schedule every enabled check. Returns the number of active jobs."""
        for check in self.checks.find_all(enabled=True):
            try:
                await self.schedule_one(check)
            except SchedulingError as e:
                logger.error("Could not schedule check %s: %s", check.name, e)
        return self.active_job_count()

    async def refresh_jobs(self) -> None:
        """Reconcile jobs with the stored checks."""
        wanted = {c.id: c for c in self.checks.find_all() if c.enabled}

        for check_id in list(self._jobs):
            if check_id not in wanted:
                await self.unschedule(check_id)

        for check in wanted.values():
            if check.id in self._jobs and self._periods.get(check.id) == self.period_for(check):
                continue
            try:
                await self.schedule_one(check)
            except SchedulingError as e:
                logger.error("Could not schedule check %s: %s", check.name, e)

        logger.info("Job refresh done: %d active job(s)", self.active_job_count())

    async def schedule_one(self, check: HealthCheck) -> None:
        """(Re)create the job for one check. Disabled checks are unscheduled."""
        await self._submit("schedule", check)

    async def unschedule(self, check_id: str) -> None:
        await self._submit("unschedule", check_id)

    async def _submit(self, op: str, arg: Any) -> None:
        if not self._running or self._control is None:
            raise SchedulingError("Scheduler is not running")
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        await self._control.put((op, arg, done))
        await done

    async def _control_loop(self) -> None:
        assert self._control is not None
        while True:
            op, arg, done = await self._control.get()
            try:
                if op == "schedule":
                    self._apply_schedule(arg)
                else:
                    self._apply_unschedule(arg)
            except Exception as e:
                logger.exception("Scheduler %s failed", op)
                if not done.done():
                    done.set_exception(SchedulingError(f"{op} failed: {e}"))
            else:
                if not done.done():
                    done.set_result(None)

    def _fail_pending(self, reason: str) -> None:
        """Fail requests still queued once the control task is gone."""
        if self._control is None:
            return
        while not self._control.empty():
            op, _arg, done = self._control.get_nowait()
            if not done.done():
                done.set_exception(SchedulingError(f"{op} not applied: {reason}"))

    def _apply_schedule(self, check: HealthCheck) -> None:
        self._apply_unschedule(check.id)
        if not check.enabled:
            return
        period = self.period_for(check)
        self._jobs[check.id] = asyncio.create_task(
            self._job_loop(check.id, period), name=f"check-{check.id}",
        )
        self._periods[check.id] = period
        logger.info("Scheduled check %s every %ds", check.name, period)

    def _apply_unschedule(self, check_id: str) -> None:
        task = self._jobs.pop(check_id, None)
        self._periods.pop(check_id, None)
        if task is not None:
            task.cancel()
            logger.info("Unscheduled check %s", check_id)

    # -- timers --------------------------------------------------------------

    async def _job_loop(self, check_id: str, period: int) -> None:
        while True:
            await self._sleep(period)
            await self.fire(check_id)

    async def fire(self, check_id: str) -> HealthCheckResult | None:
        """Run one scheduled check, retrying with exponential back-off."""
        for attempt in range(1, RETRY_ATTEMPTS + 1):
            try:
                return await self.orchestrator.force_one(check_id)
            except NotFoundError:
                logger.warning("Scheduled check %s no longer exists", check_id)
                return None
            except Exception as e:
                if attempt == RETRY_ATTEMPTS:
                    logger.error(
                        "Scheduled check %s failed after %d attempts: %s", check_id, attempt, e,
                    )
                    return None
                delay = RETRY_BASE_DELAY * 2 ** (attempt - 1)
                logger.warning(
                    "Scheduled check %s failed (attempt %d/%d), retrying in %.0fs: %s",
                    check_id, attempt, RETRY_ATTEMPTS, delay, e,
                )
                await self._sleep(delay)
        return None

    async def run_sweep(self) -> list[HealthCheckResult] | None:
        """Full sweep. A call while a sweep is running does nothing."""
        if self._sweep_running:
            logger.info("Sweep already running, skipped")
            return None
        self._sweep_running = True
        try:
            return await self.orchestrator.run_all()
        except Exception:
            logger.exception("Health check sweep failed")
            return None
        finally:
            self._sweep_running = False

    async def _every(
        self, interval: int, func: Callable[[], Awaitable[Any]], label: str,
    ) -> None:
        while True:
            await self._sleep(interval)
            try:
                await func()
            except Exception:
                logger.exception("%s failed", label)
