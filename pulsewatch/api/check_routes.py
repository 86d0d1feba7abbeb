"""Health check CRUD, results and manual runs.

Endpoints:
  GET    /api/checks                     — list checks
  POST   /api/checks                     — create + schedule
  GET    /api/checks/{id}                — one check with 24h uptime
  PATCH  /api/checks/{id}                — update + reschedule
  DELETE /api/checks/{id}                — delete + unschedule
  POST   /api/checks/{id}/run            — run now
  POST   /api/checks/{id}/restart        — run the restart command
  GET    /api/checks/{id}/results        — paged results, newest first
  GET    /api/results/latest             — latest result per check
  POST   /api/sweep                      — full sweep now
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from ..errors import NotFoundError, SchedulingError
from ..health.models import MIN_CHECK_INTERVAL, CheckKind, HealthCheck

logger = logging.getLogger(__name__)

check_router = APIRouter(tags=["checks"])


# ── Request models ───────────────────────────────────────────────────────

class CreateCheckBody(BaseModel):
    name: str
    kind: CheckKind
    enabled: bool = True
    check_interval_seconds: int = Field(default=300, ge=MIN_CHECK_INTERVAL)
    endpoint: str = ""
    timeout_ms: int | None = None
    process_keyword: str = ""
    port: int | None = None
    custom_command: str = ""
    expected_output: str = ""
    restart_command: str = ""
    notify_on_failure: bool = True


class UpdateCheckBody(BaseModel):
    name: str | None = None
    kind: CheckKind | None = None
    enabled: bool | None = None
    check_interval_seconds: int | None = Field(default=None, ge=MIN_CHECK_INTERVAL)
    endpoint: str | None = None
    timeout_ms: int | None = None
    process_keyword: str | None = None
    port: int | None = None
    custom_command: str | None = None
    expected_output: str | None = None
    restart_command: str | None = None
    notify_on_failure: bool | None = None


# ── Helpers ──────────────────────────────────────────────────────────────

async def _sync_schedule(request: Request, check: HealthCheck) -> None:
    try:
        await request.app.state.scheduler.schedule_one(check)
    except SchedulingError as e:
        logger.warning("Check %s saved but not scheduled: %s", check.name, e)


def _require_check(request: Request, check_id: str) -> HealthCheck:
    check = request.app.state.checks.find_by_id(check_id)
    if check is None:
        raise NotFoundError("Health check", check_id)
    return check


# ── Endpoints ────────────────────────────────────────────────────────────

@check_router.get("/checks")
def list_checks(request: Request, enabled: bool | None = None) -> list[dict[str, Any]]:
    return [c.to_dict() for c in request.app.state.checks.find_all(enabled=enabled)]


@check_router.post("/checks", status_code=201)
async def create_check(body: CreateCheckBody, request: Request) -> dict[str, Any]:
    try:
        check = HealthCheck(**body.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    check = request.app.state.checks.create(check)
    await _sync_schedule(request, check)
    return check.to_dict()


@check_router.get("/checks/{check_id}")
def get_check(check_id: str, request: Request) -> dict[str, Any]:
    check = _require_check(request, check_id)
    data = check.to_dict()
    data["uptime_24h"] = request.app.state.checks.get_uptime_24h(check_id)
    return data


@check_router.patch("/checks/{check_id}")
async def update_check(check_id: str, body: UpdateCheckBody, request: Request) -> dict[str, Any]:
    changes = body.model_dump(exclude_none=True)
    try:
        check = request.app.state.checks.update(check_id, **changes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    await _sync_schedule(request, check)
    return check.to_dict()


@check_router.delete("/checks/{check_id}")
async def delete_check(check_id: str, request: Request) -> dict[str, str]:
    if not request.app.state.checks.delete(check_id):
        raise NotFoundError("Health check", check_id)
    try:
        await request.app.state.scheduler.unschedule(check_id)
    except SchedulingError as e:
        logger.warning("Check %s deleted but job not removed: %s", check_id, e)
    return {"status": "deleted", "id": check_id}


@check_router.post("/checks/{check_id}/run")
async def run_check(check_id: str, request: Request) -> dict[str, Any]:
    result = await request.app.state.orchestrator.force_one(check_id)
    if result is None:
        raise HTTPException(status_code=409, detail="Health check is already running")
    return result.to_dict()


@check_router.post("/checks/{check_id}/restart")
async def restart_check(check_id: str, request: Request) -> dict[str, Any]:
    outcome = await request.app.state.orchestrator.restart(check_id)
    return {"success": outcome.success, "details": outcome.details}


@check_router.get("/checks/{check_id}/results")
def get_results(
    check_id: str, request: Request, page: int = 1, limit: int = 10,
) -> dict[str, Any]:
    _require_check(request, check_id)
    results, total = request.app.state.checks.get_results_by_check_id(check_id, page, limit)
    return {
        "results": [r.to_dict() for r in results],
        "total": total,
        "page": page,
        "page_size": limit,
        "total_pages": -(-total // limit) if limit else 0,
    }


@check_router.get("/results/latest")
def latest_results(request: Request) -> list[dict[str, Any]]:
    return request.app.state.checks.get_latest_results()


@check_router.post("/sweep")
async def sweep(request: Request) -> dict[str, Any]:
    results = await request.app.state.scheduler.run_sweep()
    if results is None:
        return {"status": "skipped", "results": []}
    return {"status": "completed", "results": [r.to_dict() for r in results]}
