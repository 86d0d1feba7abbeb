"""Public status overview."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

status_router = APIRouter(tags=["status"])


@status_router.get("/status")
def status(request: Request) -> dict[str, Any]:
    """Every check with its latest result and 24h uptime, plus open incidents."""
    checks = request.app.state.checks
    latest = {r["health_check_id"]: r for r in checks.get_latest_results()}

    services = []
    for check in checks.find_all(enabled=True):
        result = latest.get(check.id)
        services.append({
            "id": check.id,
            "name": check.name,
            "kind": check.kind.value,
            "status": result["status"] if result else "Unknown",
            "last_checked": result["created_at"] if result else None,
            "uptime_24h": checks.get_uptime_24h(check.id),
        })

    statuses = {s["status"] for s in services}
    if "Unhealthy" in statuses:
        overall = "degraded"
    elif services and statuses == {"Healthy"}:
        overall = "operational"
    else:
        overall = "unknown"

    return {
        "status": overall,
        "services": services,
        "active_incidents": [i.to_dict() for i in request.app.state.lifecycle.active()],
        "scheduled_jobs": request.app.state.scheduler.active_job_count(),
    }
