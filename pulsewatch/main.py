"""Entry point for pulsewatch."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import settings
from .errors import NotFoundError
from .health.models import HealthCheckResult
from .services import build_services

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)


def run_server() -> None:
    """Start the FastAPI server with the scheduler."""
    console.print(Panel("Starting pulsewatch API Server", style="bold green"))
    uvicorn.run(
        "pulsewatch.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


def _results_table(title: str, rows: list[tuple[str, HealthCheckResult]]) -> Table:
    table = Table(title=title)
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Response (ms)", justify="right")
    table.add_column("Details")
    for name, r in rows:
        style = "green" if r.is_healthy else "red"
        ms = f"{r.response_time_ms:.0f}" if r.response_time_ms is not None else "-"
        table.add_row(name, f"[{style}]{r.status.value}[/{style}]", ms, r.details)
    return table


async def _sweep() -> int:
    services = build_services()
    try:
        names = {c.id: c.name for c in services.checks.find_all()}
        results = await services.orchestrator.run_all()
        console.print(_results_table(
            "Sweep results", [(names.get(r.health_check_id, r.health_check_id), r) for r in results],
        ))
        return 0 if all(r.is_healthy for r in results) else 2
    finally:
        await services.close()


async def _check(check_id: str) -> int:
    services = build_services()
    try:
        check = services.checks.find_by_id(check_id)
        if check is None:
            raise NotFoundError("Health check", check_id)
        result = await services.orchestrator.force_one(check_id)
        if result is None:
            console.print(f"[yellow]Check {check.name} is already running[/yellow]")
            return 1
        console.print(_results_table(check.name, [(check.name, result)]))
        return 0 if result.is_healthy else 2
    finally:
        await services.close()


def run_sweep() -> int:
    """Run every enabled check once and print the results."""
    with console.status("[bold green]Running health checks..."):
        return asyncio.run(_sweep())


def run_cleanup(days: int) -> int:
    """Delete probe results older than `days`."""
    services = build_services()
    try:
        removed = services.checks.cleanup_old(days)
    finally:
        asyncio.run(services.close())
    console.print(f"Removed {removed} result(s) older than {days} day(s)")
    return 0


def run_check(check_id: str) -> int:
    try:
        return asyncio.run(_check(check_id))
    except NotFoundError as e:
        console.print(f"[red]{e}[/red]")
        return 1


def main() -> None:
    parser = argparse.ArgumentParser(description="pulsewatch uptime monitor")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the API server and scheduler")
    sub.add_parser("sweep", help="Run every enabled check once")

    check_parser = sub.add_parser("check", help="Run one check now")
    check_parser.add_argument("check_id", help="Health check id")

    cleanup_parser = sub.add_parser("cleanup", help="Delete old probe results")
    cleanup_parser.add_argument("--days", type=int, default=30, help="Days of results to keep")

    args = parser.parse_args()

    if args.command == "serve":
        run_server()
    elif args.command == "sweep":
        sys.exit(run_sweep())
    elif args.command == "check":
        sys.exit(run_check(args.check_id))
    elif args.command == "cleanup":
        sys.exit(run_cleanup(args.days))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
