"""Probe runners — one per check kind, each returning a ProbeOutcome.

Supports: API (HTTP GET), PROCESS (TCP port or process table), SERVICE
(shell command + expected output), SERVER (host load and free memory).
Runners are blocking; the orchestrator calls them from a thread pool.
None of them raise: every failure is reported as an unhealthy outcome.
"""

from __future__ import annotations

import logging
import os
import re
import socket
import subprocess
import time
from collections.abc import Callable

import httpx
import psutil

from ..config import settings
from ..errors import ProbeExecutionError
from .models import CheckKind, HealthCheck, ProbeOutcome, RestartOutcome

logger = logging.getLogger(__name__)

DEFAULT_API_TIMEOUT_MS = 5_000
PORT_CONNECT_TIMEOUT_S = 5.0


# ── API ──────────────────────────────────────────────────────────────────────


def run_api_probe(check: HealthCheck) -> ProbeOutcome:
    """HTTP GET the endpoint; healthy iff the status code is 2xx."""
    if not check.endpoint:
        return ProbeOutcome(healthy=False, details="No endpoint URL provided")

    timeout_ms = check.timeout_ms or settings.api_timeout_ms or DEFAULT_API_TIMEOUT_MS
    t0 = time.perf_counter()
    try:
        with httpx.Client(timeout=timeout_ms / 1000, follow_redirects=True) as client:
            resp = client.get(check.endpoint)
        latency = (time.perf_counter() - t0) * 1000

        if 200 <= resp.status_code < 300:
            return ProbeOutcome(
                healthy=True,
                details=f"API Health Check Passed. Status Code: {resp.status_code}",
                response_time_ms=round(latency, 1),
            )
        return ProbeOutcome(
            healthy=False,
            details=f"API Health Check Failed: Request failed with status code {resp.status_code}",
            response_time_ms=round(latency, 1),
        )
    except httpx.TimeoutException:
        latency = (time.perf_counter() - t0) * 1000
        logger.warning("API check %s timed out after %dms", check.endpoint, timeout_ms)
        return ProbeOutcome(
            healthy=False,
            details=f"API Health Check Failed: timeout of {timeout_ms}ms exceeded",
            response_time_ms=round(latency, 1),
        )
    except Exception as e:
        latency = (time.perf_counter() - t0) * 1000
        logger.warning("API check %s failed: %s", check.endpoint, e)
        return ProbeOutcome(
            healthy=False,
            details=f"API Health Check Failed: {type(e).__name__}: {e}",
            response_time_ms=round(latency, 1),
        )


# ── PROCESS ──────────────────────────────────────────────────────────────────


def _port_open(port: int, timeout: float = PORT_CONNECT_TIMEOUT_S) -> bool:
    try:
        sock = socket.create_connection(("localhost", port), timeout=timeout)
        sock.close()
        return True
    except OSError:
        return False


def _keyword_matcher(keyword: str) -> Callable[[str], bool]:
    try:
        pattern = re.compile(keyword)
    except re.error:
        return lambda text: keyword in text
    return lambda text: bool(pattern.search(text))


def _find_process(keyword: str) -> psutil.Process | None:
    """First process (other than ourselves) whose command line matches keyword."""
    matches = _keyword_matcher(keyword)
    own_pid = os.getpid()
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        try:
            if proc.info["pid"] == own_pid:
                continue
            cmdline = " ".join(proc.info.get("cmdline") or []) or (proc.info.get("name") or "")
            if cmdline and matches(cmdline):
                return proc
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return None


def is_process_hung(proc: psutil.Process) -> bool:
    """True if the process sits in uninterruptible (disk) sleep."""
    try:
        return proc.status() == psutil.STATUS_DISK_SLEEP
    except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
        logger.debug("Could not read state of pid %s: %s", proc.pid, e)
        return False


def run_process_probe(check: HealthCheck) -> ProbeOutcome:
    """Probe a local port, or look the process up by keyword."""
    if check.port:
        if _port_open(check.port):
            return ProbeOutcome(healthy=True, details=f"Port {check.port} is open")
        return ProbeOutcome(healthy=False, details=f"Port {check.port} is not open")

    if not check.process_keyword:
        return ProbeOutcome(healthy=True, details="No process keyword provided, nothing to check")

    try:
        proc = _find_process(check.process_keyword)
        if proc is None:
            # absence is reported, not treated as a failure
            return ProbeOutcome(
                healthy=True,
                details=f'Process with keyword "{check.process_keyword}" not found',
            )

        with proc.oneshot():
            cpu = proc.cpu_percent(interval=0.1)
            memory = round(proc.memory_percent(), 2)
            command = " ".join(proc.cmdline()) or proc.name()
        hung = is_process_hung(proc)
        return ProbeOutcome(
            healthy=True,
            details=(
                f"PID: {proc.pid}, Command: {command}, Memory: {memory}%, "
                f"CPU: {cpu}%, Hung: {hung}"
            ),
            cpu_usage=cpu,
            memory_usage=memory,
        )
    except Exception as e:
        logger.warning("Process check for %r failed: %s", check.process_keyword, e)
        return ProbeOutcome(healthy=False, details=f"Error checking process: {e}")


# ── SERVICE ──────────────────────────────────────────────────────────────────


def _run_shell(command: str, timeout: float) -> str:
    """Run a shell command and return its stripped stdout.

    Raises ProbeExecutionError on spawn failure, timeout or non-zero exit.
    """
    try:
        proc = subprocess.run(
            command, shell=True, capture_output=True, text=True, timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise ProbeExecutionError(f"Command timed out after {timeout}s: {command}") from e
    except OSError as e:
        raise ProbeExecutionError(f"Command failed to start: {e}") from e

    if proc.returncode != 0:
        stderr = (proc.stderr or "").strip()
        raise ProbeExecutionError(
            f"Command failed with exit code {proc.returncode}: {command}"
            + (f"\n{stderr}" if stderr else "")
        )
    return (proc.stdout or "").strip()


def run_service_probe(check: HealthCheck) -> ProbeOutcome:
    """Run the custom command; compare stdout against the expected output."""
    if not check.custom_command:
        return ProbeOutcome(healthy=True, details="No custom command provided")

    try:
        response = _run_shell(check.custom_command, settings.command_timeout_seconds)
    except ProbeExecutionError as e:
        logger.warning("Service check %s failed: %s", check.name, e)
        return ProbeOutcome(healthy=False, details=f"Error executing command: {e}")

    if check.expected_output and check.expected_output not in response:
        return ProbeOutcome(
            healthy=False, details=f"Expected output not found. Response: {response}",
        )
    return ProbeOutcome(
        healthy=True, details=f"Command executed successfully. Response: {response}",
    )


# ── SERVER ───────────────────────────────────────────────────────────────────


def run_server_probe(
    check: HealthCheck | None = None,
    load_threshold: float | None = None,
    free_memory_threshold: float | None = None,
) -> ProbeOutcome:
    """Host load average (1 min) and free memory ratio against thresholds."""
    load_threshold = settings.server_load_threshold if load_threshold is None else load_threshold
    free_memory_threshold = (
        settings.server_free_memory_threshold
        if free_memory_threshold is None else free_memory_threshold
    )
    try:
        load = os.getloadavg()[0]
        mem = psutil.virtual_memory()
        free_pct = mem.available / mem.total * 100
    except Exception as e:
        logger.error("Error checking system health: %s", e)
        return ProbeOutcome(healthy=False, details=f"Error checking system health: {e}")

    high_cpu = load > load_threshold
    low_memory = free_pct < free_memory_threshold

    details = f"CPU load: {load:.2f}, Free memory: {free_pct:.2f}%"
    if high_cpu:
        details += ", High CPU usage detected"
    if low_memory:
        details += ", Low memory detected"

    return ProbeOutcome(
        healthy=not high_cpu and not low_memory,
        details=details,
        cpu_usage=round(load, 2),
        memory_usage=round(100 - free_pct, 2),
    )


# ── Dispatcher ───────────────────────────────────────────────────────────────

PROBE_RUNNERS: dict[CheckKind, Callable[[HealthCheck], ProbeOutcome]] = {
    CheckKind.API: run_api_probe,
    CheckKind.PROCESS: run_process_probe,
    CheckKind.SERVICE: run_service_probe,
    CheckKind.SERVER: run_server_probe,
}

_missing = set(CheckKind) - set(PROBE_RUNNERS)
if _missing:
    raise RuntimeError(f"No probe runner for check kinds: {sorted(k.value for k in _missing)}")


def execute_probe(check: HealthCheck) -> ProbeOutcome:
    """Run the probe matching the check's kind. Never raises."""
    runner = PROBE_RUNNERS.get(check.kind)
    if runner is None:
        return ProbeOutcome(healthy=False, details=f"Unknown health check type: {check.kind}")
    try:
        return runner(check)
    except Exception as e:
        logger.exception("Probe %s (%s) crashed", check.name, check.kind.value)
        return ProbeOutcome(
            healthy=False, details=f"Error executing health check: {type(e).__name__}: {e}",
        )


def restart_service(check: HealthCheck) -> RestartOutcome:
    """Best-effort spawn of the check's restart command."""
    if not check.restart_command:
        return RestartOutcome(success=False, details="No restart command provided")
    try:
        output = _run_shell(check.restart_command, settings.command_timeout_seconds)
    except ProbeExecutionError as e:
        logger.error("Restart command for %s failed: %s", check.name, e)
        return RestartOutcome(success=False, details=f"Error executing restart command: {e}")
    logger.info("Restart command executed for %s", check.name)
    return RestartOutcome(success=True, details=f"Restart command executed. Output: {output}")
