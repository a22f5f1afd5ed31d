from __future__ import annotations

import logging
import re
import subprocess  # nosec: B404 - fixed sc.exe/taskkill invocations

from .errors import ServiceControlError
from .models import ServiceState

logger = logging.getLogger("agentfix.service_control")

SC_TIMEOUT_SECONDS = 30
# "The specified service does not exist as an installed service."
ERROR_SERVICE_DOES_NOT_EXIST = 1060
# "An instance of the service is already running."
ERROR_SERVICE_ALREADY_RUNNING = 1056
# "The service has not been started."
ERROR_SERVICE_NOT_ACTIVE = 1062

_STATE_RE = re.compile(r"^\s*STATE\s*:\s*(\d+)\s+(\w+)", re.MULTILINE)
_FAILED_RE = re.compile(r"FAILED\s+(\d+)")


def _run_sc(cmd: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # nosec: B603
        cmd,
        check=False,
        capture_output=True,
        text=True,
        timeout=SC_TIMEOUT_SECONDS,
    )


def _failure_code(cp: subprocess.CompletedProcess[str]) -> int | None:
    m = _FAILED_RE.search(f"{cp.stdout or ''}\n{cp.stderr or ''}")
    if m:
        return int(m.group(1))
    return cp.returncode if cp.returncode else None


def parse_sc_query(cp: subprocess.CompletedProcess[str]) -> ServiceState:
    """
    Map ``sc query`` output to a ServiceState.

    Pending and paused states are reported as Unknown; the caller decides
    what "not clearly running or stopped" means.
    """
    if cp.returncode != 0:
        if _failure_code(cp) == ERROR_SERVICE_DOES_NOT_EXIST:
            return ServiceState.MISSING
        return ServiceState.UNKNOWN
    m = _STATE_RE.search(cp.stdout or "")
    if not m:
        return ServiceState.UNKNOWN
    code = int(m.group(1))
    if code == 4:
        return ServiceState.RUNNING
    if code == 1:
        return ServiceState.STOPPED
    return ServiceState.UNKNOWN


class WindowsServiceControl:
    """
    Service Control collaborator backed by ``sc.exe``.

    None of these calls wait for the state change; callers poll get_state.
    """

    def get_state(self, name: str) -> ServiceState:
        try:
            cp = _run_sc(["sc.exe", "query", name])
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Service query for %s unavailable: %s", name, exc)
            return ServiceState.UNKNOWN
        state = parse_sc_query(cp)
        logger.debug("sc query %s -> %s (rc=%s)", name, state.value, cp.returncode)
        return state

    def start(self, name: str) -> None:
        try:
            cp = _run_sc(["sc.exe", "start", name])
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ServiceControlError(f"sc start {name} could not run: {exc}") from exc
        if cp.returncode != 0 and _failure_code(cp) != ERROR_SERVICE_ALREADY_RUNNING:
            raise ServiceControlError(
                f"sc start {name} failed (rc={cp.returncode}): {(cp.stdout or '').strip()[:400]}"
            )

    def stop(self, name: str, force: bool = False) -> None:
        try:
            cp = _run_sc(["sc.exe", "stop", name])
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ServiceControlError(f"sc stop {name} could not run: {exc}") from exc
        if cp.returncode == 0 or _failure_code(cp) == ERROR_SERVICE_NOT_ACTIVE:
            return
        if not force:
            raise ServiceControlError(
                f"sc stop {name} failed (rc={cp.returncode}): {(cp.stdout or '').strip()[:400]}"
            )

        logger.warning("sc stop %s failed (rc=%s); killing the service process", name, cp.returncode)
        try:
            kill = _run_sc(["taskkill.exe", "/F", "/FI", f"SERVICES eq {name}"])
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ServiceControlError(f"taskkill for {name} could not run: {exc}") from exc
        if kill.returncode != 0:
            raise ServiceControlError(
                f"taskkill for {name} failed (rc={kill.returncode}): {(kill.stderr or '').strip()[:400]}"
            )
