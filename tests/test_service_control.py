from __future__ import annotations

import subprocess

import pytest

import agentfix.service_control as sc
from agentfix.errors import ServiceControlError
from agentfix.models import ServiceState

RUNNING_OUTPUT = """
SERVICE_NAME: CagService
        TYPE               : 10  WIN32_OWN_PROCESS
        STATE              : 4  RUNNING
                                (STOPPABLE, NOT_PAUSABLE, ACCEPTS_SHUTDOWN)
        WIN32_EXIT_CODE    : 0  (0x0)
"""

STOPPED_OUTPUT = """
SERVICE_NAME: CagService
        TYPE               : 10  WIN32_OWN_PROCESS
        STATE              : 1  STOPPED
        WIN32_EXIT_CODE    : 1067  (0x42b)
"""

START_PENDING_OUTPUT = """
SERVICE_NAME: CagService
        STATE              : 2  START_PENDING
"""


def _cp(cmd, rc: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(cmd, rc, stdout=stdout, stderr=stderr)


def _fake_sc(monkeypatch, responses: dict[str, subprocess.CompletedProcess[str]]) -> list[list[str]]:
    calls: list[list[str]] = []

    def fake_run_sc(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        return responses[cmd[1] if cmd[0] == "sc.exe" else cmd[0]]

    monkeypatch.setattr(sc, "_run_sc", fake_run_sc)
    return calls


@pytest.mark.parametrize(
    ("rc", "stdout", "expected"),
    [
        (0, RUNNING_OUTPUT, ServiceState.RUNNING),
        (0, STOPPED_OUTPUT, ServiceState.STOPPED),
        (0, START_PENDING_OUTPUT, ServiceState.UNKNOWN),
        (0, "garbage", ServiceState.UNKNOWN),
        (
            1060,
            "[SC] EnumQueryServicesStatus:OpenService FAILED 1060:\n\n"
            "The specified service does not exist as an installed service.",
            ServiceState.MISSING,
        ),
        (5, "[SC] OpenService FAILED 5:\n\nAccess is denied.", ServiceState.UNKNOWN),
    ],
)
def test_parse_sc_query(rc, stdout, expected) -> None:
    assert sc.parse_sc_query(_cp(["sc.exe", "query", "CagService"], rc, stdout)) is expected


def test_get_state_returns_unknown_when_sc_cannot_run(monkeypatch) -> None:
    def boom(cmd):
        raise FileNotFoundError("sc.exe")

    monkeypatch.setattr(sc, "_run_sc", boom)

    assert sc.WindowsServiceControl().get_state("CagService") is ServiceState.UNKNOWN


def test_start_tolerates_already_running(monkeypatch) -> None:
    calls = _fake_sc(
        monkeypatch,
        {"start": _cp([], 1056, "[SC] StartService FAILED 1056:\n\nAn instance of the service is already running.")},
    )

    sc.WindowsServiceControl().start("CagService")

    assert calls == [["sc.exe", "start", "CagService"]]


def test_start_failure_raises(monkeypatch) -> None:
    _fake_sc(monkeypatch, {"start": _cp([], 1058, "[SC] StartService FAILED 1058:\n\nThe service is disabled.")})

    with pytest.raises(ServiceControlError, match="rc=1058"):
        sc.WindowsServiceControl().start("CagService")


def test_stop_not_active_is_ok(monkeypatch) -> None:
    calls = _fake_sc(
        monkeypatch,
        {"stop": _cp([], 1062, "[SC] ControlService FAILED 1062:\n\nThe service has not been started.")},
    )

    sc.WindowsServiceControl().stop("CagService", force=True)

    assert calls == [["sc.exe", "stop", "CagService"]]


def test_stop_without_force_raises(monkeypatch) -> None:
    calls = _fake_sc(monkeypatch, {"stop": _cp([], 1061, "[SC] ControlService FAILED 1061:")})

    with pytest.raises(ServiceControlError):
        sc.WindowsServiceControl().stop("CagService")

    assert len(calls) == 1


def test_forced_stop_falls_back_to_taskkill(monkeypatch) -> None:
    calls = _fake_sc(
        monkeypatch,
        {
            "stop": _cp([], 1061, "[SC] ControlService FAILED 1061:"),
            "taskkill.exe": _cp([], 0, "SUCCESS: The process with PID 4242 has been terminated."),
        },
    )

    sc.WindowsServiceControl().stop("CagService", force=True)

    assert calls[-1] == ["taskkill.exe", "/F", "/FI", "SERVICES eq CagService"]


def test_forced_stop_raises_when_taskkill_fails(monkeypatch) -> None:
    _fake_sc(
        monkeypatch,
        {
            "stop": _cp([], 1061, "[SC] ControlService FAILED 1061:"),
            "taskkill.exe": _cp([], 1, stderr="ERROR: Access denied."),
        },
    )

    with pytest.raises(ServiceControlError, match="taskkill"):
        sc.WindowsServiceControl().stop("CagService", force=True)
