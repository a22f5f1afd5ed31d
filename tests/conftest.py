from __future__ import annotations

import os

import pytest

from fakes import FakeClock


@pytest.fixture(autouse=True)
def _isolate_process_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Make tests deterministic even when run on a configured endpoint.

    AGENTFIX_* variables exported on the host (collector URL, log dir, ...)
    would otherwise leak into config resolution.
    """
    for name in list(os.environ):
        if name.startswith("AGENTFIX_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("USERDNSDOMAIN", raising=False)
    monkeypatch.delenv("COMPUTERNAME", raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
