from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from agentfix.errors import EventLogQueryError, ServiceControlError
from agentfix.models import EventRecord, ServiceState


class FakeClock:
    """Virtual clock: sleep() advances time instantly."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2026, 10, 18, 9, 30, 0, tzinfo=timezone.utc)
        self._mono = 1000.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self._mono += seconds
            self._now += timedelta(seconds=seconds)


class FakeService:
    """
    Returns ``states`` in order from get_state, repeating the last one.
    """

    def __init__(
        self,
        states: Iterable[ServiceState],
        *,
        start_error: bool = False,
        stop_error: bool = False,
    ) -> None:
        self.states = list(states)
        self.start_error = start_error
        self.stop_error = stop_error
        self.probes = 0
        self.start_calls: list[str] = []
        self.stop_calls: list[tuple[str, bool]] = []

    def get_state(self, name: str) -> ServiceState:
        idx = min(self.probes, len(self.states) - 1)
        self.probes += 1
        return self.states[idx]

    def start(self, name: str) -> None:
        self.start_calls.append(name)
        if self.start_error:
            raise ServiceControlError("start refused")

    def stop(self, name: str, force: bool = False) -> None:
        self.stop_calls.append((name, force))
        if self.stop_error:
            raise ServiceControlError("stop refused")


class FakeEventLog:
    def __init__(self, records: Iterable[EventRecord] = (), *, fail: bool = False) -> None:
        self.records = list(records)
        self.fail = fail
        self.queries: list[tuple[str, frozenset[int], datetime]] = []

    def query(self, log_name, ids, since, *, now=None):
        self.queries.append((log_name, frozenset(ids), since))
        if self.fail:
            raise EventLogQueryError("wevtutil failed (rc=15007)")
        return list(self.records)
