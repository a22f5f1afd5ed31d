from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, TypeVar

T = TypeVar("T")


class Clock(Protocol):
    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock time and real blocking sleeps."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


@dataclass(frozen=True)
class PollResult:
    satisfied: bool
    value: Optional[object]
    attempts: int
    elapsed_seconds: float


def poll_until(
    probe: Callable[[], T],
    accept: Callable[[T], bool],
    *,
    interval_seconds: float,
    max_wait_seconds: float,
    clock: Clock,
) -> PollResult:
    """
    Sleep ``interval_seconds``, call ``probe`` and stop on the first accepted value.

    Gives up once ``max_wait_seconds`` have elapsed on ``clock``. The probe is
    never called more than ``ceil(max_wait / interval)`` times.
    """
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be positive")

    start = clock.monotonic()
    attempts = 0
    value: Optional[T] = None
    while clock.monotonic() - start < max_wait_seconds:
        remaining = max_wait_seconds - (clock.monotonic() - start)
        clock.sleep(min(interval_seconds, remaining))
        attempts += 1
        value = probe()
        if accept(value):
            return PollResult(
                satisfied=True,
                value=value,
                attempts=attempts,
                elapsed_seconds=clock.monotonic() - start,
            )
    return PollResult(
        satisfied=False,
        value=value,
        attempts=attempts,
        elapsed_seconds=clock.monotonic() - start,
    )
