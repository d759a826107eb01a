from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float:
        """Return monotonic seconds."""


class SystemClock:
    def now(self) -> float:
        return time.monotonic()


@dataclass(slots=True)
class FakeClock:
    _now: float = 0.0

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("seconds must be >= 0")
        self._now += seconds


def utc_iso(epoch_s: float) -> str:
    """Format wall-clock seconds as a UTC `YYYY-MM-DD HH:MM:SS` string."""
    return datetime.fromtimestamp(epoch_s, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


@dataclass(slots=True)
class Stopwatch:
    """Times one external call for the audit log."""

    clock: Clock = field(default_factory=SystemClock)
    started_wall: float = field(init=False)
    finished_wall: float | None = field(init=False, default=None)
    _started: float = field(init=False)
    _elapsed_s: float | None = field(init=False, default=None)

    def __post_init__(self) -> None:
        self.started_wall = time.time()
        self._started = self.clock.now()

    def stop(self) -> "Stopwatch":
        if self._elapsed_s is None:
            self._elapsed_s = self.clock.now() - self._started
            self.finished_wall = time.time()
        return self

    @property
    def elapsed_ms(self) -> int:
        elapsed = self._elapsed_s
        if elapsed is None:
            elapsed = self.clock.now() - self._started
        return int(round(elapsed * 1000))

    @property
    def started_at(self) -> str:
        return utc_iso(self.started_wall)

    @property
    def finished_at(self) -> str | None:
        if self.finished_wall is None:
            return None
        return utc_iso(self.finished_wall)
