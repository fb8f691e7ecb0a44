from __future__ import annotations

import time


class WallClock:
    """Milliseconds since the epoch from the system clock."""

    def now(self) -> int:
        return int(time.time() * 1000)


class FakeClock:
    """Manually driven clock for deterministic runs."""

    def __init__(self, initial_ms: int = 1_000_000_000_000) -> None:
        self._now = initial_ms

    def now(self) -> int:
        return self._now

    def set(self, ms: int) -> None:
        self._now = ms

    def advance(self, ms: int) -> None:
        self._now += ms

    def tick(self) -> None:
        self.advance(1)


WALL_CLOCK = WallClock()
