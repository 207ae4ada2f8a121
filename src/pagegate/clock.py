"""Monotonic time source for gate runs."""
from __future__ import annotations

import time
from dataclasses import dataclass, field


class Clock:
    def now(self) -> float:
        return time.monotonic()


@dataclass
class Stopwatch:
    clock: Clock = field(default_factory=Clock)
    started_at: float | None = None

    def start(self) -> None:
        self.started_at = self.clock.now()

    def reset(self) -> None:
        self.started_at = None

    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        return max(0.0, self.clock.now() - self.started_at)
