"""Progress blending for a gate run.

``sequential`` (default) fills the timer share first and only blends
readiness once the floor has elapsed. ``weighted`` blends a fixed weighted
sum of both from the start of the run.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .timer import clamp

logger = logging.getLogger(__name__)

MIN_TIMER_PROGRESS_WEIGHT = 0.8
MAX_PROGRESS_BEFORE_FINAL = 0.98

ProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class ReadinessWeights:
    assets: float = 0.6
    fonts: float = 0.2
    load: float = 0.2

    def as_dict(self) -> Dict[str, float]:
        return {"assets": self.assets, "fonts": self.fonts, "load": self.load}


@dataclass
class ReadinessSnapshot:
    assets: float = 0.0
    fonts: bool = False
    load: bool = False

    def fraction(self, weights: ReadinessWeights) -> float:
        total = weights.assets + weights.fonts + weights.load
        if total <= 0:
            return 1.0 if (self.load and self.fonts and self.assets >= 1) else 0.0
        blended = (
            weights.assets * clamp(self.assets)
            + weights.fonts * (1.0 if self.fonts else 0.0)
            + weights.load * (1.0 if self.load else 0.0)
        )
        return clamp(blended / total)


def combine_sequential(
    timer_progress: float, readiness_progress: float, timer_done: bool, timer_weight: float
) -> float:
    """Timer fills ``timer_weight`` first; readiness fills the rest after the floor."""
    if not timer_done:
        return min(MAX_PROGRESS_BEFORE_FINAL, clamp(timer_progress) * timer_weight)
    readiness_weight = 1.0 - timer_weight
    return min(MAX_PROGRESS_BEFORE_FINAL, timer_weight + clamp(readiness_progress) * readiness_weight)


def combine_weighted(
    timer_progress: float, readiness_progress: float, timer_done: bool, timer_weight: float
) -> float:
    """Fixed weighted sum of both inputs from the start of the run."""
    if timer_done:
        timer_progress = 1.0
    readiness_weight = 1.0 - timer_weight
    combined = clamp(timer_progress) * timer_weight + clamp(readiness_progress) * readiness_weight
    return min(MAX_PROGRESS_BEFORE_FINAL, combined)


BLEND_STRATEGIES: Dict[str, Callable[[float, float, bool, float], float]] = {
    "sequential": combine_sequential,
    "weighted": combine_weighted,
}


def combine(
    timer_progress: float,
    readiness_progress: float,
    *,
    timer_done: bool,
    timer_weight: float = MIN_TIMER_PROGRESS_WEIGHT,
    strategy: str = "sequential",
) -> float:
    try:
        fn = BLEND_STRATEGIES[strategy]
    except KeyError:
        raise ValueError(f"unknown blend strategy: {strategy}") from None
    return fn(timer_progress, readiness_progress, timer_done, clamp(timer_weight))


class ProgressBlender:
    """Owns the ``combined`` value of one run and publishes it.

    ``combined`` never decreases between ``reset()`` calls and stays at or
    below ``MAX_PROGRESS_BEFORE_FINAL`` until ``complete()``.
    """

    def __init__(
        self,
        *,
        strategy: str = "sequential",
        timer_weight: float = MIN_TIMER_PROGRESS_WEIGHT,
        weights: Optional[ReadinessWeights] = None,
    ) -> None:
        if strategy not in BLEND_STRATEGIES:
            raise ValueError(f"unknown blend strategy: {strategy}")
        self.strategy = strategy
        self.configured_timer_weight = clamp(timer_weight)
        self.weights = weights or ReadinessWeights()
        self._subscribers: List[ProgressCallback] = []
        self.timer_weight = 0.0
        self.timer_progress = 0.0
        self.timer_done = True
        self.readiness = ReadinessSnapshot()
        self.readiness_progress = 0.0
        self.combined = 0.0
        self.completed = False

    @property
    def value(self) -> float:
        return self.combined

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        self._subscribers.append(callback)
        callback(self.combined)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def reset(self, *, uses_floor: bool) -> None:
        self.timer_weight = self.configured_timer_weight if uses_floor else 0.0
        self.timer_progress = 0.0
        self.timer_done = not uses_floor
        self.readiness = ReadinessSnapshot()
        self.readiness_progress = 0.0
        self.completed = False
        self.combined = 0.0
        self._publish(0.0)

    def update_timer(self, progress: float) -> None:
        self.timer_progress = clamp(progress)
        if self.timer_progress >= 1.0:
            self.timer_done = True
        self._recompute()

    def update_readiness(
        self,
        *,
        assets: Optional[float] = None,
        fonts: Optional[bool] = None,
        load: Optional[bool] = None,
    ) -> None:
        if assets is not None:
            self.readiness.assets = clamp(assets)
        if fonts is not None:
            self.readiness.fonts = fonts
        if load is not None:
            self.readiness.load = load
        self.readiness_progress = self.readiness.fraction(self.weights)
        self._recompute()

    def complete(self) -> None:
        self.completed = True
        self.combined = 1.0
        self._publish(1.0)

    def _recompute(self) -> None:
        if self.completed:
            return
        target = combine(
            self.timer_progress,
            self.readiness_progress,
            timer_done=self.timer_done,
            timer_weight=self.timer_weight,
            strategy=self.strategy,
        )
        if target <= self.combined:
            return
        self.combined = target
        self._publish(target)

    def _publish(self, value: float) -> None:
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception:  # noqa: BLE001
                logger.exception("progress subscriber failed")
