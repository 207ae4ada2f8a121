"""Minimum-display floor and timeout ceiling for a gate run."""
from __future__ import annotations

import asyncio
import logging
import math
from typing import Callable, Optional

from .clock import Clock, Stopwatch
from .waits import CancelToken, sleep

logger = logging.getLogger(__name__)

MINIMUM_WAIT_POLL_SECONDS = 0.25
MINIMUM_SLEEP_SECONDS = 0.016
TIMEOUT = "timeout"


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if value != value:  # NaN
        return low
    return max(low, min(high, value))


class TimerController:
    """Tracks elapsed time against the floor and arms the ceiling.

    ``minimum_elapsed`` resolves once ``min_seconds`` have passed (immediately
    when it is 0). ``timeout_elapsed`` is ``None`` without a ceiling, otherwise
    a one-shot future resolving to ``"timeout"``.
    """

    def __init__(
        self,
        min_seconds: float,
        timeout_seconds: float,
        *,
        clock: Optional[Clock] = None,
        on_progress: Optional[Callable[[float], None]] = None,
        token: Optional[CancelToken] = None,
    ) -> None:
        self.min_seconds = max(0.0, float(min_seconds or 0.0))
        self.timeout_seconds = max(0.0, float(timeout_seconds or 0.0))
        self.stopwatch = Stopwatch(clock or Clock())
        self._on_progress = on_progress
        self._token = token or CancelToken()
        self._poll_task: Optional[asyncio.Task] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self.minimum_elapsed: Optional[asyncio.Future] = None
        self.timeout_elapsed: Optional[asyncio.Future] = None
        self.timer_progress = 0.0

    @property
    def uses_floor(self) -> bool:
        return self.min_seconds > 0

    @property
    def timed_out(self) -> bool:
        fut = self.timeout_elapsed
        return fut is not None and fut.done() and not fut.cancelled()

    def elapsed(self) -> float:
        return self.stopwatch.elapsed()

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        self.stopwatch.start()
        self.minimum_elapsed = loop.create_future()
        if self.uses_floor:
            self._poll_task = loop.create_task(self._poll_minimum())
        else:
            self.minimum_elapsed.set_result(None)

        if self.timeout_seconds > 0:
            self.timeout_elapsed = loop.create_future()
            self._timeout_handle = loop.call_later(self.timeout_seconds, self._fire_timeout)
        else:
            self.timeout_elapsed = None

    def _fire_timeout(self) -> None:
        self._timeout_handle = None
        fut = self.timeout_elapsed
        if fut is not None and not fut.done():
            logger.debug("timeout elapsed after %.3fs", self.elapsed())
            fut.set_result(TIMEOUT)

    def cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    def _emit(self, value: float) -> None:
        value = clamp(value)
        if value == self.timer_progress:
            return
        self.timer_progress = value
        if self._on_progress is not None:
            self._on_progress(value)

    async def _poll_minimum(self) -> None:
        last_logged_remainder = math.inf
        while not self._token.cancelled:
            elapsed = self.elapsed()
            self._emit(elapsed / self.min_seconds)
            if elapsed >= self.min_seconds:
                self._emit(1.0)
                logger.debug("minimum time complete after %.3fs", elapsed)
                if self.minimum_elapsed is not None and not self.minimum_elapsed.done():
                    self.minimum_elapsed.set_result(None)
                return
            remaining = max(0.0, self.min_seconds - elapsed)
            rounded = math.ceil(remaining)
            if rounded < last_logged_remainder:
                last_logged_remainder = rounded
                logger.debug("minimum time pending: %.3fs remaining", remaining)
            slept = await sleep(
                max(MINIMUM_SLEEP_SECONDS, min(MINIMUM_WAIT_POLL_SECONDS, remaining)),
                self._token,
            )
            if not slept:
                return

    def close(self) -> None:
        self.cancel_timeout()
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = None
