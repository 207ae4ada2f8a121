"""Gate finalizer: the state machine that owns the exactly-once completion.

A run goes ``IDLE -> RUNNING -> FINALIZING -> COMPLETE``. It finalizes when
readiness settles or the ceiling elapses, but never before the floor. The
fired flag is checked and set within a single event-loop turn, so however
many signals resolve together, ``on_ready`` is invoked at most once.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .blend import ProgressBlender
from .clock import Clock
from .config import GateConfig, WaitMode
from .errors import GateStateError
from .events import GateEvent
from .host import Document
from .session import MemorySessionStore, SessionStore
from .timer import TimerController
from .tracker import AssetTracker
from .waits import CANCELLED, CancelToken, select, sleep
from .watcher import CustomSignalWatcher, UnmatchedPolicy

logger = logging.getLogger(__name__)

POST_MINIMUM_POLL_SECONDS = 1.0

ReadyCallback = Callable[[GateEvent], Any]


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


class GateOutcome(str, Enum):
    READY = "ready"
    TIMEOUT = "timeout"
    SESSION = "session"
    CANCELLED = "cancelled"
    DISABLED = "disabled"


class RenderTarget(str, Enum):
    LIVE = "live"
    PREVIEW = "preview"
    CANVAS = "canvas"
    THUMBNAIL = "thumbnail"


def gating_enabled(target: RenderTarget, run_in_preview: bool = True) -> bool:
    target = RenderTarget(target)
    if target in (RenderTarget.CANVAS, RenderTarget.THUMBNAIL):
        return False
    if target is RenderTarget.PREVIEW:
        return run_in_preview
    return True


@dataclass
class GateResult:
    outcome: GateOutcome
    state: RunState
    fired: bool = False
    timed_out: bool = False
    degraded: bool = False
    elapsed_seconds: float = 0.0
    callback_error: Optional[str] = None
    counters: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "state": self.state.value,
            "fired": self.fired,
            "timed_out": self.timed_out,
            "degraded": self.degraded,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "callback_error": self.callback_error,
            "counters": self.counters,
        }


class GateRun:
    """Everything owned by one run; discarded when the run ends."""

    def __init__(self) -> None:
        self.state = RunState.IDLE
        self.token = CancelToken()
        self.fired = False
        self.dispatched = False
        self.timed_out = False
        self.degraded = False
        self.callback_error: Optional[str] = None
        self.timer: Optional[TimerController] = None
        self.tracker: Optional[AssetTracker] = None
        self.watcher: Optional[CustomSignalWatcher] = None
        self.readiness_task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def counters(self) -> Dict[str, Dict[str, int]]:
        snapshot: Dict[str, Dict[str, int]] = {}
        if self.tracker is not None:
            snapshot.update(self.tracker.snapshot())
        if self.watcher is not None:
            snapshot["custom_element"] = self.watcher.counters.as_dict()
        return snapshot


class ReadinessGate:
    def __init__(
        self,
        document: Document,
        config: Optional[GateConfig] = None,
        *,
        on_ready: Optional[ReadyCallback] = None,
        session_store: Optional[SessionStore] = None,
        clock: Optional[Clock] = None,
        render_target: RenderTarget = RenderTarget.LIVE,
        event_target: Any = None,
    ) -> None:
        self.document = document
        self.config = config or GateConfig()
        self.on_ready = on_ready
        self.session_store = session_store if session_store is not None else MemorySessionStore()
        self.clock = clock or Clock()
        self.render_target = RenderTarget(render_target)
        self.event_target = event_target
        self.progress = ProgressBlender(
            strategy=self.config.blend_strategy,
            timer_weight=self.config.timer_weight,
            weights=self.config.readiness_weights,
        )
        self._run: Optional[GateRun] = None

    @property
    def state(self) -> RunState:
        return self._run.state if self._run is not None else RunState.IDLE

    @property
    def gate_id(self) -> str:
        return self.config.gate_id

    async def run(self) -> GateResult:
        if self._run is not None and self._run.state in (RunState.RUNNING, RunState.FINALIZING):
            raise GateStateError(f"gate {self.gate_id!r} is already running")
        if not gating_enabled(self.render_target, self.config.run_in_preview):
            logger.info("gate [%s] disabled for %s render target", self.gate_id, self.render_target.value)
            return GateResult(outcome=GateOutcome.DISABLED, state=RunState.IDLE)

        run = GateRun()
        self._run = run
        cfg = self.config
        run.state = RunState.RUNNING
        logger.info(
            "gate [%s] starting (min=%.2fs timeout=%.2fs quiet=%.2fs mode=%s)",
            self.gate_id, cfg.min_seconds, cfg.timeout_seconds, cfg.quiet_seconds, cfg.wait_mode.value,
        )
        self.progress.reset(uses_floor=cfg.min_seconds > 0)
        run.timer = TimerController(
            cfg.min_seconds,
            cfg.timeout_seconds,
            clock=self.clock,
            on_progress=self.progress.update_timer,
            token=run.token,
        )
        run.timer.start()

        try:
            outcome = await self._orchestrate(run)
        except asyncio.CancelledError:
            run.token.cancel()
            run.state = RunState.CANCELLED
            self._teardown(run)
            raise
        except Exception:
            logger.exception("gate [%s] orchestration failed; finalizing degraded", self.gate_id)
            run.degraded = True
            self._teardown_readiness(run)
            outcome = await self._recover(run)
        finally:
            self._teardown(run)

        if outcome is GateOutcome.CANCELLED:
            run.state = RunState.CANCELLED
        return GateResult(
            outcome=outcome,
            state=run.state,
            fired=run.dispatched,
            timed_out=run.timed_out,
            degraded=run.degraded,
            elapsed_seconds=run.timer.elapsed(),
            callback_error=run.callback_error,
            counters=run.counters(),
        )

    def cancel(self) -> None:
        """Cancel the active run; its ``on_ready`` will not fire."""
        run = self._run
        if run is None or run.state in (RunState.COMPLETE, RunState.CANCELLED):
            return
        logger.info("gate [%s] cancelled in state %s", self.gate_id, run.state.value)
        run.token.cancel()
        run.state = RunState.CANCELLED
        self._teardown(run)

    async def _orchestrate(self, run: GateRun) -> GateOutcome:
        cfg = self.config
        if cfg.once_per_session and self._session_already_ran():
            logger.info("gate [%s] already ran this session; holding for minimum only", self.gate_id)
            if not await self._wait_minimum(run):
                return GateOutcome.CANCELLED
            return await self._finalize(run, GateOutcome.SESSION)

        ready = self._start_readiness(run)
        if not await self._wait_minimum(run):
            return GateOutcome.CANCELLED

        assert run.timer is not None
        timed_out = run.timer.timed_out and not ready.done()
        while not timed_out and not ready.done():
            outcome = await select(
                {
                    "ready": ready,
                    "timeout": run.timer.timeout_elapsed,
                    "tick": asyncio.sleep(POST_MINIMUM_POLL_SECONDS),
                },
                run.token,
            )
            if outcome == CANCELLED:
                return GateOutcome.CANCELLED
            if outcome == "ready":
                break
            if outcome == "timeout":
                timed_out = True
                logger.warning("gate [%s] timeout reached before ready state", self.gate_id)
                break
            logger.debug(
                "gate [%s] minimum met; still waiting for readiness (elapsed=%.2fs)",
                self.gate_id, run.timer.elapsed(),
            )

        if not timed_out:
            run.timer.cancel_timeout()
        run.timed_out = timed_out
        return await self._finalize(run, GateOutcome.TIMEOUT if timed_out else GateOutcome.READY)

    async def _recover(self, run: GateRun) -> GateOutcome:
        if run.cancelled:
            return GateOutcome.CANCELLED
        outcome = GateOutcome.TIMEOUT if run.timed_out else GateOutcome.READY
        try:
            if run.fired and not run.dispatched:
                # Failed between claiming the fired flag and dispatching.
                return await self._complete(run, outcome)
            if not await self._wait_minimum(run):
                return GateOutcome.CANCELLED
            return await self._finalize(run, outcome)
        except Exception:
            logger.exception("gate [%s] could not finalize after failure", self.gate_id)
            run.state = RunState.COMPLETE if run.dispatched else RunState.CANCELLED
            return GateOutcome.READY if run.dispatched else GateOutcome.CANCELLED

    def _session_already_ran(self) -> bool:
        try:
            return self.session_store.has_run(self.gate_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("gate [%s] session flag unreadable (%s); running full gate", self.gate_id, exc)
            return False

    async def _wait_minimum(self, run: GateRun) -> bool:
        assert run.timer is not None and run.timer.minimum_elapsed is not None
        if run.cancelled:
            return False
        if run.timer.minimum_elapsed.done():
            return True
        return await select({"minimum": run.timer.minimum_elapsed}, run.token) != CANCELLED

    def _start_readiness(self, run: GateRun) -> asyncio.Task:
        cfg = self.config
        if cfg.wait_mode is WaitMode.FONTS_AND_IMAGES:
            run.tracker = AssetTracker(
                self.document,
                scope_selector=cfg.scope_selector,
                include_backgrounds=cfg.include_backgrounds,
                quiet_seconds=cfg.quiet_seconds,
                on_progress=lambda frac: self.progress.update_readiness(assets=frac),
                on_fonts_ready=lambda done: self.progress.update_readiness(fonts=done),
            )
        else:
            self.progress.update_readiness(assets=1.0, fonts=True)
        run.watcher = CustomSignalWatcher.create(
            self.document, cfg.custom_selector, cfg.custom_event, policy=cfg.unmatched_policy
        )
        if run.watcher is not None:
            logger.info("gate [%s] waiting for %r to emit %r", self.gate_id, cfg.custom_selector, cfg.custom_event)
            if not cfg.has_ceiling and cfg.unmatched_policy is UnmatchedPolicy.WAIT:
                logger.warning(
                    "gate [%s] has no timeout; it will wait forever if %r never matches",
                    self.gate_id, cfg.custom_selector,
                )
        run.readiness_task = asyncio.ensure_future(self._readiness(run))
        return run.readiness_task

    async def _readiness(self, run: GateRun) -> None:
        waits: List[Any] = [self._wait_window_load()]
        if run.tracker is not None:
            waits.append(self._await_settled(run.tracker.start()))
        if run.watcher is not None:
            waits.append(self._await_settled(run.watcher.start()))
        try:
            await asyncio.gather(*waits)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("gate [%s] readiness tracking failed; continuing degraded", self.gate_id)
            run.degraded = True
            return
        logger.info("gate [%s] ready state complete", self.gate_id)

    @staticmethod
    async def _await_settled(starting: Any) -> None:
        settled = await starting
        await settled

    async def _wait_window_load(self) -> None:
        if await self.document.ready_state() == "complete":
            self.progress.update_readiness(load=True)
            return
        self.progress.update_readiness(load=False)
        await self.document.wait_for_load()
        self.progress.update_readiness(load=True)

    async def _finalize(self, run: GateRun, outcome: GateOutcome) -> GateOutcome:
        if run.fired or run.cancelled:
            return outcome if run.fired else GateOutcome.CANCELLED
        run.fired = True
        run.state = RunState.FINALIZING
        assert run.timer is not None
        logger.info(
            "gate [%s] finalizing (outcome=%s elapsed=%.3fs)", self.gate_id, outcome.value, run.timer.elapsed()
        )
        return await self._complete(run, outcome)

    async def _complete(self, run: GateRun, outcome: GateOutcome) -> GateOutcome:
        self._teardown_readiness(run)
        self.progress.complete()

        if self.config.finish_delay > 0 and not await sleep(self.config.finish_delay, run.token):
            return GateOutcome.CANCELLED
        if run.cancelled:
            return GateOutcome.CANCELLED

        await self._dispatch(run, outcome)
        if self.config.once_per_session:
            try:
                self.session_store.mark_run(self.gate_id)
            except Exception as exc:  # noqa: BLE001
                logger.warning("gate [%s] could not persist session flag: %s", self.gate_id, exc)
        if run.state is RunState.FINALIZING:
            run.state = RunState.COMPLETE
        return outcome

    async def _dispatch(self, run: GateRun, outcome: GateOutcome) -> None:
        run.dispatched = True
        if self.on_ready is None:
            logger.info("gate [%s] no on_ready handler wired; skipping dispatch", self.gate_id)
            return
        assert run.timer is not None
        event = GateEvent(
            target=self.event_target,
            detail={
                "gate_id": self.gate_id,
                "outcome": outcome.value,
                "timed_out": run.timed_out,
                "degraded": run.degraded,
                "elapsed_seconds": run.timer.elapsed(),
            },
        )
        logger.info("gate [%s] dispatching on_ready", self.gate_id)
        try:
            result = self.on_ready(event)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # noqa: BLE001
            logger.exception("gate [%s] on_ready handler raised", self.gate_id)
            run.callback_error = f"{type(exc).__name__}: {exc}"

    def _teardown_readiness(self, run: GateRun) -> None:
        """Release readiness resources; never raises."""
        steps = []
        if run.tracker is not None:
            steps.append(("tracker", run.tracker.close))
        if run.watcher is not None:
            steps.append(("watcher", run.watcher.cancel))
        if run.readiness_task is not None and not run.readiness_task.done():
            steps.append(("readiness task", run.readiness_task.cancel))
        for name, step in steps:
            try:
                step()
            except Exception:  # noqa: BLE001
                logger.exception("gate [%s] %s teardown failed", self.gate_id, name)
                run.degraded = True

    def _teardown(self, run: GateRun) -> None:
        self._teardown_readiness(run)
        if run.timer is not None:
            run.timer.close()
