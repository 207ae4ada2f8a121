"""Wait for caller-chosen elements to emit a completion event."""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Dict, Hashable, List, Optional, Set

from .host import DEFAULT_EVENT, Document, Element, Unsubscribe
from .tracker import ReadinessCounters

logger = logging.getLogger(__name__)


def _noop() -> None:
    pass


class UnmatchedPolicy(str, Enum):
    # Never resolve on its own when nothing matches; the ceiling decides.
    WAIT = "wait"
    # Resolve right after seeding when the selector matched nothing.
    RESOLVE = "resolve"


class CustomSignalWatcher:
    def __init__(
        self,
        document: Document,
        selector: str,
        event_name: str = DEFAULT_EVENT,
        *,
        policy: UnmatchedPolicy = UnmatchedPolicy.WAIT,
    ) -> None:
        self.document = document
        self.selector = selector
        self.event_name = event_name
        self.policy = UnmatchedPolicy(policy)
        self.counters = ReadinessCounters("custom_element")
        self.seen_match = False
        self.settled: Optional[asyncio.Future] = None
        self._finished = False
        self._scans = 0
        self._seen: Set[Hashable] = set()
        self._teardown: Dict[Hashable, Unsubscribe] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._disconnect: Optional[Unsubscribe] = None

    @classmethod
    def create(
        cls,
        document: Document,
        selector: Optional[str],
        event_name: Optional[str] = DEFAULT_EVENT,
        *,
        policy: UnmatchedPolicy = UnmatchedPolicy.WAIT,
    ) -> Optional["CustomSignalWatcher"]:
        """Return ``None`` when no selector is configured."""
        selector = (selector or "").strip()
        if not selector:
            return None
        event_name = (event_name or DEFAULT_EVENT).strip() or DEFAULT_EVENT
        return cls(document, selector, event_name, policy=policy)

    @property
    def listener_count(self) -> int:
        return len(self._teardown)

    async def start(self) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        self.settled = loop.create_future()

        self._scans += 1
        try:
            for el in await self.document.query_all(self.selector):
                self._watch_element(el)
        finally:
            self._scans -= 1

        if not self._finished:
            self._disconnect = self.document.observe_mutations(None, self._on_mutations)
            if self._disconnect is None:
                logger.info("mutation observation unavailable; only existing %r elements are watched", self.selector)

        if not self.seen_match and self.policy is UnmatchedPolicy.RESOLVE:
            logger.info("selector %r matched nothing; resolving per policy", self.selector)
            self._finish()
        else:
            self._maybe_finish()
        return self.settled

    def _watch_element(self, el: Element) -> None:
        if self._finished or el.key in self._seen:
            return
        self._seen.add(el.key)
        self.seen_match = True
        self.counters.add()
        key = el.key
        # Placeholder: the host may call back before watch_signal returns.
        self._teardown[key] = _noop
        off = el.watch_signal(self.event_name, lambda: self._settle_element(key))
        if key in self._teardown:
            self._teardown[key] = off
        else:
            off()

    def _settle_element(self, key: Hashable) -> None:
        off = self._teardown.pop(key, None)
        if off is None:
            return
        off()
        self.counters.finish()
        self._maybe_finish()

    def _on_mutations(self, added: List[Element]) -> None:
        if self._finished:
            return
        self._scans += 1
        task = asyncio.ensure_future(self._handle_added(added))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle_added(self, added: List[Element]) -> None:
        try:
            for el in added:
                if await el.matches(self.selector):
                    self._watch_element(el)
                for match in await el.query_all(self.selector):
                    self._watch_element(match)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.debug("failed to inspect inserted nodes for %r: %s", self.selector, exc)
        finally:
            self._scans -= 1
        self._maybe_finish()

    def _maybe_finish(self) -> None:
        if self.counters.pending == 0 and self.seen_match and self._scans == 0:
            self._finish()

    def _detach(self) -> None:
        listeners = list(self._teardown.values())
        self._teardown.clear()
        disconnect, self._disconnect = self._disconnect, None
        try:
            if disconnect is not None:
                disconnect()
        finally:
            for off in listeners:
                off()

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        logger.debug("custom signal %r/%s settled: %s", self.selector, self.event_name, self.counters.as_dict())
        if self.settled is not None and not self.settled.done():
            self.settled.set_result(None)
        try:
            self._detach()
        except Exception:  # noqa: BLE001
            logger.exception("failed to detach watcher for %r", self.selector)

    def cancel(self) -> None:
        """Detach everything without resolving ``settled``."""
        if self._finished:
            return
        self._finished = True
        try:
            self._detach()
        finally:
            for task in list(self._tasks):
                task.cancel()
