"""Asset readiness tracking: images, fonts and CSS background images.

The tracker settles once fonts are ready and no asset has been pending for
a full quiet window. Broken assets count as done so a single failing image
cannot hold the page hostage.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Hashable, List, Optional, Set

from .host import Document, Element, Unsubscribe, is_image

logger = logging.getLogger(__name__)

BACKGROUND_URL_RE = re.compile(r"""url\((['"]?)(.*?)\1\)""")

ASSET_KINDS = ("image", "background")


def extract_background_urls(value: Optional[str]) -> List[str]:
    if not value or value.strip() == "none":
        return []
    return [m.group(2) for m in BACKGROUND_URL_RE.finditer(value) if m.group(2)]


@dataclass
class ReadinessCounters:
    kind: str
    total: int = 0
    done: int = 0
    pending: int = 0

    def add(self) -> None:
        self.total += 1
        self.pending += 1

    def finish(self) -> None:
        self.pending -= 1
        self.done += 1

    def as_dict(self) -> Dict[str, int]:
        return {"total": self.total, "done": self.done, "pending": self.pending}


class AssetTracker:
    def __init__(
        self,
        document: Document,
        *,
        scope_selector: str = "",
        include_backgrounds: bool = True,
        quiet_seconds: float = 0.6,
        on_progress: Optional[Callable[[float], None]] = None,
        on_fonts_ready: Optional[Callable[[bool], None]] = None,
    ) -> None:
        self.document = document
        self.scope_selector = (scope_selector or "").strip()
        self.include_backgrounds = include_backgrounds
        self.quiet_seconds = max(0.0, float(quiet_seconds))
        self._on_progress = on_progress
        self._on_fonts_ready = on_fonts_ready
        self.counters: Dict[str, ReadinessCounters] = {
            "image": ReadinessCounters("image"),
            "font_set": ReadinessCounters("font_set"),
            "background": ReadinessCounters("background"),
        }
        self.settled: Optional[asyncio.Future] = None
        self.fonts_ready = False
        self._quiet_ok = False
        self._quiet_handle: Optional[asyncio.TimerHandle] = None
        self._scans = 0
        self._seen_images: Set[Hashable] = set()
        self._seen_backgrounds: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._disconnect: Optional[Unsubscribe] = None
        self._closed = False

    @property
    def pending(self) -> int:
        return sum(self.counters[kind].pending for kind in ASSET_KINDS)

    def progress(self) -> float:
        total = sum(self.counters[kind].total for kind in ASSET_KINDS)
        done = sum(self.counters[kind].done for kind in ASSET_KINDS)
        return done / total if total else 1.0

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        return {kind: c.as_dict() for kind, c in self.counters.items()}

    async def start(self) -> asyncio.Future:
        """Scan the scope, begin observing and return the ``settled`` future."""
        loop = asyncio.get_running_loop()
        self.settled = loop.create_future()

        self.counters["font_set"].add()
        self._spawn(self._watch_fonts())

        root = await self._resolve_scope()
        self._scans += 1
        try:
            images = await (root.query_all("img") if root is not None else self.document.query_all("img"))
            for img in images:
                self._handle_image(img)
            if self.include_backgrounds:
                elements = await (root.query_all("*") if root is not None else self.document.query_all("*"))
                if root is not None:
                    elements = [root, *elements]
                for el in elements:
                    await self._scan_backgrounds(el)
        finally:
            self._scans -= 1

        if not self._closed and not self.settled.done():
            self._disconnect = self.document.observe_mutations(root, self._on_mutations)
            if self._disconnect is None:
                logger.info("mutation observation unavailable; late-inserted assets are not tracked")

        logger.debug(
            "initial scan: %d images, %d backgrounds",
            self.counters["image"].total,
            self.counters["background"].total,
        )
        self._report_progress()
        self._schedule_quiet()
        return self.settled

    async def _resolve_scope(self) -> Optional[Element]:
        if not self.scope_selector:
            return None
        try:
            root = await self.document.query(self.scope_selector)
        except Exception as exc:  # noqa: BLE001
            logger.warning("invalid scope selector %r: %s; using whole document", self.scope_selector, exc)
            return None
        if root is None:
            logger.debug("scope %r matched nothing; using whole document", self.scope_selector)
        return root

    async def _watch_fonts(self) -> None:
        try:
            if self.document.supports_fonts():
                await self.document.wait_for_fonts()
            else:
                logger.debug("font readiness unavailable; treating fonts as ready")
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.debug("font loading failed (%s); treating fonts as ready", exc)
        self.counters["font_set"].finish()
        self.fonts_ready = True
        if self._on_fonts_ready is not None:
            self._on_fonts_ready(True)
        self._maybe_settle()

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _handle_image(self, img: Element) -> None:
        if img.key in self._seen_images:
            return
        self._seen_images.add(img.key)
        self._add_asset("image", self._wait_image(img))

    async def _scan_backgrounds(self, el: Element) -> None:
        try:
            value = await el.background_image()
        except Exception as exc:  # noqa: BLE001
            logger.debug("computed style unavailable for <%s>: %s", el.tag, exc)
            return
        for url in extract_background_urls(value):
            if url in self._seen_backgrounds:
                continue
            self._seen_backgrounds.add(url)
            self._add_asset("background", self.document.preload_image(url))

    def _add_asset(self, kind: str, waiter: Awaitable[None]) -> None:
        if self._closed:
            if asyncio.iscoroutine(waiter):
                waiter.close()
            return
        self.counters[kind].add()
        self._quiet_ok = False
        self._cancel_quiet()
        self._spawn(self._run_asset(kind, waiter))
        self._report_progress()

    async def _run_asset(self, kind: str, waiter: Awaitable[None]) -> None:
        try:
            await waiter
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.debug("%s failed to load (%s); counting as done", kind, exc)
        self.counters[kind].finish()
        self._report_progress()
        self._schedule_quiet()

    async def _wait_image(self, img: Element) -> None:
        if await img.get_property("complete") is True:
            return
        if img.supports_decode():
            await img.decode()
            return
        loop = asyncio.get_running_loop()
        finished = loop.create_future()

        def done() -> None:
            if not finished.done():
                finished.set_result(None)

        off_load = img.add_event_listener("load", done)
        off_error = img.add_event_listener("error", done)
        try:
            await finished
        finally:
            off_load()
            off_error()

    def _on_mutations(self, added: List[Element]) -> None:
        if self._closed or (self.settled is not None and self.settled.done()):
            return
        self._scans += 1
        self._quiet_ok = False
        self._cancel_quiet()
        self._spawn(self._handle_added(added))

    async def _handle_added(self, added: List[Element]) -> None:
        try:
            for el in added:
                if is_image(el):
                    self._handle_image(el)
                for img in await el.query_all("img"):
                    self._handle_image(img)
                if self.include_backgrounds:
                    await self._scan_backgrounds(el)
                    for child in await el.query_all("*"):
                        await self._scan_backgrounds(child)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.debug("failed to inspect inserted nodes: %s", exc)
        finally:
            self._scans -= 1
        self._schedule_quiet()

    def _report_progress(self) -> None:
        if self._on_progress is not None and not self._closed:
            self._on_progress(self.progress())

    def _cancel_quiet(self) -> None:
        if self._quiet_handle is not None:
            self._quiet_handle.cancel()
            self._quiet_handle = None

    def _schedule_quiet(self) -> None:
        self._cancel_quiet()
        if self._closed or self.settled is None or self.settled.done():
            return
        if self.pending == 0 and self._scans == 0:
            loop = asyncio.get_running_loop()
            self._quiet_handle = loop.call_later(self.quiet_seconds, self._quiet_elapsed)

    def _quiet_elapsed(self) -> None:
        self._quiet_handle = None
        if self.pending == 0 and self._scans == 0:
            self._quiet_ok = True
            self._maybe_settle()

    def _maybe_settle(self) -> None:
        if self._closed or self.settled is None or self.settled.done():
            return
        if self.fonts_ready and self._quiet_ok:
            logger.debug("assets settled: %s", self.snapshot())
            self.settled.set_result(None)
            try:
                self._stop_observing()
            except Exception:  # noqa: BLE001
                logger.exception("failed to stop observing mutations")

    def _stop_observing(self) -> None:
        self._cancel_quiet()
        disconnect, self._disconnect = self._disconnect, None
        if disconnect is not None:
            disconnect()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._stop_observing()
        finally:
            for task in list(self._tasks):
                task.cancel()
