"""Playwright page as a gate host.

Every host facility maps to a Playwright async call or a small in-page
script. The page exposes no mutation notifications to Python, so
late-inserted assets are not tracked on this host.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .config import GateConfig
from .errors import MissingDependencyError
from .gate import GateResult, ReadinessGate, ReadyCallback
from .host import EventHandler, MutationCallback, Unsubscribe
from .session import SessionStore

logger = logging.getLogger(__name__)

WAIT_FOR_EVENT_JS = """(el, name) => new Promise((resolve) => {
    el.addEventListener(name, () => resolve(true), { once: true });
})"""

# Checks the ready flags and attaches the listener in one page task.
WATCH_SIGNAL_JS = """(el, name) => new Promise((resolve) => {
    const flagged = ["data-loaded", "data-ready"].some((a) => el.getAttribute(a) === "true");
    if (flagged || (name === "load" && (el.complete === true || el.readyState === "complete"))) {
        resolve("loaded");
        return;
    }
    el.addEventListener(name, () => resolve("event"), { once: true });
})"""

FONTS_READY_JS = """() => (document.fonts && document.fonts.ready)
    ? document.fonts.ready.then(() => true, () => true)
    : true"""

PRELOAD_IMAGE_JS = """(url) => new Promise((resolve) => {
    const probe = new Image();
    probe.onload = () => resolve(true);
    probe.onerror = () => resolve(false);
    probe.decoding = "async";
    probe.src = url;
})"""


class ImageProbeError(RuntimeError):
    pass


class PlaywrightElement:
    def __init__(self, handle: Any, tag: str, owner: Optional["PlaywrightDocument"] = None) -> None:
        self.handle = handle
        self.key = id(handle)
        self.tag = tag
        self._owner = owner

    @classmethod
    async def wrap(cls, handle: Any, owner: Optional["PlaywrightDocument"] = None) -> "PlaywrightElement":
        if owner is not None:
            owner.adopt(handle)
        tag = await handle.evaluate("(el) => el.tagName.toLowerCase()")
        return cls(handle, str(tag), owner)

    async def matches(self, selector: str) -> bool:
        return bool(await self.handle.evaluate("(el, s) => el.matches(s)", selector))

    async def query_all(self, selector: str) -> List["PlaywrightElement"]:
        handles = await self.handle.query_selector_all(selector)
        return [await PlaywrightElement.wrap(h, self._owner) for h in handles]

    async def get_property(self, name: str) -> Any:
        prop = await self.handle.get_property(name)
        try:
            return await prop.json_value()
        finally:
            await prop.dispose()

    async def background_image(self) -> str:
        return await self.handle.evaluate("(el) => getComputedStyle(el).backgroundImage")

    def supports_decode(self) -> bool:
        return self.tag == "img"

    async def decode(self) -> None:
        await self.handle.evaluate("(el) => el.decode()")

    def add_event_listener(self, name: str, handler: EventHandler) -> Unsubscribe:
        return self._listen(WAIT_FOR_EVENT_JS, name, handler)

    def watch_signal(self, event_name: str, handler: EventHandler) -> Unsubscribe:
        return self._listen(WATCH_SIGNAL_JS, event_name, handler)

    def _listen(self, script: str, name: str, handler: EventHandler) -> Unsubscribe:
        task = asyncio.ensure_future(self.handle.evaluate(script, name))

        def _done(t: asyncio.Future) -> None:
            if t.cancelled():
                return
            if t.exception() is not None:
                logger.debug("listener for %r on <%s> failed: %s", name, self.tag, t.exception())
                return
            handler()

        task.add_done_callback(_done)
        return task.cancel


class PlaywrightDocument:
    """Wraps a page; every element handle it hands out is released by ``dispose()``."""

    def __init__(self, page: Any) -> None:
        self.page = page
        self._handles: Dict[int, Any] = {}

    @property
    def handle_count(self) -> int:
        return len(self._handles)

    def adopt(self, handle: Any) -> None:
        self._handles[id(handle)] = handle

    async def dispose(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            try:
                await handle.dispose()
            except Exception as exc:  # noqa: BLE001
                logger.debug("failed to dispose element handle: %s", exc)

    async def ready_state(self) -> str:
        return await self.page.evaluate("() => document.readyState")

    async def wait_for_load(self) -> None:
        # timeout=0 disables Playwright's own deadline; the gate owns the ceiling.
        await self.page.wait_for_load_state("load", timeout=0)

    def supports_fonts(self) -> bool:
        return True

    async def wait_for_fonts(self) -> None:
        await self.page.evaluate(FONTS_READY_JS)

    async def query(self, selector: str) -> Optional[PlaywrightElement]:
        handle = await self.page.query_selector(selector)
        return await PlaywrightElement.wrap(handle, self) if handle is not None else None

    async def query_all(self, selector: str) -> List[PlaywrightElement]:
        handles = await self.page.query_selector_all(selector)
        return [await PlaywrightElement.wrap(h, self) for h in handles]

    def observe_mutations(self, root: Optional[Any], callback: MutationCallback) -> Optional[Unsubscribe]:
        return None

    async def preload_image(self, url: str) -> None:
        if not await self.page.evaluate(PRELOAD_IMAGE_JS, url):
            raise ImageProbeError(f"failed to load {url!r}")


async def run_gate_on_page(
    page: Any,
    config: Optional[GateConfig] = None,
    *,
    on_ready: Optional[ReadyCallback] = None,
    session_store: Optional[SessionStore] = None,
) -> GateResult:
    """Run one readiness gate against an already-navigating Playwright page."""
    document = PlaywrightDocument(page)
    gate = ReadinessGate(
        document,
        config,
        on_ready=on_ready,
        session_store=session_store,
        event_target=getattr(page, "url", None),
    )
    try:
        return await gate.run()
    finally:
        await document.dispose()


async def probe_url(
    url: str,
    config: Optional[GateConfig] = None,
    *,
    headless: bool = True,
    session_store: Optional[SessionStore] = None,
) -> GateResult:
    """Launch Chromium, open ``url`` and gate on it."""
    try:
        from playwright.async_api import async_playwright
    except Exception as exc:  # pragma: no cover - import guard
        raise MissingDependencyError(
            "playwright is not installed. Run: pip install 'pagegate[browser]' && playwright install chromium"
        ) from exc

    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=headless)
        try:
            page = await browser.new_page()
            await page.goto(url, wait_until="commit")
            return await run_gate_on_page(page, config, session_store=session_store)
        finally:
            await browser.close()
