"""Simulated page host built on BeautifulSoup.

``VirtualDocument`` parses an HTML snapshot and plays out a page timeline on
the running event loop: image and background fetches with per-URL latency
and failure, window load, font loading, late node insertions and element
events. It implements the ``pagegate.host`` protocols so a gate can be run
against a page description without a browser.

Computed style is approximated by the inline ``style`` attribute.
"""
from __future__ import annotations

import asyncio
import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import soupsieve
from bs4 import BeautifulSoup, Tag

from .host import READY_ATTRIBUTES, EventHandler, MutationCallback, Unsubscribe, is_already_loaded

logger = logging.getLogger(__name__)

BACKGROUND_DECL_RE = re.compile(r"(?:^|;)\s*background(?:-image)?\s*:\s*([^;]+)", re.IGNORECASE)


class ImageLoadError(RuntimeError):
    pass


class FontLoadError(RuntimeError):
    pass


@dataclass(frozen=True)
class Resource:
    delay: float = 0.0
    fails: bool = False

    @classmethod
    def from_value(cls, value: Any) -> "Resource":
        if isinstance(value, Resource):
            return value
        if isinstance(value, (int, float)):
            return cls(delay=float(value))
        if isinstance(value, Mapping):
            return cls(delay=float(value.get("delay", 0.0)), fails=bool(value.get("fails", False)))
        raise TypeError(f"cannot build Resource from {value!r}")


def inline_background(style: Optional[str]) -> str:
    if not style:
        return "none"
    for match in BACKGROUND_DECL_RE.finditer(style):
        value = match.group(1).strip()
        if "url(" in value:
            return value
    return "none"


class VirtualElement:
    def __init__(self, document: "VirtualDocument", tag: Tag) -> None:
        self._document = document
        self._tag = tag
        self.key = id(tag)
        self.tag = tag.name
        self.properties: Dict[str, Any] = {}
        self._listeners: Dict[str, List[EventHandler]] = defaultdict(list)
        self._load_future: Optional[asyncio.Future] = None

    def __repr__(self) -> str:
        return f"<VirtualElement {self.tag} {dict(self._tag.attrs)!r}>"

    @property
    def node(self) -> Tag:
        return self._tag

    async def matches(self, selector: str) -> bool:
        return soupsieve.match(selector, self._tag)

    async def query_all(self, selector: str) -> List["VirtualElement"]:
        return [self._document.wrap(t) for t in self._tag.select(selector)]

    async def get_property(self, name: str) -> Any:
        return self.properties.get(name)

    def _attribute(self, name: str) -> Optional[str]:
        value = self._tag.get(name)
        if isinstance(value, list):
            return " ".join(value)
        return value

    async def background_image(self) -> str:
        return inline_background(self._tag.get("style"))

    def supports_decode(self) -> bool:
        return self._document.decode_supported and self.tag == "img"

    async def decode(self) -> None:
        if self._load_future is None:
            return
        await asyncio.shield(self._load_future)

    def add_event_listener(self, name: str, handler: EventHandler) -> Unsubscribe:
        self._listeners[name].append(handler)

        def remove() -> None:
            handlers = self._listeners.get(name, [])
            if handler in handlers:
                handlers.remove(handler)

        return remove

    def watch_signal(self, event_name: str, handler: EventHandler) -> Unsubscribe:
        attributes = {name: self._attribute(name) for name in READY_ATTRIBUTES}
        if is_already_loaded(attributes, self.properties, event_name):
            handler()
            return lambda: None
        return self.add_event_listener(event_name, handler)

    def listener_count(self) -> int:
        return sum(len(handlers) for handlers in self._listeners.values())

    def dispatch(self, name: str) -> None:
        # Listeners are one-time, like ``{once: true}``.
        handlers = self._listeners.pop(name, [])
        for handler in handlers:
            handler()

    def _begin_load(self, resource: Resource) -> None:
        loop = asyncio.get_running_loop()
        self._load_future = loop.create_future()
        # Failed loads are awaited through decode(); keep the error retrieved.
        self._load_future.add_done_callback(lambda f: f.cancelled() or f.exception())
        if resource.delay <= 0 and not resource.fails:
            self.properties["complete"] = True
            self._load_future.set_result(None)
            return
        self.properties["complete"] = False
        loop.call_later(max(0.0, resource.delay), self._finish_load, resource.fails)

    def _finish_load(self, failed: bool) -> None:
        self.properties["complete"] = True
        fut = self._load_future
        if fut is not None and not fut.done():
            if failed:
                fut.set_exception(ImageLoadError(f"failed to load {self._tag.get('src')!r}"))
            else:
                fut.set_result(None)
        self.dispatch("error" if failed else "load")


class VirtualDocument:
    def __init__(
        self,
        html: str,
        *,
        resources: Optional[Mapping[str, Any]] = None,
        load_delay: float = 0.0,
        fonts_delay: float = 0.0,
        fonts_fail: bool = False,
        mutations_supported: bool = True,
        decode_supported: bool = True,
        fonts_supported: bool = True,
    ) -> None:
        self.soup = BeautifulSoup(html, "html.parser")
        self.resources: Dict[str, Resource] = {
            url: Resource.from_value(value) for url, value in (resources or {}).items()
        }
        self.load_delay = max(0.0, load_delay)
        self.fonts_delay = max(0.0, fonts_delay)
        self.fonts_fail = fonts_fail
        self.mutations_supported = mutations_supported
        self.decode_supported = decode_supported
        self.fonts_supported = fonts_supported
        self.preloaded: List[str] = []
        self._elements: Dict[int, VirtualElement] = {}
        self._observers: List[Tuple[Optional[Tag], MutationCallback]] = []
        self._ready_state = "loading"
        self._load_future: Optional[asyncio.Future] = None
        self._fonts_future: Optional[asyncio.Future] = None
        self._handles: List[asyncio.TimerHandle] = []
        self._opened = False

    def open(self) -> None:
        """Start the page timeline on the running loop; idempotent."""
        if self._opened:
            return
        self._opened = True
        loop = asyncio.get_running_loop()
        self._load_future = loop.create_future()
        self._fonts_future = loop.create_future()
        self._fonts_future.add_done_callback(lambda f: f.cancelled() or f.exception())
        for img in self.soup.find_all("img"):
            self._start_image(img)
        if self.load_delay <= 0:
            self._complete_load()
        else:
            self._later(self.load_delay, self._complete_load)
        if self.fonts_delay <= 0:
            self._complete_fonts()
        else:
            self._later(self.fonts_delay, self._complete_fonts)

    def close(self) -> None:
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()

    def _later(self, delay: float, callback: Callable[..., None], *args: Any) -> None:
        loop = asyncio.get_running_loop()
        self._handles.append(loop.call_later(delay, callback, *args))

    def _complete_load(self) -> None:
        self._ready_state = "complete"
        if self._load_future is not None and not self._load_future.done():
            self._load_future.set_result(None)

    def _complete_fonts(self) -> None:
        fut = self._fonts_future
        if fut is None or fut.done():
            return
        if self.fonts_fail:
            fut.set_exception(FontLoadError("font set failed to load"))
        else:
            fut.set_result(None)

    def resource(self, url: Optional[str]) -> Resource:
        return self.resources.get(url or "", Resource())

    def wrap(self, tag: Tag) -> VirtualElement:
        el = self._elements.get(id(tag))
        if el is None:
            el = VirtualElement(self, tag)
            self._elements[id(tag)] = el
        return el

    def _start_image(self, tag: Tag) -> None:
        self.wrap(tag)._begin_load(self.resource(tag.get("src")))

    # host protocol

    async def ready_state(self) -> str:
        self.open()
        return self._ready_state

    async def wait_for_load(self) -> None:
        self.open()
        assert self._load_future is not None
        await asyncio.shield(self._load_future)

    def supports_fonts(self) -> bool:
        return self.fonts_supported

    async def wait_for_fonts(self) -> None:
        self.open()
        assert self._fonts_future is not None
        await asyncio.shield(self._fonts_future)

    async def query(self, selector: str) -> Optional[VirtualElement]:
        self.open()
        tag = self.soup.select_one(selector)
        return self.wrap(tag) if tag is not None else None

    async def query_all(self, selector: str) -> List[VirtualElement]:
        self.open()
        return [self.wrap(t) for t in self.soup.select(selector)]

    def observe_mutations(self, root: Optional[Any], callback: MutationCallback) -> Optional[Unsubscribe]:
        if not self.mutations_supported:
            return None
        entry = (root.node if root is not None else None, callback)
        self._observers.append(entry)

        def disconnect() -> None:
            if entry in self._observers:
                self._observers.remove(entry)

        return disconnect

    async def preload_image(self, url: str) -> None:
        self.preloaded.append(url)
        resource = self.resource(url)
        if resource.delay > 0:
            await asyncio.sleep(resource.delay)
        if resource.fails:
            raise ImageLoadError(f"failed to load {url!r}")

    # page timeline

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def listener_count(self) -> int:
        return sum(el.listener_count() for el in self._elements.values())

    def insert_html(self, html: str, parent_selector: str = "body") -> List[VirtualElement]:
        """Append ``html`` under the first ``parent_selector`` match and notify observers."""
        self.open()
        parent = self.soup.select_one(parent_selector) if parent_selector else None
        if parent is None:
            parent = self.soup
        fragment = BeautifulSoup(html, "html.parser")
        added: List[Tag] = [node for node in list(fragment.contents) if isinstance(node, Tag)]
        for node in added:
            parent.append(node.extract())
            if node.name == "img":
                self._start_image(node)
            for img in node.find_all("img"):
                self._start_image(img)
        elements = [self.wrap(node) for node in added]
        loop = asyncio.get_running_loop()
        for root, callback in list(self._observers):
            visible = [el for el, node in zip(elements, added) if root is None or any(p is root for p in node.parents)]
            if visible:
                loop.call_soon(callback, visible)
        logger.debug("inserted %d node(s) under %s", len(added), parent_selector or "<document>")
        return elements

    def dispatch_event(
        self,
        selector: str,
        event_name: str,
        attributes: Optional[Mapping[str, str]] = None,
    ) -> int:
        self.open()
        tags = self.soup.select(selector)
        for tag in tags:
            for key, value in (attributes or {}).items():
                tag[key] = value
            self.wrap(tag).dispatch(event_name)
        return len(tags)

    def schedule_insert(self, delay: float, html: str, parent_selector: str = "body") -> None:
        self.open()
        self._later(delay, self.insert_html, html, parent_selector)

    def schedule_event(
        self,
        delay: float,
        selector: str,
        event_name: str,
        attributes: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.open()
        self._later(delay, self.dispatch_event, selector, event_name, attributes)

    def apply_timeline(self, timeline: List[Mapping[str, Any]]) -> None:
        """Schedule ``[{"at": 1.0, "insert": {...}} | {"at": 2.0, "dispatch": {...}}]``."""
        for step in timeline:
            at = float(step.get("at", 0.0))
            if "insert" in step:
                action = step["insert"]
                self.schedule_insert(at, action["html"], action.get("parent", "body"))
            elif "dispatch" in step:
                action = step["dispatch"]
                self.schedule_event(at, action["selector"], action.get("event", "load"), action.get("attributes"))
            else:
                raise ValueError(f"unknown timeline step: {dict(step)!r}")
