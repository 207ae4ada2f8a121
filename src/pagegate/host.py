"""Host facilities consumed by the readiness gate.

The gate never talks to a browser directly. Everything it needs from the
page (queries, element events, image decode, font readiness, page load,
mutation notification) goes through these protocols. Two implementations
ship with the package: ``pagegate.virtual`` (simulated page timeline) and
``pagegate.page_ready`` (Playwright page).
"""
from __future__ import annotations

from typing import Any, Callable, Hashable, List, Mapping, Optional, Protocol

EventHandler = Callable[[], None]
Unsubscribe = Callable[[], None]
MutationCallback = Callable[[List["Element"]], None]

DEFAULT_EVENT = "load"
READY_ATTRIBUTES = ("data-loaded", "data-ready")


class Element(Protocol):
    key: Hashable
    tag: str

    async def matches(self, selector: str) -> bool: ...

    async def query_all(self, selector: str) -> List["Element"]: ...

    async def get_property(self, name: str) -> Any: ...

    async def background_image(self) -> str:
        """Computed ``background-image`` value, ``"none"`` when unset."""
        ...

    def supports_decode(self) -> bool: ...

    async def decode(self) -> None:
        """Resolve once the image is decoded; raise if it cannot be."""
        ...

    def add_event_listener(self, name: str, handler: EventHandler) -> Unsubscribe:
        """Attach a one-time listener and return its remover."""
        ...

    def watch_signal(self, event_name: str, handler: EventHandler) -> Unsubscribe:
        """Call ``handler`` once the element is already loaded or emits ``event_name``.

        The loaded check and the listener attach happen as one step on the
        host, so an event fired in between cannot be missed. ``handler`` may
        run before this returns.
        """
        ...


class Document(Protocol):
    async def ready_state(self) -> str: ...

    async def wait_for_load(self) -> None: ...

    def supports_fonts(self) -> bool: ...

    async def wait_for_fonts(self) -> None: ...

    async def query(self, selector: str) -> Optional[Element]: ...

    async def query_all(self, selector: str) -> List[Element]: ...

    def observe_mutations(
        self, root: Optional[Element], callback: MutationCallback
    ) -> Optional[Unsubscribe]:
        """Report element nodes added anywhere under ``root``.

        Returns a disconnect callable, or ``None`` when the host has no
        mutation notification facility.
        """
        ...

    async def preload_image(self, url: str) -> None:
        """Offscreen image probe; raises when the image fails to load."""
        ...


def is_image(element: Element) -> bool:
    return element.tag.lower() == "img"


def is_already_loaded(
    attributes: Mapping[str, Optional[str]],
    properties: Mapping[str, Any],
    event_name: str,
) -> bool:
    """``data-loaded``/``data-ready`` flags; for ``load`` also ``complete``/``readyState``."""
    if any(attributes.get(attr) == "true" for attr in READY_ATTRIBUTES):
        return True
    if event_name != DEFAULT_EVENT:
        return False
    return properties.get("complete") is True or properties.get("readyState") == "complete"
