"""Synthetic interaction event handed to ``on_ready`` callbacks."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class GateEvent:
    """Shaped like a DOM/React synthetic event so downstream interaction
    handlers can treat gate completion as a native ``Load`` trigger."""

    target: Any = None
    type: str = "Load"
    bubbles: bool = True
    cancelable: bool = True
    time_stamp: float = field(default_factory=time.monotonic)
    detail: Dict[str, Any] = field(default_factory=dict)
    native_event: Optional[Any] = None
    _default_prevented: bool = field(default=False, repr=False)
    _propagation_stopped: bool = field(default=False, repr=False)

    @property
    def current_target(self) -> Any:
        return self.target

    @property
    def default_prevented(self) -> bool:
        return self._default_prevented

    @property
    def timed_out(self) -> bool:
        return bool(self.detail.get("timed_out"))

    def prevent_default(self) -> None:
        if self.cancelable:
            self._default_prevented = True

    def is_default_prevented(self) -> bool:
        return self._default_prevented

    def stop_propagation(self) -> None:
        self._propagation_stopped = True

    def is_propagation_stopped(self) -> bool:
        return self._propagation_stopped

    def persist(self) -> None:
        pass
