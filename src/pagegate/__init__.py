"""Readiness gate: hold a reveal until the page is ready, within a floor and a ceiling."""

from .config import GateConfig, WaitMode, load_config
from .gate import GateOutcome, GateResult, ReadinessGate, RenderTarget, RunState
from .session import FileSessionStore, MemorySessionStore
from .watcher import UnmatchedPolicy

__all__ = [
    "GateConfig",
    "GateOutcome",
    "GateResult",
    "FileSessionStore",
    "MemorySessionStore",
    "ReadinessGate",
    "RenderTarget",
    "RunState",
    "UnmatchedPolicy",
    "WaitMode",
    "load_config",
]
