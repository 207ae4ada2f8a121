from __future__ import annotations


class PageGateError(RuntimeError):
    pass


class ConfigError(PageGateError):
    pass


class GateStateError(PageGateError):
    pass


class MissingDependencyError(PageGateError):
    pass
