from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import jsonschema

from .blend import MIN_TIMER_PROGRESS_WEIGHT, ReadinessWeights
from .errors import ConfigError
from .watcher import UnmatchedPolicy

CONFIG_SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "gate_config.schema.json"
DEFAULT_GATE_ID = "PageReadyGate:ready"


class WaitMode(str, Enum):
    FONTS_AND_IMAGES = "fonts_and_images"
    WINDOW_LOAD = "window_load"


def _non_negative(value: Any) -> float:
    try:
        number = float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0
    return number if number > 0 else 0.0


@dataclass(frozen=True)
class GateConfig:
    min_seconds: float = 0.6
    timeout_seconds: float = 12.0
    quiet_seconds: float = 0.6
    once_per_session: bool = False
    wait_mode: WaitMode = WaitMode.FONTS_AND_IMAGES
    scope_selector: str = ""
    include_backgrounds: bool = True
    custom_selector: str = ""
    custom_event: str = "load"
    unmatched_policy: UnmatchedPolicy = UnmatchedPolicy.WAIT
    blend_strategy: str = "sequential"
    timer_weight: float = MIN_TIMER_PROGRESS_WEIGHT
    readiness_weights: ReadinessWeights = field(default_factory=ReadinessWeights)
    finish_delay: float = 0.0
    run_in_preview: bool = True
    gate_id: str = DEFAULT_GATE_ID

    def __post_init__(self) -> None:
        # Negative timings are treated as zero.
        for name in ("min_seconds", "timeout_seconds", "quiet_seconds", "finish_delay"):
            object.__setattr__(self, name, _non_negative(getattr(self, name)))
        object.__setattr__(self, "wait_mode", WaitMode(self.wait_mode))
        object.__setattr__(self, "unmatched_policy", UnmatchedPolicy(self.unmatched_policy))
        object.__setattr__(self, "custom_event", (self.custom_event or "load").strip() or "load")
        if isinstance(self.readiness_weights, Mapping):
            object.__setattr__(self, "readiness_weights", ReadinessWeights(**self.readiness_weights))

    @property
    def quiet_ms(self) -> float:
        return self.quiet_seconds * 1000

    @property
    def has_ceiling(self) -> bool:
        return self.timeout_seconds > 0

    def with_overrides(self, **changes: Any) -> "GateConfig":
        return replace(self, **changes)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["wait_mode"] = self.wait_mode.value
        data["unmatched_policy"] = self.unmatched_policy.value
        data["readiness_weights"] = self.readiness_weights.as_dict()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GateConfig":
        validate_config(data)
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def _load_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def validate_config(data: Mapping[str, Any], schema_path: Path = CONFIG_SCHEMA_PATH) -> None:
    if not isinstance(data, Mapping):
        raise ConfigError(f"config must be a JSON object, got {type(data).__name__}")
    schema = _load_json(schema_path)
    try:
        jsonschema.validate(dict(data), schema)
    except jsonschema.ValidationError as exc:
        where = "/".join(str(p) for p in exc.absolute_path) or "<root>"
        raise ConfigError(f"invalid config at {where}: {exc.message}") from exc


def _env_truthy(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def apply_env_overrides(config: GateConfig) -> GateConfig:
    """Apply ``PAGEGATE_*`` environment overrides on top of ``config``."""
    changes: Dict[str, Any] = {}
    for env_name, attr in (
        ("PAGEGATE_MIN_SECONDS", "min_seconds"),
        ("PAGEGATE_TIMEOUT_SECONDS", "timeout_seconds"),
        ("PAGEGATE_QUIET_SECONDS", "quiet_seconds"),
    ):
        value = _env_float(env_name)
        if value is not None:
            changes[attr] = value
    if os.getenv("PAGEGATE_ONCE_PER_SESSION") is not None:
        changes["once_per_session"] = _env_truthy("PAGEGATE_ONCE_PER_SESSION")
    mode = os.getenv("PAGEGATE_WAIT_MODE", "").strip().lower()
    if mode:
        try:
            changes["wait_mode"] = WaitMode(mode)
        except ValueError as exc:
            raise ConfigError(f"PAGEGATE_WAIT_MODE must be one of {[m.value for m in WaitMode]}") from exc
    return config.with_overrides(**changes) if changes else config


def load_config(path: Optional[Path] = None, *, use_env: bool = True) -> GateConfig:
    if path is None:
        config = GateConfig()
    else:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"config not found: {path}")
        try:
            data = _load_json(path)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"config is not valid JSON: {path}: {exc}") from exc
        config = GateConfig.from_dict(data)
    return apply_env_overrides(config) if use_env else config
