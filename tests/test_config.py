from __future__ import annotations

import json
from pathlib import Path

import pytest

from pagegate.blend import ReadinessWeights
from pagegate.config import GateConfig, WaitMode, apply_env_overrides, load_config, validate_config
from pagegate.errors import ConfigError
from pagegate.watcher import UnmatchedPolicy

ENV_KEYS = (
    "PAGEGATE_MIN_SECONDS",
    "PAGEGATE_TIMEOUT_SECONDS",
    "PAGEGATE_QUIET_SECONDS",
    "PAGEGATE_ONCE_PER_SESSION",
    "PAGEGATE_WAIT_MODE",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_match_component() -> None:
    config = GateConfig()
    assert config.min_seconds == 0.6
    assert config.timeout_seconds == 12.0
    assert config.quiet_ms == pytest.approx(600)
    assert config.wait_mode is WaitMode.FONTS_AND_IMAGES
    assert config.unmatched_policy is UnmatchedPolicy.WAIT
    assert config.custom_event == "load"
    assert config.include_backgrounds is True
    assert config.has_ceiling


def test_negative_values_clamp_to_zero() -> None:
    config = GateConfig(min_seconds=-1, timeout_seconds=-3, quiet_seconds=-0.5, finish_delay=-2)
    assert (config.min_seconds, config.timeout_seconds, config.quiet_seconds, config.finish_delay) == (0, 0, 0, 0)
    assert not config.has_ceiling


def test_from_dict_coerces_nested_values() -> None:
    config = GateConfig.from_dict(
        {
            "wait_mode": "window_load",
            "unmatched_policy": "resolve",
            "readiness_weights": {"assets": 0.5, "fonts": 0.25, "load": 0.25},
            "custom_event": "  ",
        }
    )
    assert config.wait_mode is WaitMode.WINDOW_LOAD
    assert config.unmatched_policy is UnmatchedPolicy.RESOLVE
    assert config.readiness_weights == ReadinessWeights(0.5, 0.25, 0.25)
    assert config.custom_event == "load"
    json.dumps(config.as_dict())


def test_schema_rejects_unknown_and_invalid_keys() -> None:
    with pytest.raises(ConfigError, match="<root>"):
        validate_config({"min_secs": 1})
    with pytest.raises(ConfigError, match="wait_mode"):
        validate_config({"wait_mode": "eventually"})
    with pytest.raises(ConfigError, match="timeout_seconds"):
        validate_config({"timeout_seconds": -1})
    with pytest.raises(ConfigError):
        validate_config(["not", "an", "object"])


def test_load_config_from_file(tmp_path: Path) -> None:
    path = tmp_path / "gate.json"
    path.write_text(json.dumps({"min_seconds": 1.5, "once_per_session": True, "gate_id": "hero"}))
    config = load_config(path)
    assert config.min_seconds == 1.5
    assert config.once_per_session is True
    assert config.gate_id == "hero"


def test_load_config_reports_missing_and_malformed_files(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "missing.json")
    broken = tmp_path / "broken.json"
    broken.write_text("{")
    with pytest.raises(ConfigError, match="not valid JSON"):
        load_config(broken)


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PAGEGATE_MIN_SECONDS", "0")
    monkeypatch.setenv("PAGEGATE_TIMEOUT_SECONDS", "3.5")
    monkeypatch.setenv("PAGEGATE_ONCE_PER_SESSION", "yes")
    monkeypatch.setenv("PAGEGATE_WAIT_MODE", "WINDOW_LOAD")
    config = load_config()
    assert config.min_seconds == 0.0
    assert config.timeout_seconds == 3.5
    assert config.once_per_session is True
    assert config.wait_mode is WaitMode.WINDOW_LOAD
    assert load_config(use_env=False) == GateConfig()


def test_env_overrides_reject_garbage(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PAGEGATE_QUIET_SECONDS", "soon")
    with pytest.raises(ConfigError, match="PAGEGATE_QUIET_SECONDS"):
        apply_env_overrides(GateConfig())
    monkeypatch.delenv("PAGEGATE_QUIET_SECONDS")
    monkeypatch.setenv("PAGEGATE_WAIT_MODE", "later")
    with pytest.raises(ConfigError, match="PAGEGATE_WAIT_MODE"):
        apply_env_overrides(GateConfig())
