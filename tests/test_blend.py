from __future__ import annotations

import pytest

from pagegate.blend import (
    MAX_PROGRESS_BEFORE_FINAL,
    ProgressBlender,
    ReadinessSnapshot,
    ReadinessWeights,
    combine,
)


def test_sequential_fills_timer_share_before_floor() -> None:
    assert combine(0.5, 1.0, timer_done=False, timer_weight=0.8) == pytest.approx(0.4)
    assert combine(1.0, 0.0, timer_done=True, timer_weight=0.8) == pytest.approx(0.8)
    assert combine(1.0, 0.5, timer_done=True, timer_weight=0.8) == pytest.approx(0.9)


def test_combined_is_capped_before_final() -> None:
    assert combine(1.0, 1.0, timer_done=True) == MAX_PROGRESS_BEFORE_FINAL
    assert combine(1.0, 1.0, timer_done=True, strategy="weighted") == MAX_PROGRESS_BEFORE_FINAL


def test_weighted_blends_from_the_start() -> None:
    value = combine(0.5, 0.5, timer_done=False, timer_weight=0.8, strategy="weighted")
    assert value == pytest.approx(0.5)


def test_unknown_strategy_rejected() -> None:
    with pytest.raises(ValueError):
        combine(0.1, 0.1, timer_done=False, strategy="linear")
    with pytest.raises(ValueError):
        ProgressBlender(strategy="linear")


def test_readiness_fraction_uses_weights() -> None:
    weights = ReadinessWeights()
    assert ReadinessSnapshot().fraction(weights) == 0.0
    assert ReadinessSnapshot(assets=0.5, fonts=True).fraction(weights) == pytest.approx(0.5)
    assert ReadinessSnapshot(assets=1.0, fonts=True, load=True).fraction(weights) == pytest.approx(1.0)
    assert ReadinessSnapshot(assets=1.0, fonts=True, load=True).fraction(ReadinessWeights(0, 0, 0)) == 1.0


def test_blender_is_monotonic_and_completes_to_one() -> None:
    seen = []
    blender = ProgressBlender()
    blender.subscribe(seen.append)
    blender.reset(uses_floor=True)

    blender.update_timer(0.5)
    blender.update_readiness(assets=1.0, fonts=True, load=True)
    blender.update_timer(0.25)
    blender.update_timer(1.0)
    blender.update_readiness(assets=0.2)
    assert blender.value == MAX_PROGRESS_BEFORE_FINAL

    blender.complete()
    assert seen[-1] == 1.0
    assert all(b >= a for a, b in zip(seen[1:], seen[2:]))
    assert max(seen[:-1]) <= MAX_PROGRESS_BEFORE_FINAL


def test_blender_without_floor_ignores_timer_share() -> None:
    blender = ProgressBlender()
    blender.reset(uses_floor=False)
    assert blender.timer_weight == 0.0
    blender.update_readiness(assets=1.0, fonts=True, load=False)
    assert blender.value == pytest.approx(0.8)


def test_blender_reset_starts_over_and_survives_bad_subscriber() -> None:
    blender = ProgressBlender()

    def broken(value: float) -> None:
        if value > 0:
            raise RuntimeError("boom")

    blender.subscribe(broken)
    blender.reset(uses_floor=True)
    blender.update_timer(1.0)
    assert blender.value == pytest.approx(0.8)
    blender.complete()
    blender.reset(uses_floor=True)
    assert blender.value == 0.0
    assert blender.completed is False
