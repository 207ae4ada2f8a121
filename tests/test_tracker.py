from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List

from pagegate.tracker import AssetTracker, extract_background_urls
from pagegate.virtual import VirtualDocument


async def _settle(tracker: AssetTracker, limit: float = 2.0) -> float:
    started = time.monotonic()
    settled = await tracker.start()
    await asyncio.wait_for(settled, limit)
    return time.monotonic() - started


def test_extract_background_urls() -> None:
    assert extract_background_urls("none") == []
    assert extract_background_urls(None) == []
    assert extract_background_urls('url("a.png"), url(b.png)') == ["a.png", "b.png"]
    assert extract_background_urls("url('c.png') no-repeat") == ["c.png"]


def test_broken_image_counts_as_done() -> None:
    async def scenario() -> Dict[str, Any]:
        doc = VirtualDocument(
            '<body><img src="a.png"><img src="b.png"></body>',
            resources={"a.png": 0.02, "b.png": {"delay": 0.03, "fails": True}},
        )
        tracker = AssetTracker(doc, quiet_seconds=0.02, include_backgrounds=False)
        await _settle(tracker)
        tracker.close()
        return tracker.snapshot()

    snapshot = asyncio.run(scenario())
    assert snapshot["image"] == {"total": 2, "done": 2, "pending": 0}
    assert snapshot["font_set"] == {"total": 1, "done": 1, "pending": 0}


def test_quiet_window_debounces_settlement() -> None:
    async def scenario() -> float:
        doc = VirtualDocument('<img src="a.png">', resources={"a.png": 0.05})
        tracker = AssetTracker(doc, quiet_seconds=0.1)
        elapsed = await _settle(tracker)
        tracker.close()
        return elapsed

    assert asyncio.run(scenario()) >= 0.14


def test_late_inserted_image_extends_the_wait() -> None:
    progress: List[float] = []

    async def scenario() -> tuple:
        doc = VirtualDocument(
            '<body><img src="a.png"></body>',
            resources={"a.png": 0.02, "late.png": 0.05},
        )
        doc.schedule_insert(0.05, '<figure><img src="late.png"></figure>')
        tracker = AssetTracker(doc, quiet_seconds=0.1, on_progress=progress.append)
        elapsed = await _settle(tracker)
        tracker.close()
        return elapsed, tracker.snapshot(), doc.observer_count

    elapsed, snapshot, observers = asyncio.run(scenario())
    assert snapshot["image"]["total"] == 2
    assert snapshot["image"]["pending"] == 0
    assert elapsed >= 0.19
    assert observers == 0
    assert progress[-1] == 1.0
    assert 0.5 in progress


def test_backgrounds_are_deduplicated_by_url() -> None:
    html = """
    <body>
      <div style="background-image: url('bg.png')"></div>
      <section style="color: red; background: url(bg.png) no-repeat"></section>
      <aside style="background-image: url(&quot;broken.png&quot;)"></aside>
      <p style="background: none"></p>
    </body>
    """

    async def scenario() -> tuple:
        doc = VirtualDocument(html, resources={"bg.png": 0.02, "broken.png": {"fails": True}})
        tracker = AssetTracker(doc, quiet_seconds=0.02)
        await _settle(tracker)
        tracker.close()
        return tracker.snapshot(), sorted(doc.preloaded)

    snapshot, preloaded = asyncio.run(scenario())
    assert snapshot["background"] == {"total": 2, "done": 2, "pending": 0}
    assert preloaded == ["bg.png", "broken.png"]


def test_backgrounds_skipped_when_disabled() -> None:
    async def scenario() -> List[str]:
        doc = VirtualDocument('<div style="background-image: url(bg.png)"></div>')
        tracker = AssetTracker(doc, quiet_seconds=0.01, include_backgrounds=False)
        await _settle(tracker)
        tracker.close()
        return doc.preloaded

    assert asyncio.run(scenario()) == []


def test_scope_selector_limits_tracking() -> None:
    html = '<body><main id="hero"><img src="in.png"></main><img src="out.png"></body>'

    async def scenario() -> Dict[str, Any]:
        doc = VirtualDocument(html, resources={"in.png": 0.01, "out.png": 5.0})
        tracker = AssetTracker(doc, scope_selector="#hero", quiet_seconds=0.02)
        await _settle(tracker, limit=1.0)
        tracker.close()
        doc.close()
        return tracker.snapshot()

    assert asyncio.run(scenario())["image"]["total"] == 1


def test_without_mutation_support_late_nodes_are_ignored() -> None:
    async def scenario() -> Dict[str, Any]:
        doc = VirtualDocument(
            '<img src="a.png">',
            resources={"late.png": 5.0},
            mutations_supported=False,
        )
        doc.schedule_insert(0.01, '<img src="late.png">')
        tracker = AssetTracker(doc, quiet_seconds=0.05)
        await _settle(tracker, limit=1.0)
        tracker.close()
        doc.close()
        return tracker.snapshot()

    assert asyncio.run(scenario())["image"]["total"] == 1


def test_event_listeners_used_without_decode_and_released() -> None:
    async def scenario() -> tuple:
        doc = VirtualDocument(
            '<img src="a.png"><img src="b.png">',
            resources={"a.png": 0.02, "b.png": {"delay": 0.03, "fails": True}},
            decode_supported=False,
        )
        tracker = AssetTracker(doc, quiet_seconds=0.02)
        await tracker.start()
        await asyncio.sleep(0)
        attached = doc.listener_count()
        await asyncio.wait_for(tracker.settled, 1.0)
        tracker.close()
        return attached, doc.listener_count()

    attached, remaining = asyncio.run(scenario())
    assert attached == 4
    assert remaining == 0


def test_font_failure_counts_as_ready() -> None:
    fonts: List[bool] = []

    async def scenario() -> bool:
        doc = VirtualDocument("<p>text</p>", fonts_delay=0.02, fonts_fail=True)
        tracker = AssetTracker(doc, quiet_seconds=0.01, on_fonts_ready=fonts.append)
        await _settle(tracker)
        tracker.close()
        return tracker.fonts_ready

    assert asyncio.run(scenario()) is True
    assert fonts == [True]


def test_settlement_waits_for_fonts() -> None:
    async def scenario() -> float:
        doc = VirtualDocument("<p>text</p>", fonts_delay=0.1)
        tracker = AssetTracker(doc, quiet_seconds=0.01)
        elapsed = await _settle(tracker)
        tracker.close()
        return elapsed

    assert asyncio.run(scenario()) >= 0.09


def test_close_detaches_without_settling() -> None:
    async def scenario() -> tuple:
        doc = VirtualDocument('<img src="a.png">', resources={"a.png": 5.0}, decode_supported=False)
        tracker = AssetTracker(doc, quiet_seconds=0.01)
        settled = await tracker.start()
        await asyncio.sleep(0.01)
        tracker.close()
        await asyncio.sleep(0.01)
        doc.close()
        return settled.done(), doc.observer_count, doc.listener_count()

    assert asyncio.run(scenario()) == (False, 0, 0)
