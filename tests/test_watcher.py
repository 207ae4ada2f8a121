from __future__ import annotations

import asyncio

from pagegate.host import is_already_loaded
from pagegate.virtual import VirtualDocument
from pagegate.watcher import CustomSignalWatcher, UnmatchedPolicy


def test_create_without_selector_returns_none() -> None:
    doc = VirtualDocument("<div></div>")
    assert CustomSignalWatcher.create(doc, "") is None
    assert CustomSignalWatcher.create(doc, "   ") is None
    watcher = CustomSignalWatcher.create(doc, ".widget", "")
    assert watcher is not None
    assert watcher.event_name == "load"


def test_seeded_elements_resolve_on_event() -> None:
    async def scenario() -> tuple:
        doc = VirtualDocument('<div class="widget"></div><div class="widget"></div>')
        doc.schedule_event(0.02, ".widget", "ready")
        watcher = CustomSignalWatcher(doc, ".widget", "ready")
        settled = await watcher.start()
        pending_before = watcher.counters.pending
        await asyncio.wait_for(settled, 1.0)
        return pending_before, watcher.counters.as_dict(), watcher.listener_count, doc.listener_count()

    pending_before, counters, listeners, doc_listeners = asyncio.run(scenario())
    assert pending_before == 2
    assert counters == {"total": 2, "done": 2, "pending": 0}
    assert listeners == 0
    assert doc_listeners == 0


def test_already_loaded_elements_settle_immediately() -> None:
    async def scenario() -> tuple:
        doc = VirtualDocument(
            '<div class="widget" data-ready="true"></div><img class="widget" src="a.png">'
        )
        watcher = CustomSignalWatcher(doc, ".widget")
        settled = await watcher.start()
        return settled.done(), watcher.counters.as_dict()

    done, counters = asyncio.run(scenario())
    assert done is True
    assert counters["done"] == 2


def test_complete_flag_only_counts_for_load_event() -> None:
    assert is_already_loaded({}, {"complete": True}, "load") is True
    assert is_already_loaded({}, {"complete": True}, "ready") is False
    assert is_already_loaded({}, {"readyState": "complete"}, "load") is True
    assert is_already_loaded({"data-loaded": "true"}, {}, "ready") is True
    assert is_already_loaded({"data-ready": "false"}, {}, "ready") is False


def test_flagged_element_calls_back_during_watch() -> None:
    async def scenario() -> tuple:
        doc = VirtualDocument('<img src="a.png"><div data-loaded="true"></div>')
        img = await doc.query("img")
        div = await doc.query("div")
        calls = []
        img.watch_signal("load", lambda: calls.append("img-load"))
        img.watch_signal("ready", lambda: calls.append("img-ready"))
        div.watch_signal("ready", lambda: calls.append("div-ready"))
        return calls, img.listener_count()

    calls, img_listeners = asyncio.run(scenario())
    assert calls == ["img-load", "div-ready"]
    assert img_listeners == 1


def test_watcher_settles_when_disconnect_raises() -> None:
    class BrokenObserverDocument(VirtualDocument):
        def observe_mutations(self, root, callback):
            super().observe_mutations(root, callback)

            def disconnect() -> None:
                raise RuntimeError("observer already gone")

            return disconnect

    async def scenario() -> tuple:
        doc = BrokenObserverDocument('<div class="widget"></div>')
        doc.schedule_event(0.02, ".widget", "ready")
        watcher = CustomSignalWatcher(doc, ".widget", "ready")
        settled = await watcher.start()
        await asyncio.wait_for(settled, 1.0)
        return watcher.listener_count, doc.listener_count()

    assert asyncio.run(scenario()) == (0, 0)


def test_late_inserted_match_is_watched() -> None:
    async def scenario() -> tuple:
        doc = VirtualDocument("<body></body>")
        doc.schedule_insert(0.02, '<section><div class="widget"></div></section>')
        doc.schedule_event(0.06, ".widget", "ready")
        watcher = CustomSignalWatcher(doc, ".widget", "ready")
        settled = await watcher.start()
        await asyncio.sleep(0.04)
        seen_before_event = watcher.seen_match and not settled.done()
        await asyncio.wait_for(settled, 1.0)
        return seen_before_event, watcher.counters.total, doc.observer_count

    assert asyncio.run(scenario()) == (True, 1, 0)


def test_unmatched_wait_policy_never_resolves_alone() -> None:
    async def scenario() -> bool:
        doc = VirtualDocument("<body></body>")
        watcher = CustomSignalWatcher(doc, ".missing", policy=UnmatchedPolicy.WAIT)
        settled = await watcher.start()
        await asyncio.sleep(0.05)
        done = settled.done()
        watcher.cancel()
        return done

    assert asyncio.run(scenario()) is False


def test_unmatched_resolve_policy_resolves_after_seeding() -> None:
    async def scenario() -> tuple:
        doc = VirtualDocument("<body></body>")
        watcher = CustomSignalWatcher(doc, ".missing", policy="resolve")
        settled = await watcher.start()
        return settled.done(), doc.observer_count

    assert asyncio.run(scenario()) == (True, 0)


def test_cancel_detaches_without_resolving() -> None:
    async def scenario() -> tuple:
        doc = VirtualDocument('<div class="widget"></div>')
        watcher = CustomSignalWatcher(doc, ".widget", "ready")
        settled = await watcher.start()
        attached = (watcher.listener_count, doc.observer_count)
        watcher.cancel()
        doc.dispatch_event(".widget", "ready")
        await asyncio.sleep(0)
        return attached, settled.done(), watcher.listener_count, doc.observer_count, doc.listener_count()

    assert asyncio.run(scenario()) == ((1, 1), False, 0, 0, 0)
