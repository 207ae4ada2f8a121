from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import GateConfig, load_config
from .errors import PageGateError
from .gate import GateResult, ReadinessGate, RenderTarget
from .session import FileSessionStore, MemorySessionStore, SessionStore, default_session_id
from .virtual import VirtualDocument


def pretty_json(data: Dict[str, Any]) -> str:
    return json.dumps(data, indent=2, sort_keys=True)


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="pagegate readiness gate CLI")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log gate lifecycle to stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    p_validate = sub.add_parser("validate", help="Validate a gate config file")
    p_validate.add_argument("--config", required=True)

    p_sim = sub.add_parser("simulate", help="Run a gate against a simulated page")
    p_sim.add_argument("--html", required=True, help="HTML snapshot of the page")
    p_sim.add_argument(
        "--page",
        help="JSON page timeline: resources, load_delay, fonts_delay, fonts_fail, timeline",
    )
    p_sim.add_argument("--config", help="Gate config JSON (defaults apply when omitted)")
    p_sim.add_argument(
        "--target",
        default=RenderTarget.LIVE.value,
        choices=[t.value for t in RenderTarget],
        help="Render target the gate runs in",
    )
    p_sim.add_argument("--runs", type=int, default=1, help="Run the gate N times in one session")
    p_sim.add_argument("--session-file", help="Persist session flags to this JSON file")
    p_sim.add_argument("--session-id", default="", help="Session id for --session-file")

    p_probe = sub.add_parser("probe", help="Run a gate against a live URL with Playwright")
    p_probe.add_argument("--url", required=True)
    p_probe.add_argument("--config", help="Gate config JSON (defaults apply when omitted)")
    p_probe.add_argument("--headed", action="store_true", help="Show the browser window")

    return parser.parse_args(argv)


def _load_page_spec(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    data = json.loads(Path(path).read_text())
    if not isinstance(data, dict):
        raise ValueError("--page must contain a JSON object")
    return data


def _session_store(args: argparse.Namespace) -> SessionStore:
    if args.session_file:
        return FileSessionStore(Path(args.session_file), args.session_id or default_session_id())
    return MemorySessionStore()


async def _simulate(args: argparse.Namespace, config: GateConfig) -> Dict[str, Any]:
    page = _load_page_spec(args.page)
    store = _session_store(args)
    html = Path(args.html).read_text()
    runs: List[Dict[str, Any]] = []
    for index in range(max(1, args.runs)):
        document = VirtualDocument(
            html,
            resources=page.get("resources"),
            load_delay=float(page.get("load_delay", 0.0)),
            fonts_delay=float(page.get("fonts_delay", 0.0)),
            fonts_fail=bool(page.get("fonts_fail", False)),
            mutations_supported=bool(page.get("mutations", True)),
            decode_supported=bool(page.get("decode", True)),
        )
        document.open()
        document.apply_timeline(page.get("timeline", []))

        samples: List[List[float]] = []
        started = time.monotonic()
        gate = ReadinessGate(
            document,
            config,
            session_store=store,
            render_target=RenderTarget(args.target),
        )
        unsubscribe = gate.progress.subscribe(
            lambda value: samples.append([round(time.monotonic() - started, 3), round(value, 4)])
        )
        try:
            result: GateResult = await gate.run()
        finally:
            unsubscribe()
            document.close()
        runs.append({"run": index + 1, "result": result.as_dict(), "progress": samples})
    return {"ok": True, "config": config.as_dict(), "runs": runs}


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        config = load_config(Path(args.config) if getattr(args, "config", None) else None)
    except PageGateError as exc:
        print(pretty_json({"ok": False, "error": str(exc)}))
        raise SystemExit(2)

    if args.command == "validate":
        print(pretty_json({"ok": True, "config": config.as_dict()}))
        return

    if args.command == "simulate":
        try:
            result = asyncio.run(_simulate(args, config))
        except (OSError, ValueError) as exc:
            print(pretty_json({"ok": False, "error": str(exc)}))
            raise SystemExit(2)
        print(pretty_json(result))
        return

    if args.command == "probe":
        from .page_ready import probe_url

        try:
            gate_result = asyncio.run(probe_url(args.url, config, headless=not args.headed))
        except PageGateError as exc:
            print(pretty_json({"ok": False, "error": str(exc)}))
            raise SystemExit(2)
        except Exception as exc:  # noqa: BLE001
            print(pretty_json({"ok": False, "url": args.url, "error": str(exc)}))
            raise SystemExit(1)
        print(pretty_json({"ok": True, "url": args.url, "result": gate_result.as_dict()}))
        return


if __name__ == "__main__":
    main()
