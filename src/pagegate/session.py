"""Per-session "already ran" flags keyed by gate identity."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Protocol, Set

logger = logging.getLogger(__name__)

DEFAULT_SESSION_PATH = Path.home() / ".pagegate" / "session_flags.json"


def default_session_id() -> str:
    return os.getenv("PAGEGATE_SESSION_ID", "").strip() or f"pid-{os.getpid()}"


def default_session_path() -> Path:
    raw = os.getenv("PAGEGATE_SESSION_FILE", "").strip()
    return Path(raw).expanduser() if raw else DEFAULT_SESSION_PATH


class SessionStore(Protocol):
    def has_run(self, gate_id: str) -> bool: ...

    def mark_run(self, gate_id: str) -> None: ...


class MemorySessionStore:
    def __init__(self) -> None:
        self._flags: Set[str] = set()

    def has_run(self, gate_id: str) -> bool:
        return gate_id in self._flags

    def mark_run(self, gate_id: str) -> None:
        self._flags.add(gate_id)

    def clear(self) -> None:
        self._flags.clear()


@dataclass
class FileSessionStore:
    """JSON file of ``{gate_id: {"session": ..., "ready": true, "written_at": ...}}``.

    Entries written under a different session id are stale and read as
    "not yet run"; so is a missing or unreadable file.
    """

    path: Path = field(default_factory=default_session_path)
    session_id: str = field(default_factory=default_session_id)

    def _read(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except Exception as exc:  # noqa: BLE001
            logger.warning("ignoring unreadable session file %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def has_run(self, gate_id: str) -> bool:
        entry = self._read().get(gate_id)
        if not isinstance(entry, dict):
            return False
        return entry.get("session") == self.session_id and entry.get("ready") is True

    def mark_run(self, gate_id: str) -> None:
        data = self._read()
        data[gate_id] = {
            "session": self.session_id,
            "ready": True,
            "written_at": datetime.now(timezone.utc).isoformat(),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".session-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    def clear(self, gate_id: str) -> None:
        data = self._read()
        if data.pop(gate_id, None) is None:
            return
        self.path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
