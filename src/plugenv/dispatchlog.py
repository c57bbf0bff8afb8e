"""Structured per-run logs and the environment-wide dispatch ledger.

Two sinks are written for every top-level dispatch:

* :class:`DispatchLog` -- a JSON Lines file under the plugin's own
  ``logs/<UTC date>/`` directory named ``<command>-<UTC timestamp>.log``.
  Every event (dispatch start, step start/end, captured stdout/stderr
  lines, errors) is one JSON object with ``level``, ``message`` and an
  auto-filled ``ts``. Lines are flushed as they are written.
* :class:`DispatchLedger` -- one JSON line per dispatch appended to
  ``<env>/.plugenv/logs/dispatch.log``, summarising plugin, command,
  arguments, final status, log file and duration.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from plugenv import output
from plugenv.config import EnvLayout
from plugenv.models import DispatchRecord

logger = logging.getLogger(__name__)


def utc_timestamp() -> str:
    """Current UTC time in RFC 3339 form, second precision."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def log_path_for(plugin_dir: str | Path, command: str, now: Optional[datetime] = None) -> Path:
    """Return ``<plugin>/logs/<YYYY-MM-DD>/<command>-<YYYYMMDDTHHMMSSZ>.log`` for *now* (UTC)."""
    now = now or datetime.now(timezone.utc)
    day_dir = Path(plugin_dir) / "logs" / now.strftime("%Y-%m-%d")
    safe_command = command.replace("/", "_").replace("\\", "_") or "dispatch"
    return day_dir / f"{safe_command}-{now.strftime('%Y%m%dT%H%M%SZ')}.log"


class DispatchLog:
    """Append-only JSONL event log for one dispatch.

    Safe to share between the dispatching thread and the pipe reader
    threads an executor starts; each :meth:`write` is serialised and
    flushed.

    Args:
        path: Log file path. Parent directories are created.

    Example::

        with DispatchLog(log_path_for(plugin_dir, "build")) as log:
            log.write("info", "dispatch start", action="build")
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = open(self.path, "a", encoding="utf-8")
        self._lock = threading.Lock()

    def write(self, level: str, message: str, **fields: Any) -> None:
        """Write one event line. ``ts`` is filled in unless given."""
        event: dict[str, Any] = {"level": level, "message": message, **fields}
        event.setdefault("ts", utc_timestamp())
        line = json.dumps(event, ensure_ascii=False, default=str)
        with self._lock:
            if self._fh.closed:
                return
            self._fh.write(line + "\n")
            self._fh.flush()

    def line_writer(self, level: str) -> Callable[[str], None]:
        """Return a callback that logs each captured output line at *level*."""

        def _write(line: str) -> None:
            self.write(level, line.rstrip("\r\n"))

        return _write

    def close(self) -> None:
        with self._lock:
            if not self._fh.closed:
                self._fh.close()

    def __enter__(self) -> "DispatchLog":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class DispatchLedger:
    """The environment's append-only ledger of dispatches.

    Args:
        env_dir: The environment root.
    """

    def __init__(self, env_dir: str | Path) -> None:
        self.path = EnvLayout.of(env_dir).ledger_file

    def append(self, record: DispatchRecord) -> None:
        """Append *record* as one JSON line, filling ``ts`` when empty.

        A write failure is reported as a warning instead of raised, so it
        never masks the dispatch's own outcome.
        """
        if not record.ts:
            record = record.model_copy(update={"ts": utc_timestamp()})
        line = json.dumps(record.model_dump(mode="json"), ensure_ascii=False)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except OSError as exc:
            logger.warning("Failed to append dispatch ledger %s: %s", self.path, exc)
            output.warning(f"Dispatch ledger entry lost: cannot write {self.path}: {exc}")

    def read(self) -> list[DispatchRecord]:
        """Return every record in the ledger, oldest first. Malformed lines are skipped."""
        if not self.path.is_file():
            return []
        records: list[DispatchRecord] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                records.append(DispatchRecord.model_validate_json(line))
            except ValueError:
                logger.debug("Skipping malformed ledger line: %s", line[:200])
        return records
