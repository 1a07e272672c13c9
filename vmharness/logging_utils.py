"""Structured event logging and the per-run harness transcript."""

from __future__ import annotations

import datetime as _dt
import json
import os
import sys
import threading
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence

_DISABLED_VALUES = frozenset({"", "0", "false", "no"})


def _to_json(value: Any) -> Any:
    # Paths become strings, containers recurse, anything else falls back to repr.
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [_to_json(item) for item in value]
    return repr(value)


def events_enabled() -> bool:
    """Whether ``VMHARNESS_LOG_EVENTS`` asks for structured events."""

    return os.environ.get("VMHARNESS_LOG_EVENTS", "").strip().lower() not in _DISABLED_VALUES


def _event_log_file() -> Optional[Path]:
    value = os.environ.get("VMHARNESS_LOG_FILE", "").strip()
    return Path(value) if value else None


def log_event(event: str, **fields: Any) -> None:
    """Write one JSON line describing ``event`` to ``stderr``.

    Nothing is emitted unless :func:`events_enabled`. The line is mirrored to
    ``VMHARNESS_LOG_FILE`` when that is set. Records carry a UTC timestamp
    because several instances log from their own threads.
    """

    if not events_enabled():
        return

    record = {key: _to_json(value) for key, value in fields.items()}
    record["event"] = event
    record["timestamp"] = _dt.datetime.now(_dt.timezone.utc).isoformat()
    line = json.dumps(record, sort_keys=True)

    sys.stderr.write(line + "\n")
    sys.stderr.flush()
    log_file = _event_log_file()
    if log_file is not None:
        _mirror_to_file(log_file, line)


def _mirror_to_file(log_file: Path, line: str) -> None:
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
    except OSError as exc:
        sys.stderr.write(f"vmharness: cannot write event log {log_file}: {exc}\n")
        sys.stderr.flush()


class HarnessLog:
    """Timestamped transcript of orchestration steps.

    Entries are kept in memory and, when ``path`` is given, appended to that
    file. Several instances log into one transcript from different threads.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path
        self._entries: List[str] = []
        self._lock = threading.Lock()
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.touch()

    @property
    def transcript(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def step(self, message: str, body: Optional[str] = None) -> None:
        timestamp = _dt.datetime.now(_dt.timezone.utc).isoformat()
        entry = f"[{timestamp}] {message}"
        with self._lock:
            self._entries.append(entry)
            if self.path is None:
                return
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(entry + "\n")
                if body is not None:
                    lines = body.splitlines()
                    if not lines:
                        handle.write(f"[{timestamp}]   <no output>\n")
                    else:
                        for line in lines:
                            handle.write(f"[{timestamp}]   {line}\n")


__all__ = ["HarnessLog", "events_enabled", "log_event"]
