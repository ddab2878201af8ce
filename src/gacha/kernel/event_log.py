"""JSONL event log with size-based rotation and secret redaction."""

from __future__ import annotations

import json
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from gacha.kernel.types import EventSink, now_ms

LOG_FILE_NAME = "events.log.jsonl"

_REDACTED = "***REDACTED***"
_SECRET_KEY_RE = re.compile(
    r"(password|secret|token|authorization|cookie|session[_-]?key|api[_-]?key)",
    re.IGNORECASE,
)
_QUERY_SECRET_RE = re.compile(r"(?i)([?&](?:token|key|sig|signature|auth)=)([^&#\s]+)")
_BEARER_RE = re.compile(r"(?i)\bbearer\s+([^\s,;]+)")
_WARN_SUFFIXES = (".failed", ".error", ".exhausted", ".unavailable", ".dropped", ".closed")
_STRICT_KEYS = frozenset({"prompt", "prompts", "page_url", "result_ref"})


def level_for_event(event_type: str) -> str:
    name = str(event_type or "")
    if name.endswith(_WARN_SUFFIXES):
        return "warn"
    return "info"


class EventLogWriter:
    """Appends one JSON record per event; never raises into the caller."""

    def __init__(
        self,
        *,
        logs_dir: Path,
        enabled: bool = True,
        max_file_bytes: int = 5 * 1024 * 1024,
        max_files: int = 3,
        redaction: str = "default",
    ) -> None:
        self._logs_dir = Path(logs_dir)
        self._enabled = bool(enabled)
        self._max_file_bytes = max(1, int(max_file_bytes or 0))
        self._max_files = max(1, int(max_files or 0))
        mode = str(redaction or "default").strip().lower()
        self._redaction = mode if mode in {"none", "default", "strict"} else "default"
        self._write_errors = 0
        self._lock = threading.Lock()

    @property
    def active_file(self) -> Path:
        return self._logs_dir / LOG_FILE_NAME

    def sink_for(self, component: str) -> EventSink:
        """Return an `event_sink` callable bound to one component name."""

        def sink(event_type: str, payload: Dict[str, Any]) -> None:
            self.write(component=component, event_type=event_type, data=payload)

        return sink

    def write(
        self,
        *,
        component: str,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        level: Optional[str] = None,
        ts_ms: Optional[int] = None,
    ) -> None:
        if not self._enabled:
            return
        record = {
            "ts_ms": int(ts_ms if ts_ms is not None else now_ms()),
            "level": str(level or level_for_event(event_type)),
            "component": str(component or "runtime"),
            "event_type": str(event_type or ""),
            "data": self._redact(dict(data or {})),
        }
        with self._lock:
            try:
                encoded = (
                    json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str) + "\n"
                ).encode("utf-8")
                self._logs_dir.mkdir(parents=True, exist_ok=True)
                self._rotate_if_needed_locked(len(encoded))
                with self.active_file.open("ab") as fp:
                    fp.write(encoded)
            except Exception:
                self._write_errors += 1

    def status(self) -> Dict[str, Any]:
        with self._lock:
            active = self.active_file
            rotated: List[str] = []
            size = 0
            if self._enabled and active.exists():
                size = int(active.stat().st_size)
            if self._enabled:
                for index in range(1, self._max_files + 1):
                    candidate = self._rotated(index)
                    if candidate.exists():
                        rotated.append(str(candidate))
            return {
                "enabled": self._enabled,
                "file": str(active),
                "size_bytes": size,
                "max_file_bytes": self._max_file_bytes,
                "max_files": self._max_files,
                "rotated_files": rotated,
                "redaction": self._redaction,
                "write_errors": int(self._write_errors),
            }

    def read_recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        if not self.active_file.exists():
            return []
        rows: List[Dict[str, Any]] = []
        for line in self.active_file.read_text(encoding="utf-8").splitlines()[-max(1, int(limit)):]:
            try:
                value = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(value, dict):
                rows.append(value)
        return rows

    def _rotate_if_needed_locked(self, incoming: int) -> None:
        current = int(self.active_file.stat().st_size) if self.active_file.exists() else 0
        if current == 0 or current + int(incoming) <= self._max_file_bytes:
            return
        self._rotated(self._max_files).unlink(missing_ok=True)
        for index in range(self._max_files - 1, 0, -1):
            source = self._rotated(index)
            if source.exists():
                source.replace(self._rotated(index + 1))
        self.active_file.replace(self._rotated(1))

    def _rotated(self, index: int) -> Path:
        return Path("{0}.{1}".format(self.active_file, index))

    def _redact(self, value: Any, *, key: str = "") -> Any:
        if self._redaction == "none":
            return value
        if key and _SECRET_KEY_RE.search(key):
            return _REDACTED
        if self._redaction == "strict" and key in _STRICT_KEYS:
            return _REDACTED
        if isinstance(value, dict):
            return {k: self._redact(v, key=str(k)) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._redact(item) for item in value]
        if isinstance(value, str):
            masked = _BEARER_RE.sub("Bearer {0}".format(_REDACTED), value)
            return _QUERY_SECRET_RE.sub(lambda m: m.group(1) + _REDACTED, masked)
        return value
