"""Machine-readable per-session event log.

Each run appends JSON lines ``{"timestamp", "event_type", "data"}`` to
``<logs_dir>/<project>/<session_id>.jsonl``.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from pathlib import Path
from typing import Any

from curb.file_io import append_line

logger = logging.getLogger(__name__)


def _truncate(text: str, max_len: int) -> str:
    clean = (text or "").strip()
    if len(clean) <= max_len:
        return clean
    return clean[: max_len - 3] + "..."


def _sanitize(value: Any, depth: int = 0) -> Any:
    if depth > 5:
        return "[truncated-depth]"
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return _truncate(value, 4000)
    if isinstance(value, (list, tuple)):
        return [_sanitize(v, depth + 1) for v in value[:200]]
    if isinstance(value, dict):
        return {_truncate(str(k), 120): _sanitize(v, depth + 1) for k, v in value.items()}
    if hasattr(value, "model_dump"):
        return _sanitize(value.model_dump(mode="json"), depth + 1)
    return _truncate(str(value), 400)


class RunLog:
    """Append-only JSONL event log for one session."""

    def __init__(self, logs_dir: str | Path, project: str, session_id: str) -> None:
        if not project:
            raise ValueError("project name is required")
        if not session_id:
            raise ValueError("session id is required")
        self.path = Path(logs_dir) / project / f"{session_id}.jsonl"

    def write(self, event_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        """Append one event and return the written payload.

        Write failures are logged and swallowed so a full disk never stops a run.
        """
        payload = {
            "timestamp": dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "event_type": event_type,
            "data": _sanitize(data or {}),
        }
        try:
            append_line(self.path, json.dumps(payload, ensure_ascii=False))
        except OSError as exc:
            logger.warning("Could not append run log entry to %s: %s", self.path, exc)
        return payload

    def error(self, message: str, context: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.write("error", {"message": message, **(context or {})})

    def read(self) -> list[dict[str, Any]]:
        """Return every event written so far (malformed lines are skipped)."""
        if not self.path.is_file():
            return []
        events: list[dict[str, Any]] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(record, dict):
                events.append(record)
        return events
