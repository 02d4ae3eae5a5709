"""Atomic writes for the backlog, run state and artifact files."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from contextlib import suppress
from pathlib import Path
from typing import Any

#: Mode for files curb creates when the caller asks for nothing stricter.
DEFAULT_FILE_MODE = 0o644

_LOCKS_GUARD = threading.Lock()
_LOCKS: dict[str, threading.Lock] = {}


def _lock_for(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _LOCKS_GUARD:
        return _LOCKS.setdefault(key, threading.Lock())


def _target_mode(path: Path, mode: int | None) -> int:
    if mode is not None:
        return mode
    try:
        return path.stat().st_mode & 0o777
    except OSError:
        return DEFAULT_FILE_MODE


def atomic_write_text(path: Path, content: str, *, mode: int | None = None) -> None:
    """Replace *path* with *content* so readers never see a half-written file.

    The file keeps its current permissions unless *mode* is given; new files
    get :data:`DEFAULT_FILE_MODE`.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        with _lock_for(path):
            os.chmod(tmp_path, _target_mode(path, mode))
            os.replace(tmp_path, path)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


def write_json(path: Path, data: Any, *, mode: int | None = None) -> None:
    """Atomically write *data* as indented JSON with a trailing newline."""
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n", mode=mode)


def append_line(path: Path, line: str, *, mode: int | None = None) -> None:
    """Append one line (newline added) under a per-path lock.

    *mode* is applied when the append creates the file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with _lock_for(path):
        created = not path.exists()
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line.rstrip("\n") + "\n")
        if created and mode is not None:
            os.chmod(path, mode)
