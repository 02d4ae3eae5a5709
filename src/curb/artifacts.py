"""Per-task artifact bundles.

Each run gets ``<repo>/.curb/runs/<session_id>/`` holding ``run.json``, and
every task worked on in that run gets ``tasks/<task_id>/`` with:

``task.json``
    title, priority, status, start/finish timestamps, attempt count, exit
    code and usage of the last attempt.
``plan.md``
    the task prompt the harness was given.
``commands.jsonl``
    one line per command run for the task (harness and test runs).
``changes.patch``
    ``git diff HEAD`` taken when the attempt finished.

Directories are created ``0700`` and files ``0600``; prompts and diffs can
contain secrets.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from curb.file_io import append_line, atomic_write_text, write_json
from curb.git_tools import _run_git, is_repo
from curb.schemas import Task, UsageRecord

logger = logging.getLogger(__name__)

ARTIFACTS_DIR = Path(".curb") / "runs"
DIR_MODE = 0o700
FILE_MODE = 0o600

_MAX_OUTPUT_CHARS = 4000


def _utc_now() -> str:
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _check_component(value: str, what: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValueError(f"{what} is required")
    if cleaned in {".", ".."} or "/" in cleaned or "\\" in cleaned:
        raise ValueError(f"{what} {value!r} cannot be used as a directory name")
    return cleaned


class ArtifactStore:
    """Writes the artifact bundle for one session of one repository."""

    def __init__(self, repo_path: str | Path, session_id: str) -> None:
        self.repo_path = Path(repo_path)
        self.session_id = _check_component(session_id, "session id")
        self.run_dir = self.repo_path / ARTIFACTS_DIR / self.session_id

    def task_dir(self, task_id: str) -> Path:
        return self.run_dir / "tasks" / _check_component(task_id, "task id")

    # ------------------------------------------------------------------
    # Run level
    # ------------------------------------------------------------------

    def init_run(self, session_name: str, config: Mapping[str, Any] | None = None) -> Path:
        """Create the run directory and ``run.json``."""
        self._ensure_dir(self.run_dir)
        path = self.run_dir / "run.json"
        write_json(
            path,
            {
                "run_id": self.session_id,
                "session_name": session_name,
                "started_at": _utc_now(),
                "status": "in_progress",
                "config": dict(config or {}),
            },
            mode=FILE_MODE,
        )
        return path

    def finish_run(self, stop_reason: str, *, budget: Mapping[str, Any] | None = None) -> None:
        """Record how the run ended in ``run.json``."""
        path = self.run_dir / "run.json"
        data = self._read_json(path)
        data.update(
            {
                "status": stop_reason,
                "finished_at": _utc_now(),
                "budget": dict(budget or {}),
            }
        )
        self._ensure_dir(self.run_dir)
        write_json(path, data, mode=FILE_MODE)

    # ------------------------------------------------------------------
    # Task level
    # ------------------------------------------------------------------

    def start_task(self, task: Task) -> Path:
        """Write ``task.json`` for a new attempt at *task*.

        ``started_at`` keeps the first attempt's time; ``attempts`` counts
        every start within the run.
        """
        task_dir = self.task_dir(task.id)
        self._ensure_dir(task_dir)
        path = task_dir / "task.json"
        previous = self._read_json(path)
        write_json(
            path,
            {
                "task_id": task.id,
                "title": task.title,
                "priority": task.priority.value,
                "status": "in_progress",
                "started_at": previous.get("started_at") or _utc_now(),
                "attempts": int(previous.get("attempts") or 0) + 1,
            },
            mode=FILE_MODE,
        )
        return path

    def finish_task(
        self,
        task_id: str,
        *,
        status: str,
        exit_code: int,
        usage: UsageRecord | None = None,
    ) -> None:
        path = self.task_dir(task_id) / "task.json"
        data = self._read_json(path)
        data.update(
            {
                "task_id": task_id,
                "status": status,
                "finished_at": _utc_now(),
                "exit_code": exit_code,
                "usage": (usage or UsageRecord()).to_query_dict(),
            }
        )
        self._ensure_dir(path.parent)
        write_json(path, data, mode=FILE_MODE)

    def capture_plan(self, task_id: str, content: str) -> Path:
        if not content.strip():
            raise ValueError("plan content is required")
        task_dir = self.task_dir(task_id)
        self._ensure_dir(task_dir)
        path = task_dir / "plan.md"
        atomic_write_text(path, content.rstrip("\n") + "\n", mode=FILE_MODE)
        return path

    def capture_command(
        self,
        task_id: str,
        command: str,
        exit_code: int,
        *,
        output: str = "",
        duration: float = 0.0,
    ) -> dict[str, Any]:
        """Append one entry to ``commands.jsonl`` and return it."""
        if not command.strip():
            raise ValueError("command is required")
        task_dir = self.task_dir(task_id)
        self._ensure_dir(task_dir)
        entry = {
            "timestamp": _utc_now(),
            "command": command,
            "exit_code": exit_code,
            "output": (output or "")[-_MAX_OUTPUT_CHARS:],
            "duration": round(float(duration), 3),
        }
        append_line(task_dir / "commands.jsonl", json.dumps(entry, ensure_ascii=False), mode=FILE_MODE)
        return entry

    def capture_diff(self, task_id: str) -> Path | None:
        """Write uncommitted changes to ``changes.patch``.

        Uses ``git diff HEAD``, falling back to ``git diff`` in a repository
        without commits.  Returns ``None`` outside a git repository; other
        git failures raise :class:`~curb.git_tools.GitError`.
        """
        if not is_repo(self.repo_path):
            logger.debug("%s is not a git repository; no diff captured", self.repo_path)
            return None
        result = _run_git("diff", "HEAD", cwd=self.repo_path, check=False)
        if result.returncode != 0:
            result = _run_git("diff", cwd=self.repo_path)
        task_dir = self.task_dir(task_id)
        self._ensure_dir(task_dir)
        path = task_dir / "changes.patch"
        atomic_write_text(path, result.stdout, mode=FILE_MODE)
        return path

    # ------------------------------------------------------------------

    @staticmethod
    def _ensure_dir(path: Path) -> None:
        path.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)

    @staticmethod
    def _read_json(path: Path) -> dict[str, Any]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable artifact %s: %s", path, exc)
            return {}
        return data if isinstance(data, dict) else {}
