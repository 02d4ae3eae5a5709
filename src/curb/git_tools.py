"""Git queries used to check the working tree between iterations."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)


def _git_subprocess_isolation_kwargs() -> dict[str, object]:
    """Return kwargs that prevent child console events from reaching the parent on Windows."""
    if os.name != "nt":
        return {}
    new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
    no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
    flags = new_pg | no_win
    return {"creationflags": flags} if flags else {}


class GitError(RuntimeError):
    """Raised when a git command fails unexpectedly."""


def _run_git(
    *args: str,
    cwd: Path,
    check: bool = True,
    timeout: int = 30,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the CompletedProcess."""
    cmd = ["git", *args]
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            **_git_subprocess_isolation_kwargs(),
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise GitError(f"`git {' '.join(args)}` could not run: {exc}") from exc
    if check and result.returncode != 0:
        raise GitError(
            f"`git {' '.join(args)}` failed (rc={result.returncode}): {result.stderr.strip()}"
        )
    return result


def is_repo(repo: str | Path) -> bool:
    """Return True when *repo* is inside a git work tree."""
    try:
        result = _run_git("rev-parse", "--is-inside-work-tree", cwd=Path(repo), check=False)
    except GitError:
        return False
    return result.returncode == 0 and result.stdout.strip() == "true"


def status_porcelain(repo: str | Path) -> str:
    """Return ``git status --porcelain`` output (untracked files included)."""
    return _run_git("status", "--porcelain", cwd=Path(repo)).stdout.rstrip()


def uncommitted_files(repo: str | Path) -> list[str]:
    """Return the porcelain status lines, one per changed or untracked path."""
    return [line for line in status_porcelain(repo).splitlines() if line.strip()]
