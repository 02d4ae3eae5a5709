"""Post-invocation repository state verification.

After each harness run the working tree should be clean (the harness is
expected to commit its own work) and, optionally, the project's tests
should pass.  Under the strict policy a violation raises
:class:`~curb.errors.StateVerificationFailure`; under the lenient policy it
is logged and the verdict is returned for the caller to record.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from curb.errors import StateVerificationFailure
from curb.git_tools import GitError, is_repo, uncommitted_files

logger = logging.getLogger(__name__)

DEFAULT_TEST_TIMEOUT = 900

_COMMIT_HINT = "To disable this check, set clean_state.require_commit to false in your config."
_TESTS_HINT = "To disable test requirements, set clean_state.require_tests to false in your config."


def _is_own_output(entry: str) -> bool:
    """True for untracked run state and artifacts that curb itself writes."""
    return entry == "?? .curb/" or entry.startswith("?? .curb/runs/")


@dataclass
class StateVerdict:
    """Outcome of one verification pass."""

    clean: bool = True
    uncommitted: list[str] = field(default_factory=list)
    tests_ran: bool = False
    tests_passed: bool | None = None
    test_command: list[str] = field(default_factory=list)
    test_exit_code: int | None = None
    test_summary: str = ""
    warnings: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.clean and self.tests_passed is not False

    def to_dict(self) -> dict[str, object]:
        return {
            "clean": self.clean,
            "uncommitted": list(self.uncommitted),
            "tests_ran": self.tests_ran,
            "tests_passed": self.tests_passed,
            "test_command": " ".join(self.test_command),
            "test_exit_code": self.test_exit_code,
            "passed": self.passed,
            "warnings": list(self.warnings),
        }


def detect_test_command(
    repo: str | Path,
    *,
    which: Callable[[str], str | None] = shutil.which,
) -> list[str] | None:
    """Guess the project's test command from its build files.

    Checks, in order: package.json with a ``test`` script (yarn when a
    yarn.lock exists), a Makefile, Python project markers, go.mod,
    Cargo.toml and a Rakefile.  Returns ``None`` when nothing matches or the
    tool is not installed.
    """
    root = Path(repo)

    package_json = root / "package.json"
    if package_json.is_file():
        try:
            scripts = json.loads(package_json.read_text(encoding="utf-8")).get("scripts") or {}
        except (OSError, ValueError, AttributeError):
            scripts = {}
        if isinstance(scripts, dict) and scripts.get("test"):
            if (root / "yarn.lock").is_file() and which("yarn"):
                return ["yarn", "test"]
            if which("npm"):
                return ["npm", "test"]

    if ((root / "Makefile").is_file() or (root / "makefile").is_file()) and which("make"):
        if _makefile_has_test_target(root):
            return ["make", "test"]

    python_markers = ("pytest.ini", "setup.py", "pyproject.toml")
    if any((root / name).is_file() for name in python_markers) or (root / "tests").is_dir():
        if which("pytest"):
            return ["pytest"]
        for interpreter in ("python", "python3"):
            if which(interpreter):
                return [interpreter, "-m", "pytest"]

    if (root / "go.mod").is_file() and which("go"):
        return ["go", "test", "./..."]

    if (root / "Cargo.toml").is_file() and which("cargo"):
        return ["cargo", "test"]

    if (root / "Rakefile").is_file() and which("rake"):
        return ["rake", "test"]

    return None


def _makefile_has_test_target(root: Path) -> bool:
    for name in ("Makefile", "makefile"):
        path = root / name
        if not path.is_file():
            continue
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue
        if any(line.startswith("test:") for line in text.splitlines()):
            return True
    return False


class StateVerifier:
    """Check the repository after a harness invocation.

    Parameters
    ----------
    repo_path:
        Repository the harness worked in.
    require_commit:
        Strict clean-tree policy: uncommitted changes are fatal.
    require_tests:
        Run the detected (or configured) test command; failures are fatal.
    test_command:
        Explicit test command; auto-detected when empty.
    """

    def __init__(
        self,
        repo_path: str | Path,
        *,
        require_commit: bool = True,
        require_tests: bool = False,
        test_command: list[str] | None = None,
        test_timeout: int = DEFAULT_TEST_TIMEOUT,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self.require_commit = require_commit
        self.require_tests = require_tests
        self.test_command = list(test_command or [])
        self.test_timeout = test_timeout

    def verify(self) -> StateVerdict:
        """Run every configured check; raise under strict policy on failure."""
        verdict = StateVerdict()
        self._check_clean(verdict)
        if self.require_tests:
            self._run_tests(verdict)
        return verdict

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_clean(self, verdict: StateVerdict) -> None:
        if not is_repo(self.repo_path):
            message = f"{self.repo_path} is not a git repository; skipping clean-state check"
            logger.warning(message)
            verdict.warnings.append(message)
            return
        try:
            changes = uncommitted_files(self.repo_path)
        except GitError as exc:
            message = f"Could not read git status: {exc}"
            logger.warning(message)
            verdict.warnings.append(message)
            return
        changes = [entry for entry in changes if not _is_own_output(entry)]
        if not changes:
            return

        verdict.clean = False
        verdict.uncommitted = changes
        listing = "\n".join(changes)
        if self.require_commit:
            logger.error("Harness left uncommitted changes in repository:\n%s", listing)
            raise StateVerificationFailure(
                "Repository has uncommitted changes after harness execution.\n"
                "The harness should commit all changes before exiting.\n"
                f"Uncommitted files:\n{listing}",
                detail=listing,
                hint=_COMMIT_HINT,
            )
        message = "Repository has uncommitted changes after harness execution"
        logger.warning("%s:\n%s", message, listing)
        verdict.warnings.append(message)

    def _run_tests(self, verdict: StateVerdict) -> None:
        cmd = self.test_command or detect_test_command(self.repo_path)
        if not cmd:
            message = (
                "clean_state.require_tests is true but no test command detected "
                "(supported: npm/yarn, make, pytest, go, cargo, rake); skipping test run"
            )
            logger.warning(message)
            verdict.warnings.append(message)
            return

        verdict.tests_ran = True
        verdict.test_command = list(cmd)
        logger.info("Running tests: %s (cwd=%s)", " ".join(cmd), self.repo_path)
        try:
            proc = subprocess.run(
                cmd,
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                timeout=self.test_timeout,
            )
        except FileNotFoundError as exc:
            exit_code, summary = -1, f"Test command not found: {exc}"
        except subprocess.TimeoutExpired:
            exit_code, summary = -1, f"Test command timed out after {self.test_timeout}s"
        else:
            exit_code = proc.returncode
            summary = _summarise_output(((proc.stdout or "") + "\n" + (proc.stderr or "")).strip())

        verdict.test_exit_code = exit_code
        verdict.test_summary = summary
        verdict.tests_passed = exit_code == 0
        if verdict.tests_passed:
            logger.info("Tests passed")
            return

        logger.error("Tests failed with exit code %s", exit_code)
        raise StateVerificationFailure(
            f"Tests failed with exit code {exit_code}\n"
            f"Test command: {' '.join(cmd)}\n"
            f"Test output:\n{summary}",
            detail=summary,
            hint=_TESTS_HINT,
        )


def _summarise_output(text: str, max_lines: int = 30) -> str:
    """Truncate test output to its first 10 and last 20 lines."""
    lines = text.splitlines()
    if len(lines) <= max_lines:
        return text
    skipped = len(lines) - 30
    return "\n".join([*lines[:10], f"  ... ({skipped} lines omitted) ...", *lines[-20:]])
