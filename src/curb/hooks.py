"""Lifecycle hook scripts.

Executable files in ``<config_dir>/hooks/<hook>.d/`` (user) and
``<repo>/.curb/hooks/<hook>.d/`` (project) run at the loop's boundaries,
user hooks first, each directory in sorted order.  Context is passed through
``CURB_*`` environment variables.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from curb.errors import HookError

logger = logging.getLogger(__name__)

HOOK_NAMES = ("pre-loop", "pre-task", "post-task", "on-error", "post-loop")
DEFAULT_HOOK_TIMEOUT = 300

_CONTEXT_ENV = {
    "session_id": "CURB_SESSION_ID",
    "harness": "CURB_HARNESS",
    "task_id": "CURB_TASK_ID",
    "task_title": "CURB_TASK_TITLE",
    "exit_code": "CURB_EXIT_CODE",
}


@dataclass
class HookOutcome:
    script: str
    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def _executables(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        p for p in directory.iterdir() if p.is_file() and os.access(p, os.X_OK)
    )


class HookRunner:
    """Discover and run hook scripts for one project."""

    def __init__(
        self,
        project_dir: str | Path,
        *,
        user_hooks_dir: str | Path | None = None,
        enabled: bool = True,
        fail_fast: bool = False,
        timeout: int = DEFAULT_HOOK_TIMEOUT,
    ) -> None:
        self.project_dir = Path(project_dir).resolve()
        self.user_hooks_dir = Path(user_hooks_dir) if user_hooks_dir else None
        self.project_hooks_dir = self.project_dir / ".curb" / "hooks"
        self.enabled = enabled
        self.fail_fast = fail_fast
        self.timeout = timeout

    def scripts_for(self, hook_name: str) -> list[Path]:
        """Return the executable scripts registered for *hook_name*, in run order."""
        scripts: list[Path] = []
        if self.user_hooks_dir is not None:
            scripts.extend(_executables(self.user_hooks_dir / f"{hook_name}.d"))
        scripts.extend(_executables(self.project_hooks_dir / f"{hook_name}.d"))
        return scripts

    def run(self, hook_name: str, **context: object) -> list[HookOutcome]:
        """Run every script for *hook_name*.

        Failures are logged as warnings; with ``fail_fast`` the first failure
        raises :class:`~curb.errors.HookError`.
        """
        if hook_name not in HOOK_NAMES:
            raise ValueError(f"Unknown hook '{hook_name}'. Known hooks: {', '.join(HOOK_NAMES)}")
        if not self.enabled:
            return []
        scripts = self.scripts_for(hook_name)
        if not scripts:
            return []

        env = dict(os.environ)
        env["CURB_HOOK_NAME"] = hook_name
        env["CURB_PROJECT_DIR"] = str(self.project_dir)
        for key, var in _CONTEXT_ENV.items():
            value = context.get(key)
            if value is not None and value != "":
                env[var] = str(value)
            else:
                env.pop(var, None)

        outcomes: list[HookOutcome] = []
        for script in scripts:
            outcome = self._run_script(script, env)
            outcomes.append(outcome)
            if outcome.ok:
                if outcome.output:
                    logger.info("[hook:%s] %s: %s", hook_name, script.name, outcome.output)
                continue
            logger.warning(
                "[hook:%s] %s failed with exit code %s%s",
                hook_name,
                script,
                outcome.exit_code,
                f"\n{outcome.output}" if outcome.output else "",
            )
            if self.fail_fast:
                raise HookError(hook_name, str(script), outcome.exit_code)
        return outcomes

    def _run_script(self, script: Path, env: dict[str, str]) -> HookOutcome:
        try:
            proc = subprocess.run(
                [str(script)],
                cwd=self.project_dir,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return HookOutcome(str(script), -1, f"timed out after {self.timeout}s")
        except OSError as exc:
            return HookOutcome(str(script), 126, str(exc))
        output = ((proc.stdout or "") + (proc.stderr or "")).strip()
        return HookOutcome(str(script), proc.returncode, output)
