"""Exception taxonomy for the loop.

Every error carries a short diagnosis (the message) and a remediation
``hint`` that the CLI prints before exiting non-zero.
"""

from __future__ import annotations

from collections.abc import Sequence


class CurbError(Exception):
    """Base class for fatal curb errors."""

    default_hint = ""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint if hint is not None else self.default_hint


class ValidationError(CurbError):
    """The backlog is malformed (missing fields, duplicate ids, dangling dependencies)."""

    default_hint = "Fix the listed entries in the backlog file and run `curb validate` again."

    def __init__(
        self,
        problems: Sequence[str],
        *,
        source: str = "",
        hint: str | None = None,
    ) -> None:
        self.problems = list(problems)
        self.source = source
        where = f" in {source}" if source else ""
        lines = [f"Backlog validation failed{where}:"]
        lines.extend(f"  - {problem}" for problem in self.problems)
        super().__init__("\n".join(lines), hint=hint)


class InvocationError(CurbError):
    """A harness invocation exited non-zero and the failure policy is ``stop``."""

    default_hint = (
        "Inspect the harness output above, or set loop.on_failure to "
        "'move_on' or 'retry' in your config to keep the loop going."
    )

    def __init__(self, harness_id: str, exit_code: int, *, task_id: str = "") -> None:
        self.harness_id = harness_id
        self.exit_code = exit_code
        self.task_id = task_id
        target = f" on task {task_id}" if task_id else ""
        super().__init__(f"Harness '{harness_id}' exited with status {exit_code}{target}")


class StateVerificationFailure(CurbError):
    """The repository was not left in the required state after an invocation."""

    def __init__(self, message: str, *, detail: str = "", hint: str | None = None) -> None:
        self.detail = detail
        super().__init__(message, hint=hint)


class HookError(CurbError):
    """A hook script failed while ``hooks.fail_fast`` is enabled."""

    default_hint = "Fix the hook script, or set hooks.fail_fast to false in your config."

    def __init__(self, hook_name: str, script: str, exit_code: int) -> None:
        self.hook_name = hook_name
        self.script = script
        self.exit_code = exit_code
        super().__init__(f"Hook {hook_name} script {script} failed with exit code {exit_code}")
