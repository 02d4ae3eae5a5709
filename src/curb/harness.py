"""Abstract base class and registry for harness adapters.

Every harness (Claude Code, OpenCode, Codex, Gemini, ...) implements the same
``invoke`` / ``invoke_streaming`` contract so the loop can drive any of them
interchangeably.  Which of the two the loop calls is decided by the
capability matrix, not by the adapter.
"""

from __future__ import annotations

import abc
import logging
import os
import shutil
from collections.abc import Callable, Sequence
from pathlib import Path

from curb.runner_common import (
    StreamExecutionResult,
    execute_streaming_command,
    prompt_metadata,
    resolve_binary,
    run_version_command,
)
from curb.schemas import HarnessEvent, InvocationResult, UsageRecord

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 1800  # 30 minutes of inactivity
PROMPT_SEPARATOR = "\n\n---\n\n"

#: Receives display text as the harness produces it.
OutputCallback = Callable[[str], None]


def combine_prompts(system_prompt: str, task_prompt: str) -> str:
    """Build the single prompt sent to harnesses without a system-prompt channel."""
    return f"{system_prompt}{PROMPT_SEPARATOR}{task_prompt}"


class HarnessAdapter(abc.ABC):
    """Common interface for AI coding agent CLI wrappers.

    Parameters
    ----------
    binary:
        Path or name of the harness CLI.  Defaults to :attr:`default_binary`.
    cwd:
        Working directory for the child process (the target repository).
    timeout:
        Seconds without any output before the child is killed.  ``0``
        disables the timeout.
    model:
        Model override forwarded with the harness's model flag.
    extra_args:
        Additional CLI flags forwarded verbatim.
    env_overrides:
        Extra environment variables for the child process.
    on_output:
        Callback receiving display text while the harness runs.
    """

    #: Registry key, also the capability-matrix row id.
    harness_id: str = "base"
    #: Human-readable name used in logs.
    name: str = "base"
    default_binary: str = ""

    def __init__(
        self,
        binary: str | None = None,
        *,
        cwd: str | Path | None = None,
        timeout: int = DEFAULT_TIMEOUT,
        model: str = "",
        extra_args: Sequence[str] | None = None,
        env_overrides: dict[str, str] | None = None,
        on_output: OutputCallback | None = None,
    ) -> None:
        self.binary = (binary or self.default_binary).strip() or self.default_binary
        self.cwd = Path(cwd).resolve() if cwd is not None else Path.cwd()
        self.timeout = max(0, int(timeout or 0))
        self.model = (model or "").strip()
        self.extra_args = [str(arg) for arg in (extra_args or []) if str(arg).strip()]
        self.env_overrides = env_overrides or {}
        self.on_output = on_output
        #: Usage of the most recent invocation; reset when a new one starts.
        self.last_usage = UsageRecord()
        self._last_command: list[str] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def invoke(self, system_prompt: str, task_prompt: str, debug: bool = False) -> InvocationResult:
        """Run the harness once and return its exit code and output."""
        return self._run(system_prompt, task_prompt, debug=debug, streaming=False)

    def invoke_streaming(
        self, system_prompt: str, task_prompt: str, debug: bool = False
    ) -> InvocationResult:
        """Run the harness parsing its event stream into display text and usage."""
        return self._run(system_prompt, task_prompt, debug=debug, streaming=True)

    # ------------------------------------------------------------------
    # Hooks for subclasses
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def _invoke(self, system_prompt: str, task_prompt: str, *, debug: bool) -> InvocationResult:
        """Non-streaming invocation."""

    def _invoke_streaming(
        self, system_prompt: str, task_prompt: str, *, debug: bool
    ) -> InvocationResult:
        """Streaming invocation; harnesses without a stream format run normally."""
        return self._invoke(system_prompt, task_prompt, debug=debug)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run(
        self,
        system_prompt: str,
        task_prompt: str,
        *,
        debug: bool,
        streaming: bool,
    ) -> InvocationResult:
        self.last_usage = UsageRecord()
        self._last_command = []
        meta = prompt_metadata(task_prompt)
        logger.info(
            "Invoking %s (streaming=%s, cwd=%s, prompt_len=%s, prompt_sha256=%s)",
            self.name,
            streaming,
            self.cwd,
            meta["length_chars"],
            meta["sha256"],
        )
        if streaming:
            result = self._invoke_streaming(system_prompt, task_prompt, debug=debug)
        else:
            result = self._invoke(system_prompt, task_prompt, debug=debug)
        result.harness_id = self.harness_id
        if not result.command:
            result.command = list(self._last_command)
        self.last_usage = result.usage
        logger.info(
            "%s finished (exit=%d, tokens=%d%s, %.1fs)",
            self.name,
            result.exit_code,
            result.usage.total_tokens,
            " estimated" if result.usage.estimated else "",
            result.duration_seconds,
        )
        return result

    def _command_prefix(self) -> list[str]:
        return [resolve_binary(self.binary)]

    def _with_model_and_extras(self, cmd: list[str], model_flag: str = "--model") -> list[str]:
        has_model_override = any(
            (arg or "").strip().lower() in {"--model", "-m"}
            or (arg or "").strip().lower().startswith("--model=")
            for arg in self.extra_args
        )
        if self.model and not has_model_override:
            cmd.extend([model_flag, self.model])
        cmd.extend(self.extra_args)
        return cmd

    def _execute(
        self,
        cmd: list[str],
        *,
        stdin_text: str | None,
        parse_line: Callable[[str], HarnessEvent | None] | None = None,
    ) -> StreamExecutionResult:
        """Spawn the harness, feeding stdout lines to *parse_line* as they arrive."""
        logger.debug("%s command: %s", self.name, " ".join(cmd))
        self._last_command = list(cmd)
        env = {**os.environ, **self.env_overrides}
        return execute_streaming_command(
            cmd=cmd,
            cwd=self.cwd,
            env=env,
            timeout_seconds=self.timeout,
            parse_stdout_line=parse_line or (lambda _line: None),
            process_name=self.name,
            stdin_text=stdin_text,
        )

    def _emit(self, text: str) -> None:
        if text and self.on_output is not None:
            self.on_output(text)

    def _result(
        self,
        execution: StreamExecutionResult,
        *,
        display_text: str,
        usage: UsageRecord | None = None,
        streamed: bool,
    ) -> InvocationResult:
        """Combine a finished execution into an :class:`InvocationResult`."""
        errors: list[str] = []
        if execution.spawn_error:
            errors.append(execution.spawn_error)
        if execution.timed_out:
            errors.append(
                f"{self.name} timed out after {self.timeout}s with no output activity"
            )
        if execution.exit_code != 0 and execution.stderr_text:
            errors.append(execution.stderr_text)
        if execution.exit_code != 0 and not errors:
            errors.append(
                f"{self.name} exited with status {execution.exit_code} "
                "but produced no explicit error output"
            )
        return InvocationResult(
            harness_id=self.harness_id,
            exit_code=execution.exit_code,
            display_text=display_text,
            usage=usage or UsageRecord(),
            streamed=streamed,
            timed_out=execution.timed_out,
            errors=errors,
            duration_seconds=execution.duration_seconds,
        )


# ── Registry ──────────────────────────────────────────────────────

_REGISTRY: dict[str, type[HarnessAdapter]] = {}

#: Preference order when the harness is ``auto``.
AUTO_DETECT_ORDER = ("claude", "opencode", "codex", "gemini")


def register_harness(key: str, cls: type[HarnessAdapter]) -> None:
    """Register a harness adapter class under a lookup key."""
    normalized_key = (key or "").strip().lower()
    if not normalized_key:
        raise ValueError("Harness key must be a non-empty string")
    if not isinstance(cls, type) or not issubclass(cls, HarnessAdapter):
        raise TypeError("Registered harness must be a HarnessAdapter subclass")

    existing = _REGISTRY.get(normalized_key)
    if existing is not None and existing is not cls:
        raise ValueError(
            f"Harness '{normalized_key}' is already registered with {existing.__name__}"
        )

    _REGISTRY[normalized_key] = cls


def _ensure_builtin_harnesses() -> None:
    # Adapter modules register themselves on import.
    import curb.claude_code  # noqa: F401
    import curb.codex_cli  # noqa: F401
    import curb.gemini_cli  # noqa: F401
    import curb.opencode  # noqa: F401


def get_harness_class(key: str) -> type[HarnessAdapter]:
    """Look up a registered harness adapter class by key."""
    _ensure_builtin_harnesses()
    normalized_key = (key or "").strip().lower()
    if normalized_key not in _REGISTRY:
        available = ", ".join(sorted(_REGISTRY)) or "(none)"
        raise KeyError(f"Unknown harness '{normalized_key}'. Available: {available}")
    return _REGISTRY[normalized_key]


def list_harnesses() -> list[str]:
    """Return all registered harness keys."""
    _ensure_builtin_harnesses()
    return sorted(_REGISTRY)


def create_harness(key: str, **kwargs) -> HarnessAdapter:
    """Instantiate the adapter registered under *key*."""
    return get_harness_class(key)(**kwargs)


def harness_available(harness_id: str | None = None, *, which=shutil.which) -> bool:
    """Return whether *harness_id* (or any known harness) has its binary on PATH."""
    if harness_id:
        try:
            binary = get_harness_class(harness_id).default_binary
        except KeyError:
            binary = harness_id
        return which(binary) is not None
    return detect_harness(None, which=which) is not None


def detect_harness(preferred: str | None = None, *, which=shutil.which) -> str | None:
    """Resolve the harness to use.

    An explicit choice wins unless it is ``auto``; otherwise the first harness
    in :data:`AUTO_DETECT_ORDER` whose binary is on PATH.  Returns ``None``
    when nothing is installed.
    """
    explicit = (preferred or "").strip().lower()
    if explicit and explicit != "auto":
        return explicit
    _ensure_builtin_harnesses()
    for key in AUTO_DETECT_ORDER:
        cls = _REGISTRY.get(key)
        if cls is not None and which(cls.default_binary):
            logger.debug("Auto-detected harness %s", key)
            return key
    return None


def harness_version(harness_id: str) -> str:
    """Return the version string reported by a harness binary."""
    try:
        binary = get_harness_class(harness_id).default_binary
    except KeyError:
        return "no harness"
    return run_version_command(binary)
