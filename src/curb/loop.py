"""Loop orchestrator.

The :class:`LoopOrchestrator` repeatedly picks the highest-priority ready
task, hands it to the harness, charges the reported usage against the
budget, checks the repository state and closes the task, until the backlog
is done or a stop condition fires.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from pathlib import Path

from curb.artifacts import ArtifactStore
from curb.capabilities import DEFAULT_MATRIX, Capability, CapabilityMatrix
from curb.config import CurbConfig, FailurePolicy
from curb.errors import CurbError, InvocationError, StateVerificationFailure
from curb.git_tools import GitError
from curb.harness import HarnessAdapter
from curb.hooks import HookRunner
from curb.ledger import UsageLedger
from curb.run_log import RunLog
from curb.schemas import (
    InvocationResult,
    IterationRecord,
    RunState,
    StopReason,
    Task,
    TaskStatus,
    exit_code_for,
)
from curb.session import Session
from curb.state import StateVerifier
from curb.tasks import TaskGraph

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prompt builders
# ---------------------------------------------------------------------------

SYSTEM_PROMPT_FILES = ("PROMPT.md", ".curb/PROMPT.md")

DEFAULT_SYSTEM_PROMPT = """\
You are an autonomous coding agent working through a task backlog, one task
per session.

Rules:
- Work only on the task you are given. Do not start other tasks.
- Keep changes small and focused; follow the conventions already in the code.
- Run the project's tests and linters before finishing and fix what you broke.
- Commit all of your changes with a descriptive message before you exit.
  The working tree must be clean when you are done.
- When the task is finished, set its "status" to "closed" in the backlog
  file. If you cannot finish it, leave a note explaining what is missing.
"""


def load_system_prompt(repo_path: str | Path) -> str:
    """Return the project's PROMPT.md (or .curb/PROMPT.md), else the built-in prompt."""
    root = Path(repo_path)
    for name in SYSTEM_PROMPT_FILES:
        path = root / name
        if path.is_file():
            text = path.read_text(encoding="utf-8").strip()
            if text:
                logger.debug("Using system prompt from %s", path)
                return text
    return DEFAULT_SYSTEM_PROMPT


def build_task_prompt(task: Task, backlog_path: str | Path | None = None) -> str:
    """Render the prompt describing one task."""
    parts: list[str] = [
        "## CURRENT TASK",
        "",
        f"Task ID: {task.id}",
        f"Type: {task.type.value}",
        f"Priority: {task.priority.value}",
        f"Title: {task.title}",
    ]
    if task.labels:
        parts.append(f"Labels: {', '.join(task.labels)}")
    if task.parent:
        parts.append(f"Epic: {task.parent}")
    if task.depends_on:
        parts.append(f"Depends on (all closed): {', '.join(task.depends_on)}")
    if task.description.strip():
        parts.extend(["", "### Description", task.description.strip()])
    if task.notes.strip():
        parts.extend(["", "### Notes", task.notes.strip()])
    parts.append("")
    if backlog_path:
        parts.append(
            f'When this task is complete, set its "status" to "closed" in {backlog_path} '
            "and commit your changes."
        )
    else:
        parts.append("When this task is complete, commit your changes.")
    return "\n".join(parts)


# ---------------------------------------------------------------------------
# Main orchestrator
# ---------------------------------------------------------------------------


class LoopOrchestrator:
    """Drives harness invocations over a task backlog.

    Parameters
    ----------
    repo_path:
        Repository the harness works in.
    graph:
        The backlog.  It is reloaded from disk after every invocation.
    adapter:
        Harness adapter used for every task.
    config:
        Merged configuration; defaults when omitted.
    session:
        Run identity; a fresh one when omitted.
    matrix:
        Capability table deciding between streaming and plain invocation.
    ledger, verifier, hooks, artifacts:
        Collaborators, built from *config* when omitted.
    run_log:
        Structured event sink; nothing is logged there when omitted.
    """

    def __init__(
        self,
        repo_path: str | Path,
        graph: TaskGraph,
        adapter: HarnessAdapter,
        *,
        config: CurbConfig | None = None,
        session: Session | None = None,
        matrix: CapabilityMatrix = DEFAULT_MATRIX,
        ledger: UsageLedger | None = None,
        verifier: StateVerifier | None = None,
        hooks: HookRunner | None = None,
        run_log: RunLog | None = None,
        artifacts: ArtifactStore | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        if not self.repo_path.is_dir():
            raise FileNotFoundError(f"Repository path does not exist: {self.repo_path}")

        self.config = config or CurbConfig()
        self.graph = graph
        self.adapter = adapter
        session = session or Session.create(harness_id=adapter.harness_id)
        if session.harness_id != adapter.harness_id:
            session = session.with_harness(adapter.harness_id)
        self.session = session
        self.matrix = matrix
        self.ledger = ledger or UsageLedger(
            self.config.budget.default, warn_threshold=self.config.budget.warn_at
        )
        self.verifier = verifier or StateVerifier(
            self.repo_path,
            require_commit=self.config.clean_state.require_commit,
            require_tests=self.config.clean_state.require_tests,
            test_command=self.config.test_command_args(),
        )
        self.hooks = hooks or HookRunner(
            self.repo_path,
            enabled=self.config.hooks.enabled,
            fail_fast=self.config.hooks.fail_fast,
            timeout=self.config.hooks.timeout,
        )
        self.run_log = run_log
        self.artifacts = artifacts or ArtifactStore(self.repo_path, self.session.id)
        self.system_prompt = system_prompt or load_system_prompt(self.repo_path)

        #: The error that ended the run, when it ended in failure.
        self.failure: CurbError | None = None
        self._stop_requested = False
        self._skipped: set[str] = set()
        self._retries: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Ask the loop to stop before it starts another task."""
        logger.info("Stop requested; finishing the current task first")
        self._stop_requested = True

    def run(self) -> RunState:
        """Execute the loop and return the final run state."""
        loop_cfg = self.config.loop
        state = RunState(
            repo_path=str(self.repo_path),
            session_name=self.session.name,
            session_id=self.session.id,
            harness_id=self.session.harness_id,
            backlog_path=str(self.graph.path or ""),
            budget_limit=self.ledger.limit,
        )
        streaming = self.matrix.supports(self.session.harness_id, Capability.STREAMING)
        logger.info(
            "Starting loop: session=%s, harness=%s (streaming=%s), budget=%d tokens, "
            "max_iterations=%d%s",
            self.session.id,
            self.session.harness_id,
            streaming,
            self.ledger.limit,
            loop_cfg.max_iterations,
            ", single iteration" if loop_cfg.once else "",
        )
        self._log(
            "loop_start",
            {
                "harness": self.session.harness_id,
                "streaming": streaming,
                "budget": self.ledger.limit,
                "max_iterations": loop_cfg.max_iterations,
                "counts": self.graph.counts(),
            },
        )
        self._artifact(
            self.artifacts.init_run, self.session.name, self.config.model_dump(mode="json")
        )
        self._hook("pre-loop")

        try:
            state.stop_reason = self._loop(state, streaming=streaming)
        finally:
            state.finished_at = dt.datetime.now(dt.timezone.utc).isoformat()
            state.totals = self.ledger.totals.model_copy()
            state.budget_used = self.ledger.used
            state.save()
            self._artifact(
                self.artifacts.finish_run,
                state.stop_reason.value if state.stop_reason else "error",
                budget=self.ledger.snapshot(),
            )

        logger.info(
            "Loop finished: %s (%d iteration(s), %d tokens used of %d)",
            state.stop_reason.value,
            len(state.iterations),
            self.ledger.used,
            self.ledger.limit,
        )
        self._log(
            "loop_end",
            {
                "stop_reason": state.stop_reason.value,
                "exit_code": exit_code_for(state.stop_reason),
                "iterations": len(state.iterations),
                "budget": self.ledger.snapshot(),
                "counts": self.graph.counts(),
            },
        )
        self._hook("post-loop", exit_code=exit_code_for(state.stop_reason))
        return state

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _loop(self, state: RunState, *, streaming: bool) -> StopReason:
        loop_cfg = self.config.loop
        while True:
            # -- SelectTask --
            if self._stop_requested:
                return StopReason.USER_ABORT
            task = self.graph.next_task(loop_cfg.epic, loop_cfg.label, exclude=self._skipped)
            if task is None:
                self._report_leftovers()
                return StopReason.COMPLETE
            if len(state.iterations) >= loop_cfg.max_iterations:
                logger.info("Reached max_iterations (%d)", loop_cfg.max_iterations)
                return StopReason.MAX_ITERATIONS

            iteration = len(state.iterations) + 1
            logger.info("──── Iteration %d: %s %s ────", iteration, task.id, task.title)

            # -- Invoke --
            self.graph.update_status(task.id, TaskStatus.IN_PROGRESS)
            prompt = build_task_prompt(task, self.graph.path)
            self._log("task_start", {"iteration": iteration, "task_id": task.id, "title": task.title})
            self._artifact(self.artifacts.start_task, task)
            self._artifact(self.artifacts.capture_plan, task.id, prompt)
            self._hook("pre-task", task_id=task.id, task_title=task.title)
            result = self._invoke(prompt, streaming=streaming)
            self._artifact(
                self.artifacts.capture_command,
                task.id,
                " ".join(result.command) or self.session.harness_id,
                result.exit_code,
                output=result.display_text or "\n".join(result.errors),
                duration=result.duration_seconds,
            )
            record = IterationRecord(
                iteration=iteration,
                task_id=task.id,
                task_title=task.title,
                exit_code=result.exit_code,
                streamed=result.streamed,
                usage=result.usage,
                duration_seconds=result.duration_seconds,
                errors=list(result.errors),
            )
            state.iterations.append(record)

            # -- RecordUsage --
            self._record_usage(result)
            self._reload_backlog()

            # -- EnforceBudget --
            if self.ledger.check_over_budget():
                logger.warning(
                    "Budget exceeded: %d of %d tokens used; stopping",
                    self.ledger.used,
                    self.ledger.limit,
                )
                self._log("budget_exceeded", self.ledger.snapshot())
                self._finish_iteration(state, record, task.id, result)
                return StopReason.BUDGET_EXCEEDED

            if not result.success:
                stop = self._handle_failure(task, result)
                self._finish_iteration(state, record, task.id, result)
                if stop is not None:
                    return stop
                if loop_cfg.once:
                    return StopReason.SINGLE_ITERATION
                continue

            # -- VerifyState --
            try:
                verdict = self.verifier.verify()
            except StateVerificationFailure as exc:
                record.verified = False
                self._log("state_verification", {"task_id": task.id, "passed": False, "error": str(exc)})
                self._log_error(
                    f"State verification failed after {task.id}",
                    {"task_id": task.id, "detail": exc.detail},
                )
                self._hook("on-error", task_id=task.id, task_title=task.title, exit_code=result.exit_code)
                self.failure = exc
                self._finish_iteration(state, record, task.id, result)
                return StopReason.STATE_VERIFICATION_FAILED
            record.verified = verdict.passed
            self._log("state_verification", {"task_id": task.id, **verdict.to_dict()})
            if verdict.tests_ran:
                self._artifact(
                    self.artifacts.capture_command,
                    task.id,
                    " ".join(verdict.test_command),
                    verdict.test_exit_code if verdict.test_exit_code is not None else -1,
                    output=verdict.test_summary,
                )

            # -- Finalize --
            current = self.graph.get(task.id)
            if current is not None and current.status == TaskStatus.IN_PROGRESS:
                self.graph.update_status(task.id, TaskStatus.CLOSED)
            self._finish_iteration(state, record, task.id, result)

            if loop_cfg.once:
                return StopReason.SINGLE_ITERATION

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _invoke(self, prompt: str, *, streaming: bool) -> InvocationResult:
        debug = self.config.loop.debug
        if streaming:
            return self.adapter.invoke_streaming(self.system_prompt, prompt, debug)
        return self.adapter.invoke(self.system_prompt, prompt, debug)

    def _record_usage(self, result: InvocationResult) -> None:
        charged = self.ledger.record_usage(result.usage)
        logger.info(
            "Usage: %d in / %d out%s; budget %d/%d (%d%%)",
            result.usage.input_tokens,
            result.usage.output_tokens,
            " (estimated)" if result.usage.estimated else "",
            self.ledger.used,
            self.ledger.limit,
            self.ledger.percent_used(),
        )
        if charged == 0 and not self.matrix.supports(
            self.session.harness_id, Capability.TOKEN_REPORTING
        ):
            logger.debug("%s does not report tokens; nothing charged", self.session.harness_id)
        if self.ledger.check_warning():
            logger.warning(
                "Budget warning: %d%% of %d tokens used",
                self.ledger.percent_used(),
                self.ledger.limit,
            )
            self._log("budget_warning", self.ledger.snapshot())

    def _reload_backlog(self) -> None:
        """Pick up edits the harness made to the backlog file."""
        try:
            self.graph.reload()
        except CurbError as exc:
            # Keep the in-memory graph; the next write will restore a valid file.
            logger.warning("Could not reload backlog after invocation: %s", exc)

    def _handle_failure(self, task: Task, result: InvocationResult) -> StopReason | None:
        """Apply the failure policy; return a stop reason or None to continue."""
        policy = self.config.loop.on_failure
        logger.error(
            "Harness %s failed on %s (exit %d)%s",
            self.session.harness_id,
            task.id,
            result.exit_code,
            f": {result.errors[0][:300]}" if result.errors else "",
        )
        self._log_error(
            f"Harness {self.session.harness_id} failed on {task.id}",
            {
                "task_id": task.id,
                "exit_code": result.exit_code,
                "timed_out": result.timed_out,
                "errors": result.errors[:3],
                "policy": policy.value,
            },
        )
        self._hook("on-error", task_id=task.id, task_title=task.title, exit_code=result.exit_code)

        if policy == FailurePolicy.STOP:
            self.failure = InvocationError(
                self.session.harness_id, result.exit_code, task_id=task.id
            )
            return StopReason.INVOCATION_FAILED

        current = self.graph.get(task.id)
        if current is not None and current.status == TaskStatus.IN_PROGRESS:
            self.graph.update_status(task.id, TaskStatus.OPEN)

        if policy == FailurePolicy.RETRY:
            attempts = self._retries.get(task.id, 0) + 1
            self._retries[task.id] = attempts
            if attempts <= self.config.loop.max_retries:
                logger.info(
                    "Retrying %s (attempt %d of %d)",
                    task.id,
                    attempts,
                    self.config.loop.max_retries,
                )
                return None
            logger.warning("Giving up on %s after %d retries", task.id, attempts - 1)

        self._skipped.add(task.id)
        logger.info("Skipping %s for the rest of this run", task.id)
        return None

    def _finish_iteration(
        self,
        state: RunState,
        record: IterationRecord,
        task_id: str,
        result: InvocationResult,
    ) -> None:
        current = self.graph.get(task_id)
        record.final_status = current.status if current is not None else None
        self._artifact(self.artifacts.capture_diff, task_id)
        self._artifact(
            self.artifacts.finish_task,
            task_id,
            status=record.final_status.value if record.final_status else "missing",
            exit_code=result.exit_code,
            usage=result.usage,
        )
        self._log(
            "task_end",
            {
                "iteration": record.iteration,
                "task_id": task_id,
                "exit_code": result.exit_code,
                "status": record.final_status.value if record.final_status else None,
                "usage": result.usage.to_query_dict(),
                "duration_seconds": round(result.duration_seconds, 2),
            },
        )
        self._hook(
            "post-task",
            task_id=task_id,
            task_title=record.task_title,
            exit_code=result.exit_code,
        )
        state.totals = self.ledger.totals.model_copy()
        state.budget_used = self.ledger.used
        state.save()

    def _report_leftovers(self) -> None:
        if self.graph.all_complete():
            logger.info("All tasks closed")
            return
        blocked = self.graph.blocked_tasks()
        if blocked:
            logger.warning(
                "No ready tasks; %d task(s) blocked on unfinished dependencies: %s",
                len(blocked),
                ", ".join(task.id for task in blocked),
            )
        if self._skipped:
            logger.warning("Skipped after failures: %s", ", ".join(sorted(self._skipped)))

    def _hook(self, name: str, **context: object) -> None:
        self.hooks.run(
            name,
            session_id=self.session.id,
            harness=self.session.harness_id,
            **context,
        )

    def _log(self, event_type: str, data: dict) -> None:
        if self.run_log is not None:
            self.run_log.write(event_type, data)

    def _log_error(self, message: str, context: dict) -> None:
        if self.run_log is not None:
            self.run_log.error(message, context)

    def _artifact(self, action: Callable[..., object], *args: object, **kwargs: object) -> None:
        """Write an artifact; failures are logged and never stop the run."""
        try:
            action(*args, **kwargs)
        except (OSError, GitError, ValueError) as exc:
            logger.warning("Could not write %s artifact: %s", action.__name__, exc)
