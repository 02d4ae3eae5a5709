"""CLI entrypoint for curb."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from curb.capabilities import DEFAULT_MATRIX
from curb.config import CurbConfig, FailurePolicy, curb_config_dir, curb_logs_dir, load_config
from curb.errors import CurbError
from curb.schemas import RunState, TaskStatus, exit_code_for
from curb.tasks import TaskGraph

logger = logging.getLogger("curb")


def _load_dotenv() -> None:
    """Load .env from the working directory or its parent."""
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_common_arguments(p: argparse.ArgumentParser, default: Any = None) -> None:
    p.add_argument(
        "--repo", default=default, help="Project directory (default: current directory)"
    )
    p.add_argument("--backlog", default=default, help="Backlog file (default: prd.json)")
    p.add_argument(
        "-v", "--verbose", action="store_true", default=default, help="Debug logging"
    )


def _add_filter_arguments(p: argparse.ArgumentParser, default: Any = None) -> None:
    p.add_argument("--epic", default=default, help="Only tasks whose parent is this epic")
    p.add_argument("--label", default=default, help="Only tasks carrying this label")


def _add_run_arguments(p: argparse.ArgumentParser, default: Any = None) -> None:
    p.add_argument(
        "--harness", default=default, help="claude, opencode, codex, gemini or auto"
    )
    p.add_argument("--budget", type=int, default=default, help="Token budget for this run")
    p.add_argument(
        "--warn-at", type=int, default=default, help="Warn once at this percentage of the budget"
    )
    p.add_argument(
        "--once", action="store_true", default=default, help="Run a single task, then stop"
    )
    p.add_argument("--max-iterations", type=int, default=default, help="Cap on invocations")
    _add_filter_arguments(p, default)
    p.add_argument(
        "--on-failure",
        choices=[policy.value for policy in FailurePolicy],
        default=default,
        help="What to do when the harness exits non-zero",
    )
    p.add_argument(
        "--timeout", type=int, default=default, help="Harness inactivity timeout in seconds"
    )
    p.add_argument("--model", default=default, help="Model override passed to the harness")
    p.add_argument("--name", default=default, help="Session name (default: random animal)")
    p.add_argument(
        "--debug",
        action="store_true",
        default=default,
        help="Pass the debug flag to the harness",
    )


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser.

    Options are accepted before or after the subcommand.  The subcommand
    copies default to ``SUPPRESS`` so they never overwrite a value given
    before the subcommand name.
    """
    p = argparse.ArgumentParser(
        prog="curb",
        description="curb - run AI coding harnesses over a task backlog within a token budget.",
    )
    _add_common_arguments(p)
    _add_run_arguments(p)
    sub = p.add_subparsers(dest="command")
    unset = argparse.SUPPRESS

    run_p = sub.add_parser("run", help="Work through the backlog (default command).")
    _add_common_arguments(run_p, unset)
    _add_run_arguments(run_p, unset)

    for name, help_text in (
        ("ready", "List tasks that are ready to run, in run order."),
        ("blocked", "List open tasks waiting on unfinished dependencies."),
        ("status", "Show backlog counts."),
        ("validate", "Check the backlog for problems."),
    ):
        cmd_p = sub.add_parser(name, help=help_text)
        _add_common_arguments(cmd_p, unset)
        if name == "ready":
            _add_filter_arguments(cmd_p, unset)

    harness_p = sub.add_parser("harnesses", help="Show harness capabilities and availability.")
    _add_common_arguments(harness_p, unset)
    return p


def _cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "harness": {
            "name": getattr(args, "harness", None),
            "model": getattr(args, "model", None),
            "timeout": getattr(args, "timeout", None),
        },
        "budget": {
            "default": getattr(args, "budget", None),
            "warn_at": getattr(args, "warn_at", None),
        },
        "loop": {
            "backlog": getattr(args, "backlog", None),
            "max_iterations": getattr(args, "max_iterations", None),
            "on_failure": getattr(args, "on_failure", None),
            "once": getattr(args, "once", None),
            "epic": getattr(args, "epic", None),
            "label": getattr(args, "label", None),
            "debug": getattr(args, "debug", None),
        },
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the requested command."""
    _load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )

    command = args.command or "run"
    try:
        repo = Path(args.repo or ".").resolve()
        if not repo.is_dir():
            raise CurbError(
                f"Project directory does not exist: {repo}",
                hint="Pass an existing directory with --repo.",
            )
        config = load_config(repo, cli_overrides=_cli_overrides(args))
        if command == "harnesses":
            return _cmd_harnesses(config)
        graph = TaskGraph.load(_backlog_path(repo, config))
        if command == "ready":
            return _cmd_ready(graph, epic=config.loop.epic, label=config.loop.label)
        if command == "blocked":
            return _cmd_blocked(graph)
        if command == "status":
            return _cmd_status(graph)
        if command == "validate":
            print(f"{graph.path}: {len(graph)} task(s), no problems found")
            return 0
        return _cmd_run(repo, graph, config, session_name=args.name)
    except CurbError as exc:
        _print_error(exc)
        return 1


def _backlog_path(repo: Path, config: CurbConfig) -> Path:
    path = Path(config.loop.backlog).expanduser()
    return path if path.is_absolute() else repo / path


def _print_error(exc: CurbError) -> None:
    print(f"Error: {exc}", file=sys.stderr)
    if exc.hint:
        print(f"Hint: {exc.hint}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_ready(graph: TaskGraph, *, epic: str | None, label: str | None) -> int:
    ready = graph.ready_tasks(epic=epic, label=label)
    if not ready:
        print("No ready tasks.")
        return 0
    for task in ready:
        print(f"  {task.priority.value}  {task.id:<12}  {task.title}")
    return 0


def _cmd_blocked(graph: TaskGraph) -> int:
    blocked = graph.blocked_tasks()
    if not blocked:
        print("No blocked tasks.")
        return 0
    closed = {task.id for task in graph if task.status == TaskStatus.CLOSED}
    for task in blocked:
        waiting = [dep for dep in task.depends_on if dep not in closed]
        print(f"  {task.id:<12}  {task.title}  (waiting on: {', '.join(waiting)})")
    return 0


def _cmd_status(graph: TaskGraph) -> int:
    counts = graph.counts()
    print(f"\n  Backlog: {graph.path}")
    print(f"  Tasks:   {counts['total']} total")
    print(
        f"           {counts['open']} open, {counts['in_progress']} in progress, "
        f"{counts['closed']} closed"
    )
    print(f"  Ready:   {len(graph.ready_tasks())}")
    print(f"  Blocked: {len(graph.blocked_tasks())}")
    print()
    return 0


def _cmd_harnesses(config: CurbConfig) -> int:
    from curb.harness import detect_harness, get_harness_class, harness_available, harness_version

    print(f"\n  {'Harness':<10}  {'Stream':<6}  {'Tokens':<6}  {'SysPmt':<6}  {'Auto':<6}  Installed")
    print(f"  {'-' * 10}  {'-' * 6}  {'-' * 6}  {'-' * 6}  {'-' * 6}  {'-' * 30}")
    for harness_id in DEFAULT_MATRIX.harness_ids():
        row = DEFAULT_MATRIX.capabilities_of(harness_id)
        flags = [
            "yes" if value else "-"
            for value in (row.streaming, row.token_reporting, row.system_prompt, row.auto_mode)
        ]
        installed = "no"
        if harness_available(harness_id):
            installed = harness_version(harness_id)
        binary = config.harness.binaries.get(harness_id) or get_harness_class(harness_id).default_binary
        print(
            f"  {harness_id:<10}  {flags[0]:<6}  {flags[1]:<6}  {flags[2]:<6}  {flags[3]:<6}  "
            f"{installed} ({binary})"
        )
    detected = detect_harness(config.harness.name)
    print(f"\n  Selected: {detected or 'none installed'} (configured: {config.harness.name})\n")
    return 0


def _cmd_run(
    repo: Path,
    graph: TaskGraph,
    config: CurbConfig,
    *,
    session_name: str | None,
) -> int:
    from curb.harness import create_harness, detect_harness
    from curb.hooks import HookRunner
    from curb.loop import LoopOrchestrator
    from curb.run_log import RunLog
    from curb.session import Session

    harness_id = detect_harness(config.harness.name)
    if harness_id is None:
        raise CurbError(
            "No harness available: none of claude, opencode, codex or gemini is on PATH",
            hint="Install one of the supported CLIs or pass --harness with an explicit choice.",
        )
    try:
        adapter = create_harness(
            harness_id,
            binary=config.harness.binaries.get(harness_id),
            cwd=repo,
            timeout=config.harness.timeout,
            model=config.harness.model,
            extra_args=config.extra_args_for(harness_id),
            on_output=_print_output,
        )
    except KeyError as exc:
        raise CurbError(str(exc.args[0]), hint="Run `curb harnesses` to list them.") from exc

    session = Session.create(session_name, harness_id=harness_id)
    logger.info("Session %s using %s in %s", session.id, adapter.name, repo)
    run_log = RunLog(curb_logs_dir(), repo.name, session.id)
    hooks = HookRunner(
        repo,
        user_hooks_dir=curb_config_dir() / "hooks",
        enabled=config.hooks.enabled,
        fail_fast=config.hooks.fail_fast,
        timeout=config.hooks.timeout,
    )
    orchestrator = LoopOrchestrator(
        repo,
        graph,
        adapter,
        config=config,
        session=session,
        hooks=hooks,
        run_log=run_log,
    )

    def _on_sigint(signum, frame) -> None:
        # First Ctrl-C finishes the current task; a second one aborts.
        signal.signal(signal.SIGINT, signal.default_int_handler)
        orchestrator.request_stop()

    previous_handler = signal.signal(signal.SIGINT, _on_sigint)
    try:
        state = orchestrator.run()
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    _print_summary(state, run_log, orchestrator.artifacts.run_dir)
    if orchestrator.failure is not None:
        _print_error(orchestrator.failure)
    return exit_code_for(state.stop_reason)


def _print_output(text: str) -> None:
    print(text, flush=True)


def _print_summary(state: RunState, run_log: Any, artifacts_dir: Path) -> None:
    totals = state.totals
    print("\n" + "=" * 60)
    print("  curb - Run Summary")
    print("=" * 60)
    print(f"  Session:     {state.session_id}")
    print(f"  Harness:     {state.harness_id}")
    print(f"  Iterations:  {len(state.iterations)}")
    print(f"  Stop reason: {state.stop_reason.value if state.stop_reason else 'unknown'}")
    estimated = " (includes estimates)" if totals.estimated else ""
    print(f"  Tokens:      {state.budget_used:,} of {state.budget_limit or 0:,}{estimated}")
    if totals.cost_usd:
        print(f"  Cost:        ${totals.cost_usd:.4f}")
    print(f"  State file:  {state.state_path()}")
    print(f"  Log file:    {run_log.path}")
    print(f"  Artifacts:   {artifacts_dir}")
    print("=" * 60)

    if state.iterations:
        print(f"\n  {'#':>3}  {'Task':<12}  {'Exit':>4}  {'Tokens':>9}  {'Status':<11}")
        print(f"  {'-' * 3}  {'-' * 12}  {'-' * 4}  {'-' * 9}  {'-' * 11}")
        for record in state.iterations:
            status = record.final_status.value if record.final_status else "-"
            print(
                f"  {record.iteration:>3}  {record.task_id:<12}  {record.exit_code:>4}  "
                f"{record.usage.total_tokens:>9,}  {status:<11}"
            )
    print()


if __name__ == "__main__":
    sys.exit(main())
