"""Tests for CLI entrypoint dispatch and command handlers."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

import curb.__main__ as main_module
import curb.harness as harness_module
from curb.harness import HarnessAdapter
from curb.schemas import InvocationResult, UsageRecord


class _ScriptedAdapter(HarnessAdapter):
    harness_id = "scripted"
    name = "Scripted"
    default_binary = "scripted"

    def _invoke(self, system_prompt, task_prompt, *, debug):
        self._emit("working on it")
        return InvocationResult(
            exit_code=0, usage=UsageRecord(input_tokens=10, output_tokens=20)
        )


@pytest.fixture()
def repo(tmp_path: Path, monkeypatch) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg-data"))
    for var in ("CURB_BUDGET", "CURB_MAX_ITERATIONS", "CURB_HARNESS", "HARNESS", "CURB_MODEL"):
        monkeypatch.delenv(var, raising=False)
    return path


def _write_backlog(repo: Path, tasks: list[dict]) -> None:
    (repo / "prd.json").write_text(json.dumps({"prefix": "prd", "tasks": tasks}), encoding="utf-8")


def _task(task_id: str, **fields) -> dict:
    data = {"id": task_id, "title": f"Task {task_id}", "status": "open"}
    data.update(fields)
    return data


def test_main_entrypoint_source_is_ascii_safe() -> None:
    source_text = Path(main_module.__file__).read_text(encoding="utf-8")
    assert source_text.isascii()


def test_parser_defaults_to_run_command() -> None:
    args = main_module._build_parser().parse_args(["--budget", "500", "--once"])
    assert args.command is None
    overrides = main_module._cli_overrides(args)
    assert overrides["budget"]["default"] == 500
    assert overrides["loop"]["once"] is True
    assert overrides["loop"]["epic"] is None


def test_options_before_subcommand_are_kept() -> None:
    parser = main_module._build_parser()

    args = parser.parse_args(["--budget", "5", "--repo", "/x", "run"])
    assert args.command == "run"
    assert args.budget == 5
    assert args.repo == "/x"

    args = parser.parse_args(["--epic", "e1", "ready", "--label", "ui"])
    assert args.epic == "e1"
    assert args.label == "ui"

    args = parser.parse_args(["run", "--budget", "7"])
    assert args.budget == 7


def test_repo_before_subcommand_reads_that_backlog(repo, tmp_path, monkeypatch, capsys) -> None:
    _write_backlog(repo, [_task("a"), _task("b")])
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    monkeypatch.chdir(elsewhere)

    assert main_module.main(["--repo", str(repo), "status"]) == 0
    assert "2 total" in capsys.readouterr().out


def test_budget_before_run_subcommand_is_enforced(repo, monkeypatch, capsys) -> None:
    _write_backlog(repo, [_task("a"), _task("b")])
    monkeypatch.setattr(harness_module, "detect_harness", lambda *_a, **_k: "scripted")
    monkeypatch.setattr(
        harness_module, "create_harness", lambda key, **kw: _ScriptedAdapter(**kw)
    )

    rc = main_module.main(["--budget", "5", "--repo", str(repo), "run"])

    out = capsys.readouterr().out
    assert rc == 0
    assert "Stop reason: budget_exceeded" in out
    assert "30 of 5" in out


def test_validate_reports_success(repo, capsys) -> None:
    _write_backlog(repo, [_task("a"), _task("b", dependsOn=["a"])])
    rc = main_module.main(["validate", "--repo", str(repo)])
    assert rc == 0
    assert "2 task(s), no problems found" in capsys.readouterr().out


def test_validate_reports_problems_with_hint(repo, capsys) -> None:
    _write_backlog(repo, [_task("a", dependsOn=["ghost"])])
    rc = main_module.main(["validate", "--repo", str(repo)])
    err = capsys.readouterr().err
    assert rc == 1
    assert "Error: Backlog validation failed" in err
    assert "a: depends on unknown task 'ghost'" in err
    assert "Hint:" in err


def test_missing_repo_directory(tmp_path, capsys) -> None:
    rc = main_module.main(["status", "--repo", str(tmp_path / "nope")])
    assert rc == 1
    assert "Project directory does not exist" in capsys.readouterr().err


def test_ready_and_blocked_listings(repo, capsys) -> None:
    _write_backlog(
        repo,
        [
            _task("low", priority="P3"),
            _task("high", priority="P0"),
            _task("later", dependsOn=["high"]),
        ],
    )

    assert main_module.main(["ready", "--repo", str(repo)]) == 0
    out = capsys.readouterr().out
    assert out.index("high") < out.index("low")
    assert "later" not in out

    assert main_module.main(["blocked", "--repo", str(repo)]) == 0
    assert "(waiting on: high)" in capsys.readouterr().out


def test_status_counts(repo, capsys) -> None:
    _write_backlog(repo, [_task("a", status="closed"), _task("b")])
    assert main_module.main(["status", "--repo", str(repo)]) == 0
    out = capsys.readouterr().out
    assert "2 total" in out
    assert "1 open, 0 in progress, 1 closed" in out


def test_harnesses_table(repo, monkeypatch, capsys) -> None:
    monkeypatch.setattr(harness_module, "harness_available", lambda *_a, **_k: False)
    monkeypatch.setattr(harness_module, "detect_harness", lambda *_a, **_k: None)

    assert main_module.main(["harnesses", "--repo", str(repo)]) == 0

    out = capsys.readouterr().out
    for harness_id in ("claude", "opencode", "codex", "gemini"):
        assert harness_id in out
    assert "Selected: none installed (configured: auto)" in out


def test_run_without_any_harness(repo, monkeypatch, capsys) -> None:
    _write_backlog(repo, [_task("a")])
    monkeypatch.setattr(harness_module, "detect_harness", lambda *_a, **_k: None)

    rc = main_module.main(["run", "--repo", str(repo)])

    assert rc == 1
    assert "No harness available" in capsys.readouterr().err


def test_run_end_to_end(repo, monkeypatch, capsys) -> None:
    _write_backlog(repo, [_task("a"), _task("b", dependsOn=["a"])])
    created: dict = {}

    def _create(key, **kwargs):
        created["key"] = key
        created["kwargs"] = kwargs
        return _ScriptedAdapter(**kwargs)

    monkeypatch.setattr(harness_module, "detect_harness", lambda *_a, **_k: "scripted")
    monkeypatch.setattr(harness_module, "create_harness", _create)

    rc = main_module.main(["--repo", str(repo), "--budget", "5000", "--name", "e2e"])

    captured = capsys.readouterr()
    assert rc == 0
    assert created["key"] == "scripted"
    assert created["kwargs"]["cwd"] == repo.resolve()
    assert "working on it" in captured.out
    assert "Run Summary" in captured.out
    assert "Stop reason: complete" in captured.out
    assert "60 of 5,000" in captured.out
    backlog = json.loads((repo / "prd.json").read_text(encoding="utf-8"))
    assert [t["status"] for t in backlog["tasks"]] == ["closed", "closed"]
    assert list((repo / ".curb" / "runs").glob("e2e-*.json"))


def test_run_reports_invocation_failure(repo, monkeypatch, capsys) -> None:
    _write_backlog(repo, [_task("a")])

    class _Failing(_ScriptedAdapter):
        def _invoke(self, system_prompt, task_prompt, *, debug):
            return InvocationResult(exit_code=3, errors=["boom"])

    monkeypatch.setattr(harness_module, "detect_harness", lambda *_a, **_k: "scripted")
    monkeypatch.setattr(harness_module, "create_harness", lambda key, **kw: _Failing(**kw))

    rc = main_module.main(["run", "--repo", str(repo)])

    captured = capsys.readouterr()
    assert rc == 1
    assert "Stop reason: invocation_failed" in captured.out
    assert "Error: Harness 'scripted' exited with status 3 on task a" in captured.err
    assert "loop.on_failure" in captured.err
