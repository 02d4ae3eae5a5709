"""Tests for per-task artifact bundles."""

from __future__ import annotations

import json
import shutil
import subprocess
import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from curb.artifacts import ArtifactStore
from curb.schemas import Task, UsageRecord

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX file modes")


def _git(repo: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)


def _init_repo(repo: Path, *, commit: bool = True) -> None:
    repo.mkdir(parents=True, exist_ok=True)
    _git(repo, "init")
    _git(repo, "config", "user.name", "Test User")
    _git(repo, "config", "user.email", "test@example.com")
    (repo / "app.py").write_text("print('v1')\n", encoding="utf-8")
    if commit:
        _git(repo, "add", "-A")
        _git(repo, "commit", "-m", "init")


def _task(**fields) -> Task:
    data = {"id": "prd-a1b2", "title": "Add login", "status": "open", "priority": "P1"}
    data.update(fields)
    return Task.model_validate(data)


def _read_json(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


class TestLayout:
    def test_directories_follow_session_and_task(self, tmp_path: Path):
        store = ArtifactStore(tmp_path, "owl-20240101-120000")
        assert store.run_dir == tmp_path / ".curb" / "runs" / "owl-20240101-120000"
        assert store.task_dir("prd-1") == store.run_dir / "tasks" / "prd-1"

    @pytest.mark.parametrize("bad", ["", "  ", "..", "a/b", "a\\b"])
    def test_unsafe_ids_are_rejected(self, tmp_path: Path, bad: str):
        store = ArtifactStore(tmp_path, "owl-1")
        with pytest.raises(ValueError):
            store.task_dir(bad)
        with pytest.raises(ValueError):
            ArtifactStore(tmp_path, bad)


class TestRunAndTaskFiles:
    def test_run_json_lifecycle(self, tmp_path: Path):
        store = ArtifactStore(tmp_path, "owl-1")
        path = store.init_run("owl", {"budget": {"default": 500}})

        data = _read_json(path)
        assert data["run_id"] == "owl-1"
        assert data["session_name"] == "owl"
        assert data["status"] == "in_progress"
        assert data["config"] == {"budget": {"default": 500}}

        store.finish_run("budget_exceeded", budget={"used": 600, "limit": 500})
        data = _read_json(path)
        assert data["status"] == "budget_exceeded"
        assert data["budget"] == {"used": 600, "limit": 500}
        assert data["started_at"] <= data["finished_at"]

    def test_task_json_counts_attempts_and_records_outcome(self, tmp_path: Path):
        store = ArtifactStore(tmp_path, "owl-1")
        path = store.start_task(_task())
        first = _read_json(path)
        assert first["title"] == "Add login"
        assert first["priority"] == "P1"
        assert first["status"] == "in_progress"
        assert first["attempts"] == 1

        store.start_task(_task())
        store.finish_task(
            "prd-a1b2",
            status="closed",
            exit_code=0,
            usage=UsageRecord(input_tokens=10, output_tokens=20),
        )
        data = _read_json(path)
        assert data["attempts"] == 2
        assert data["started_at"] == first["started_at"]
        assert data["status"] == "closed"
        assert data["exit_code"] == 0
        assert data["usage"]["input_tokens"] == 10
        assert "finished_at" in data

    def test_plan_and_commands(self, tmp_path: Path):
        store = ArtifactStore(tmp_path, "owl-1")
        plan = store.capture_plan("prd-1", "## Plan\n1. Step one")
        assert plan.read_text(encoding="utf-8") == "## Plan\n1. Step one\n"

        store.capture_command("prd-1", "claude -p", 0, output="done", duration=1.23456)
        entry = store.capture_command("prd-1", "pytest", 1, output="x" * 5000)
        assert len(entry["output"]) == 4000

        lines = (store.task_dir("prd-1") / "commands.jsonl").read_text(encoding="utf-8").splitlines()
        records = [json.loads(line) for line in lines]
        assert [r["command"] for r in records] == ["claude -p", "pytest"]
        assert records[0]["duration"] == 1.235
        assert records[1]["exit_code"] == 1

    def test_empty_plan_or_command_is_rejected(self, tmp_path: Path):
        store = ArtifactStore(tmp_path, "owl-1")
        with pytest.raises(ValueError, match="plan content"):
            store.capture_plan("prd-1", "  \n")
        with pytest.raises(ValueError, match="command"):
            store.capture_command("prd-1", "", 0)

    def test_corrupt_task_json_is_replaced(self, tmp_path: Path):
        store = ArtifactStore(tmp_path, "owl-1")
        task_dir = store.task_dir("prd-a1b2")
        task_dir.mkdir(parents=True)
        (task_dir / "task.json").write_text("{broken", encoding="utf-8")
        assert _read_json(store.start_task(_task()))["attempts"] == 1

    @posix_only
    def test_private_permissions(self, tmp_path: Path):
        store = ArtifactStore(tmp_path, "owl-1")
        store.start_task(_task())
        store.capture_plan("prd-a1b2", "plan")
        store.capture_command("prd-a1b2", "make", 0)
        task_dir = store.task_dir("prd-a1b2")
        assert task_dir.stat().st_mode & 0o777 == 0o700
        for name in ("task.json", "plan.md", "commands.jsonl"):
            assert (task_dir / name).stat().st_mode & 0o777 == 0o600


class TestDiffCapture:
    def test_outside_git_nothing_is_written(self, tmp_path: Path):
        store = ArtifactStore(tmp_path, "owl-1")
        with patch("curb.artifacts.is_repo", return_value=False):
            assert store.capture_diff("prd-1") is None
        assert not store.run_dir.exists()

    def test_falls_back_to_plain_diff_without_head(self, tmp_path: Path):
        calls = []

        def _fake_git(*args, cwd, check=True):
            calls.append(args)
            if args == ("diff", "HEAD"):
                return SimpleNamespace(returncode=128, stdout="")
            return SimpleNamespace(returncode=0, stdout="diff --git a/x b/x\n")

        store = ArtifactStore(tmp_path, "owl-1")
        with patch("curb.artifacts.is_repo", return_value=True), patch(
            "curb.artifacts._run_git", side_effect=_fake_git
        ):
            path = store.capture_diff("prd-1")

        assert calls == [("diff", "HEAD"), ("diff",)]
        assert path is not None
        assert path.read_text(encoding="utf-8") == "diff --git a/x b/x\n"

    @pytest.mark.integration
    @needs_git
    def test_changes_patch_holds_uncommitted_edits(self, tmp_path: Path):
        repo = tmp_path / "repo"
        _init_repo(repo)
        (repo / "app.py").write_text("print('v2')\n", encoding="utf-8")

        path = ArtifactStore(repo, "owl-1").capture_diff("prd-1")

        assert path is not None
        patch_text = path.read_text(encoding="utf-8")
        assert "-print('v1')" in patch_text
        assert "+print('v2')" in patch_text

    @pytest.mark.integration
    @needs_git
    def test_clean_repo_gives_empty_patch(self, tmp_path: Path):
        repo = tmp_path / "repo"
        _init_repo(repo)
        path = ArtifactStore(repo, "owl-1").capture_diff("prd-1")
        assert path is not None
        assert path.read_text(encoding="utf-8") == ""
