"""Tests for the backlog task graph: validation, readiness, ordering and mutations."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from curb.errors import ValidationError
from curb.schemas import Priority, TaskStatus
from curb.tasks import TaskGraph, validate_backlog


def _task(task_id: str, **fields) -> dict:
    data = {"id": task_id, "title": f"Task {task_id}", "status": "open"}
    data.update(fields)
    return data


def _write_backlog(tmp_path: Path, tasks: list[dict], **extra) -> Path:
    path = tmp_path / "prd.json"
    path.write_text(json.dumps({"prefix": "prd", **extra, "tasks": tasks}), encoding="utf-8")
    return path


class TestReadiness:
    def test_task_is_ready_once_dependencies_are_closed(self):
        graph = TaskGraph.from_dict(
            {
                "tasks": [
                    _task("a", status="closed"),
                    _task("b", dependsOn=["a"]),
                    _task("c", dependsOn=["b"]),
                ]
            }
        )
        assert [t.id for t in graph.ready_tasks()] == ["b"]
        assert [t.id for t in graph.blocked_tasks()] == ["c"]

    def test_in_progress_and_closed_tasks_are_never_ready(self):
        graph = TaskGraph.from_dict(
            {"tasks": [_task("a", status="in_progress"), _task("b", status="closed")]}
        )
        assert graph.ready_tasks() == []
        assert graph.next_task() is None

    def test_ready_tasks_sorted_by_priority_with_stable_ties(self):
        graph = TaskGraph.from_dict(
            {
                "tasks": [
                    _task("x", priority="P2"),
                    _task("y", priority="P0"),
                    _task("z", priority="P2"),
                    _task("w", priority="P4"),
                ]
            }
        )
        assert [t.id for t in graph.ready_tasks()] == ["y", "x", "z", "w"]
        assert graph.next_task().id == "y"

    def test_next_task_honours_exclusions(self):
        graph = TaskGraph.from_dict(
            {"tasks": [_task("x", priority="P0"), _task("y", priority="P1")]}
        )
        assert graph.next_task(exclude={"x"}).id == "y"
        assert graph.next_task(exclude={"x", "y"}) is None

    def test_circular_dependencies_block_both_tasks(self):
        graph = TaskGraph.from_dict(
            {"tasks": [_task("a", dependsOn=["b"]), _task("b", dependsOn=["a"])]}
        )
        assert graph.ready_tasks() == []
        assert {t.id for t in graph.blocked_tasks()} == {"a", "b"}
        assert graph.next_task() is None

    def test_epic_and_label_filters(self):
        graph = TaskGraph.from_dict(
            {
                "tasks": [
                    _task("a", parent="epic-1", labels=["backend"]),
                    _task("b", parent="epic-2", labels=["frontend"]),
                    _task("c", parent="epic-1", labels=["frontend"]),
                ]
            }
        )
        assert [t.id for t in graph.ready_tasks(epic="epic-1")] == ["a", "c"]
        assert [t.id for t in graph.ready_tasks(label="frontend")] == ["b", "c"]
        assert [t.id for t in graph.ready_tasks(epic="epic-1", label="frontend")] == ["c"]

    def test_counts_and_all_complete(self):
        graph = TaskGraph.from_dict(
            {
                "tasks": [
                    _task("a", status="closed"),
                    _task("b", status="in_progress"),
                    _task("c"),
                ]
            }
        )
        assert graph.counts() == {"total": 3, "open": 1, "in_progress": 1, "closed": 1}
        assert graph.all_complete() is False
        assert TaskGraph.from_dict({"tasks": [_task("a", status="closed")]}).all_complete()


class TestValidation:
    def test_valid_backlog_has_no_problems(self):
        assert validate_backlog({"tasks": [_task("a"), _task("b", dependsOn=["a"])]}) == []

    def test_reports_every_problem(self):
        problems = validate_backlog(
            {
                "tasks": [
                    {"id": "t1", "status": "open"},
                    _task("t2", dependsOn=["nope"]),
                    _task("t2"),
                    _task("t3", status="done"),
                    _task("t4", priority="P9"),
                ]
            }
        )
        assert "t1: missing required field(s) title" in problems
        assert "t2: depends on unknown task 'nope'" in problems
        assert "duplicate task id 't2'" in problems
        assert any(p.startswith("t3: invalid status 'done'") for p in problems)
        assert any(p.startswith("t4: invalid priority 'P9'") for p in problems)

    def test_missing_tasks_array(self):
        assert validate_backlog({"prefix": "prd"}) == ["backlog is missing the 'tasks' array"]
        assert validate_backlog([]) == ["backlog must be a JSON object with a 'tasks' array"]

    def test_from_dict_raises_validation_error(self):
        with pytest.raises(ValidationError) as excinfo:
            TaskGraph.from_dict({"tasks": [_task("a", dependsOn=["ghost"])]}, source="prd.json")
        assert excinfo.value.problems == ["a: depends on unknown task 'ghost'"]
        assert "prd.json" in str(excinfo.value)
        assert "curb validate" in excinfo.value.hint

    def test_non_string_dependency_entries_are_reported(self):
        data = {
            "tasks": [
                _task("a", dependsOn=[{"id": "b"}, "ghost"]),
                _task("b", dependsOn=[["a"]]),
            ]
        }
        assert validate_backlog(data) == [
            "a: dependsOn entries must be task id strings",
            "a: depends on unknown task 'ghost'",
            "b: dependsOn entries must be task id strings",
        ]
        with pytest.raises(ValidationError) as excinfo:
            TaskGraph.from_dict(data)
        assert len(excinfo.value.problems) == 3

    def test_load_rejects_invalid_json(self, tmp_path: Path):
        path = tmp_path / "prd.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValidationError) as excinfo:
            TaskGraph.load(path)
        assert "not valid JSON" in excinfo.value.problems[0]

    def test_load_missing_file(self, tmp_path: Path):
        with pytest.raises(ValidationError) as excinfo:
            TaskGraph.load(tmp_path / "missing.json")
        assert excinfo.value.problems[0].startswith("cannot read backlog")


class TestMutations:
    def test_update_status_persists_to_disk(self, tmp_path: Path):
        path = _write_backlog(tmp_path, [_task("a")])
        graph = TaskGraph.load(path)

        graph.update_status("a", TaskStatus.IN_PROGRESS)
        graph.update_status("a", "closed")

        on_disk = json.loads(path.read_text(encoding="utf-8"))
        assert on_disk["tasks"][0]["status"] == "closed"
        assert TaskGraph.load(path).get("a").status == TaskStatus.CLOSED

    def test_closed_is_terminal(self):
        graph = TaskGraph.from_dict({"tasks": [_task("a", status="closed")]})
        with pytest.raises(ValueError, match="cannot move from closed to open"):
            graph.update_status("a", "open")

    def test_in_progress_can_return_to_open(self):
        graph = TaskGraph.from_dict({"tasks": [_task("a", status="in_progress")]})
        assert graph.update_status("a", "open").status == TaskStatus.OPEN

    def test_invalid_status_and_unknown_task(self):
        graph = TaskGraph.from_dict({"tasks": [_task("a")]})
        with pytest.raises(ValueError, match="Invalid status"):
            graph.update_status("a", "finished")
        with pytest.raises(KeyError):
            graph.update_status("zzz", "closed")

    def test_add_note_appends_timestamped_line(self):
        graph = TaskGraph.from_dict({"tasks": [_task("a", notes="first")]})
        graph.add_note("a", "harness failed")
        notes = graph.get("a").notes
        assert notes.startswith("first\n[")
        assert notes.endswith("] harness failed")

    def test_create_task_generates_prefixed_id_and_saves(self, tmp_path: Path):
        path = _write_backlog(tmp_path, [_task("prd-0001")])
        graph = TaskGraph.load(path)

        task = graph.create_task("Add login", priority="P1", depends_on=["prd-0001"])

        assert task.id.startswith("prd-")
        assert len(task.id) == len("prd-") + 4
        assert task.priority == Priority.P1
        assert TaskGraph.load(path).get(task.id) is not None

    def test_create_task_with_unknown_dependency_is_rejected(self):
        graph = TaskGraph.from_dict({"tasks": [_task("a")]})
        with pytest.raises(ValidationError):
            graph.create_task("Broken", depends_on=["ghost"])
        assert len(graph) == 1

    def test_save_preserves_extra_keys_and_alias(self, tmp_path: Path):
        path = _write_backlog(tmp_path, [_task("a"), _task("b", dependsOn=["a"])], project="demo")
        graph = TaskGraph.load(path)
        graph.save()

        on_disk = json.loads(path.read_text(encoding="utf-8"))
        assert on_disk["project"] == "demo"
        assert on_disk["prefix"] == "prd"
        assert on_disk["tasks"][1]["dependsOn"] == ["a"]
        assert "depends_on" not in on_disk["tasks"][1]

    def test_reload_picks_up_external_edits(self, tmp_path: Path):
        path = _write_backlog(tmp_path, [_task("a")])
        graph = TaskGraph.load(path)
        _write_backlog(tmp_path, [_task("a", status="closed")])

        graph.reload()

        assert graph.get("a").status == TaskStatus.CLOSED

    def test_export_beads_command(self):
        graph = TaskGraph.from_dict({"tasks": [_task("a", title="Add login", priority="P1")]})
        assert graph.export_beads_command("a") == (
            "bd create --title='Add login' --type=task --priority=P1 --description=''"
        )
