"""Tests for shared models: stop reasons, usage totals and run state persistence."""

from __future__ import annotations

from pathlib import Path

import pytest

from curb.schemas import (
    InvocationResult,
    RunState,
    StopReason,
    Task,
    UsageRecord,
    UsageTotals,
    exit_code_for,
)


@pytest.mark.parametrize(
    "reason,code",
    [
        (StopReason.COMPLETE, 0),
        (StopReason.BUDGET_EXCEEDED, 0),
        (StopReason.SINGLE_ITERATION, 0),
        (StopReason.MAX_ITERATIONS, 0),
        (StopReason.USER_ABORT, 0),
        (StopReason.INVOCATION_FAILED, 1),
        (StopReason.STATE_VERIFICATION_FAILED, 1),
        (StopReason.NO_HARNESS, 1),
        (None, 0),
    ],
)
def test_exit_code_for(reason, code):
    assert exit_code_for(reason) == code


def test_task_reads_and_writes_depends_on_alias():
    task = Task.model_validate({"id": "a", "title": "A", "dependsOn": ["b"], "custom": 1})
    assert task.depends_on == ["b"]
    stored = task.to_store_dict()
    assert stored["dependsOn"] == ["b"]
    assert stored["custom"] == 1
    assert "parent" not in stored


def test_usage_totals_accumulate():
    totals = UsageTotals()
    totals.add(UsageRecord(input_tokens=1, output_tokens=2, cost_usd=0.5))
    totals.add(UsageRecord(input_tokens=3, output_tokens=4, estimated=True))
    assert totals.total_tokens == 10
    assert totals.cost_usd == pytest.approx(0.5)
    assert totals.estimated is True
    assert totals.invocations == 2


def test_invocation_success_follows_exit_code():
    assert InvocationResult(exit_code=0).success
    assert not InvocationResult(exit_code=1).success
    assert not InvocationResult().success


def test_run_state_round_trip_and_bad_files(tmp_path: Path):
    state = RunState(repo_path=str(tmp_path), session_name="owl", session_id="owl-1")
    state.stop_reason = StopReason.COMPLETE
    state.save()

    loaded = RunState.load(tmp_path, "owl-1")
    assert loaded is not None
    assert loaded.stop_reason == StopReason.COMPLETE

    assert RunState.load(tmp_path, "missing") is None
    state.state_path().write_text("", encoding="utf-8")
    assert RunState.load(tmp_path, "owl-1") is None
    state.state_path().write_text("{bad", encoding="utf-8")
    assert RunState.load(tmp_path, "owl-1") is None
