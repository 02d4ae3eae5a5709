"""Tests for shared runner helpers."""

from __future__ import annotations

import os
import stat
import subprocess
import sys
from pathlib import Path

import pytest

import curb.runner_common as runner_common_module
from curb.runner_common import (
    SPAWN_FAILURE_EXIT_CODE,
    coerce_float,
    coerce_int,
    execute_streaming_command,
    iter_json_events,
    parse_json_line,
    prompt_metadata,
    resolve_binary,
)
from curb.schemas import EventKind, HarnessEvent


def _make_executable(tmp_path: Path, name: str) -> Path:
    path = tmp_path / name
    if os.name == "nt":
        path.write_text("@echo off\r\nexit /b 0\r\n", encoding="utf-8")
    else:
        path.write_text("#!/usr/bin/env sh\nexit 0\n", encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return path


def _run_python(tmp_path: Path, script: str, **kwargs):
    kwargs.setdefault("timeout_seconds", 30)
    kwargs.setdefault("parse_stdout_line", lambda _line: None)
    return execute_streaming_command(
        cmd=[sys.executable, "-c", script],
        cwd=tmp_path,
        env=dict(os.environ),
        process_name="test-harness",
        **kwargs,
    )


def test_coerce_int_handles_loose_values() -> None:
    assert coerce_int(float("nan")) == 0
    assert coerce_int(float("inf")) == 0
    assert coerce_int("1,024") == 1024
    assert coerce_int("12.7") == 12
    assert coerce_int("") == 0
    assert coerce_int(None) == 0
    assert coerce_int(object()) == 0


def test_coerce_float() -> None:
    assert coerce_float("$1.50") == 1.5
    assert coerce_float(2) == 2.0
    assert coerce_float("null") is None
    assert coerce_float(True) is None
    assert coerce_float(float("nan")) is None
    assert coerce_float([1]) is None


def test_parse_json_line_only_accepts_objects() -> None:
    assert parse_json_line('{"type": "text"}') == {"type": "text"}
    assert parse_json_line("   ") is None
    assert parse_json_line("[1, 2]") is None
    assert parse_json_line("{broken") is None


def test_iter_json_events_skips_bad_lines() -> None:
    lines = ['{"a": 1}', "noise", "", '{"b": 2}', "42"]
    assert list(iter_json_events(lines)) == [{"a": 1}, {"b": 2}]


def test_prompt_metadata_never_contains_prompt() -> None:
    meta = prompt_metadata("secret prompt")
    assert meta["length_chars"] == len("secret prompt")
    assert len(str(meta["sha256"])) == 16
    assert "secret" not in str(meta)


def test_resolve_binary_accepts_wrapped_quotes(tmp_path: Path) -> None:
    tool = _make_executable(tmp_path, "harness tool.cmd" if os.name == "nt" else "harness tool")
    resolved = resolve_binary(f'"{tool}"')
    assert Path(resolved).resolve() == tool.resolve()


def test_resolve_binary_keeps_unknown_names() -> None:
    assert resolve_binary("definitely-not-installed-xyz") == "definitely-not-installed-xyz"
    assert resolve_binary("  ") == ""


def test_streaming_process_isolation_kwargs_matches_platform() -> None:
    kwargs = runner_common_module._streaming_process_isolation_kwargs()
    if os.name == "nt":
        expected_flag = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        if expected_flag:
            assert int(kwargs.get("creationflags") or 0) & expected_flag
    else:
        assert kwargs.get("start_new_session") is True


@pytest.mark.integration
def test_execute_streams_stdout_and_captures_stderr(tmp_path: Path) -> None:
    script = (
        "import sys\n"
        "data = sys.stdin.read()\n"
        "print('got:' + data.strip(), flush=True)\n"
        "print('problem', file=sys.stderr, flush=True)\n"
        "sys.exit(3)\n"
    )
    seen: list[str] = []

    def _parse(line: str) -> HarnessEvent | None:
        seen.append(line)
        return HarnessEvent(kind=EventKind.TEXT, text=line)

    result = _run_python(tmp_path, script, stdin_text="hello", parse_stdout_line=_parse)

    assert result.exit_code == 3
    assert result.timed_out is False
    assert seen == ["got:hello"]
    assert result.stdout_text == "got:hello"
    assert result.stderr_text == "problem"
    assert [event.text for event in result.events] == ["got:hello"]


@pytest.mark.integration
def test_execute_limits_captured_output(tmp_path: Path) -> None:
    script = "for i in range(30):\n    print(f'line-{i}', flush=True)\n"
    result = _run_python(tmp_path, script, max_stdout_lines=5)
    assert result.exit_code == 0
    assert result.raw_lines == [f"line-{i}" for i in range(25, 30)]
    assert result.dropped == {"stdout": 25}


@pytest.mark.integration
def test_execute_reports_spawn_failure(tmp_path: Path) -> None:
    result = execute_streaming_command(
        cmd=[str(tmp_path / "missing-binary")],
        cwd=tmp_path,
        env=dict(os.environ),
        timeout_seconds=5,
        parse_stdout_line=lambda _line: None,
        process_name="missing",
        stdin_text="prompt",
    )
    assert result.exit_code == SPAWN_FAILURE_EXIT_CODE
    assert result.spawn_error.startswith("Failed to start missing")


@pytest.mark.integration
def test_execute_kills_inactive_process(tmp_path: Path) -> None:
    script = "import time\nprint('starting', flush=True)\ntime.sleep(30)\n"
    result = _run_python(tmp_path, script, timeout_seconds=1)
    assert result.timed_out is True
    assert result.exit_code == -1
    assert result.raw_lines == ["starting"]
    assert result.duration_seconds < 20
