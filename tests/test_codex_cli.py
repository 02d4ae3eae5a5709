"""Unit tests for the Codex adapter."""

from __future__ import annotations

import json

from curb.codex_cli import CodexAdapter, CodexStreamParser, _classify_event
from curb.harness import combine_prompts
from curb.runner_common import StreamExecutionResult
from curb.schemas import EventKind


def _fake_execute(lines, captured):
    def _execute(cmd, *, stdin_text, parse_line=None):
        captured["cmd"] = cmd
        captured["stdin_text"] = stdin_text
        if parse_line is not None:
            for line in lines:
                parse_line(line)
        return StreamExecutionResult(
            events=[], raw_lines=list(lines), stderr_lines=[], exit_code=0, timed_out=False
        )

    return _execute


def test_build_command_streaming_reads_stdin():
    cmd = CodexAdapter().build_command(streaming=True)
    assert cmd[1:] == ["exec", "--json", "--full-auto", "-"]


def test_build_command_plain_with_model():
    cmd = CodexAdapter(model="o3").build_command(streaming=False)
    assert cmd[1:] == ["exec", "--full-auto", "--model", "o3", "-"]


def test_classify_nested_and_flat_events():
    assert _classify_event({"type": "item.completed", "item": {"type": "agent_message"}}) == EventKind.TEXT
    assert _classify_event({"type": "item.started", "item": {"type": "command_execution"}}) == EventKind.TOOL
    assert _classify_event({"type": "turn.completed"}) == EventKind.STEP_FINISH
    assert _classify_event({"type": "thread.started"}) == EventKind.SYSTEM
    assert _classify_event({"type": "agent_message"}) == EventKind.TEXT
    assert _classify_event({"type": "turn_failed"}) == EventKind.ERROR
    assert _classify_event({"type": "mystery"}) == EventKind.UNKNOWN


def test_stream_parser_sums_turn_usage():
    parser = CodexStreamParser()
    parser.feed(json.dumps({"type": "turn.completed", "usage": {"input_tokens": 100, "output_tokens": 200, "cached_input_tokens": 40}}))
    parser.feed(json.dumps({"type": "turn.completed", "usage": {"input_tokens": 50, "output_tokens": 75}}))

    record = parser.usage.record()

    assert record.input_tokens == 150
    assert record.output_tokens == 275
    assert record.cache_read_tokens == 40


def test_stream_parser_collects_display_text():
    seen: list[str] = []
    parser = CodexStreamParser(on_text=seen.append)
    parser.feed(json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": "Edited the file"}}))
    parser.feed(
        json.dumps(
            {
                "type": "item.completed",
                "item": {"type": "command_execution", "command": "ls", "exit_code": 0},
            }
        )
    )
    parser.feed(json.dumps({"type": "turn.started"}))
    parser.feed("garbage")

    assert seen == ["Edited the file", "[exec: ls] (exit 0)"]
    assert parser.display_text == "Edited the file\n[exec: ls] (exit 0)"


def test_streaming_invoke_sends_combined_prompt(monkeypatch):
    adapter = CodexAdapter()
    captured: dict = {}
    lines = [json.dumps({"type": "turn.completed", "usage": {"input_tokens": 7, "output_tokens": 8}})]
    monkeypatch.setattr(adapter, "_execute", _fake_execute(lines, captured))

    result = adapter.invoke_streaming("SYS", "TASK")

    assert captured["stdin_text"] == combine_prompts("SYS", "TASK")
    assert "--json" in captured["cmd"]
    assert result.streamed is True
    assert result.usage.total_tokens == 15


def test_plain_invoke_passes_output_through(monkeypatch):
    seen: list[str] = []
    adapter = CodexAdapter(on_output=seen.append)
    monkeypatch.setattr(adapter, "_execute", _fake_execute(["hello", "world"], {}))

    result = adapter.invoke("SYS", "TASK")

    assert result.display_text == "hello\nworld"
    assert seen == ["hello", "world"]
    assert result.streamed is False
    assert result.usage.is_zero()
