"""Interface to the OpenAI Codex CLI (``codex exec``)."""

from __future__ import annotations

import logging
from typing import Any

from curb.harness import HarnessAdapter, combine_prompts, register_harness
from curb.runner_common import parse_json_line
from curb.schemas import EventKind, HarnessEvent, InvocationResult
from curb.usage import UsageAccumulator

logger = logging.getLogger(__name__)


class CodexAdapter(HarnessAdapter):
    """Spawn ``codex exec`` reading the prompt from stdin (``-``).

    Codex has no system-prompt flag, so the system and task prompts are
    combined into one.  Streaming mode adds ``--json`` and parses the JSONL
    event stream; each ``turn.completed`` event reports usage for that turn
    and the per-turn figures are summed.
    """

    harness_id = "codex"
    name = "Codex"
    default_binary = "codex"

    def build_command(self, *, streaming: bool) -> list[str]:
        cmd = self._command_prefix()
        cmd.append("exec")
        if streaming:
            cmd.append("--json")
        cmd.append("--full-auto")
        self._with_model_and_extras(cmd)
        # Read the prompt from stdin.
        cmd.append("-")
        return cmd

    def _invoke(self, system_prompt: str, task_prompt: str, *, debug: bool) -> InvocationResult:
        cmd = self.build_command(streaming=False)
        lines: list[str] = []

        def _pass_through(line: str) -> None:
            lines.append(line)
            self._emit(line)

        execution = self._execute(
            cmd,
            stdin_text=combine_prompts(system_prompt, task_prompt),
            parse_line=_pass_through,
        )
        return self._result(
            execution,
            display_text="\n".join(lines).strip(),
            streamed=False,
        )

    def _invoke_streaming(
        self, system_prompt: str, task_prompt: str, *, debug: bool
    ) -> InvocationResult:
        cmd = self.build_command(streaming=True)
        parser = CodexStreamParser(on_text=self._emit)
        execution = self._execute(
            cmd,
            stdin_text=combine_prompts(system_prompt, task_prompt),
            parse_line=parser.feed,
        )
        return self._result(
            execution,
            display_text=parser.display_text,
            usage=parser.usage.record(),
            streamed=True,
        )


class CodexStreamParser:
    """Incremental parser for ``codex exec --json`` output."""

    def __init__(self, on_text=None) -> None:
        self.usage = UsageAccumulator()
        self.on_text = on_text
        self._chunks: list[str] = []

    @property
    def display_text(self) -> str:
        return "\n".join(self._chunks).strip()

    def feed(self, line: str) -> HarnessEvent | None:
        data = parse_json_line(line)
        if data is None:
            return None
        kind = _classify_event(data)
        if kind == EventKind.STEP_FINISH:
            _add_usage(self.usage, data)
        text = _extract_text(data, kind)
        if text:
            self._chunks.append(text)
            if self.on_text is not None:
                self.on_text(text)
        return HarnessEvent(kind=kind, raw=data, text=text)


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------


def _classify_event(data: dict[str, Any]) -> EventKind:
    """Map a raw JSON object to one of the known event kinds.

    Codex CLI 0.98+ uses a nested structure::

        {"type": "item.completed", "item": {"type": "agent_message", ...}}
        {"type": "turn.completed", "usage": {...}}

    Earlier versions used flat ``{"type": "agent_message", ...}``.
    """
    etype = str(data.get("type") or data.get("event") or "").lower()

    if etype in ("item.completed", "item.started"):
        item = data.get("item") or {}
        item_type = str(item.get("type") or "").lower().replace(".", "_").replace("-", "_")
        nested_map: dict[str, EventKind] = {
            "agent_message": EventKind.TEXT,
            "message": EventKind.TEXT,
            "command_execution": EventKind.TOOL,
            "file_change": EventKind.TOOL,
            "file_edit": EventKind.TOOL,
            "error": EventKind.ERROR,
        }
        return nested_map.get(item_type, EventKind.UNKNOWN)

    if etype == "turn.completed":
        return EventKind.STEP_FINISH

    if etype in ("thread.started", "turn.started"):
        return EventKind.SYSTEM

    etype_norm = etype.replace(".", "_").replace("-", "_")
    flat_map: dict[str, EventKind] = {
        "agent_message": EventKind.TEXT,
        "message": EventKind.TEXT,
        "output_text": EventKind.TEXT,
        "command_exec": EventKind.TOOL,
        "command_execution": EventKind.TOOL,
        "exec_command": EventKind.TOOL,
        "turn_completed": EventKind.STEP_FINISH,
        "turn_failed": EventKind.ERROR,
        "error": EventKind.ERROR,
    }
    return flat_map.get(etype_norm, EventKind.UNKNOWN)


def _extract_text(data: dict[str, Any], kind: EventKind) -> str | None:
    """Pull human-readable text from an event payload."""
    if kind not in {EventKind.TEXT, EventKind.TOOL, EventKind.ERROR}:
        return None

    item = data.get("item")
    if isinstance(item, dict):
        if item.get("type") == "command_execution":
            cmd = item.get("command", "")
            if cmd:
                return f"[exec: {str(cmd)[:200]}] (exit {item.get('exit_code', '?')})"

        if isinstance(item.get("text"), str) and item["text"].strip():
            return item["text"]

        content = item.get("content")
        if isinstance(content, list):
            parts = [
                block.get("text") or ""
                for block in content
                if isinstance(block, dict) and block.get("text")
            ]
            joined = "\n".join(parts).strip()
            if joined:
                return joined

    if kind == EventKind.TOOL and isinstance(data.get("command"), str):
        return f"[exec: {data['command'][:200]}] (exit {data.get('exit_code', '?')})"

    for key in ("text", "message", "content", "output"):
        val = data.get(key)
        if isinstance(val, str) and val.strip():
            return val
        if isinstance(val, dict):
            nested = val.get("message") or val.get("text")
            if isinstance(nested, str) and nested.strip():
                return nested
    error = data.get("error")
    if isinstance(error, dict):
        return error.get("message") or None
    if isinstance(error, str) and error.strip():
        return error
    return None


def _add_usage(accumulator: UsageAccumulator, data: dict[str, Any]) -> None:
    """Add the usage of one ``turn.completed`` event."""
    usage_raw = data.get("usage")
    if not isinstance(usage_raw, dict):
        nested = data.get("data")
        usage_raw = nested.get("usage") if isinstance(nested, dict) else None
    if not isinstance(usage_raw, dict):
        return
    accumulator.add(
        input_tokens=usage_raw.get("input_tokens", 0),
        output_tokens=usage_raw.get("output_tokens", 0),
        cache_read_tokens=usage_raw.get("cached_input_tokens", 0),
    )


register_harness("codex", CodexAdapter)
