"""Interface to Anthropic Claude Code CLI (``claude``)."""

from __future__ import annotations

import json
import logging
from typing import Any

from curb.harness import HarnessAdapter, register_harness
from curb.runner_common import parse_json_line
from curb.schemas import EventKind, HarnessEvent, InvocationResult
from curb.usage import UsageAccumulator

logger = logging.getLogger(__name__)


class ClaudeCodeAdapter(HarnessAdapter):
    """Spawn ``claude -p`` with the task prompt on stdin.

    Claude Code's non-interactive mode works as follows::

        claude -p --output-format json          # single JSON blob
        claude -p --output-format stream-json   # streaming JSONL

    The system prompt travels separately through ``--append-system-prompt``.
    In streaming mode usage is reported on every assistant message and summed;
    the final ``result`` event carries the cumulative dollar cost.
    """

    harness_id = "claude"
    name = "Claude Code"
    default_binary = "claude"

    # ------------------------------------------------------------------
    # Command building
    # ------------------------------------------------------------------

    def build_command(self, system_prompt: str, *, streaming: bool, debug: bool) -> list[str]:
        cmd = self._command_prefix()
        cmd.extend(["-p", "--append-system-prompt", system_prompt])
        # Skip interactive permission prompts.
        cmd.append("--dangerously-skip-permissions")
        if streaming:
            cmd.extend(["--verbose", "--output-format", "stream-json"])
        else:
            cmd.extend(["--output-format", "json"])
        if debug:
            cmd.append("--debug")
        return self._with_model_and_extras(cmd)

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    def _invoke(self, system_prompt: str, task_prompt: str, *, debug: bool) -> InvocationResult:
        cmd = self.build_command(system_prompt, streaming=False, debug=debug)
        execution = self._execute(cmd, stdin_text=task_prompt)

        accumulator = UsageAccumulator()
        payload: dict[str, Any] | None = None
        try:
            loaded = json.loads(execution.stdout_text) if execution.stdout_text else None
        except json.JSONDecodeError:
            loaded = None
        if isinstance(loaded, dict):
            payload = loaded

        if payload is None:
            # Not JSON (usually an error message): show it as-is.
            display_text = execution.stdout_text
        else:
            _add_usage(accumulator, payload.get("usage"))
            accumulator.set_cost(_cost_of(payload))
            display_text = _result_text(payload)

        self._emit(display_text)
        return self._result(
            execution,
            display_text=display_text,
            usage=accumulator.record(),
            streamed=False,
        )

    def _invoke_streaming(
        self, system_prompt: str, task_prompt: str, *, debug: bool
    ) -> InvocationResult:
        cmd = self.build_command(system_prompt, streaming=True, debug=debug)
        parser = ClaudeStreamParser(on_text=self._emit)
        execution = self._execute(cmd, stdin_text=task_prompt, parse_line=parser.feed)
        return self._result(
            execution,
            display_text=parser.display_text,
            usage=parser.usage.record(),
            streamed=True,
        )


class ClaudeStreamParser:
    """Incremental parser for ``--output-format stream-json`` lines.

    Each call to :meth:`feed` handles one line, updates the running usage
    totals, and forwards any display text to *on_text*.
    """

    def __init__(self, on_text=None) -> None:
        self.usage = UsageAccumulator()
        self.on_text = on_text
        self._chunks: list[str] = []
        self._last_was_delta = False

    @property
    def display_text(self) -> str:
        return "\n".join(chunk for chunk in self._chunks if chunk).strip()

    def feed(self, line: str) -> HarnessEvent | None:
        data = parse_json_line(line)
        if data is None:
            return None
        etype = str(data.get("type") or "").strip().lower()

        if etype in {"assistant", "message"}:
            message = data.get("message")
            usage_raw = data.get("usage")
            if not isinstance(usage_raw, dict) and isinstance(message, dict):
                usage_raw = message.get("usage")
            if isinstance(usage_raw, dict):
                _add_usage(self.usage, usage_raw)
            text = _message_text(message)
            return self._event(EventKind.TEXT, data, text)

        if etype == "content_block_start":
            block = data.get("content_block")
            if isinstance(block, dict) and block.get("type") == "tool_use":
                return self._event(EventKind.TOOL, data, f"▶ {block.get('name') or 'tool'}")
            return self._event(EventKind.UNKNOWN, data, None)

        if etype == "content_block_delta":
            delta = data.get("delta")
            if isinstance(delta, dict) and delta.get("type") == "text_delta":
                return self._event(
                    EventKind.TEXT, data, str(delta.get("text") or ""), continues=True
                )
            return self._event(EventKind.UNKNOWN, data, None)

        if etype == "result":
            self.usage.set_cost(_cost_of(data))
            return self._event(EventKind.RESULT, data, _result_text(data))

        if etype == "system":
            message = data.get("message")
            return self._event(EventKind.SYSTEM, data, message if isinstance(message, str) else None)

        if etype == "error" or "error" in data:
            return self._event(EventKind.ERROR, data, _error_text(data))

        return self._event(EventKind.UNKNOWN, data, None)

    def _event(
        self,
        kind: EventKind,
        raw: dict[str, Any],
        text: str | None,
        *,
        continues: bool = False,
    ) -> HarnessEvent:
        if text:
            if continues and self._last_was_delta and self._chunks:
                self._chunks[-1] += text
            else:
                self._chunks.append(text)
        self._last_was_delta = continues
        if text and self.on_text is not None:
            self.on_text(text)
        return HarnessEvent(kind=kind, raw=raw, text=text or None)


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------


def _add_usage(accumulator: UsageAccumulator, usage_raw: Any) -> None:
    if not isinstance(usage_raw, dict):
        return
    accumulator.add(
        input_tokens=usage_raw.get("input_tokens", 0),
        output_tokens=usage_raw.get("output_tokens", 0),
        cache_read_tokens=usage_raw.get("cache_read_input_tokens", 0),
        cache_creation_tokens=usage_raw.get("cache_creation_input_tokens", 0),
    )


def _cost_of(data: dict[str, Any]) -> Any:
    # Newer CLI builds renamed the field.
    cost = data.get("cost_usd")
    if cost is None:
        cost = data.get("total_cost_usd")
    return cost


def _message_text(message: Any) -> str | None:
    """Join the text blocks of an assistant message."""
    if isinstance(message, str):
        return message
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return None
    texts = [
        str(block.get("text") or "")
        for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    return "\n".join(t for t in texts if t).strip() or None


def _result_text(data: dict[str, Any]) -> str:
    result = data.get("result")
    if isinstance(result, str):
        return result
    if isinstance(result, dict):
        return str(result.get("text") or result.get("content") or "")
    content = data.get("content")
    return content if isinstance(content, str) else ""


def _error_text(data: dict[str, Any]) -> str | None:
    for key in ("error", "message", "text"):
        val = data.get(key)
        if isinstance(val, str) and val.strip():
            return val.strip()
        if isinstance(val, dict):
            nested = val.get("message") or val.get("text")
            if isinstance(nested, str) and nested.strip():
                return nested.strip()
    return None


# ── Register with the harness registry ───────────────────────────
register_harness("claude", ClaudeCodeAdapter)
