"""Interface to the OpenCode CLI (``opencode run``)."""

from __future__ import annotations

import logging
from typing import Any

from curb.harness import HarnessAdapter, combine_prompts, register_harness
from curb.runner_common import parse_json_line
from curb.schemas import EventKind, HarnessEvent, InvocationResult
from curb.usage import UsageAccumulator

logger = logging.getLogger(__name__)


class OpenCodeAdapter(HarnessAdapter):
    """Spawn ``opencode run`` with the combined prompt on stdin.

    ``--format json`` makes OpenCode emit one JSON object per line.  Text
    arrives in ``text`` events and each reasoning/tool step closes with a
    ``step_finish`` event carrying that step's token counts and cost, which
    are summed over the invocation.
    """

    harness_id = "opencode"
    name = "OpenCode"
    default_binary = "opencode"

    def build_command(self, *, streaming: bool) -> list[str]:
        cmd = self._command_prefix()
        cmd.append("run")
        if streaming:
            cmd.extend(["--format", "json"])
        return self._with_model_and_extras(cmd)

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
        return self._result(execution, display_text="\n".join(lines).strip(), streamed=False)

    def _invoke_streaming(
        self, system_prompt: str, task_prompt: str, *, debug: bool
    ) -> InvocationResult:
        cmd = self.build_command(streaming=True)
        parser = OpenCodeStreamParser(on_text=self._emit)
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


class OpenCodeStreamParser:
    """Incremental parser for ``opencode run --format json`` lines."""

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
        etype = str(data.get("type") or "").strip().lower()
        part = data.get("part") if isinstance(data.get("part"), dict) else {}

        if etype == "text":
            text = part.get("text") if isinstance(part.get("text"), str) else None
            return self._event(EventKind.TEXT, data, text)

        if etype in {"tool_use", "tool"}:
            tool = part.get("tool") or part.get("name") or "tool"
            return self._event(EventKind.TOOL, data, f"▶ {tool}")

        if etype == "step_finish":
            _add_step_usage(self.usage, part)
            return self._event(EventKind.STEP_FINISH, data, None)

        if etype == "error":
            error = data.get("error")
            if isinstance(error, dict):
                nested = error.get("data")
                error = error.get("message") or (
                    nested.get("message") if isinstance(nested, dict) else nested
                )
            return self._event(EventKind.ERROR, data, error if isinstance(error, str) else None)

        return self._event(EventKind.UNKNOWN, data, None)

    def _event(self, kind: EventKind, raw: dict[str, Any], text: str | None) -> HarnessEvent:
        if text:
            self._chunks.append(text)
            if self.on_text is not None:
                self.on_text(text)
        return HarnessEvent(kind=kind, raw=raw, text=text or None)


def _add_step_usage(accumulator: UsageAccumulator, part: dict[str, Any]) -> None:
    tokens = part.get("tokens")
    if isinstance(tokens, dict):
        cache = tokens.get("cache") if isinstance(tokens.get("cache"), dict) else {}
        accumulator.add(
            input_tokens=tokens.get("input", 0),
            output_tokens=tokens.get("output", 0),
            reasoning_tokens=tokens.get("reasoning", 0),
            cache_read_tokens=cache.get("read", 0),
            cache_creation_tokens=cache.get("write", 0),
        )
    accumulator.add_cost(part.get("cost"))


register_harness("opencode", OpenCodeAdapter)
