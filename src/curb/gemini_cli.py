"""Interface to the Google Gemini CLI (``gemini``)."""

from __future__ import annotations

import logging

from curb.harness import HarnessAdapter, combine_prompts, register_harness
from curb.schemas import InvocationResult

logger = logging.getLogger(__name__)


class GeminiAdapter(HarnessAdapter):
    """Spawn ``gemini --yolo -p`` with the combined prompt on stdin.

    Gemini's headless mode prints plain text only, so there is no stream to
    parse and no usage to report.  Streaming requests run the plain
    invocation and come back with ``streamed=False`` and zero usage.
    """

    harness_id = "gemini"
    name = "Gemini"
    default_binary = "gemini"

    def build_command(self) -> list[str]:
        cmd = self._command_prefix()
        # ``-p`` with an empty value makes gemini read the prompt from stdin.
        cmd.extend(["--yolo", "-p", ""])
        return self._with_model_and_extras(cmd, model_flag="-m")

    def _invoke(self, system_prompt: str, task_prompt: str, *, debug: bool) -> InvocationResult:
        lines: list[str] = []

        def _pass_through(line: str) -> None:
            lines.append(line)
            self._emit(line)

        execution = self._execute(
            self.build_command(),
            stdin_text=combine_prompts(system_prompt, task_prompt),
            parse_line=_pass_through,
        )
        return self._result(execution, display_text="\n".join(lines).strip(), streamed=False)


register_harness("gemini", GeminiAdapter)
