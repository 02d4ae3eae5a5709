"""Shared helpers for harness adapter implementations."""

from __future__ import annotations

import hashlib
import json
import logging
import math
import os
import queue
import shutil
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from curb.schemas import HarnessEvent

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

_DEFAULT_MAX_CAPTURED_EVENTS = 20_000
_DEFAULT_MAX_CAPTURED_STDOUT_LINES = 20_000
_DEFAULT_MAX_CAPTURED_STDERR_LINES = 10_000

#: Exit code reported when the harness binary cannot be spawned at all.
SPAWN_FAILURE_EXIT_CODE = 127


def _streaming_process_isolation_kwargs() -> dict[str, object]:
    """Return subprocess kwargs that isolate child signal/control handling.

    On POSIX the child gets its own session so a timeout can signal the whole
    process group; on Windows a new process group without a console.
    """
    if os.name == "nt":
        new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
        flags = new_pg | no_win
        return {"creationflags": flags} if flags else {}
    return {"start_new_session": True}


def resolve_binary(name: str) -> str:
    """Resolve a binary name to a full executable path when possible."""
    expanded = os.path.expandvars(os.path.expanduser(str(name or "").strip()))
    if len(expanded) >= 2 and expanded[0] == expanded[-1] and expanded[0] in {"'", '"'}:
        # Accept copy/paste paths wrapped in shell quotes.
        expanded = expanded[1:-1].strip()
    if not expanded:
        return ""
    resolved = shutil.which(expanded)
    if resolved:
        return resolved
    return expanded


def coerce_int(value: Any) -> int:
    """Best-effort integer coercion for loosely typed CLI payloads."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return 0
        return int(value)
    if isinstance(value, str):
        cleaned = value.strip().replace(",", "")
        if not cleaned:
            return 0
        try:
            return int(cleaned)
        except ValueError:
            try:
                return int(float(cleaned))
            except (TypeError, ValueError, OverflowError):
                return 0
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return 0


def coerce_float(value: Any) -> float | None:
    """Best-effort float coercion; ``None`` when the value carries no number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        cleaned = value.strip().lstrip("$").replace(",", "")
        if not cleaned or cleaned.lower() == "null":
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def prompt_metadata(prompt: str) -> dict[str, object]:
    """Return log-safe facts about a prompt (never the prompt text itself)."""
    encoded = (prompt or "").encode("utf-8", errors="replace")
    return {
        "length_chars": len(prompt or ""),
        "sha256": hashlib.sha256(encoded).hexdigest()[:16],
    }


# ---------------------------------------------------------------------------
# Best-effort JSONL parsing
# ---------------------------------------------------------------------------


def parse_json_line(line: str) -> dict[str, Any] | None:
    """Decode one JSONL line; blank, malformed, or non-object lines yield ``None``."""
    text = (line or "").strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON stream line: %s", text[:200])
        return None
    if not isinstance(data, dict):
        return None
    return data


def iter_json_events(lines: Iterable[str]) -> Iterator[dict[str, Any]]:
    """Lazily yield decoded JSON objects from *lines*, dropping anything unparsable.

    The sequence is single-pass: it consumes *lines* as it goes.
    """
    for line in lines:
        data = parse_json_line(line)
        if data is not None:
            yield data


# ---------------------------------------------------------------------------
# Subprocess execution
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class StreamExecutionResult:
    """Captured output and metadata from a harness subprocess."""

    events: list[HarnessEvent]
    raw_lines: list[str]
    stderr_lines: list[str]
    exit_code: int
    timed_out: bool
    spawn_error: str = ""
    duration_seconds: float = 0.0
    dropped: dict[str, int] = field(default_factory=dict)

    @property
    def stderr_text(self) -> str:
        return "\n".join(self.stderr_lines).strip()

    @property
    def stdout_text(self) -> str:
        return "\n".join(self.raw_lines).strip()


def execute_streaming_command(
    *,
    cmd: list[str],
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: int,
    parse_stdout_line: Callable[[str], HarnessEvent | None],
    process_name: str,
    stdin_text: str | None = None,
    max_events: int | None = None,
    max_stdout_lines: int | None = None,
    max_stderr_lines: int | None = None,
) -> StreamExecutionResult:
    """Run a subprocess, feeding each stdout line to *parse_stdout_line* as it arrives.

    ``timeout_seconds`` is an inactivity timeout: the child is terminated (then
    killed) after that many seconds without any stdout/stderr output.  ``0``
    disables it.  A binary that cannot be spawned is reported through
    ``spawn_error`` with exit code 127 instead of raising.
    """
    max_events = _normalize_capture_limit(max_events, _DEFAULT_MAX_CAPTURED_EVENTS)
    max_stdout_lines = _normalize_capture_limit(
        max_stdout_lines, _DEFAULT_MAX_CAPTURED_STDOUT_LINES
    )
    max_stderr_lines = _normalize_capture_limit(
        max_stderr_lines, _DEFAULT_MAX_CAPTURED_STDERR_LINES
    )

    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
            env=env,
            **_streaming_process_isolation_kwargs(),
        )
    except OSError as exc:
        logger.error("Could not start %s (%s): %s", process_name, cmd[0] if cmd else "?", exc)
        return StreamExecutionResult(
            events=[],
            raw_lines=[],
            stderr_lines=[],
            exit_code=SPAWN_FAILURE_EXIT_CODE,
            timed_out=False,
            spawn_error=f"Failed to start {process_name}: {exc}",
            duration_seconds=time.monotonic() - start,
        )
    if proc.stdout is None or proc.stderr is None:
        raise RuntimeError(f"{process_name} subprocess pipes are unexpectedly unavailable")

    events: deque[HarnessEvent] = deque(maxlen=max_events)
    raw_lines: deque[str] = deque(maxlen=max_stdout_lines)
    stderr_lines: deque[str] = deque(maxlen=max_stderr_lines)
    dropped = {"events": 0, "stdout": 0, "stderr": 0}
    stream_queue: queue.Queue[tuple[str, str | object]] = queue.Queue()
    done_sentinel = object()

    def _append(buffer: deque, item: Any, key: str) -> None:
        if len(buffer) == buffer.maxlen:
            dropped[key] += 1
        buffer.append(item)

    def _pump_stream(stream_name: str, stream: Any) -> None:
        try:
            for line in stream:
                stream_queue.put((stream_name, line.rstrip("\n\r")))
        finally:
            stream_queue.put((stream_name, done_sentinel))

    def _collect_stdout_line(line: str) -> None:
        _append(raw_lines, line, "stdout")
        try:
            event = parse_stdout_line(line)
        except Exception:  # pragma: no cover - parser isolation
            logger.warning("Failed to parse %s stdout line; keeping raw output", process_name)
            return
        if event is not None:
            _append(events, event, "events")

    def _pump_stdin(stream: Any, text: str) -> None:
        try:
            stream.write(text)
            if text and not text.endswith("\n"):
                stream.write("\n")
            stream.flush()
        except Exception:  # pragma: no cover - stdin write failures are non-fatal
            logger.debug("%s stdin write failed", process_name)
        finally:
            with suppress(Exception):
                stream.close()

    stdin_thread: threading.Thread | None = None
    if stdin_text is not None and proc.stdin is not None:
        stdin_thread = threading.Thread(
            target=_pump_stdin,
            args=(proc.stdin, stdin_text),
            daemon=True,
        )
        stdin_thread.start()

    stdout_thread = threading.Thread(target=_pump_stream, args=("stdout", proc.stdout), daemon=True)
    stderr_thread = threading.Thread(target=_pump_stream, args=("stderr", proc.stderr), daemon=True)
    stdout_thread.start()
    stderr_thread.start()

    inactivity_timeout = timeout_seconds if timeout_seconds > 0 else None
    last_activity = time.monotonic()
    closed_streams: set[str] = set()
    timed_out = False

    try:
        while len(closed_streams) < 2:
            if (
                inactivity_timeout is not None
                and (time.monotonic() - last_activity) >= inactivity_timeout
            ):
                timed_out = True
                break

            wait_seconds = 0.25
            if inactivity_timeout is not None:
                remaining = inactivity_timeout - (time.monotonic() - last_activity)
                wait_seconds = max(0.05, min(0.5, remaining))

            try:
                stream_name, payload = stream_queue.get(timeout=wait_seconds)
            except queue.Empty:
                if (
                    proc.poll() is not None
                    and not stdout_thread.is_alive()
                    and not stderr_thread.is_alive()
                ):
                    break
                continue

            if payload is done_sentinel:
                closed_streams.add(stream_name)
                continue

            last_activity = time.monotonic()
            if not payload:
                continue
            if stream_name == "stdout":
                _collect_stdout_line(str(payload))
            else:
                _append(stderr_lines, str(payload), "stderr")

        if timed_out:
            logger.warning(
                "%s produced no output for %ss; terminating", process_name, inactivity_timeout
            )
            _terminate_process_with_fallback(
                proc,
                process_name=process_name,
                reason="inactivity timeout",
            )

        _wait_for_process(proc)

        # Drain buffered lines produced just before process exit.
        while True:
            try:
                stream_name, payload = stream_queue.get_nowait()
            except queue.Empty:
                break
            if payload is done_sentinel or not payload:
                continue
            if stream_name == "stdout":
                _collect_stdout_line(str(payload))
            else:
                _append(stderr_lines, str(payload), "stderr")

        for key, count in dropped.items():
            if count:
                logger.warning(
                    "%s emitted more %s than the capture limit; dropped %s oldest entries",
                    process_name,
                    key,
                    count,
                )

        exit_code = proc.returncode if proc.returncode is not None else -1
        return StreamExecutionResult(
            events=list(events),
            raw_lines=list(raw_lines),
            stderr_lines=list(stderr_lines),
            exit_code=-1 if timed_out else exit_code,
            timed_out=timed_out,
            duration_seconds=time.monotonic() - start,
            dropped={k: v for k, v in dropped.items() if v},
        )
    finally:
        if stdin_thread is not None:
            stdin_thread.join(timeout=1.0)
        stdout_thread.join(timeout=1.0)
        stderr_thread.join(timeout=1.0)
        if proc.stdin is not None and not proc.stdin.closed:
            with suppress(Exception):
                proc.stdin.close()
        if proc.stdout is not None and not proc.stdout.closed:
            proc.stdout.close()
        if proc.stderr is not None and not proc.stderr.closed:
            proc.stderr.close()


def run_version_command(binary: str, *, timeout: float = 10.0) -> str:
    """Return ``<binary> --version`` output, or ``"unknown"`` on any failure."""
    resolved = resolve_binary(binary)
    if not resolved:
        return "unknown"
    try:
        proc = subprocess.run(
            [resolved, "--version"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("Version check for %s failed: %s", binary, exc)
        return "unknown"
    output = (proc.stdout or proc.stderr or "").strip()
    return output.splitlines()[0] if output else "unknown"


def _wait_for_process(proc: subprocess.Popen[str]) -> None:
    """Wait for child process exit and force-kill if it refuses to terminate."""
    try:
        proc.wait(timeout=5.0)
    except subprocess.TimeoutExpired:  # pragma: no cover
        proc.kill()
        proc.wait(timeout=5.0)


def _terminate_process_with_fallback(
    proc: subprocess.Popen[str],
    *,
    process_name: str,
    reason: str,
    terminate_timeout_seconds: float = 1.5,
) -> None:
    """Request graceful terminate first, then force-kill if still alive."""
    if proc.poll() is not None:
        return

    _signal_process(proc, graceful=True)
    timeout = max(0.1, float(terminate_timeout_seconds))
    try:
        proc.wait(timeout=timeout)
        return
    except subprocess.TimeoutExpired:
        logger.warning(
            "%s did not exit after terminate during %s; forcing kill.",
            process_name,
            reason,
        )

    _signal_process(proc, graceful=False)
    try:
        proc.wait(timeout=5.0)
    except subprocess.TimeoutExpired:  # pragma: no cover
        logger.warning("%s ignored kill during %s.", process_name, reason)


def _signal_process(proc: subprocess.Popen[str], *, graceful: bool) -> None:
    """Best-effort terminate/kill for a child process and its process group."""
    if os.name != "nt":
        pid = int(getattr(proc, "pid", 0) or 0)
        if pid > 0:
            with suppress(Exception):
                os.killpg(os.getpgid(pid), signal.SIGTERM if graceful else signal.SIGKILL)
    with suppress(Exception):
        if graceful:
            proc.terminate()
        else:
            proc.kill()


def _normalize_capture_limit(value: int | None, default: int) -> int:
    """Normalize output capture limits and enforce a minimum of one entry."""
    if value is None:
        return default
    try:
        normalized = int(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return max(1, normalized)
