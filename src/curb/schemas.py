"""Pydantic models for structured data throughout curb."""

from __future__ import annotations

import datetime as dt
import logging
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from curb.file_io import atomic_write_text

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Backlog tasks
# ---------------------------------------------------------------------------


class TaskStatus(str, Enum):
    """Lifecycle states a task can be in."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"


class TaskType(str, Enum):
    """Kinds of backlog items."""

    TASK = "task"
    BUG = "bug"
    FEATURE = "feature"
    EPIC = "epic"
    CHORE = "chore"


class Priority(str, Enum):
    """Task priority, ``P0`` is the most urgent."""

    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    P4 = "P4"


class Task(BaseModel):
    """A single backlog item as stored in ``prd.json``."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    title: str
    type: TaskType = TaskType.TASK
    status: TaskStatus = TaskStatus.OPEN
    priority: Priority = Priority.P2
    description: str = ""
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    labels: list[str] = Field(default_factory=list)
    parent: str | None = None
    notes: str = ""

    def to_store_dict(self) -> dict[str, Any]:
        """Serialize using the on-disk key names (``dependsOn``)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Harness invocation results
# ---------------------------------------------------------------------------


class EventKind(str, Enum):
    """Normalized event families emitted by streaming harnesses."""

    TEXT = "text"
    TOOL = "tool"
    STEP_FINISH = "step_finish"
    RESULT = "result"
    SYSTEM = "system"
    ERROR = "error"
    UNKNOWN = "unknown"


class HarnessEvent(BaseModel):
    """A single parsed JSONL event from a harness stream."""

    kind: EventKind = EventKind.UNKNOWN
    raw: dict[str, Any] = Field(default_factory=dict)
    text: str | None = None


class UsageRecord(BaseModel):
    """Token / cost accounting for one harness invocation."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    cost_usd: float | None = None
    estimated: bool = False

    @property
    def total_tokens(self) -> int:
        """Tokens charged against the budget (input + output)."""
        return self.input_tokens + self.output_tokens

    def is_zero(self) -> bool:
        return (
            self.input_tokens == 0
            and self.output_tokens == 0
            and self.cache_read_tokens == 0
            and self.cache_creation_tokens == 0
            and not self.cost_usd
        )

    def to_query_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "cost_usd": self.cost_usd,
            "estimated": self.estimated,
        }


class InvocationResult(BaseModel):
    """Aggregated result of a single harness invocation."""

    harness_id: str = ""
    exit_code: int = -1
    display_text: str = ""
    usage: UsageRecord = Field(default_factory=UsageRecord)
    streamed: bool = False
    timed_out: bool = False
    errors: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0
    #: Command line the harness was spawned with (prompt excluded).
    command: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.exit_code == 0


# ---------------------------------------------------------------------------
# Loop / orchestration state
# ---------------------------------------------------------------------------


class StopReason(str, Enum):
    """Reason a run of the loop stopped."""

    COMPLETE = "complete"
    BUDGET_EXCEEDED = "budget_exceeded"
    SINGLE_ITERATION = "single_iteration"
    MAX_ITERATIONS = "max_iterations"
    USER_ABORT = "user_abort"
    INVOCATION_FAILED = "invocation_failed"
    STATE_VERIFICATION_FAILED = "state_verification_failed"
    NO_HARNESS = "no_harness"


SUCCESSFUL_STOPS = frozenset(
    {
        StopReason.COMPLETE,
        StopReason.BUDGET_EXCEEDED,
        StopReason.SINGLE_ITERATION,
        StopReason.MAX_ITERATIONS,
        StopReason.USER_ABORT,
    }
)


def exit_code_for(reason: StopReason | None) -> int:
    """Map a stop reason to the process exit code of a run."""
    if reason is None or reason in SUCCESSFUL_STOPS:
        return 0
    return 1


class UsageTotals(BaseModel):
    """Cumulative usage across every invocation of one run."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    cost_usd: float = 0.0
    estimated: bool = False
    invocations: int = 0

    def add(self, record: UsageRecord) -> None:
        self.input_tokens += record.input_tokens
        self.output_tokens += record.output_tokens
        self.cache_read_tokens += record.cache_read_tokens
        self.cache_creation_tokens += record.cache_creation_tokens
        if record.cost_usd:
            self.cost_usd += record.cost_usd
        self.estimated = self.estimated or record.estimated
        self.invocations += 1

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class IterationRecord(BaseModel):
    """Persisted record of one loop iteration."""

    iteration: int
    task_id: str
    task_title: str = ""
    timestamp: str = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc).isoformat())
    exit_code: int = -1
    streamed: bool = False
    usage: UsageRecord = Field(default_factory=UsageRecord)
    verified: bool | None = None
    final_status: TaskStatus | None = None
    duration_seconds: float = 0.0
    errors: list[str] = Field(default_factory=list)


class RunState(BaseModel):
    """Full persisted state of one run - written to ``.curb/runs/<session>.json``."""

    repo_path: str
    session_name: str
    session_id: str
    harness_id: str = ""
    backlog_path: str = ""
    iterations: list[IterationRecord] = Field(default_factory=list)
    stop_reason: StopReason | None = None
    started_at: str = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc).isoformat())
    finished_at: str | None = None
    totals: UsageTotals = Field(default_factory=UsageTotals)
    budget_limit: int | None = None
    budget_used: int = 0

    # -- helpers --

    def state_path(self) -> Path:
        """Return the persisted run-state file path."""
        return Path(self.repo_path) / ".curb" / "runs" / f"{self.session_id}.json"

    def save(self) -> None:
        """Persist state to disk."""
        atomic_write_text(self.state_path(), self.model_dump_json(indent=2))

    @classmethod
    def load(cls, repo_path: str | Path, session_id: str) -> RunState | None:
        """Load persisted state from disk, or return ``None`` when absent."""
        path = Path(repo_path) / ".curb" / "runs" / f"{session_id}.json"
        if path.exists():
            try:
                raw = path.read_text(encoding="utf-8")
                if not raw.strip():
                    logger.warning("Run state file is empty; ignoring: %s", path)
                    return None
                return cls.model_validate_json(raw)
            except (OSError, ValidationError) as exc:
                logger.warning("Could not load run state file %s: %s", path, exc)
                return None
        return None

