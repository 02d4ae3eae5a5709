"""Dependency-aware task backlog and ready-task scheduler.

The backlog is a JSON document (``prd.json`` by default)::

    {"prefix": "prd", "tasks": [{"id": "prd-a1b2", "title": "...",
      "status": "open", "priority": "P1", "dependsOn": ["prd-0000"], ...}]}

A task is *ready* when it is ``open`` and every id in ``dependsOn`` points at
a ``closed`` task.  Circular dependencies are not detected: both tasks stay
open with an unresolved dependency, so they show up in
:meth:`TaskGraph.blocked_tasks` and never in :meth:`TaskGraph.ready_tasks`.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import shlex
import uuid
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from curb.errors import ValidationError
from curb.file_io import write_json
from curb.schemas import Priority, Task, TaskStatus, TaskType

logger = logging.getLogger(__name__)

DEFAULT_BACKLOG_FILE = "prd.json"
DEFAULT_PREFIX = "prd"
REQUIRED_FIELDS = ("id", "title", "status")

_VALID_STATUSES = frozenset(s.value for s in TaskStatus)
_VALID_PRIORITIES = frozenset(p.value for p in Priority)
_VALID_TYPES = frozenset(t.value for t in TaskType)

# Closed tasks never move again; everything else follows
# open -> in_progress -> {closed | open}.
_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.OPEN: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CLOSED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.CLOSED, TaskStatus.OPEN}),
    TaskStatus.CLOSED: frozenset(),
}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_backlog(data: Any) -> list[str]:
    """Return every structural problem found in a raw backlog document."""
    if not isinstance(data, Mapping):
        return ["backlog must be a JSON object with a 'tasks' array"]
    raw_tasks = data.get("tasks")
    if not isinstance(raw_tasks, list):
        return ["backlog is missing the 'tasks' array"]

    problems: list[str] = []
    seen: set[str] = set()
    duplicates: list[str] = []
    all_ids: set[str] = set()

    for index, raw in enumerate(raw_tasks):
        if not isinstance(raw, Mapping):
            problems.append(f"tasks[{index}] is not an object")
            continue
        label = raw.get("id") or f"tasks[{index}]"
        missing = [name for name in REQUIRED_FIELDS if raw.get(name) in (None, "")]
        if missing:
            problems.append(f"{label}: missing required field(s) {', '.join(missing)}")

        task_id = raw.get("id")
        if isinstance(task_id, str) and task_id:
            if task_id in seen and task_id not in duplicates:
                duplicates.append(task_id)
            seen.add(task_id)
            all_ids.add(task_id)

        status = raw.get("status")
        if status not in (None, "") and status not in _VALID_STATUSES:
            problems.append(
                f"{label}: invalid status {status!r} (expected one of open, in_progress, closed)"
            )
        priority = raw.get("priority")
        if priority is not None and priority not in _VALID_PRIORITIES:
            problems.append(f"{label}: invalid priority {priority!r} (expected P0..P4)")
        task_type = raw.get("type")
        if task_type is not None and task_type not in _VALID_TYPES:
            problems.append(
                f"{label}: invalid type {task_type!r} (expected one of {', '.join(sorted(_VALID_TYPES))})"
            )
        depends_on = raw.get("dependsOn")
        if depends_on is not None and not isinstance(depends_on, list):
            problems.append(f"{label}: 'dependsOn' must be an array of task ids")

    for task_id in duplicates:
        problems.append(f"duplicate task id {task_id!r}")

    for index, raw in enumerate(raw_tasks):
        if not isinstance(raw, Mapping) or not isinstance(raw.get("dependsOn"), list):
            continue
        label = raw.get("id") or f"tasks[{index}]"
        if not all(isinstance(dep, str) for dep in raw["dependsOn"]):
            problems.append(f"{label}: dependsOn entries must be task id strings")
        for dep in raw["dependsOn"]:
            if isinstance(dep, str) and dep not in all_ids:
                problems.append(f"{label}: depends on unknown task {dep!r}")

    return problems


def validate(data: Any, *, source: str = "") -> None:
    """Raise :class:`~curb.errors.ValidationError` when *data* is not a valid backlog."""
    problems = validate_backlog(data)
    if problems:
        raise ValidationError(problems, source=source)


# ---------------------------------------------------------------------------
# Task graph
# ---------------------------------------------------------------------------


class TaskGraph:
    """In-memory view of the backlog, optionally bound to a file on disk.

    Parameters
    ----------
    tasks:
        Task records in backlog order (the order ties are broken by).
    path:
        Backlog file.  When set, every mutation is written back atomically.
    prefix:
        Prefix used by :meth:`generate_task_id`.
    extra:
        Additional top-level keys of the backlog document, preserved on save.
    """

    def __init__(
        self,
        tasks: Iterable[Task] = (),
        *,
        path: str | Path | None = None,
        prefix: str = DEFAULT_PREFIX,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        self._tasks: list[Task] = list(tasks)
        self.path = Path(path) if path is not None else None
        self.prefix = prefix or DEFAULT_PREFIX
        self._extra: dict[str, Any] = dict(extra or {})

    # ------------------------------------------------------------------
    # Construction / persistence
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(
        cls,
        data: Any,
        *,
        path: str | Path | None = None,
        source: str = "",
    ) -> TaskGraph:
        """Validate a raw backlog document and build a graph from it."""
        validate(data, source=source)
        tasks: list[Task] = []
        problems: list[str] = []
        for raw in data["tasks"]:
            try:
                tasks.append(Task.model_validate(raw))
            except PydanticValidationError as exc:
                for err in exc.errors():
                    loc = ".".join(str(part) for part in err.get("loc", ()))
                    problems.append(f"{raw.get('id')}: field '{loc}' {err.get('msg', 'is invalid')}")
        if problems:
            raise ValidationError(problems, source=source)
        extra = {k: v for k, v in data.items() if k not in {"tasks", "prefix"}}
        return cls(
            tasks,
            path=path,
            prefix=str(data.get("prefix") or DEFAULT_PREFIX),
            extra=extra,
        )

    @classmethod
    def load(cls, path: str | Path) -> TaskGraph:
        """Read and validate a backlog file."""
        backlog_path = Path(path)
        try:
            raw = backlog_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ValidationError(
                [f"cannot read backlog: {exc}"],
                source=str(backlog_path),
                hint="Create the backlog file or point --backlog at an existing one.",
            ) from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError(
                [f"not valid JSON (line {exc.lineno}, column {exc.colno}): {exc.msg}"],
                source=str(backlog_path),
            ) from exc
        graph = cls.from_dict(data, path=backlog_path, source=str(backlog_path))
        logger.debug("Loaded %d task(s) from %s", len(graph), backlog_path)
        return graph

    def reload(self) -> None:
        """Re-read the backlog from disk (harnesses may edit it themselves)."""
        if self.path is None:
            return
        fresh = type(self).load(self.path)
        self._tasks = fresh._tasks
        self.prefix = fresh.prefix
        self._extra = fresh._extra

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"prefix": self.prefix, **self._extra}
        data["tasks"] = [task.to_store_dict() for task in self._tasks]
        return data

    def save(self) -> None:
        """Write the backlog back to :attr:`path` atomically."""
        if self.path is None:
            raise ValueError("TaskGraph has no backing file to save to")
        write_json(self.path, self.to_dict())

    def _persist(self) -> None:
        if self.path is not None:
            self.save()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self):
        return iter(list(self._tasks))

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks)

    def get(self, task_id: str) -> Task | None:
        for task in self._tasks:
            if task.id == task_id:
                return task
        return None

    def _closed_ids(self) -> set[str]:
        return {task.id for task in self._tasks if task.status == TaskStatus.CLOSED}

    def ready_tasks(self, epic: str | None = None, label: str | None = None) -> list[Task]:
        """Open tasks whose dependencies are all closed, highest priority first.

        Ties keep backlog order (the sort is stable).
        """
        closed = self._closed_ids()
        ready = [
            task
            for task in self._tasks
            if task.status == TaskStatus.OPEN and set(task.depends_on) <= closed
        ]
        if epic:
            ready = [task for task in ready if task.parent == epic]
        if label:
            ready = [task for task in ready if label in task.labels]
        return sorted(ready, key=lambda task: task.priority.value)

    def next_task(
        self,
        epic: str | None = None,
        label: str | None = None,
        *,
        exclude: Iterable[str] = (),
    ) -> Task | None:
        """Return the highest-priority ready task not listed in *exclude*."""
        skipped = set(exclude)
        for task in self.ready_tasks(epic=epic, label=label):
            if task.id not in skipped:
                return task
        return None

    def blocked_tasks(self) -> list[Task]:
        """Open tasks with at least one dependency that is not closed."""
        closed = self._closed_ids()
        return [
            task
            for task in self._tasks
            if task.status == TaskStatus.OPEN and not set(task.depends_on) <= closed
        ]

    def counts(self) -> dict[str, int]:
        counts = {"total": len(self._tasks)}
        for status in TaskStatus:
            counts[status.value] = sum(1 for task in self._tasks if task.status == status)
        return counts

    def all_complete(self) -> bool:
        return all(task.status == TaskStatus.CLOSED for task in self._tasks)

    def validate(self) -> None:
        """Re-validate the current in-memory backlog."""
        validate(self.to_dict(), source=str(self.path or ""))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise KeyError(f"Unknown task '{task_id}'")
        return task

    def update_status(self, task_id: str, status: TaskStatus | str) -> Task:
        """Move a task to *status* and persist the backlog."""
        try:
            new_status = TaskStatus(status)
        except ValueError as exc:
            raise ValueError(
                f"Invalid status {status!r}; expected one of open, in_progress, closed"
            ) from exc
        task = self._require(task_id)
        if task.status == new_status:
            return task
        if new_status not in _ALLOWED_TRANSITIONS[task.status]:
            raise ValueError(
                f"Task '{task_id}' cannot move from {task.status.value} to {new_status.value}"
            )
        logger.debug("Task %s: %s -> %s", task_id, task.status.value, new_status.value)
        task.status = new_status
        self._persist()
        return task

    def add_note(self, task_id: str, note: str) -> Task:
        """Append a timestamped note to a task."""
        task = self._require(task_id)
        stamp = dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        task.notes = f"{task.notes}\n[{stamp}] {note}"
        self._persist()
        return task

    def generate_task_id(self) -> str:
        """Return a fresh ``<prefix>-<4 hex>`` id not used by any task."""
        existing = {task.id for task in self._tasks}
        while True:
            candidate = f"{self.prefix}-{uuid.uuid4().hex[:4]}"
            if candidate not in existing:
                return candidate

    def create_task(
        self,
        title: str,
        *,
        task_id: str | None = None,
        type: TaskType | str = TaskType.TASK,
        priority: Priority | str = Priority.P2,
        description: str = "",
        depends_on: Iterable[str] = (),
        labels: Iterable[str] = (),
        parent: str | None = None,
    ) -> Task:
        """Add a new open task, validating the resulting backlog first."""
        task = Task(
            id=task_id or self.generate_task_id(),
            title=title,
            type=TaskType(type),
            priority=Priority(priority),
            description=description,
            depends_on=list(depends_on),
            labels=list(labels),
            parent=parent,
        )
        candidate = self.to_dict()
        candidate["tasks"].append(task.to_store_dict())
        validate(candidate, source=str(self.path or ""))
        self._tasks.append(task)
        self._persist()
        return task

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def export_beads_command(self, task_id: str) -> str:
        """Render the ``bd create`` command that recreates a task in beads."""
        task = self._require(task_id)
        return " ".join(
            [
                "bd",
                "create",
                f"--title={shlex.quote(task.title)}",
                f"--type={task.type.value}",
                f"--priority={task.priority.value}",
                f"--description={shlex.quote(task.description)}",
            ]
        )
