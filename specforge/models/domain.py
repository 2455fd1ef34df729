"""
Domain models for workflow runs.

This module contains the data classes for the entities the engine schedules
and tracks: runs, phases, tasks and task attempts. They are the in-memory
representation; ``to_dict``/``from_dict`` convert to and from the JSON shapes
declared in ``specforge.engine.types``.

Ownership:
    - WorkflowRun and Phase are mutated only by the WorkflowEngine and the
      PhaseRunner.
    - Task is mutated only by the PhaseRunner and the TaskDispatcher.
    - TaskAttempt is created by the TaskDispatcher and becomes immutable once
      ``finish()`` has been called.

Example:
    Building a run by hand::

        run = WorkflowRun(
            id="run-42",
            phases=[Phase(name="codegen"), Phase(name="test")],
        )
        task = Task(id="models", phase_name="codegen", complexity_class="complex")
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from specforge.engine.types import AttemptRecord, PhaseRecord, RunRecord, TaskRecord
from specforge.enums import AttemptOutcome, PhaseStatus, RunStatus, TaskStatus

DEFAULT_MAX_ATTEMPTS = 3


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class Phase:
    """A named, ordered stage of a workflow run.

    A phase is ``active`` only while the run's ``current_phase_index`` points
    at it, and it cannot become active before the previous phase completed.
    """

    name: str
    """Phase name, unique within a run (e.g. "codegen")."""

    task_ids: list[str] = field(default_factory=list)
    """Ids of the tasks created for this phase, in creation order.

    Empty until the phase is first entered.
    """

    status: PhaseStatus = PhaseStatus.PENDING

    def to_dict(self) -> PhaseRecord:
        return {"name": self.name, "task_ids": list(self.task_ids), "status": self.status.value}

    @classmethod
    def from_dict(cls, data: PhaseRecord) -> "Phase":
        return cls(
            name=data["name"],
            task_ids=list(data.get("task_ids", [])),
            status=PhaseStatus(data["status"]),
        )


@dataclass
class WorkflowRun:
    """One end-to-end execution of a workflow.

    Attributes:
        id: Opaque unique identifier; also the persistence key.
        phases: Ordered phases of the run.
        current_phase_index: Index into ``phases`` of the phase being driven.
        status: Overall run status.
        failure_reason: Why the run is ``failed`` (engine error, "cancelled",
            "abandoned").
        cancelled: Marker set when the run stopped on a cancellation signal.
        archived_at: Set when the caller acknowledged a terminal run.
    """

    id: str
    phases: list[Phase]
    current_phase_index: int = 0
    status: RunStatus = RunStatus.RUNNING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    failure_reason: str | None = None
    cancelled: bool = False
    archived_at: datetime | None = None

    @property
    def phase_names(self) -> list[str]:
        return [phase.name for phase in self.phases]

    @property
    def current_phase(self) -> Phase | None:
        """The phase ``current_phase_index`` points at, or None past the end."""
        if 0 <= self.current_phase_index < len(self.phases):
            return self.phases[self.current_phase_index]
        return None

    def touch(self) -> None:
        self.updated_at = utcnow()

    def to_dict(self) -> RunRecord:
        return {
            "id": self.id,
            "phases": [phase.to_dict() for phase in self.phases],
            "current_phase_index": self.current_phase_index,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "failure_reason": self.failure_reason,
            "cancelled": self.cancelled,
            "archived_at": _format_time(self.archived_at),
        }

    @classmethod
    def from_dict(cls, data: RunRecord) -> "WorkflowRun":
        return cls(
            id=data["id"],
            phases=[Phase.from_dict(phase) for phase in data["phases"]],
            current_phase_index=data["current_phase_index"],
            status=RunStatus(data["status"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            failure_reason=data.get("failure_reason"),
            cancelled=data.get("cancelled", False),
            archived_at=_parse_time(data.get("archived_at")),
        )


@dataclass
class Task:
    """The unit of dispatchable, retryable work.

    ``depends_on`` names tasks of the same phase only and must form an
    acyclic graph. ``status`` is ``ready`` exactly when every dependency has
    ``succeeded``.
    """

    id: str
    phase_name: str
    depends_on: list[str] = field(default_factory=list)
    complexity_class: str = "simple"
    """Worker tier used to look up the collaborator (e.g. "simple", "complex")."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    status: TaskStatus = TaskStatus.BLOCKED
    sequence: int = 0
    """Creation order across the run; ties between ready tasks break on it."""

    payload: dict[str, Any] = field(default_factory=dict)
    """Opaque instructions for the collaborator, copied from the run specification."""

    diagnosis: dict[str, Any] | None = None
    """Output of the diagnostics collaborator once the task was escalated."""

    def to_dict(self) -> TaskRecord:
        return {
            "id": self.id,
            "phase_name": self.phase_name,
            "depends_on": list(self.depends_on),
            "complexity_class": self.complexity_class,
            "max_attempts": self.max_attempts,
            "status": self.status.value,
            "sequence": self.sequence,
            "payload": self.payload,
            "diagnosis": self.diagnosis,
        }

    @classmethod
    def from_dict(cls, data: TaskRecord) -> "Task":
        return cls(
            id=data["id"],
            phase_name=data["phase_name"],
            depends_on=list(data.get("depends_on", [])),
            complexity_class=data.get("complexity_class", "simple"),
            max_attempts=data.get("max_attempts", DEFAULT_MAX_ATTEMPTS),
            status=TaskStatus(data["status"]),
            sequence=data.get("sequence", 0),
            payload=data.get("payload", {}),
            diagnosis=data.get("diagnosis"),
        )


@dataclass
class TaskAttempt:
    """One execution record for a Task.

    Created immediately before the collaborator is invoked, with ``outcome``
    and ``finished_at`` unset. ``finish()`` fills both exactly once; the
    record is then kept for audit for the lifetime of the run.
    """

    task_id: str
    attempt_number: int
    """1-based, never greater than the task's ``max_attempts``."""

    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    outcome: AttemptOutcome | None = None
    error_detail: dict[str, Any] | None = None
    """Opaque failure payload forwarded to the diagnostics collaborator."""

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None

    @property
    def duration(self) -> float | None:
        """Elapsed seconds, or None while in flight."""
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def finish(self, outcome: AttemptOutcome, error_detail: dict[str, Any] | None = None) -> None:
        """Record the terminal outcome of this attempt.

        Raises:
            ValueError: If the attempt was already finished.
        """
        if self.finished_at is not None:
            raise ValueError(f"Attempt {self.attempt_number} of task {self.task_id} is already finished")
        self.outcome = outcome
        self.error_detail = error_detail
        self.finished_at = utcnow()

    def to_dict(self) -> AttemptRecord:
        return {
            "task_id": self.task_id,
            "attempt_number": self.attempt_number,
            "started_at": self.started_at.isoformat(),
            "finished_at": _format_time(self.finished_at),
            "outcome": self.outcome.value if self.outcome else None,
            "error_detail": self.error_detail,
        }

    @classmethod
    def from_dict(cls, data: AttemptRecord) -> "TaskAttempt":
        outcome = data.get("outcome")
        return cls(
            task_id=data["task_id"],
            attempt_number=data["attempt_number"],
            started_at=datetime.fromisoformat(data["started_at"]),
            finished_at=_parse_time(data.get("finished_at")),
            outcome=AttemptOutcome(outcome) if outcome else None,
            error_detail=data.get("error_detail"),
        )


@dataclass
class EscalatedTask:
    """An escalated task together with everything needed to diagnose it."""

    task: Task
    attempts: list[TaskAttempt]
    diagnosis: dict[str, Any] | None = None


@dataclass
class RunResult:
    """Terminal report returned to the caller of ``WorkflowEngine.run``.

    For ``escalated`` runs, ``blocked_phase`` and ``escalated_tasks`` carry
    the blocked phase and the full attempt history of every escalated task.
    """

    run_id: str
    status: RunStatus
    blocked_phase: str | None = None
    escalated_tasks: list[EscalatedTask] = field(default_factory=list)
    error: str | None = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.COMPLETED
