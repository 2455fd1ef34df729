"""Type definitions for persisted workflow state.

These TypedDicts describe the JSON document the StateStore writes for each
run in the state directory (``<state_dir>/<run_id>.json``). They enable
static type checking for record access while keeping the on-disk format a
plain, versioned JSON object.

Example:
    A freshly created record::

        record: StateRecord = {
            "schema_version": 1,
            "run": {
                "id": "run-42",
                "phases": [{"name": "codegen", "task_ids": [], "status": "pending"}],
                "current_phase_index": 0,
                "status": "running",
                ...
            },
            "specification": {...},
            "tasks": [],
            "attempts": [],
        }
"""

from typing import Any, NotRequired, TypedDict


class PhaseRecord(TypedDict):
    """Persisted form of a Phase."""

    name: str
    task_ids: list[str]
    status: str
    """One of "pending", "active", "completed", "blocked"."""


class RunRecord(TypedDict):
    """Persisted form of a WorkflowRun."""

    id: str
    phases: list[PhaseRecord]
    current_phase_index: int
    status: str
    """One of "running", "completed", "failed", "escalated"."""

    created_at: str
    updated_at: str
    failure_reason: NotRequired[str | None]
    cancelled: NotRequired[bool]
    archived_at: NotRequired[str | None]


class TaskRecord(TypedDict):
    """Persisted form of a Task."""

    id: str
    phase_name: str
    depends_on: list[str]
    complexity_class: str
    max_attempts: int
    status: str
    """One of "blocked", "ready", "running", "succeeded", "failed", "escalated"."""

    sequence: int
    payload: dict[str, Any]
    diagnosis: NotRequired[dict[str, Any] | None]


class AttemptRecord(TypedDict):
    """Persisted form of a TaskAttempt.

    ``finished_at`` and ``outcome`` are null while the attempt is in flight.
    A record found in that shape after a restart marks an interrupted attempt.
    """

    task_id: str
    attempt_number: int
    started_at: str
    finished_at: str | None
    outcome: str | None
    """One of "success", "transientFailure", "fatalFailure", or null."""

    error_detail: dict[str, Any] | None


class StateRecord(TypedDict):
    """Complete persisted document for one run."""

    schema_version: int
    run: RunRecord
    specification: dict[str, Any]
    """The RunSpecification the run was started from, so it can be resumed by id."""

    tasks: list[TaskRecord]
    """All tasks created so far, in creation order."""

    attempts: list[AttemptRecord]
    """Full attempt history, in creation order."""
