"""Domain models and the run specification input."""

from specforge.models.domain import (
    EscalatedTask,
    Phase,
    RunResult,
    Task,
    TaskAttempt,
    WorkflowRun,
)
from specforge.models.specification import PhaseSpec, RunSpecification, TaskSpec

__all__ = [
    "EscalatedTask",
    "Phase",
    "PhaseSpec",
    "RunResult",
    "RunSpecification",
    "Task",
    "TaskAttempt",
    "TaskSpec",
    "WorkflowRun",
]
