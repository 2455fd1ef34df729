"""Workflow orchestration engine.

This package holds the phase/task/retry/state machinery that drives slow and
possibly failing external collaborators to completion.

Key Components:
    - WorkflowEngine: Iterates phases in order and reports a RunResult
    - PhaseRunner: Drives one phase's task DAG to completion or blockage
    - TaskDispatcher: Runs one attempt of a task against its collaborator
    - ConcurrencyPool: Bounded executor for collaborator invocations
    - RetryPolicy: Decides between retry, escalation and done
    - StateStore: Durable, versioned JSON persistence of runs

Type Definitions:
    - StateRecord: TypedDict for the complete persisted run document
    - RunRecord, PhaseRecord, TaskRecord, AttemptRecord: its parts

Example:
    >>> from specforge.engine.workflow_engine import WorkflowEngine
    >>> engine = WorkflowEngine(store, registry, classifier)
    >>> result = await engine.run(spec)

    >>> from specforge.engine.types import StateRecord
"""

from specforge.engine.types import (
    AttemptRecord,
    PhaseRecord,
    RunRecord,
    StateRecord,
    TaskRecord,
)

__all__ = [
    "AttemptRecord",
    "PhaseRecord",
    "RunRecord",
    "StateRecord",
    "TaskRecord",
]
