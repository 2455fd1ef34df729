"""In-memory state of one run and its single persistence path.

RunState bundles the run, its tasks and attempt history with the store they
are saved to. Every component that changes a task or phase calls
``persist()`` right after the transition; nothing batches saves across
transitions. Since the event loop is single-threaded and ``StateStore.save``
snapshots synchronously, concurrent lanes can share one RunState without
racing on the record.
"""

from typing import Any

import structlog

from specforge.engine.state_store import LoadedRun, StateStore
from specforge.enums import TaskStatus
from specforge.models.domain import Phase, Task, TaskAttempt, WorkflowRun
from specforge.models.specification import RunSpecification

log = structlog.get_logger(__name__)


class RunState:
    """Run, tasks and attempts of one workflow run plus their store.

    Attributes:
        run: The workflow run.
        tasks: Task id -> task, in creation order.
        attempts: Full attempt history, in creation order.
        specification: The run specification driving task creation.
        store: Where every transition is persisted.
    """

    def __init__(
        self,
        run: WorkflowRun,
        specification: RunSpecification,
        store: StateStore,
        tasks: list[Task] | None = None,
        attempts: list[TaskAttempt] | None = None,
    ) -> None:
        self.run = run
        self.specification = specification
        self.store = store
        self.tasks: dict[str, Task] = {task.id: task for task in tasks or []}
        self.attempts: list[TaskAttempt] = list(attempts or [])

    @classmethod
    def create(cls, specification: RunSpecification, store: StateStore) -> "RunState":
        """Fresh state for a run that was never persisted."""
        run = WorkflowRun(
            id=specification.run_id,
            phases=[Phase(name=phase.name) for phase in specification.phases],
        )
        return cls(run, specification, store)

    @classmethod
    def from_loaded(cls, loaded: LoadedRun, store: StateStore) -> "RunState":
        specification = RunSpecification.from_dict(loaded.specification)
        return cls(loaded.run, specification, store, loaded.tasks, loaded.attempts)

    async def persist(self) -> None:
        """Save the complete run state.

        Raises:
            StateStoreError: If the save fails. Callers must not proceed.
        """
        await self.store.save(
            self.run,
            list(self.tasks.values()),
            self.attempts,
            self.specification_record(),
        )

    def specification_record(self) -> dict[str, Any]:
        return self.specification.model_dump(mode="json")

    def add_task(self, task: Task) -> None:
        task.sequence = len(self.tasks)
        self.tasks[task.id] = task

    def tasks_in_phase(self, phase: Phase) -> list[Task]:
        """Tasks of ``phase`` in creation order."""
        return sorted(
            (self.tasks[task_id] for task_id in phase.task_ids),
            key=lambda task: task.sequence,
        )

    def attempts_for(self, task_id: str) -> list[TaskAttempt]:
        return [attempt for attempt in self.attempts if attempt.task_id == task_id]

    def last_attempt(self, task_id: str) -> TaskAttempt | None:
        attempts = self.attempts_for(task_id)
        return attempts[-1] if attempts else None

    def running_tasks(self) -> list[Task]:
        return [task for task in self.tasks.values() if task.status is TaskStatus.RUNNING]

