"""
Phase execution: driving one phase's task DAG to a terminal state.

State Machine:
    pending -> active       on entry, once the previous phase is completed
    blocked -> active       on re-entry after caller intervention
    active  -> completed    when every task has succeeded
    active  -> blocked      when any task has been escalated

Execution Loop:
    1. Create the phase's tasks from the run specification on first entry
       and validate the dependency DAG before anything is dispatched
    2. Escalate waiting tasks with no attempts left, then promote ``blocked``
       tasks whose dependencies all succeeded to ``ready``
    3. Submit ready tasks to the ConcurrencyPool in creation order (FIFO),
       as many as there are free lanes
    4. Wait for any in-flight attempt to finish, apply the RetryPolicy:
       RETRY re-queues the same task, ESCALATE escalates it, DONE succeeds it
    5. Repeat until nothing is in flight and nothing more can be submitted

    Once a task is escalated, or cancellation is requested, no further
    attempts are submitted; in-flight attempts are allowed to finish so that
    no task is left ``running``.

Every task and phase transition is persisted before the loop continues.
"""

import asyncio
from collections.abc import Iterable
from functools import partial

import structlog

from specforge.collaborators.base import InvocationContext
from specforge.collaborators.registry import CollaboratorRegistry
from specforge.engine.cancellation import CancellationToken
from specforge.engine.concurrency import ConcurrencyPool
from specforge.engine.dependency_graph import DependencyGraph
from specforge.engine.dispatcher import TaskDispatcher
from specforge.engine.retry_policy import RetryPolicy
from specforge.engine.run_state import RunState
from specforge.enums import Decision, PhaseStatus, TaskStatus
from specforge.exceptions import WorkflowError
from specforge.models.domain import DEFAULT_MAX_ATTEMPTS, Phase, Task, TaskAttempt

log = structlog.get_logger(__name__)


class PhaseRunner:
    """Drive the tasks of one phase until it completes or blocks.

    Attributes:
        dispatcher: Runs single task attempts.
        pool: Bounded executor shared by all phases of the run.
        retry_policy: Decides between retry, escalation and done.
        registry: Source of the optional diagnostics collaborator.
        default_max_attempts: Attempt limit for tasks without an override.
        diagnostics_timeout: Timeout for the diagnostics collaborator.
    """

    def __init__(
        self,
        dispatcher: TaskDispatcher,
        pool: ConcurrencyPool,
        retry_policy: RetryPolicy,
        registry: CollaboratorRegistry | None = None,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        diagnostics_timeout: float | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.pool = pool
        self.retry_policy = retry_policy
        self.registry = registry or dispatcher.registry
        self.default_max_attempts = default_max_attempts
        self.diagnostics_timeout = diagnostics_timeout

    async def run(
        self,
        state: RunState,
        phase: Phase,
        cancellation: CancellationToken | None = None,
    ) -> PhaseStatus:
        """Drive ``phase`` until it is completed or blocked, or cancellation stops it.

        Args:
            state: Shared state of the run.
            phase: The phase ``state.run.current_phase_index`` points at.
            cancellation: Stops further submissions when triggered.

        Returns:
            COMPLETED or BLOCKED, or ACTIVE if cancellation stopped the phase
            before it reached either.

        Raises:
            WorkflowError: If the previous phase has not completed.
            DependencyCycleError: If the phase's tasks form a cycle.
            StateStoreError: If persisting a transition fails.
        """
        bound_log = log.bind(phase=phase.name)
        await self._enter(state, phase)

        in_flight: dict[asyncio.Task[TaskAttempt | None], Task] = {}
        try:
            while True:
                if not self._should_stop(state, phase, cancellation):
                    for task in self._ready_tasks(state, phase, in_flight.values()):
                        if not self.pool.has_free_lane():
                            break
                        future = await self.pool.submit(
                            partial(self.dispatcher.dispatch, state, task, cancellation)
                        )
                        in_flight[future] = task

                if not in_flight:
                    break

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for future in sorted(done, key=lambda f: in_flight[f].sequence):
                    task = in_flight.pop(future)
                    attempt = future.result()
                    if attempt is None:
                        continue  # cancelled during backoff, task is still ready
                    await self._apply_decision(state, phase, task, attempt)
        finally:
            if in_flight:
                for future in in_flight:
                    future.cancel()
                await asyncio.gather(*in_flight, return_exceptions=True)

        tasks = state.tasks_in_phase(phase)
        if all(task.status is TaskStatus.SUCCEEDED for task in tasks):
            phase.status = PhaseStatus.COMPLETED
            await state.persist()
            bound_log.info("phase_completed", tasks=len(tasks))
        elif any(task.status is TaskStatus.ESCALATED for task in tasks):
            await self._diagnose(state, phase)
            phase.status = PhaseStatus.BLOCKED
            await state.persist()
            bound_log.warning(
                "phase_blocked",
                escalated=[task.id for task in tasks if task.status is TaskStatus.ESCALATED],
            )
        else:
            bound_log.warning("phase_interrupted", reason=cancellation.reason if cancellation else None)

        return phase.status

    async def _enter(self, state: RunState, phase: Phase) -> None:
        """Activate ``phase``, creating its tasks on first entry."""
        index = state.run.phases.index(phase)
        if index > 0 and state.run.phases[index - 1].status is not PhaseStatus.COMPLETED:
            raise WorkflowError(
                f"Phase '{phase.name}' cannot start before '{state.run.phases[index - 1].name}' completed",
                run_id=state.run.id,
            )
        if phase.status is PhaseStatus.COMPLETED:
            return

        if not phase.task_ids:
            self._create_tasks(state, phase)

        graph = DependencyGraph(phase.name, {task.id: task.depends_on for task in state.tasks_in_phase(phase)})
        graph.validate()

        phase.status = PhaseStatus.ACTIVE
        await state.persist()
        log.info("phase_active", phase=phase.name, tasks=len(phase.task_ids))

        await self._reopen_escalated(state, phase)
        await self._escalate_exhausted(state, phase)
        await self._promote_ready(state, phase)

    def _create_tasks(self, state: RunState, phase: Phase) -> None:
        phase_spec = state.specification.phase(phase.name)
        for task_spec in phase_spec.tasks:
            task = Task(
                id=task_spec.id,
                phase_name=phase.name,
                depends_on=list(task_spec.depends_on),
                complexity_class=task_spec.complexity_class,
                max_attempts=task_spec.max_attempts or self.default_max_attempts,
                payload=dict(task_spec.payload),
            )
            state.add_task(task)
            phase.task_ids.append(task.id)
        log.debug("phase_tasks_created", phase=phase.name, count=len(phase.task_ids))

    async def _reopen_escalated(self, state: RunState, phase: Phase) -> None:
        """Give escalated tasks with attempts left another chance.

        Tasks whose attempt count already reached ``max_attempts`` stay
        escalated, so the phase blocks again without dispatching anything.
        """
        for task in state.tasks_in_phase(phase):
            if task.status is not TaskStatus.ESCALATED:
                continue
            used = len(state.attempts_for(task.id))
            if used < task.max_attempts:
                task.status = TaskStatus.BLOCKED
                task.diagnosis = None
                await state.persist()
                log.info("task_reopened", task_id=task.id, attempts_used=used, max_attempts=task.max_attempts)

    async def _escalate_exhausted(self, state: RunState, phase: Phase) -> None:
        """Escalate waiting tasks that have no attempts left to dispatch."""
        for task in state.tasks_in_phase(phase):
            if task.status not in (TaskStatus.BLOCKED, TaskStatus.READY):
                continue
            used = len(state.attempts_for(task.id))
            if used >= task.max_attempts:
                task.status = TaskStatus.ESCALATED
                await state.persist()
                log.error("task_escalated", task_id=task.id, attempt=used, outcome=None)

    async def _promote_ready(self, state: RunState, phase: Phase) -> None:
        """Move blocked tasks whose dependencies all succeeded to ``ready``."""
        tasks = state.tasks_in_phase(phase)
        graph = DependencyGraph(phase.name, {task.id: task.depends_on for task in tasks})
        succeeded = {task.id for task in tasks if task.status is TaskStatus.SUCCEEDED}
        for task_id in graph.ready(succeeded):
            task = state.tasks[task_id]
            if task.status is TaskStatus.BLOCKED:
                task.status = TaskStatus.READY
                await state.persist()
                log.debug("task_ready", task_id=task.id)

    def _ready_tasks(self, state: RunState, phase: Phase, in_flight: Iterable[Task]) -> list[Task]:
        """Ready tasks not yet submitted, FIFO by creation order."""
        submitted = {task.id for task in in_flight}
        return [
            task
            for task in state.tasks_in_phase(phase)
            if task.status is TaskStatus.READY and task.id not in submitted
        ]

    def _should_stop(self, state: RunState, phase: Phase, cancellation: CancellationToken | None) -> bool:
        if cancellation is not None and cancellation.cancelled:
            return True
        return any(task.status is TaskStatus.ESCALATED for task in state.tasks_in_phase(phase))

    async def _apply_decision(self, state: RunState, phase: Phase, task: Task, attempt: TaskAttempt) -> None:
        decision = self.retry_policy.decide(task, attempt)
        if decision is Decision.DONE:
            task.status = TaskStatus.SUCCEEDED
            await state.persist()
            log.info("task_succeeded", task_id=task.id, attempts=attempt.attempt_number)
            await self._promote_ready(state, phase)
            return

        if decision is Decision.RETRY:
            task.status = TaskStatus.READY
            log.info(
                "task_requeued",
                task_id=task.id,
                attempt=attempt.attempt_number,
                max_attempts=task.max_attempts,
            )
        else:
            task.status = TaskStatus.ESCALATED
            log.error(
                "task_escalated",
                task_id=task.id,
                attempt=attempt.attempt_number,
                outcome=attempt.outcome.value if attempt.outcome else None,
            )
        await state.persist()

    async def _diagnose(self, state: RunState, phase: Phase) -> None:
        """Run the diagnostics collaborator once per newly escalated task."""
        diagnostics = self.registry.diagnostics
        if diagnostics is None:
            return

        for task in state.tasks_in_phase(phase):
            if task.status is not TaskStatus.ESCALATED or task.diagnosis is not None:
                continue
            attempts = state.attempts_for(task.id)
            context = InvocationContext(
                run_id=state.run.id,
                phase_name=phase.name,
                attempt_number=len(attempts),
                timeout=self.diagnostics_timeout,
                previous_attempts=tuple(attempts),
            )
            future = await self.pool.submit(partial(self._invoke_diagnostics, task, context))
            task.diagnosis = await future
            await state.persist()

    async def _invoke_diagnostics(self, task: Task, context: InvocationContext) -> dict[str, object]:
        diagnostics = self.registry.diagnostics
        assert diagnostics is not None
        try:
            result = await asyncio.wait_for(diagnostics.invoke(task, context), timeout=context.timeout)
        except TimeoutError:
            log.error("diagnostics_timeout", task_id=task.id, timeout=context.timeout)
            return {"error": f"diagnostics timed out after {context.timeout}s"}
        except Exception as e:
            log.error("diagnostics_failed", task_id=task.id, error=str(e), exc_info=True)
            return {"error": str(e), "type": type(e).__name__}

        log.info("task_diagnosed", task_id=task.id, collaborator=diagnostics.name)
        if isinstance(result, dict):
            return result
        if hasattr(result, "to_detail"):
            return result.to_detail()
        return {"report": str(result)}
