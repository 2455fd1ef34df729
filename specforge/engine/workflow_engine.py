"""
Top-level workflow driver.

This module provides the WorkflowEngine class, the entry point a coordinator
uses to take a RunSpecification to a terminal status. The engine manages:

- Loading or creating the persisted run
- Recovering attempts interrupted by a previous process
- Iterating phases in declared order, one active phase at a time
- Turning a blocked phase into an ``escalated`` run report
- Aborting the run as ``failed`` on engine failures and cancellation

Run Lifecycle:
    running --(all phases completed)--> completed
    running --(a phase blocked)-------> escalated
    running --(engine failure)--------> failed
    running --(cancellation)----------> failed (cancelled marker set)

    escalated and failed runs can be run again: the engine reloads the stored
    state and resumes from ``current_phase_index``. Completed runs return
    immediately. Abandoned runs cannot be resumed.

Example:
    >>> store = StateStore(".specforge/state")
    >>> registry = CollaboratorRegistry({"simple": EchoCollaborator()})
    >>> engine = WorkflowEngine(store, registry, exception_classifier())
    >>> result = await engine.run(RunSpecification.from_yaml("workflow.yaml"))
    >>> result.status
    <RunStatus.COMPLETED: 'completed'>
"""

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog

from specforge.collaborators.registry import CollaboratorRegistry
from specforge.config.settings import EngineSettings
from specforge.engine.cancellation import CancellationToken
from specforge.engine.classification import Classifier, exit_code_classifier
from specforge.engine.concurrency import DEFAULT_CAPACITY, ConcurrencyPool
from specforge.engine.dispatcher import TaskDispatcher
from specforge.engine.phase_runner import PhaseRunner
from specforge.engine.retry_policy import RetryPolicy
from specforge.engine.run_state import RunState
from specforge.engine.state_store import StateStore
from specforge.enums import AttemptOutcome, Decision, PhaseStatus, RunStatus, TaskStatus
from specforge.exceptions import (
    EngineFailure,
    RunNotFoundError,
    RunSpecificationError,
    StateStoreError,
    WorkflowError,
)
from specforge.models.domain import (
    DEFAULT_MAX_ATTEMPTS,
    EscalatedTask,
    RunResult,
    Task,
    TaskAttempt,
    utcnow,
)
from specforge.models.specification import RunSpecification

log = structlog.get_logger(__name__)

ABANDONED = "abandoned"


class WorkflowEngine:
    """Drive workflow runs phase by phase and report their terminal status.

    The engine itself never retries across phase boundaries: a blocked phase
    halts the run until the caller intervenes (fixes the input, raises an
    attempt limit or abandons the run) and runs it again.

    Attributes:
        store: Durable persistence for every run this engine drives.
        registry: Collaborators by complexity class, plus diagnostics.
        retry_policy: Shared retry decisions and backoff.
        pool_capacity: Lanes of the per-run ConcurrencyPool.
        default_max_attempts: Attempt limit for tasks without an override.
    """

    def __init__(
        self,
        store: StateStore,
        registry: CollaboratorRegistry,
        classifier: Classifier,
        *,
        pool_capacity: int = DEFAULT_CAPACITY,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        task_timeout: float | None = None,
        retry_policy: RetryPolicy | None = None,
        classifiers: Mapping[str, Classifier] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Where runs are persisted.
            registry: Collaborators by complexity class.
            classifier: Default classification rule for raw results.
            pool_capacity: Maximum concurrent collaborator invocations.
            default_max_attempts: Attempt limit for tasks without an override.
            task_timeout: Seconds before a collaborator call is abandoned.
            retry_policy: Retry decisions; defaults to immediate retries.
            classifiers: Per-complexity-class classifier overrides.
        """
        self.store = store
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy()
        self.pool_capacity = pool_capacity
        self.default_max_attempts = default_max_attempts
        self.task_timeout = task_timeout
        self.dispatcher = TaskDispatcher(
            registry,
            classifier,
            retry_policy=self.retry_policy,
            timeout=task_timeout,
            classifiers=classifiers,
        )

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        registry: CollaboratorRegistry | None = None,
    ) -> "WorkflowEngine":
        """Build an engine backed by command collaborators from settings.

        Raises:
            StateStoreError: If the state directory cannot be created.
        """
        classifiers = {
            complexity_class: exit_code_classifier(config.fatal_exit_codes)
            for complexity_class, config in settings.collaborators.items()
        }
        return cls(
            StateStore(settings.state_dir),
            registry or CollaboratorRegistry.from_settings(settings),
            exit_code_classifier(),
            pool_capacity=settings.max_concurrent_tasks,
            default_max_attempts=settings.default_max_attempts,
            task_timeout=settings.task_timeout,
            retry_policy=RetryPolicy(backoff_factor=settings.retry_backoff_factor),
            classifiers=classifiers,
        )

    async def run(
        self,
        specification: RunSpecification | dict[str, Any],
        cancellation: CancellationToken | None = None,
    ) -> RunResult:
        """Run a workflow to a terminal status, resuming stored progress.

        Args:
            specification: Phases and tasks of the run. If a run with the same
                id is stored, it is resumed and its specification replaced.
            cancellation: External signal to stop the run early.

        Returns:
            RunResult with status completed, escalated or failed.

        Raises:
            RunSpecificationError: If the input is invalid or does not match
                the stored run. Raised before any state is written.
            WorkflowError: If the stored run was abandoned.
        """
        if not isinstance(specification, RunSpecification):
            specification = RunSpecification.from_dict(specification)
        specification.validate_graphs()
        self.registry.ensure_covers(specification.complexity_classes(), run_id=specification.run_id)

        with structlog.contextvars.bound_contextvars(run_id=specification.run_id):
            try:
                loaded = await self.store.load(specification.run_id)
            except StateStoreError as e:
                log.error("run_load_failed", error=str(e))
                return RunResult(run_id=specification.run_id, status=RunStatus.FAILED, error=str(e))

            if loaded is None:
                state = RunState.create(specification, self.store)
                log.info("run_created", phases=state.run.phase_names)
            else:
                state = RunState.from_loaded(loaded, self.store)
                self._check_resumable(state)
                self._replace_specification(state, specification)
                log.info("run_loaded", status=state.run.status.value, phase_index=state.run.current_phase_index)

            return await self._drive(state, cancellation)

    async def resume(self, run_id: str, cancellation: CancellationToken | None = None) -> RunResult:
        """Resume a stored run with its stored specification.

        Raises:
            RunNotFoundError: If no run with this id is stored.
            WorkflowError: If the run was abandoned.
        """
        with structlog.contextvars.bound_contextvars(run_id=run_id):
            try:
                state = await self._load_state(run_id)
            except StateStoreError as e:
                log.error("run_load_failed", error=str(e))
                return RunResult(run_id=run_id, status=RunStatus.FAILED, error=str(e))

            self._check_resumable(state)
            self.registry.ensure_covers(state.specification.complexity_classes(), run_id=run_id)
            log.info("run_resumed", status=state.run.status.value, phase_index=state.run.current_phase_index)
            return await self._drive(state, cancellation)

    async def report(self, run_id: str) -> RunResult:
        """Current status of a stored run, without driving it.

        Raises:
            RunNotFoundError: If no run with this id is stored.
        """
        return self._result(await self._load_state(run_id))

    async def raise_attempt_limit(self, run_id: str, task_id: str, max_attempts: int) -> None:
        """Change the attempt limit of one task of a stored run.

        The new limit is stored with the run's specification, so it survives
        into the next ``run`` or ``resume``. Escalated tasks with attempts
        left are reopened when their phase is entered again.

        Raises:
            RunNotFoundError: If no run with this id is stored.
            WorkflowError: If the task is unknown, already succeeded, or the
                limit is below the attempts it already used.
        """
        state = await self._load_state(run_id)
        task_spec = state.specification.task(task_id)
        if task_spec is None:
            raise WorkflowError(f"Unknown task: {task_id}", run_id=run_id)

        task = state.tasks.get(task_id)
        used = len(state.attempts_for(task_id))
        if task is not None and task.status is TaskStatus.SUCCEEDED:
            raise WorkflowError(f"Task {task_id} already succeeded", run_id=run_id)
        if max_attempts < max(used, 1):
            raise WorkflowError(
                f"Task {task_id} already used {used} attempts; limit {max_attempts} is too low",
                run_id=run_id,
            )

        task_spec.max_attempts = max_attempts
        if task is not None:
            task.max_attempts = max_attempts
        await state.persist()
        log.info("attempt_limit_raised", run_id=run_id, task_id=task_id, max_attempts=max_attempts, used=used)

    async def abandon(self, run_id: str) -> RunResult:
        """Give up on a stored run.

        Every task that has not reached a terminal status becomes ``failed``
        and the run becomes ``failed`` with reason "abandoned".

        Raises:
            RunNotFoundError: If no run with this id is stored.
            WorkflowError: If the run already completed.
        """
        state = await self._load_state(run_id)
        if state.run.status is RunStatus.COMPLETED:
            raise WorkflowError("Cannot abandon a completed run", run_id=run_id)

        for task in state.tasks.values():
            if task.status.is_terminal:
                continue
            attempt = state.last_attempt(task.id)
            if attempt is not None and not attempt.is_finished:
                attempt.finish(AttemptOutcome.TRANSIENT_FAILURE, {"reason": ABANDONED})
            task.status = TaskStatus.FAILED

        state.run.status = RunStatus.FAILED
        state.run.failure_reason = ABANDONED
        await state.persist()
        log.warning("run_abandoned", run_id=run_id)
        return self._result(state)

    async def acknowledge(self, run_id: str) -> Path:
        """Archive a terminal run.

        Returns:
            Path of the archived record.

        Raises:
            RunNotFoundError: If no run with this id is stored.
            WorkflowError: If the run is still running.
        """
        state = await self._load_state(run_id)
        if not state.run.status.is_terminal:
            raise WorkflowError("Only terminal runs can be acknowledged", run_id=run_id)

        state.run.archived_at = utcnow()
        await state.persist()
        return await self.store.archive(run_id)

    async def _load_state(self, run_id: str) -> RunState:
        loaded = await self.store.load(run_id)
        if loaded is None:
            raise RunNotFoundError("Run not found", run_id=run_id)
        return RunState.from_loaded(loaded, self.store)

    def _check_resumable(self, state: RunState) -> None:
        if state.run.status is RunStatus.FAILED and state.run.failure_reason == ABANDONED:
            raise WorkflowError("Run was abandoned and cannot be resumed", run_id=state.run.id)

    def _replace_specification(self, state: RunState, specification: RunSpecification) -> None:
        """Swap in a corrected specification for a stored run.

        Phases must match the stored run. Tasks already created keep their
        history and dependencies; tasks that have not succeeded pick up the
        new payload, complexity class and attempt limit. Nothing is changed
        unless every check passes.

        Raises:
            RunSpecificationError: If phases or created tasks differ, or a
                new attempt limit is below the attempts a task already used.
        """
        run_id = state.run.id
        if [phase.name for phase in specification.phases] != state.run.phase_names:
            raise RunSpecificationError("Phases differ from the stored run", run_id=run_id)

        for phase in state.run.phases:
            if not phase.task_ids:
                continue
            declared = [task.id for task in specification.phase(phase.name).tasks]
            if set(declared) != set(phase.task_ids):
                raise RunSpecificationError(
                    f"Tasks of phase '{phase.name}' differ from the stored run",
                    run_id=run_id,
                )

        for task in state.tasks.values():
            task_spec = specification.task(task.id)
            if task_spec is None or task.status is TaskStatus.SUCCEEDED:
                continue
            used = len(state.attempts_for(task.id))
            limit = task_spec.max_attempts or self.default_max_attempts
            if limit < used:
                raise RunSpecificationError(
                    f"Task {task.id} already used {used} attempts; limit {limit} is too low",
                    run_id=run_id,
                )

        for task in state.tasks.values():
            task_spec = specification.task(task.id)
            if task_spec is None or task.status is TaskStatus.SUCCEEDED:
                continue
            task.payload = dict(task_spec.payload)
            task.complexity_class = task_spec.complexity_class
            task.max_attempts = task_spec.max_attempts or self.default_max_attempts

        state.specification = specification

    async def _drive(self, state: RunState, cancellation: CancellationToken | None) -> RunResult:
        run = state.run
        if run.status is RunStatus.COMPLETED:
            log.info("run_already_completed")
            return self._result(state)

        pool = ConcurrencyPool(self.pool_capacity)
        runner = PhaseRunner(
            self.dispatcher,
            pool,
            self.retry_policy,
            registry=self.registry,
            default_max_attempts=self.default_max_attempts,
            diagnostics_timeout=self.task_timeout,
        )

        try:
            for task in state.running_tasks():
                self._recover(state, task)
                await state.persist()
            run.status = RunStatus.RUNNING
            run.failure_reason = None
            run.cancelled = False
            await state.persist()

            while (phase := run.current_phase) is not None:
                if cancellation is not None and cancellation.cancelled:
                    return await self._stop_cancelled(state, cancellation)

                status = await runner.run(state, phase, cancellation)
                if status is PhaseStatus.BLOCKED:
                    run.status = RunStatus.ESCALATED
                    await state.persist()
                    log.warning("run_escalated", phase=phase.name)
                    return self._result(state)
                if status is not PhaseStatus.COMPLETED:
                    return await self._stop_cancelled(state, cancellation)

                run.current_phase_index += 1
                await state.persist()

            if cancellation is not None and cancellation.cancelled:
                return await self._stop_cancelled(state, cancellation)

            run.status = RunStatus.COMPLETED
            await state.persist()
            log.info("run_completed", phases=len(run.phases), attempts=len(state.attempts))
            return self._result(state)

        except EngineFailure as e:
            await pool.cancel_all()
            return await self._fail(state, e)
        except Exception as e:
            log.exception("run_crashed", error=str(e))
            await pool.cancel_all()
            return await self._fail(state, EngineFailure(f"Unexpected engine error: {e}", run_id=run.id))
        finally:
            await pool.shutdown()

    def _recover(self, state: RunState, task: Task) -> None:
        """Settle a task left ``running`` by a previous process.

        An unfinished attempt (or a synthesized first attempt if none was
        recorded) is finished as an interrupted transient failure; the
        RetryPolicy then decides as for any other attempt. Not persisted here.
        """
        attempt = state.last_attempt(task.id)
        if attempt is None:
            attempt = TaskAttempt(task_id=task.id, attempt_number=1)
            state.attempts.append(attempt)
        if not attempt.is_finished:
            attempt.finish(AttemptOutcome.TRANSIENT_FAILURE, {"reason": "interrupted"})

        self._settle(task, attempt)
        log.warning(
            "task_recovered",
            task_id=task.id,
            attempt=attempt.attempt_number,
            status=task.status.value,
        )

    def _settle(self, task: Task, attempt: TaskAttempt) -> None:
        decision = self.retry_policy.decide(task, attempt)
        if decision is Decision.DONE:
            task.status = TaskStatus.SUCCEEDED
        elif decision is Decision.RETRY:
            task.status = TaskStatus.READY
        else:
            task.status = TaskStatus.ESCALATED

    async def _stop_cancelled(self, state: RunState, cancellation: CancellationToken | None) -> RunResult:
        reason = cancellation.reason if cancellation is not None else None
        state.run.status = RunStatus.FAILED
        state.run.cancelled = True
        state.run.failure_reason = f"cancelled: {reason or 'cancelled'}"
        await state.persist()
        log.warning("run_cancelled", reason=reason)
        return self._result(state)

    async def _fail(self, state: RunState, error: EngineFailure) -> RunResult:
        """Record an engine failure; the final save is best effort."""
        run = state.run
        for task in state.running_tasks():
            self._recover(state, task)
        run.status = RunStatus.FAILED
        run.failure_reason = error.message
        try:
            await state.persist()
        except StateStoreError as save_error:
            log.error("run_failure_not_persisted", error=str(save_error))
        log.error("run_failed", error=str(error), error_type=type(error).__name__)
        return RunResult(run_id=run.id, status=RunStatus.FAILED, error=str(error))

    def _result(self, state: RunState) -> RunResult:
        run = state.run
        blocked_phase = None
        escalated: list[EscalatedTask] = []
        if run.status is RunStatus.ESCALATED and run.current_phase is not None:
            blocked_phase = run.current_phase.name
            escalated = [
                EscalatedTask(task=task, attempts=state.attempts_for(task.id), diagnosis=task.diagnosis)
                for task in state.tasks_in_phase(run.current_phase)
                if task.status is TaskStatus.ESCALATED
            ]
        return RunResult(
            run_id=run.id,
            status=run.status,
            blocked_phase=blocked_phase,
            escalated_tasks=escalated,
            error=run.failure_reason if run.status is RunStatus.FAILED else None,
            cancelled=run.cancelled,
        )
