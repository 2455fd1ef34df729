"""
Task dispatching: one attempt of one task against its collaborator.

The TaskDispatcher is what the PhaseRunner submits to the ConcurrencyPool.
For a ready task it:

    1. Waits out the retry backoff for this attempt number, if any; if the
       run is cancelled meanwhile, returns None and leaves the task ``ready``
    2. Creates the TaskAttempt, marks the task ``running`` and saves
    3. Looks up the collaborator for the task's complexity class and invokes
       it under the configured timeout
    4. Classifies the raw result or exception with the caller's classifier
    5. Finishes the attempt with that outcome and saves again

It does not apply the RetryPolicy; that is the PhaseRunner's job once the
attempt is handed back.

Error Handling:
    Collaborator exceptions and timeouts never escape: they are classified
    and recorded on the attempt. StateStoreError propagates, since the engine
    must not continue with unpersisted state. If the dispatch is cancelled
    (engine abort), the in-flight attempt is closed as a transient failure
    before the cancellation propagates.
"""

import asyncio
from collections.abc import Mapping
from typing import Any

import structlog

from specforge.collaborators.base import InvocationContext
from specforge.collaborators.registry import CollaboratorRegistry
from specforge.engine.cancellation import CancellationToken
from specforge.engine.classification import Classifier, describe_error, describe_result
from specforge.engine.retry_policy import RetryPolicy
from specforge.engine.run_state import RunState
from specforge.enums import AttemptOutcome, TaskStatus
from specforge.exceptions import CollaboratorTimeoutError, EngineFailure
from specforge.models.domain import Task, TaskAttempt

log = structlog.get_logger(__name__)


class TaskDispatcher:
    """Execute single task attempts and record their outcomes.

    Attributes:
        registry: Collaborators by complexity class.
        classifier: Default raw-result classifier.
        classifiers: Per-complexity-class classifier overrides.
        retry_policy: Used for the backoff delay between attempts.
        timeout: Seconds to wait for a collaborator before recording a
            transient failure. None waits indefinitely.
    """

    def __init__(
        self,
        registry: CollaboratorRegistry,
        classifier: Classifier,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = None,
        classifiers: Mapping[str, Classifier] | None = None,
    ) -> None:
        self.registry = registry
        self.classifier = classifier
        self.classifiers = dict(classifiers or {})
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout

    def classifier_for(self, complexity_class: str) -> Classifier:
        return self.classifiers.get(complexity_class, self.classifier)

    async def dispatch(
        self,
        state: RunState,
        task: Task,
        cancellation: CancellationToken | None = None,
    ) -> TaskAttempt | None:
        """Run one attempt of ``task`` and return the finished attempt.

        Args:
            state: Shared state of the run the task belongs to.
            task: A task in ``ready`` status.
            cancellation: Run-wide cancellation signal, passed through to the
                collaborator. Also cuts the retry backoff short.

        Returns:
            The finished TaskAttempt, already appended to the run's history
            and persisted. None if cancellation arrived before the attempt
            was started; the task is then left untouched.

        Raises:
            EngineFailure: If the task is not ready or has no attempts left.
            StateStoreError: If persisting the attempt fails.
        """
        if task.status is not TaskStatus.READY:
            raise EngineFailure(f"Task {task.id} dispatched in status {task.status.value}", run_id=state.run.id)

        previous = state.attempts_for(task.id)
        attempt_number = len(previous) + 1
        if attempt_number > task.max_attempts:
            raise EngineFailure(
                f"Task {task.id} has used all {task.max_attempts} attempts",
                run_id=state.run.id,
            )

        delay = self.retry_policy.delay_before(attempt_number)
        if delay > 0:
            log.info("retry_backoff", task_id=task.id, attempt=attempt_number, delay=delay)
            await self._backoff(delay, cancellation)

        if cancellation is not None and cancellation.cancelled:
            log.info("task_not_dispatched", task_id=task.id, attempt=attempt_number, reason=cancellation.reason)
            return None

        collaborator = self.registry.get(task.complexity_class)

        attempt = TaskAttempt(task_id=task.id, attempt_number=attempt_number)
        state.attempts.append(attempt)
        task.status = TaskStatus.RUNNING
        await state.persist()

        context = InvocationContext(
            run_id=state.run.id,
            phase_name=task.phase_name,
            attempt_number=attempt_number,
            timeout=self.timeout,
            previous_attempts=tuple(a for a in previous if a.is_finished),
            cancellation=cancellation,
        )

        log.info(
            "task_dispatched",
            task_id=task.id,
            phase=task.phase_name,
            attempt=attempt_number,
            max_attempts=task.max_attempts,
            collaborator=collaborator.name,
        )

        raw_result: Any = None
        error: BaseException | None = None
        try:
            raw_result = await asyncio.wait_for(collaborator.invoke(task, context), timeout=self.timeout)
        except TimeoutError:
            error = CollaboratorTimeoutError(
                "Collaborator did not answer",
                timeout_seconds=self.timeout,
                complexity_class=task.complexity_class,
                task_id=task.id,
            )
        except asyncio.CancelledError:
            attempt.finish(AttemptOutcome.TRANSIENT_FAILURE, {"reason": "aborted"})
            log.warning("task_attempt_aborted", task_id=task.id, attempt=attempt_number)
            raise
        except Exception as e:
            error = e

        outcome, error_detail = self._classify(task, raw_result, error)
        attempt.finish(outcome, error_detail)
        await state.persist()

        log_method = log.info if outcome is AttemptOutcome.SUCCESS else log.warning
        log_method(
            "task_attempt_finished",
            task_id=task.id,
            attempt=attempt_number,
            outcome=outcome.value,
            duration=attempt.duration,
        )
        return attempt

    async def _backoff(self, delay: float, cancellation: CancellationToken | None) -> None:
        """Sleep for ``delay`` seconds, waking early if the run is cancelled."""
        if cancellation is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancellation.wait(), timeout=delay)
        except TimeoutError:
            pass  # backoff elapsed

    def _classify(
        self, task: Task, raw_result: Any, error: BaseException | None
    ) -> tuple[AttemptOutcome, dict[str, Any] | None]:
        classifier = self.classifier_for(task.complexity_class)
        try:
            outcome = AttemptOutcome(classifier(raw_result, error))
        except Exception as e:
            # A broken classifier makes every retry classify the same way.
            log.error("classifier_failed", task_id=task.id, error=str(e), exc_info=True)
            return AttemptOutcome.FATAL_FAILURE, {"reason": "classifier_error", **describe_error(e)}

        if outcome is AttemptOutcome.SUCCESS:
            return outcome, None
        if error is not None:
            return outcome, describe_error(error)
        return outcome, describe_result(raw_result)
