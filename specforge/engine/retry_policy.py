"""
Bounded retry decisions.

The RetryPolicy turns the outcome of a finished TaskAttempt into one of
three decisions:

    success                                   -> DONE
    fatalFailure (any attempt)                -> ESCALATE
    transientFailure, attempt <  maxAttempts  -> RETRY
    transientFailure, attempt >= maxAttempts  -> ESCALATE

so the informal "iterate until it passes" loop becomes a terminating state
machine with a hard attempt ceiling.

Backoff Formula:
    delay before attempt n + 1 = backoff_factor ** n
    backoff_factor=0.0 retries immediately; 2.0 waits 2s, 4s, 8s, ...
"""

import structlog

from specforge.enums import AttemptOutcome, Decision
from specforge.models.domain import Task, TaskAttempt

log = structlog.get_logger(__name__)


class RetryPolicy:
    """Decide whether a task is done, retried or escalated.

    The policy is stateless and safe to share across lanes and phases.

    Attributes:
        backoff_factor: Base of the exponential delay between attempts.
        max_delay: Upper bound on a single delay, in seconds.
    """

    def __init__(self, backoff_factor: float = 0.0, max_delay: float = 300.0) -> None:
        if backoff_factor < 0:
            raise ValueError(f"backoff_factor must be >= 0, got {backoff_factor}")
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay

    def decide(self, task: Task, last_attempt: TaskAttempt) -> Decision:
        """Decide what happens to ``task`` after ``last_attempt``.

        Args:
            task: The task the attempt belongs to.
            last_attempt: Its most recent, finished attempt.

        Returns:
            DONE, RETRY or ESCALATE.

        Raises:
            ValueError: If the attempt is still in flight or belongs to
                another task.
        """
        if last_attempt.task_id != task.id:
            raise ValueError(f"Attempt for task {last_attempt.task_id} applied to task {task.id}")
        if last_attempt.outcome is None:
            raise ValueError(f"Attempt {last_attempt.attempt_number} of task {task.id} has not finished")

        if last_attempt.outcome is AttemptOutcome.SUCCESS:
            decision = Decision.DONE
        elif last_attempt.outcome is AttemptOutcome.FATAL_FAILURE:
            decision = Decision.ESCALATE
        elif last_attempt.attempt_number < task.max_attempts:
            decision = Decision.RETRY
        else:
            decision = Decision.ESCALATE

        log.debug(
            "retry_decision",
            task_id=task.id,
            attempt=last_attempt.attempt_number,
            max_attempts=task.max_attempts,
            outcome=last_attempt.outcome.value,
            decision=decision.value,
        )
        return decision

    def delay_before(self, attempt_number: int) -> float:
        """Seconds to wait before starting ``attempt_number``.

        The first attempt never waits.
        """
        if attempt_number <= 1 or self.backoff_factor == 0:
            return 0.0
        return min(self.backoff_factor ** (attempt_number - 1), self.max_delay)
