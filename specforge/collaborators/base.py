"""
Abstract base class for collaborators.

A collaborator is the external capability provider a task is dispatched to:
a code generator, a test runner, a diagnostics routine. The engine only
relies on the call contract defined here; what the collaborator does with
the task is its own business.

Contract:
    ``invoke`` returns an opaque raw result or raises. The caller-supplied
    classifier (see ``specforge.engine.classification``) maps the raw result
    or exception to success, transientFailure or fatalFailure; the engine
    never interprets either itself.

    Implementations should honour ``context.timeout`` where they can cut work
    short themselves. The dispatcher enforces the timeout regardless by
    cancelling the ``invoke`` coroutine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from specforge.engine.cancellation import CancellationToken
from specforge.models.domain import Task, TaskAttempt


@dataclass(frozen=True)
class InvocationContext:
    """What a collaborator gets to know about the attempt it serves.

    Attributes:
        run_id: Run the task belongs to.
        phase_name: Phase the task belongs to.
        attempt_number: 1-based number of the attempt being executed.
        timeout: Seconds the dispatcher will wait before abandoning the call.
        previous_attempts: Finished earlier attempts of this task, oldest
            first. For the diagnostics collaborator this is the full history.
        cancellation: Run-wide cancellation signal, for long-running work
            that wants to stop early.
    """

    run_id: str
    phase_name: str
    attempt_number: int
    timeout: float | None = None
    previous_attempts: tuple[TaskAttempt, ...] = ()
    cancellation: CancellationToken | None = None

    @property
    def last_error(self) -> dict[str, Any] | None:
        """``error_detail`` of the most recent earlier attempt, if any."""
        if not self.previous_attempts:
            return None
        return self.previous_attempts[-1].error_detail


class Collaborator(ABC):
    """Abstract base class for external workers invoked per task.

    Example:
        >>> class EchoCollaborator(Collaborator):
        ...     name = "echo"
        ...     async def invoke(self, task, context):
        ...         return {"task": task.id, "attempt": context.attempt_number}
    """

    name: str = "collaborator"

    @abstractmethod
    async def invoke(self, task: Task, context: InvocationContext) -> Any:
        """Execute one attempt of ``task``.

        Args:
            task: The task to work on. Its ``payload`` carries the
                caller's instructions.
            context: Attempt-level information.

        Returns:
            An opaque raw result for the classifier.

        Raises:
            FatalCollaboratorError: To report an unrecoverable problem.
            Exception: Any other failure; the classifier decides how to treat it.
        """
        pass
