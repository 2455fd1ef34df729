"""Status and outcome enumerations for workflow runs, phases, tasks and attempts.

All enums are ``str`` enums so they serialize to JSON as their plain values.
"""

from enum import Enum


class RunStatus(str, Enum):
    """Lifecycle status of a WorkflowRun."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ESCALATED = "escalated"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check if no further engine transitions happen without caller action."""
        return self is not RunStatus.RUNNING


class PhaseStatus(str, Enum):
    """Lifecycle status of a Phase.

    A phase moves ``pending -> active -> completed`` on the happy path and
    ``active -> blocked`` once any of its tasks is escalated.
    """

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    BLOCKED = "blocked"

    def __str__(self) -> str:
        return self.value


class TaskStatus(str, Enum):
    """Lifecycle status of a Task.

    ``ready`` holds exactly when every dependency has succeeded. Tasks never
    move backwards out of ``succeeded``.
    """

    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ESCALATED = "escalated"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.ESCALATED)


class AttemptOutcome(str, Enum):
    """Classified result of one TaskAttempt."""

    SUCCESS = "success"
    TRANSIENT_FAILURE = "transientFailure"
    FATAL_FAILURE = "fatalFailure"

    def __str__(self) -> str:
        return self.value


class Decision(str, Enum):
    """What the RetryPolicy wants done with a task after an attempt."""

    RETRY = "retry"
    ESCALATE = "escalate"
    DONE = "done"

    def __str__(self) -> str:
        return self.value
