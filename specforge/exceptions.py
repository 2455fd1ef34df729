"""Custom exception hierarchy for the specforge orchestration engine.

The hierarchy separates the three failure families the engine has to tell
apart: bad caller input, engine malfunction, and collaborator trouble.

Exception Hierarchy:
    SpecforgeError (base)
    ├── ConfigurationError
    ├── WorkflowError
    │   ├── RunSpecificationError
    │   │   └── DependencyCycleError
    │   ├── RunNotFoundError
    │   └── EngineFailure
    │       ├── StateStoreError
    │       └── ConcurrencyPoolError
    └── CollaboratorError
        ├── CollaboratorNotFoundError
        ├── FatalCollaboratorError
        └── CollaboratorTimeoutError

Example Usage:
    >>> from specforge.exceptions import StateStoreError
    >>> try:
    ...     await store.save(run, tasks, attempts)
    ... except OSError as e:
    ...     raise StateStoreError("Cannot write run record", run_id=run.id) from e
"""

from typing import Any


class SpecforgeError(Exception):
    """Base exception for all specforge errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(SpecforgeError):
    """Configuration-related errors.

    Examples:
        - Settings file not found
        - Invalid YAML syntax
        - Unknown collaborator configuration
    """

    pass


class WorkflowError(SpecforgeError):
    """Workflow execution errors.

    Raised for invalid engine operations, such as acknowledging a run that
    has not reached a terminal status.

    Attributes:
        run_id: Identifier of the run involved, if known
    """

    def __init__(self, message: str, run_id: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            run_id: Identifier of the run involved
        """
        self.run_id = run_id
        full_message = f"{message} (run: {run_id})" if run_id else message
        super().__init__(full_message)
        # Preserve original message
        self.message = message


class RunSpecificationError(WorkflowError):
    """The caller-supplied run specification is invalid.

    Raised before any task is dispatched or any state is written.

    Examples:
        - Duplicate task ids
        - A dependency on a task of another phase
        - A complexity class with no registered collaborator
    """

    pass


class DependencyCycleError(RunSpecificationError):
    """A phase's task dependency graph contains a cycle.

    Attributes:
        phase: Name of the phase whose graph is cyclic
        cycle: Task ids forming the cycle, first id repeated at the end
    """

    def __init__(self, phase: str, cycle: list[str], run_id: str | None = None) -> None:
        self.phase = phase
        self.cycle = cycle
        super().__init__(
            f"Circular dependency in phase '{phase}': {' -> '.join(cycle)}",
            run_id=run_id,
        )


class RunNotFoundError(WorkflowError):
    """No persisted record exists for the requested run."""

    pass


class EngineFailure(WorkflowError):
    """The engine itself malfunctioned.

    Engine failures abort the whole run regardless of task state; the run is
    reported as ``failed``.
    """

    pass


class StateStoreError(EngineFailure):
    """Reading or writing durable run state failed.

    Examples:
        - State directory not writable
        - Corrupt JSON in a run record
        - Run record written by a newer schema version
    """

    pass


class ConcurrencyPoolError(EngineFailure):
    """The bounded executor was misused or shut down."""

    pass


# =============================================================================
# Collaborator Errors
# =============================================================================


class CollaboratorError(SpecforgeError):
    """Base exception for collaborator problems.

    Attributes:
        message: Human-readable error description
        complexity_class: Worker tier involved, if known
        task_id: Task being executed when the error occurred
    """

    def __init__(
        self,
        message: str,
        complexity_class: str | None = None,
        task_id: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            complexity_class: Worker tier involved
            task_id: Task being executed when error occurred
        """
        self.complexity_class = complexity_class
        self.task_id = task_id

        parts = [message]
        if complexity_class:
            parts.append(f"class: {complexity_class}")
        if task_id:
            parts.append(f"task: {task_id}")

        full_message = message if len(parts) == 1 else f"{message} ({', '.join(parts[1:])})"
        super().__init__(full_message)
        # Preserve original message
        self.message = message


class CollaboratorNotFoundError(CollaboratorError):
    """No collaborator is registered for a complexity class."""

    pass


class FatalCollaboratorError(CollaboratorError):
    """A collaborator reports an unrecoverable problem.

    Raising this from ``Collaborator.invoke`` asks the standard classifiers
    to record a ``fatalFailure`` outcome, which escalates without retry.

    Attributes:
        detail: Optional structured payload forwarded to diagnostics
    """

    def __init__(
        self,
        message: str,
        detail: dict[str, Any] | None = None,
        complexity_class: str | None = None,
        task_id: str | None = None,
    ) -> None:
        self.detail = detail or {}
        super().__init__(message, complexity_class=complexity_class, task_id=task_id)


class CollaboratorTimeoutError(CollaboratorError):
    """A collaborator did not answer within its timeout.

    Attributes:
        timeout_seconds: The timeout duration that was exceeded
    """

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        complexity_class: str | None = None,
        task_id: str | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        if timeout_seconds and "timeout" not in message.lower():
            message = f"{message} (timeout: {timeout_seconds}s)"
        super().__init__(message, complexity_class=complexity_class, task_id=task_id)
