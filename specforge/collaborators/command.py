"""Collaborator that runs a shell command per task attempt.

The command template is formatted with shell-quoted values:

    {task_id}, {phase}, {attempt}, {run_id}, {complexity_class}
    and every top-level key of the task payload

and the same information is exported to the process environment as
``SPECFORGE_TASK_ID``, ``SPECFORGE_PHASE``, ``SPECFORGE_ATTEMPT``,
``SPECFORGE_RUN_ID`` and ``SPECFORGE_PAYLOAD`` (JSON), plus
``SPECFORGE_LAST_ERROR`` (JSON) on retries so the worker can react to the
previous failure.

Example:
    >>> collaborator = CommandCollaborator("pytest {target} -x", timeout=900)
"""

import json
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from specforge.collaborators.base import Collaborator, InvocationContext
from specforge.exceptions import FatalCollaboratorError
from specforge.models.domain import Task
from specforge.utils.async_subprocess import run_shell_command

log = structlog.get_logger(__name__)

# Output kept on failure records; full logs belong to the worker.
MAX_OUTPUT_CHARS = 4000


@dataclass(frozen=True)
class CommandResult:
    """Raw result of one command execution."""

    returncode: int
    stdout: str
    stderr: str

    def to_detail(self) -> dict[str, Any]:
        return {
            "returncode": self.returncode,
            "stdout": self.stdout[-MAX_OUTPUT_CHARS:],
            "stderr": self.stderr[-MAX_OUTPUT_CHARS:],
        }


class CommandCollaborator(Collaborator):
    """Run a shell command and return its CommandResult.

    Non-zero exit codes are returned, not raised; classification is left to
    the classifier (see ``exit_code_classifier``).
    """

    def __init__(
        self,
        command: str,
        timeout: float | None = None,
        working_dir: str | Path | None = None,
        name: str = "command",
    ) -> None:
        """Initialize the collaborator.

        Args:
            command: Shell command template.
            timeout: Per-invocation timeout; the tighter of this and the
                context timeout applies.
            working_dir: Directory the command runs in.
            name: Name used in logs.
        """
        self.command = command
        self.timeout = timeout
        self.working_dir = Path(working_dir) if working_dir else None
        self.name = name

    def render(self, task: Task, context: InvocationContext) -> str:
        """Format the command template for one attempt.

        Raises:
            FatalCollaboratorError: If the template names a value the task
                does not provide. Retrying would fail identically.
        """
        values: dict[str, str] = {
            key: shlex.quote(value if isinstance(value, str) else json.dumps(value))
            for key, value in task.payload.items()
        }
        values.update(
            task_id=shlex.quote(task.id),
            phase=shlex.quote(context.phase_name),
            attempt=str(context.attempt_number),
            run_id=shlex.quote(context.run_id),
            complexity_class=shlex.quote(task.complexity_class),
        )
        try:
            return self.command.format_map(values)
        except (KeyError, IndexError, ValueError) as e:
            raise FatalCollaboratorError(
                f"Cannot render command template: {e}",
                detail={"template": self.command},
                complexity_class=task.complexity_class,
                task_id=task.id,
            ) from e

    def _effective_timeout(self, context: InvocationContext) -> float | None:
        timeouts = [t for t in (self.timeout, context.timeout) if t is not None]
        return min(timeouts) if timeouts else None

    async def invoke(self, task: Task, context: InvocationContext) -> CommandResult:
        command = self.render(task, context)
        env = {
            "SPECFORGE_TASK_ID": task.id,
            "SPECFORGE_PHASE": context.phase_name,
            "SPECFORGE_ATTEMPT": str(context.attempt_number),
            "SPECFORGE_RUN_ID": context.run_id,
            "SPECFORGE_PAYLOAD": json.dumps(task.payload),
        }
        if context.last_error is not None:
            env["SPECFORGE_LAST_ERROR"] = json.dumps(context.last_error, default=str)

        log.info("command_started", collaborator=self.name, task_id=task.id, command=command)
        stdout, stderr, returncode = await run_shell_command(
            command,
            cwd=self.working_dir,
            env=env,
            timeout=self._effective_timeout(context),
        )
        log.info("command_finished", collaborator=self.name, task_id=task.id, returncode=returncode)
        return CommandResult(returncode=returncode, stdout=stdout, stderr=stderr)
