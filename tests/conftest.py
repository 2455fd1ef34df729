"""Pytest configuration and shared fixtures."""

import asyncio
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import pytest

from specforge.collaborators.base import Collaborator, InvocationContext
from specforge.collaborators.registry import CollaboratorRegistry
from specforge.engine.classification import exception_classifier
from specforge.engine.retry_policy import RetryPolicy
from specforge.engine.run_state import RunState
from specforge.engine.state_store import StateStore
from specforge.engine.workflow_engine import WorkflowEngine
from specforge.models.domain import Task
from specforge.models.specification import RunSpecification

OK = "ok"


class ScriptedCollaborator(Collaborator):
    """Collaborator replaying scripted results per task.

    Each entry of a task's script is returned, or raised if it is an
    exception. Tasks without (remaining) script entries succeed. Tracks call
    order and how many invocations overlapped.
    """

    name = "scripted"

    def __init__(self, script: dict[str, list[Any]] | None = None, delay: float = 0.0) -> None:
        self.script = {task_id: list(outcomes) for task_id, outcomes in (script or {}).items()}
        self.delay = delay
        self.calls: list[tuple[str, int]] = []
        self.contexts: list[InvocationContext] = []
        self.active = 0
        self.peak = 0

    async def invoke(self, task: Task, context: InvocationContext) -> Any:
        self.calls.append((task.id, context.attempt_number))
        self.contexts.append(context)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            outcomes = self.script.get(task.id)
            outcome = outcomes.pop(0) if outcomes else OK
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        finally:
            self.active -= 1

    def attempts_of(self, task_id: str) -> int:
        return sum(1 for called_id, _ in self.calls if called_id == task_id)


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def store(temp_state_dir: Path) -> StateStore:
    """StateStore instance with temp directory."""
    return StateStore(temp_state_dir)


@pytest.fixture
def scripted() -> type[ScriptedCollaborator]:
    """The ScriptedCollaborator class, for tests that need their own script."""
    return ScriptedCollaborator


@pytest.fixture
def collaborator() -> ScriptedCollaborator:
    return ScriptedCollaborator()


@pytest.fixture
def registry(collaborator: ScriptedCollaborator) -> CollaboratorRegistry:
    return CollaboratorRegistry({"simple": collaborator, "complex": collaborator})


@pytest.fixture
def classifier() -> Callable[..., Any]:
    return exception_classifier()


@pytest.fixture
def engine(store: StateStore, registry: CollaboratorRegistry, classifier) -> WorkflowEngine:
    """Engine with two lanes and immediate retries."""
    return WorkflowEngine(store, registry, classifier, pool_capacity=2, retry_policy=RetryPolicy())


@pytest.fixture
def make_spec() -> Callable[..., RunSpecification]:
    """Build a RunSpecification from ``phase name -> task declarations``.

    Task declarations are ids, or dicts passed to TaskSpec.
    """

    def _make(run_id: str = "run-test", **phases: Iterable[str | dict[str, Any]]) -> RunSpecification:
        return RunSpecification.from_dict(
            {
                "run_id": run_id,
                "phases": [
                    {
                        "name": name,
                        "tasks": [task if isinstance(task, dict) else {"id": task} for task in tasks],
                    }
                    for name, tasks in phases.items()
                ],
            }
        )

    return _make


@pytest.fixture
def run_state(store: StateStore, make_spec) -> RunState:
    """Fresh state for a single-phase run with tasks a, b (b depends on a)."""
    spec = make_spec(codegen=["a", {"id": "b", "depends_on": ["a"]}])
    return RunState.create(spec, store)
