"""Intra-phase task dependency graph.

Validates a phase's ``depends_on`` edges (unknown references, cycles) and
answers readiness questions for the PhaseRunner. Dependencies never cross
phase boundaries: phases are already sequential gates.
"""

from collections.abc import Iterable, Mapping, Sequence

import structlog

from specforge.exceptions import DependencyCycleError, RunSpecificationError

log = structlog.get_logger(__name__)


class DependencyGraph:
    """Track and validate the dependency DAG of one phase.

    Task order is preserved as given, so iteration helpers return tasks in
    creation order.

    Example:
        >>> graph = DependencyGraph("codegen", {"a": [], "b": ["a"]})
        >>> graph.validate()
        >>> graph.ready({"a"})
        ['b']
    """

    def __init__(self, phase: str, edges: Mapping[str, Sequence[str]]) -> None:
        """Initialize the graph.

        Args:
            phase: Name of the phase owning the tasks (used in errors).
            edges: Task id -> ids it depends on, in task creation order.
        """
        self.phase = phase
        self.edges: dict[str, list[str]] = {task_id: list(deps) for task_id, deps in edges.items()}

    def validate(self) -> None:
        """Check for invalid references and circular dependencies.

        Raises:
            RunSpecificationError: If a dependency names a task outside this phase
                or a task depends on itself.
            DependencyCycleError: If the graph contains a cycle.
        """
        for task_id, deps in self.edges.items():
            for dep_id in deps:
                if dep_id == task_id:
                    raise DependencyCycleError(self.phase, [task_id, task_id])
                if dep_id not in self.edges:
                    raise RunSpecificationError(
                        f"Task '{task_id}' in phase '{self.phase}' depends on unknown task '{dep_id}'"
                    )

        cycle = self._find_cycle()
        if cycle:
            log.error("circular_dependency_detected", phase=self.phase, cycle=cycle)
            raise DependencyCycleError(self.phase, cycle)

        log.debug("dependencies_validated", phase=self.phase, task_count=len(self.edges))

    def _find_cycle(self) -> list[str] | None:
        """Depth-first search with a recursion stack; returns the first cycle found."""
        visited: set[str] = set()
        stack: list[str] = []
        on_stack: set[str] = set()

        def visit(task_id: str) -> list[str] | None:
            visited.add(task_id)
            stack.append(task_id)
            on_stack.add(task_id)

            for dep_id in self.edges[task_id]:
                if dep_id in on_stack:
                    return stack[stack.index(dep_id) :] + [dep_id]
                if dep_id not in visited:
                    found = visit(dep_id)
                    if found:
                        return found

            stack.pop()
            on_stack.discard(task_id)
            return None

        for task_id in self.edges:
            if task_id not in visited:
                found = visit(task_id)
                if found:
                    return found
        return None

    def ready(self, succeeded: Iterable[str]) -> list[str]:
        """Tasks (other than those in ``succeeded``) whose dependencies all succeeded, in order."""
        done = set(succeeded)
        return [
            task_id
            for task_id, deps in self.edges.items()
            if task_id not in done and all(dep_id in done for dep_id in deps)
        ]
