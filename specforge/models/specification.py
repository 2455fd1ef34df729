"""
Run specification input.

A RunSpecification is the declarative description of a workflow that the
caller hands to the engine before ``WorkflowEngine.run`` starts: the ordered
phases, each phase's tasks, their intra-phase dependencies, worker tier and
optional attempt limit. The engine never derives this from domain knowledge;
whatever builds the specification (a planner, a YAML file) is external.

Example YAML::

    run_id: build-42
    phases:
      - name: codegen
        tasks:
          - id: models
            complexity_class: complex
          - id: handlers
            depends_on: [models]
            max_attempts: 5
            payload:
              target: src/handlers
      - name: test
        tasks:
          - id: unit-tests
"""

from __future__ import annotations

from pathlib import Path
from typing import Any
from uuid import uuid4

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from specforge.engine.dependency_graph import DependencyGraph
from specforge.exceptions import RunSpecificationError


def _new_run_id() -> str:
    return f"run-{uuid4().hex[:12]}"


class TaskSpec(BaseModel):
    """Declaration of one task."""

    id: str = Field(..., min_length=1, description="Task identifier, unique across the run")
    depends_on: list[str] = Field(default_factory=list, description="Ids of tasks in the same phase")
    complexity_class: str = Field(default="simple", description="Worker tier used to pick a collaborator")
    max_attempts: int | None = Field(default=None, ge=1, description="Override of the engine's default attempt limit")
    payload: dict[str, Any] = Field(default_factory=dict, description="Opaque data handed to the collaborator")

    @field_validator("depends_on")
    @classmethod
    def no_duplicate_dependencies(cls, value: list[str]) -> list[str]:
        if len(set(value)) != len(value):
            raise ValueError(f"depends_on contains duplicates: {value}")
        return value


class PhaseSpec(BaseModel):
    """Declaration of one phase and its tasks."""

    name: str = Field(..., min_length=1, description="Phase name, unique within the run")
    tasks: list[TaskSpec] = Field(default_factory=list)

    def graph(self) -> DependencyGraph:
        return DependencyGraph(self.name, {task.id: task.depends_on for task in self.tasks})


class RunSpecification(BaseModel):
    """Complete declarative description of a workflow run."""

    run_id: str = Field(
        default_factory=_new_run_id,
        pattern=r"^[A-Za-z0-9._-]+$",
        description="Also the state file name, so restricted to a safe character set",
    )
    phases: list[PhaseSpec] = Field(..., min_length=1)

    @field_validator("run_id")
    @classmethod
    def not_a_relative_path(cls, value: str) -> str:
        if value in {".", ".."}:
            raise ValueError(f"run_id cannot be '{value}'")
        return value

    @model_validator(mode="after")
    def check_unique_names(self) -> RunSpecification:
        """Phase names and task ids must be unique."""
        phase_names = [phase.name for phase in self.phases]
        duplicates = {name for name in phase_names if phase_names.count(name) > 1}
        if duplicates:
            raise ValueError(f"Duplicate phase names: {sorted(duplicates)}")

        task_ids = [task.id for phase in self.phases for task in phase.tasks]
        duplicates = {task_id for task_id in task_ids if task_ids.count(task_id) > 1}
        if duplicates:
            raise ValueError(f"Duplicate task ids: {sorted(duplicates)}")
        return self

    def validate_graphs(self) -> None:
        """Validate every phase's dependency DAG.

        Raises:
            RunSpecificationError: If a dependency is unknown or crosses phases.
            DependencyCycleError: If a phase's dependencies are cyclic.
        """
        for phase in self.phases:
            phase.graph().validate()

    def phase(self, name: str) -> PhaseSpec:
        for phase in self.phases:
            if phase.name == name:
                return phase
        raise RunSpecificationError(f"Unknown phase: {name}", run_id=self.run_id)

    def task(self, task_id: str) -> TaskSpec | None:
        for phase in self.phases:
            for task in phase.tasks:
                if task.id == task_id:
                    return task
        return None

    def complexity_classes(self) -> set[str]:
        return {task.complexity_class for phase in self.phases for task in phase.tasks}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunSpecification:
        """Build and fully validate a specification.

        Raises:
            RunSpecificationError: If the data is structurally invalid or any
                phase's dependency graph is invalid.
        """
        try:
            spec = cls.model_validate(data)
        except ValidationError as e:
            raise RunSpecificationError(f"Invalid run specification: {e}") from e
        spec.validate_graphs()
        return spec

    @classmethod
    def from_yaml(cls, path: str | Path) -> RunSpecification:
        """Load a specification from a YAML file.

        Raises:
            RunSpecificationError: If the file is missing, unparsable or invalid.
        """
        spec_file = Path(path)
        if not spec_file.exists():
            raise RunSpecificationError(f"Run specification not found: {path}")

        try:
            data = yaml.safe_load(spec_file.read_text())
        except yaml.YAMLError as e:
            raise RunSpecificationError(f"Invalid YAML syntax in {path}: {e}") from e
        except OSError as e:
            raise RunSpecificationError(f"Cannot read run specification: {path}") from e

        if not isinstance(data, dict):
            raise RunSpecificationError("Run specification must be a YAML object, not a list or scalar")
        return cls.from_dict(data)
