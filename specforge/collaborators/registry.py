"""Typed registry of collaborators keyed by complexity class.

The registry is resolved once when a run is constructed: every complexity
class used by the run specification must map to a collaborator before the
first task is dispatched, so lookups during execution cannot fail on a
misspelled tier.
"""

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING

import structlog

from specforge.collaborators.base import Collaborator
from specforge.collaborators.command import CommandCollaborator
from specforge.exceptions import CollaboratorNotFoundError, RunSpecificationError

if TYPE_CHECKING:
    from specforge.config.settings import EngineSettings

log = structlog.get_logger(__name__)


class CollaboratorRegistry:
    """Map worker tiers to collaborators, plus an optional diagnostics path.

    Attributes:
        diagnostics: Collaborator invoked once per escalated task with its
            full attempt history, or None to skip diagnostics.
    """

    def __init__(
        self,
        collaborators: Mapping[str, Collaborator] | None = None,
        diagnostics: Collaborator | None = None,
    ) -> None:
        self._collaborators: dict[str, Collaborator] = dict(collaborators or {})
        self.diagnostics = diagnostics

    def register(self, complexity_class: str, collaborator: Collaborator) -> None:
        if complexity_class in self._collaborators:
            log.warning("collaborator_replaced", complexity_class=complexity_class)
        self._collaborators[complexity_class] = collaborator

    def get(self, complexity_class: str) -> Collaborator:
        """Look up the collaborator for a tier.

        Raises:
            CollaboratorNotFoundError: If nothing is registered for the tier.
        """
        try:
            return self._collaborators[complexity_class]
        except KeyError:
            raise CollaboratorNotFoundError(
                "No collaborator registered", complexity_class=complexity_class
            ) from None

    @property
    def complexity_classes(self) -> list[str]:
        return sorted(self._collaborators)

    def __contains__(self, complexity_class: object) -> bool:
        return complexity_class in self._collaborators

    def ensure_covers(self, complexity_classes: Iterable[str], run_id: str | None = None) -> None:
        """Verify every tier a run needs has a collaborator.

        Raises:
            RunSpecificationError: Listing the tiers without a collaborator.
        """
        missing = sorted(set(complexity_classes) - set(self._collaborators))
        if missing:
            raise RunSpecificationError(
                f"No collaborator registered for complexity classes: {', '.join(missing)}",
                run_id=run_id,
            )

    @classmethod
    def from_settings(cls, settings: "EngineSettings") -> "CollaboratorRegistry":
        """Build a registry of CommandCollaborators from engine settings."""
        registry = cls()
        for complexity_class, config in settings.collaborators.items():
            registry.register(
                complexity_class,
                CommandCollaborator(
                    config.command,
                    timeout=config.timeout,
                    working_dir=config.working_dir,
                    name=complexity_class,
                ),
            )
        if settings.diagnostics is not None:
            registry.diagnostics = CommandCollaborator(
                settings.diagnostics.command,
                timeout=settings.diagnostics.timeout,
                working_dir=settings.diagnostics.working_dir,
                name="diagnostics",
            )
        log.debug("registry_built", complexity_classes=registry.complexity_classes)
        return registry
