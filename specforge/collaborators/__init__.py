"""Collaborator boundary: the external workers tasks are dispatched to."""

from specforge.collaborators.base import Collaborator, InvocationContext
from specforge.collaborators.command import CommandCollaborator, CommandResult
from specforge.collaborators.registry import CollaboratorRegistry

__all__ = [
    "Collaborator",
    "CollaboratorRegistry",
    "CommandCollaborator",
    "CommandResult",
    "InvocationContext",
]
