"""Configuration system for the workflow engine.

This package provides type-safe configuration management using Pydantic.

Key Components:
    - EngineSettings: Engine limits, state directory and collaborators, with
      YAML loading support
    - CommandCollaboratorConfig: Shell command serving one complexity class

Example:
    >>> from specforge.config import EngineSettings
    >>> settings = EngineSettings.from_yaml("specforge.yaml")
    >>> settings.max_concurrent_tasks
    5
"""

from specforge.config.settings import CommandCollaboratorConfig, EngineSettings

__all__ = ["CommandCollaboratorConfig", "EngineSettings"]
