"""
Configuration settings for the workflow engine.

Settings come from a YAML file, environment variables (``SPECFORGE_`` prefix,
``__`` for nested keys) or both. Example::

    state_directory: .specforge/state
    max_concurrent_tasks: 5
    default_max_attempts: 3
    task_timeout: 1800
    collaborators:
      simple:
        command: "./agents/simple.sh {task_id}"
      complex:
        command: "./agents/complex.sh {task_id} --target {target}"
        timeout: 3600
        fatal_exit_codes: [64, 78]
    diagnostics:
      command: "./agents/diagnose.sh {task_id}"
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from specforge.exceptions import ConfigurationError


class CommandCollaboratorConfig(BaseModel):
    """Shell command serving one complexity class."""

    command: str = Field(..., min_length=1, description="Command template, formatted per attempt")
    timeout: float | None = Field(default=None, gt=0, description="Per-invocation timeout in seconds")
    fatal_exit_codes: list[int] = Field(
        default_factory=list, description="Exit codes that are never worth retrying"
    )
    working_dir: str | None = Field(default=None, description="Directory the command runs in")


class EngineSettings(BaseSettings):
    """Workflow engine settings.

    Combines the engine limits with the collaborator commands and provides
    loading from YAML files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="SPECFORGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    state_directory: str = Field(default=".specforge/state", description="Directory for run records")
    max_concurrent_tasks: int = Field(default=5, ge=1, le=64, description="Maximum concurrent task attempts")
    default_max_attempts: int = Field(default=3, ge=1, description="Attempt limit for tasks without an override")
    task_timeout: float | None = Field(default=1800, gt=0, description="Seconds before an attempt is abandoned")
    retry_backoff_factor: float = Field(default=0.0, ge=0.0, description="Delay before attempt n+1 is factor**n")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    collaborators: dict[str, CommandCollaboratorConfig] = Field(
        default_factory=dict, description="Complexity class -> command collaborator"
    )
    diagnostics: CommandCollaboratorConfig | None = Field(
        default=None, description="Collaborator invoked once per escalated task"
    )

    @property
    def state_dir(self) -> Path:
        """Get state directory as Path object."""
        return Path(self.state_directory)

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> EngineSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            EngineSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            yaml_content = config_file.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except TypeError as e:
            raise ConfigurationError(f"Missing or invalid configuration fields: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        ``${VAR_NAME}`` is required and raises if unset; ``${VAR_NAME:-default}``
        falls back to the default. YAML comment lines are left unchanged.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            if default_value is not None:
                return default_value
            raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
