"""
Configuration
=============

Settings for dependency analysis and worktree isolation.

Values come from (in increasing precedence):
- Field defaults on ParallelConfig
- PARAFLOW_* environment variables (optionally loaded from a .env file)
- Keyword overrides passed to load_config()
"""

from typing import Optional, Dict, Any
import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "PARAFLOW_"

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ParallelConfig(BaseModel):
    """Runtime settings for parallel execution and worktree isolation."""

    max_worktrees: int = Field(10, ge=1, description="Maximum number of live worktrees")
    operation_timeout: float = Field(
        120.0, gt=0, description="Timeout in seconds for a single create/destroy/consolidate operation"
    )
    git_command_timeout: float = Field(60.0, gt=0, description="Timeout in seconds for one git command")
    task_timeout: Optional[float] = Field(
        300.0, description="Timeout in seconds for one task run (None disables it)"
    )
    base_branch: str = Field("main", min_length=1, description="Branch that worktrees fork from and merge into")
    branch_prefix: str = Field("parallel/task-", description="Prefix prepended to the task id for branch names")
    worktree_dir: str = Field(".worktrees", min_length=1, description="Worktree directory, relative to the project")
    delete_branch_on_destroy: bool = Field(True, description="Delete the task branch when its worktree is destroyed")
    squash_merges: bool = Field(False, description="Squash task branches when consolidating")
    log_level: str = Field("INFO", description="Logging level used by setup_logging()")

    @field_validator("task_timeout")
    @classmethod
    def _positive_task_timeout(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("task_timeout must be positive or None")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {value}")
        return level


def _read_environment() -> Dict[str, Any]:
    """Collect PARAFLOW_* variables that map onto ParallelConfig fields."""
    values: Dict[str, Any] = {}
    for name in ParallelConfig.model_fields:
        raw = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is None:
            continue
        if name == "task_timeout" and raw.strip().lower() in ("", "none", "off"):
            values[name] = None
        else:
            values[name] = raw
    return values


def load_config(env_file: Optional[str] = None, **overrides: Any) -> ParallelConfig:
    """
    Load configuration from the environment.

    Args:
        env_file: Optional path to a .env file (defaults to python-dotenv's lookup)
        **overrides: Field values that take precedence over the environment

    Returns:
        Validated ParallelConfig

    Raises:
        pydantic.ValidationError: If any value is invalid
    """
    load_dotenv(env_file)

    values = _read_environment()
    values.update(overrides)

    config = ParallelConfig.model_validate(values)
    logger.debug(f"Loaded configuration: {config.model_dump()}")
    return config


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for scripts embedding paraflow."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
