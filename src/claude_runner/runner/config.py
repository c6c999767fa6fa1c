"""Configuration for the workflow runner.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Everything has a usable default so the runner works out of the box against a
`claude` binary on PATH.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunnerSettings(BaseSettings):
    """Settings for the local workflow runner.

    Environment variables:
    - CLAUDE_RUNNER_COMMAND              (optional)
    - CLAUDE_RUNNER_DEFAULT_MODEL        (optional)
    - CLAUDE_RUNNER_MAX_RETRIES          (optional)
    - CLAUDE_RUNNER_STATE_PATH           (optional)
    - CLAUDE_RUNNER_WORKFLOWS_DIR        (optional)
    - CLAUDE_RUNNER_STATE_MAX_AGE_DAYS   (optional)
    - CLAUDE_RUNNER_MAX_STATES           (optional)
    - CLAUDE_RUNNER_LOG_FORMAT           (optional)
    - LOG_LEVEL                          (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `RunnerSettings(_env_file=path_to_env)`.
    """

    task_command: str = Field(
        default="claude",
        validation_alias="CLAUDE_RUNNER_COMMAND",
        description="Executable invoked for every task step",
    )
    default_model: str = Field(
        default="auto",
        validation_alias="CLAUDE_RUNNER_DEFAULT_MODEL",
        description="Model used when a step does not pin one ('auto' = CLI default)",
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        validation_alias="CLAUDE_RUNNER_MAX_RETRIES",
        description="Attempts made by the rate-limit aware retry loop",
    )

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        validation_alias="CLAUDE_RUNNER_LOG_FORMAT",
        description="json: one object per line; text: human readable console lines",
    )

    state_path: Path = Field(
        default=Path(".claude-runner/workflow-states.json"),
        validation_alias="CLAUDE_RUNNER_STATE_PATH",
        description="JSON file where resumable workflow states are persisted",
    )
    workflows_dir: Path = Field(
        default=Path(".github/workflows"),
        validation_alias="CLAUDE_RUNNER_WORKFLOWS_DIR",
        description="Directory scanned for claude-*.yml workflow files",
    )
    state_max_age_days: float = Field(
        default=7.0,
        gt=0,
        validation_alias="CLAUDE_RUNNER_STATE_MAX_AGE_DAYS",
        description="Persisted states older than this are removed by cleanup",
    )
    max_states: int = Field(
        default=50,
        ge=1,
        validation_alias="CLAUDE_RUNNER_MAX_STATES",
        description="Upper bound on persisted states (oldest evicted first)",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("task_command")
    @classmethod
    def require_command(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("CLAUDE_RUNNER_COMMAND must not be empty")
        return value.strip()

    @property
    def state_max_age_seconds(self) -> float:
        """Retention window for persisted states, in seconds."""

        return self.state_max_age_days * 24 * 60 * 60

    @property
    def jobs_state_file(self) -> Path:
        """Path where background run jobs (HTTP API) are persisted."""

        return self.state_path.parent / "jobs.json"
