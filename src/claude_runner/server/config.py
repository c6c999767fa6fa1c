"""Configuration for the REST server.

The server reuses every runner setting (task command, state file, workflows
directory) so the CLI and the API operate on the same persisted states.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from claude_runner.runner.config import RunnerSettings


class ServerSettings(RunnerSettings):
    """Runner settings plus HTTP concerns.

    Environment variables (in addition to the runner ones):
    - CLAUDE_RUNNER_CORS_ORIGINS   (optional)
    """

    # Dev-friendly CORS. Override via CLAUDE_RUNNER_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="CLAUDE_RUNNER_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
