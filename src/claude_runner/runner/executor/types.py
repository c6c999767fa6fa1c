from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from claude_runner.runner.executor.rate_limit import RateLimitInfo

OutputFormat = Literal["text", "json", "stream-json"]
TaskStatus = Literal["pending", "running", "completed", "error", "paused", "skipped"]


@dataclass(frozen=True, slots=True)
class TaskOptions:
    """Flags that shape one CLI invocation."""

    allow_all_tools: bool = False
    bypass_permissions: bool = False
    output_format: OutputFormat | None = None
    max_turns: int | None = None
    verbose: bool = False
    system_prompt: str | None = None
    append_system_prompt: str | None = None
    continue_conversation: bool = False
    resume_session_id: str | None = None
    allowed_tools: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = ()
    mcp_config: str | None = None
    permission_prompt_tool: str | None = None
    working_directory: str | None = None

    @property
    def is_fresh_session(self) -> bool:
        return not self.continue_conversation and not self.resume_session_id


@dataclass(frozen=True, slots=True)
class CommandResult:
    success: bool
    output: str
    error: str | None = None
    exit_code: int | None = None
    session_id: str | None = None


@dataclass(frozen=True, slots=True)
class TaskResult:
    task_id: str
    success: bool
    output: str
    execution_time_ms: int
    session_id: str | None = None
    error: str | None = None
    rate_limit: RateLimitInfo | None = None


@dataclass
class TaskItem:
    """One entry of an ad-hoc pipeline; mutated in place as the pipeline runs."""

    id: str
    prompt: str
    name: str | None = None
    status: TaskStatus = "pending"
    model: str | None = None
    resume_from_task_id: str | None = None
    results: str | None = None
    session_id: str | None = None
    check: str | None = None
    condition: str | None = None
    skip_reason: str | None = None
    paused_until: float | None = None
    paused_at_index: int | None = None


@dataclass(frozen=True, slots=True)
class WorkflowOptions:
    model: str | None = None
    working_directory: str | None = None
    inputs: dict[str, str] = field(default_factory=dict)
    environment: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class WorkflowResult:
    workflow_id: str
    success: bool
    outputs: dict[str, dict[str, object]]
    execution_time_ms: int
    steps_executed: int
    error: str | None = None
    execution_id: str | None = None
    paused: bool = False
