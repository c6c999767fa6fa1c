from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from claude_runner.runner.workflow.document import WorkflowDocument, WorkflowExecution
from claude_runner.runner.workflow.state_machine import ExecutionStatus

StepStatus = Literal["pending", "running", "completed", "failed", "paused", "timeout"]
WorkflowStatus = Literal["pending", "running", "paused", "completed", "failed", "timeout"]
PauseReason = Literal["manual", "rate_limit", "error", "timeout"]


def utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class WorkflowStepResult(BaseModel):
    step_index: int
    step_id: str
    session_id: str | None = None
    output_session: bool = False
    resume_session: str | None = None
    status: StepStatus = "pending"
    start_time: str | None = None
    end_time: str | None = None
    output: str | None = None
    error: str | None = None


class ExecutionSnapshot(BaseModel):
    """Enough of a ``WorkflowExecution`` for another process to resume it."""

    workflow: WorkflowDocument
    inputs: dict[str, str] = Field(default_factory=dict)
    outputs: dict[str, dict[str, Any]] = Field(default_factory=dict)
    current_step: int = 0
    status: ExecutionStatus = ExecutionStatus.PENDING
    error: str | None = None

    @classmethod
    def from_execution(cls, execution: WorkflowExecution) -> ExecutionSnapshot:
        return cls(
            workflow=execution.workflow,
            inputs=dict(execution.inputs),
            outputs={key: dict(value) for key, value in execution.outputs.items()},
            current_step=execution.current_step,
            status=execution.status,
            error=execution.error,
        )

    def to_execution(self) -> WorkflowExecution:
        return WorkflowExecution(
            workflow=self.workflow,
            inputs=dict(self.inputs),
            outputs={key: dict(value) for key, value in self.outputs.items()},
            current_step=self.current_step,
            status=self.status,
            error=self.error,
        )


class WorkflowState(BaseModel):
    execution_id: str
    workflow_path: str
    workflow_name: str
    start_time: str
    current_step: int = 0
    total_steps: int = 0
    status: WorkflowStatus = "pending"
    session_mappings: dict[str, str] = Field(default_factory=dict)
    completed_steps: list[WorkflowStepResult] = Field(default_factory=list)
    execution: ExecutionSnapshot
    can_resume: bool = True

    paused_at: str | None = None
    resumed_at: str | None = None
    pause_reason: PauseReason | None = None

    @property
    def is_resumable(self) -> bool:
        return self.can_resume and self.status in ("paused", "timeout")

    def completed_indices(self) -> set[int]:
        return {step.step_index for step in self.completed_steps if step.status == "completed"}
