"""Pydantic models for the REST server."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from claude_runner.runner.state.models import WorkflowState


class ApiWorkflow(BaseModel):
    id: str
    name: str
    path: str
    modified: datetime
    description: str | None = None


class ApiStateSummary(BaseModel):
    execution_id: str
    workflow_name: str
    workflow_path: str
    status: str
    current_step: int
    total_steps: int
    start_time: str
    can_resume: bool
    pause_reason: str | None = None

    @classmethod
    def from_state(cls, state: WorkflowState) -> ApiStateSummary:
        return cls(
            execution_id=state.execution_id,
            workflow_name=state.workflow_name,
            workflow_path=state.workflow_path,
            status=state.status,
            current_step=state.current_step,
            total_steps=state.total_steps,
            start_time=state.start_time,
            can_resume=state.can_resume,
            pause_reason=state.pause_reason,
        )


class RunRequest(BaseModel):
    workflow: str = Field(description="Workflow id in the workflows directory, or a file path")
    inputs: dict[str, str] = Field(default_factory=dict)
    model: str | None = None
    working_directory: str | None = None


class ResumeRequest(BaseModel):
    model: str | None = None
    working_directory: str | None = None


JobStatus = Literal["queued", "running", "succeeded", "failed", "paused"]


class RunJob(BaseModel):
    job_id: str
    kind: Literal["run", "resume"]
    status: JobStatus

    created_at: datetime
    updated_at: datetime

    workflow_path: str | None = None
    execution_id: str | None = None
    steps_executed: int = 0

    error: str | None = None
