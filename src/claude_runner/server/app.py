"""FastAPI app factory.

Endpoints are thin wrappers over the runner services. Workflow runs execute in
background threads; callers poll ``/api/runs/{job_id}`` and the state
endpoints for progress.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import cast

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from claude_runner.runner.executor.types import WorkflowOptions
from claude_runner.runner.state.models import WorkflowState
from claude_runner.runner.state.service import WorkflowStateService
from claude_runner.runner.state.storage import JsonWorkflowStateStorage
from claude_runner.runner.workflow.library import WorkflowLibrary, WorkflowNotFoundError
from claude_runner.server.config import ServerSettings
from claude_runner.server.job_store import JobRecord, JobStore
from claude_runner.server.models import (
    ApiStateSummary,
    ApiWorkflow,
    JobStatus,
    ResumeRequest,
    RunJob,
    RunRequest,
)
from claude_runner.server.run_runner import start_resume_job, start_run_job

logger = logging.getLogger(__name__)


def _iso_to_dt(value: str) -> datetime:
    # Best-effort parsing; the store always writes ISO format.
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(tz=UTC)


def _to_run_job(record: JobRecord) -> RunJob:
    return RunJob(
        job_id=record.job_id,
        kind=record.kind,
        status=cast(JobStatus, record.status),
        created_at=_iso_to_dt(record.created_at),
        updated_at=_iso_to_dt(record.updated_at),
        workflow_path=record.workflow_path,
        execution_id=record.execution_id,
        steps_executed=record.steps_executed,
        error=record.error,
    )


def _resolve_workflow(library: WorkflowLibrary, workflow: str) -> Path:
    try:
        return library.path_for(workflow)
    except WorkflowNotFoundError:
        candidate = Path(workflow)
        if candidate.is_file():
            return candidate
    raise HTTPException(status_code=404, detail=f"Workflow not found: {workflow}")


def create_app() -> FastAPI:
    settings = ServerSettings()

    app = FastAPI(
        title="Claude Runner",
        version="0.1.0",
        description="REST API over the local claude-runner workflow services.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    # Expose settings for request handlers that want to read it.
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    state_service = WorkflowStateService(
        JsonWorkflowStateStorage(settings.state_path, max_states=settings.max_states)
    )
    library = WorkflowLibrary(settings.workflows_dir)
    job_store = JobStore(settings.jobs_state_file)

    def _get_job_or_500(job_id: str) -> RunJob:
        record = job_store.get(job_id)
        if record is None:
            raise HTTPException(status_code=500, detail="Job creation failed")
        return _to_run_job(record)

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/workflows", response_model=list[ApiWorkflow])
    def list_workflows() -> list[ApiWorkflow]:
        return [ApiWorkflow.model_validate(meta.to_json()) for meta in library.list_workflows()]

    @app.get("/api/workflows/{workflow_id}/validate")
    def validate_workflow(workflow_id: str) -> dict[str, object]:
        return library.validate(workflow_id)

    @app.get("/api/states", response_model=list[ApiStateSummary])
    def list_states(resumable: bool = False) -> list[ApiStateSummary]:
        states = (
            state_service.get_resumable_workflows()
            if resumable
            else state_service.list_workflow_states()
        )
        return [ApiStateSummary.from_state(state) for state in states]

    @app.get("/api/states/{execution_id}", response_model=WorkflowState)
    def get_state(execution_id: str) -> WorkflowState:
        state = state_service.get_workflow_state(execution_id)
        if state is None:
            raise HTTPException(status_code=404, detail="Workflow state not found")
        return state

    @app.delete("/api/states/{execution_id}")
    def delete_state(execution_id: str) -> dict[str, str]:
        if state_service.get_workflow_state(execution_id) is None:
            raise HTTPException(status_code=404, detail="Workflow state not found")
        state_service.delete_workflow_state(execution_id)
        return {"status": "deleted"}

    @app.post("/api/states/{execution_id}/pause", response_model=ApiStateSummary)
    def pause_state(execution_id: str) -> ApiStateSummary:
        if state_service.get_workflow_state(execution_id) is None:
            raise HTTPException(status_code=404, detail="Workflow state not found")
        state = state_service.pause_workflow(execution_id, "manual")
        if state is None:
            raise HTTPException(status_code=409, detail="Workflow is not running")
        return ApiStateSummary.from_state(state)

    @app.post("/api/states/{execution_id}/resume", response_model=RunJob)
    def resume_state(execution_id: str, req: ResumeRequest | None = None) -> RunJob:
        state = state_service.get_workflow_state(execution_id)
        if state is None:
            raise HTTPException(status_code=404, detail="Workflow state not found")
        if not state.is_resumable:
            raise HTTPException(
                status_code=409,
                detail=f"Cannot resume workflow: {execution_id} (status: {state.status})",
            )
        req = req or ResumeRequest()
        job_id = start_resume_job(
            execution_id=execution_id,
            options=WorkflowOptions(model=req.model, working_directory=req.working_directory),
            settings=settings,
            state_service=state_service,
            job_store=job_store,
        )
        return _get_job_or_500(job_id)

    @app.post("/api/runs", response_model=RunJob)
    def start_run(req: RunRequest) -> RunJob:
        workflow_path = _resolve_workflow(library, req.workflow)
        job_id = start_run_job(
            workflow_path=workflow_path,
            inputs=req.inputs,
            options=WorkflowOptions(
                model=req.model, working_directory=req.working_directory, inputs=req.inputs
            ),
            settings=settings,
            state_service=state_service,
            job_store=job_store,
        )
        return _get_job_or_500(job_id)

    @app.get("/api/runs", response_model=list[RunJob])
    def list_runs() -> list[RunJob]:
        return [_to_run_job(record) for record in job_store.list()]

    @app.get("/api/runs/{job_id}", response_model=RunJob)
    def get_run(job_id: str) -> RunJob:
        record = job_store.get(job_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return _to_run_job(record)

    return app
