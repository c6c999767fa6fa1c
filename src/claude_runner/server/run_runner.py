"""Background threads for workflow runs started over HTTP."""

from __future__ import annotations

import logging
import threading
import uuid
from pathlib import Path

from claude_runner.runner.config import RunnerSettings
from claude_runner.runner.executor.task_executor import TaskExecutor
from claude_runner.runner.executor.types import WorkflowOptions, WorkflowResult
from claude_runner.runner.state.service import WorkflowStateService
from claude_runner.runner.workflow.engine import WorkflowEngine, create_execution
from claude_runner.runner.workflow.events import StepCompleted, WorkflowEvent
from claude_runner.runner.workflow.library import load_workflow_file
from claude_runner.server.job_store import JobStore

logger = logging.getLogger(__name__)


def _engine(settings: RunnerSettings, state_service: WorkflowStateService) -> WorkflowEngine:
    return WorkflowEngine(
        TaskExecutor(command=settings.task_command),
        state_service,
        default_model=settings.default_model,
        max_retries=settings.max_retries,
    )


def _job_listener(job_id: str, job_store: JobStore, execution_id: str | None):
    known = {"execution_id": execution_id, "steps": 0}

    def _listener(event: WorkflowEvent) -> None:
        if known["execution_id"] is None and event.execution_id is not None:
            known["execution_id"] = event.execution_id
            job_store.update(job_id, execution_id=event.execution_id)
        if isinstance(event, StepCompleted):
            known["steps"] += 1
            job_store.update(job_id, steps_executed=known["steps"])

    return _listener


def _record_result(job_id: str, job_store: JobStore, result: WorkflowResult) -> None:
    if result.success:
        status = "succeeded"
    elif result.paused:
        status = "paused"
    else:
        status = "failed"
    job_store.update(
        job_id,
        status=status,
        execution_id=result.execution_id,
        steps_executed=result.steps_executed,
        error=result.error,
    )


def start_run_job(
    *,
    workflow_path: Path,
    inputs: dict[str, str],
    options: WorkflowOptions,
    settings: RunnerSettings,
    state_service: WorkflowStateService,
    job_store: JobStore,
) -> str:
    job_id = uuid.uuid4().hex
    job_store.create(job_id=job_id, kind="run", workflow_path=str(workflow_path))

    thread = threading.Thread(
        target=_run_job,
        name=f"workflow-run-{job_id}",
        daemon=True,
        kwargs={
            "job_id": job_id,
            "workflow_path": workflow_path,
            "inputs": inputs,
            "options": options,
            "settings": settings,
            "state_service": state_service,
            "job_store": job_store,
        },
    )
    thread.start()
    return job_id


def start_resume_job(
    *,
    execution_id: str,
    options: WorkflowOptions,
    settings: RunnerSettings,
    state_service: WorkflowStateService,
    job_store: JobStore,
) -> str:
    job_id = uuid.uuid4().hex
    state = state_service.get_workflow_state(execution_id)
    job_store.create(
        job_id=job_id,
        kind="resume",
        workflow_path=state.workflow_path if state else None,
        execution_id=execution_id,
    )

    thread = threading.Thread(
        target=_resume_job,
        name=f"workflow-resume-{job_id}",
        daemon=True,
        kwargs={
            "job_id": job_id,
            "execution_id": execution_id,
            "options": options,
            "settings": settings,
            "state_service": state_service,
            "job_store": job_store,
        },
    )
    thread.start()
    return job_id


def _run_job(
    *,
    job_id: str,
    workflow_path: Path,
    inputs: dict[str, str],
    options: WorkflowOptions,
    settings: RunnerSettings,
    state_service: WorkflowStateService,
    job_store: JobStore,
) -> None:
    job_store.update(job_id, status="running")
    try:
        doc = load_workflow_file(workflow_path)
        result = _engine(settings, state_service).execute_workflow(
            create_execution(doc, inputs),
            options,
            _job_listener(job_id, job_store, None),
            workflow_path=workflow_path,
        )
        _record_result(job_id, job_store, result)
    except Exception as e:
        logger.exception(
            "Workflow run job failed", extra={"job_id": job_id, "workflow": str(workflow_path)}
        )
        job_store.update(job_id, status="failed", error=str(e))


def _resume_job(
    *,
    job_id: str,
    execution_id: str,
    options: WorkflowOptions,
    settings: RunnerSettings,
    state_service: WorkflowStateService,
    job_store: JobStore,
) -> None:
    job_store.update(job_id, status="running")
    try:
        result = _engine(settings, state_service).resume_workflow(
            execution_id, options, _job_listener(job_id, job_store, execution_id)
        )
        _record_result(job_id, job_store, result)
    except Exception as e:
        logger.exception(
            "Workflow resume job failed", extra={"job_id": job_id, "execution_id": execution_id}
        )
        job_store.update(job_id, status="failed", error=str(e))
