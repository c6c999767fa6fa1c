"""Drive a parsed workflow through the task executor.

Steps run strictly in document order. After every step attempt the engine
writes a checkpoint through the state service, so a run interrupted by a
pause request, a rate limit or a crash can be resumed from another process
with ``resume_workflow``.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from claude_runner.runner.executor.models import DEFAULT_MODEL
from claude_runner.runner.executor.rate_limit import RateLimitInfo
from claude_runner.runner.executor.task_executor import (
    ExecutionError,
    RateLimitError,
    RetryBudgetExceeded,
    TaskExecutionError,
    TaskExecutor,
    extract_result_from_json,
)
from claude_runner.runner.executor.types import (
    TaskOptions,
    TaskResult,
    WorkflowOptions,
    WorkflowResult,
)
from claude_runner.runner.state.job_log import WorkflowJobLog
from claude_runner.runner.state.models import WorkflowStepResult, utc_iso_now
from claude_runner.runner.state.service import WorkflowStateService
from claude_runner.runner.state.storage import StateStorageError
from claude_runner.runner.workflow.document import (
    StepWith,
    TaskStepRef,
    WorkflowDocument,
    WorkflowExecution,
)
from claude_runner.runner.workflow.events import (
    EventListener,
    StepCompleted,
    StepFailed,
    StepStarted,
    WorkflowCompleted,
    WorkflowEvent,
    WorkflowFailed,
    WorkflowPaused,
)
from claude_runner.runner.workflow.parser import iter_task_steps
from claude_runner.runner.workflow.state_machine import ExecutionStatus, transition
from claude_runner.runner.workflow.variables import ResolutionContext, resolve_step

logger = logging.getLogger(__name__)


class WorkflowResumeError(RuntimeError):
    pass


@dataclass
class RunHandle:
    """Identifies one run so callers can pause it from another thread."""

    execution_id: str | None = None
    finished: threading.Event = field(default_factory=threading.Event)


@dataclass(frozen=True, slots=True)
class _Pause:
    reason: str
    message: str


def create_execution(
    workflow: WorkflowDocument, inputs: dict[str, str] | None = None
) -> WorkflowExecution:
    """Build a fresh execution, filling declared input defaults."""

    values: dict[str, str] = {}
    for name, declared in workflow.declared_inputs().items():
        if declared.default is None:
            continue
        if isinstance(declared.default, bool):
            values[name] = "true" if declared.default else "false"
        else:
            values[name] = str(declared.default)
    values.update(inputs or {})
    return WorkflowExecution(workflow=workflow, inputs=values)


class WorkflowEngine:
    def __init__(
        self,
        executor: TaskExecutor,
        state_service: WorkflowStateService | None = None,
        *,
        default_model: str = DEFAULT_MODEL,
        max_retries: int = 1,
    ) -> None:
        self._executor = executor
        self._state = state_service
        self._default_model = default_model
        self._max_retries = max_retries
        self._lock = threading.Lock()
        self._current: RunHandle | None = None

    @property
    def current_execution_id(self) -> str | None:
        with self._lock:
            return self._current.execution_id if self._current else None

    def pause_current_workflow(self, handle: RunHandle | None = None) -> str | None:
        """Request a manual pause; it takes effect before the next step starts."""

        if self._state is None:
            return None
        if handle is None:
            with self._lock:
                handle = self._current
        if handle is None or handle.execution_id is None:
            return None
        state = self._state.pause_workflow(handle.execution_id, "manual")
        return state.execution_id if state else None

    # ------------------------------------------------------------------

    def execute_workflow(
        self,
        execution: WorkflowExecution,
        options: WorkflowOptions | None = None,
        listener: EventListener | None = None,
        workflow_path: str | Path | None = None,
        handle: RunHandle | None = None,
    ) -> WorkflowResult:
        options = options or WorkflowOptions()
        handle = handle or RunHandle()
        job_log: WorkflowJobLog | None = None

        with self._lock:
            self._current = handle
        try:
            if self._state is not None and workflow_path is not None:
                job_log = self._start_tracking(self._state, execution, workflow_path, handle)

            execution.status = transition(current=execution.status, to=ExecutionStatus.RUNNING)
            return self._drive(
                execution,
                options,
                listener,
                handle,
                job_log,
                completed=set(),
                start=0,
            )
        finally:
            if job_log is not None:
                job_log.release()
            with self._lock:
                self._current = None
            handle.finished.set()

    def resume_workflow(
        self,
        execution_id: str,
        options: WorkflowOptions | None = None,
        listener: EventListener | None = None,
        handle: RunHandle | None = None,
    ) -> WorkflowResult:
        if self._state is None:
            raise WorkflowResumeError("Workflow state service not available for resume")

        state = self._state.get_workflow_state(execution_id)
        if state is None or not state.can_resume:
            raise WorkflowResumeError(f"Cannot resume workflow: {execution_id}")
        if state.status not in ("paused", "timeout"):
            raise WorkflowResumeError(
                f"Cannot resume workflow: {execution_id} (status: {state.status})"
            )
        resumed = self._state.resume_workflow(execution_id)
        if resumed is None:
            raise WorkflowResumeError(f"Failed to resume workflow: {execution_id}")

        execution = resumed.execution.to_execution()
        for step in resumed.completed_steps:
            if step.status != "completed":
                continue
            outputs = execution.outputs.setdefault(step.step_id, {})
            if step.output is not None:
                outputs.setdefault("result", step.output)
            if step.session_id:
                outputs["session_id"] = step.session_id
        for step_id, session_id in resumed.session_mappings.items():
            execution.outputs.setdefault(step_id, {})["session_id"] = session_id

        execution.status = ExecutionStatus.PAUSED
        execution.status = transition(current=execution.status, to=ExecutionStatus.RUNNING)
        execution.error = None

        options = options or WorkflowOptions()
        handle = handle or RunHandle()
        handle.execution_id = execution_id
        job_log = WorkflowJobLog()
        job_log.initialize(resumed, resumed.workflow_path, is_resume=True)

        logger.info(
            "Resuming workflow",
            extra={"execution_id": execution_id, "current_step": resumed.current_step},
        )
        with self._lock:
            self._current = handle
        try:
            return self._drive(
                execution,
                options,
                listener,
                handle,
                job_log,
                completed=resumed.completed_indices(),
                start=resumed.current_step,
            )
        finally:
            job_log.release()
            with self._lock:
                self._current = None
            handle.finished.set()

    # ------------------------------------------------------------------

    def _drive(
        self,
        execution: WorkflowExecution,
        options: WorkflowOptions,
        listener: EventListener | None,
        handle: RunHandle,
        job_log: WorkflowJobLog | None,
        *,
        completed: set[int],
        start: int,
    ) -> WorkflowResult:
        started = time.monotonic()
        execution_id = handle.execution_id
        steps_executed = len(completed)

        def _emit(event: WorkflowEvent) -> None:
            if listener is not None:
                listener(event)

        def _result(
            success: bool, error: str | None = None, paused: bool = False
        ) -> WorkflowResult:
            return WorkflowResult(
                workflow_id=execution.workflow.name,
                success=success,
                outputs={key: dict(value) for key, value in execution.outputs.items()},
                execution_time_ms=int((time.monotonic() - started) * 1000),
                steps_executed=steps_executed,
                error=error,
                execution_id=execution_id,
                paused=paused,
            )

        def _fail(message: str) -> WorkflowResult:
            execution.status = transition(current=execution.status, to=ExecutionStatus.FAILED)
            execution.error = message
            self._record_outcome(execution_id, execution, failed=True)
            if job_log is not None:
                job_log.update_status("failed")
                job_log.finalize()
            logger.error(
                "Workflow failed",
                extra={"execution_id": execution_id, "error": message, "steps": steps_executed},
            )
            _emit(WorkflowFailed(execution_id, message, steps_executed))
            return _result(False, message)

        try:
            for ref in iter_task_steps(execution.workflow):
                if ref.position < start or ref.position in completed:
                    continue

                requested = self._pause_requested(execution_id)
                if requested is not None:
                    self._stop_paused(execution, ref.position, job_log)
                    _emit(WorkflowPaused(execution_id, ref.position, requested.reason))
                    return _result(False, requested.message, paused=True)

                execution.current_step = ref.position
                _emit(StepStarted(execution_id, ref.position, ref.step_id))
                self._checkpoint(execution_id, self._step_result(ref), job_log)

                params = resolve_step(ref.with_, self._context(execution, options, ref.job_name))
                result = self._run_step(params, options)

                if not result.success:
                    error = result.error or "Task execution failed"
                    if result.rate_limit is not None and result.rate_limit.is_limited:
                        pause = self._pause_for_rate_limit(
                            execution, ref, result, execution_id, job_log
                        )
                        _emit(StepFailed(execution_id, ref.position, ref.step_id, error))
                        _emit(WorkflowPaused(execution_id, ref.position, pause.reason))
                        return _result(False, pause.message, paused=True)

                    failed = WorkflowStateService.complete_step_result(
                        self._step_result(ref, session_id=result.session_id),
                        False,
                        error=error,
                    )
                    self._checkpoint(execution_id, failed, job_log)
                    _emit(StepFailed(execution_id, ref.position, ref.step_id, error))
                    raise TaskExecutionError(error, session_id=result.session_id)

                output: dict[str, object] = {"result": result.output}
                if result.session_id:
                    output["session_id"] = result.session_id
                execution.outputs[ref.step_id] = output

                # Sessions are always recorded so later steps can resume them by step id.
                done = WorkflowStateService.complete_step_result(
                    self._step_result(
                        ref,
                        session_id=result.session_id,
                        output_session=ref.with_.output_session is True or bool(result.session_id),
                    ),
                    True,
                    output=result.output,
                )
                execution.current_step = ref.position + 1
                self._checkpoint(execution_id, done, job_log, execution=execution)
                steps_executed += 1
                _emit(StepCompleted(execution_id, ref.position, ref.step_id, dict(output)))

        except ExecutionError as e:
            return _fail(str(e))
        except Exception as e:
            logger.exception("Unexpected error while running workflow")
            return _fail(str(e) or type(e).__name__)

        execution.status = transition(current=execution.status, to=ExecutionStatus.COMPLETED)
        self._record_outcome(execution_id, execution, failed=False)
        if job_log is not None:
            job_log.update_status("completed")
            job_log.finalize()
        logger.info(
            "Workflow completed",
            extra={"execution_id": execution_id, "steps": steps_executed},
        )
        _emit(WorkflowCompleted(execution_id, steps_executed))
        return _result(True)

    def _context(
        self, execution: WorkflowExecution, options: WorkflowOptions, job_name: str
    ) -> ResolutionContext:
        env: dict[str, str] = dict(options.environment)
        env.update(execution.workflow.env or {})
        job = execution.workflow.jobs.get(job_name)
        if job is not None:
            env.update(job.env or {})
        return ResolutionContext(inputs=execution.inputs, env=env, steps=execution.outputs)

    def _run_step(self, params: StepWith, options: WorkflowOptions) -> TaskResult:
        model = params.model or options.model or self._default_model
        cwd = params.working_directory or options.working_directory or os.getcwd()
        task_options = TaskOptions(
            allow_all_tools=params.allow_all_tools is True,
            bypass_permissions=params.bypass_permissions is True,
            output_format="json",
            resume_session_id=params.resume_session or None,
            working_directory=cwd,
        )
        if self._max_retries <= 1:
            return self._executor.execute_task(params.prompt, model, cwd, task_options)
        return self._run_step_with_retry(params.prompt, model, cwd, task_options)

    def _run_step_with_retry(
        self, prompt: str, model: str, cwd: str, task_options: TaskOptions
    ) -> TaskResult:
        started = time.monotonic()

        def _failed(message: str, session_id: str | None, info: RateLimitInfo | None) -> TaskResult:
            return TaskResult(
                task_id=f"task-{int(time.time() * 1000)}",
                success=False,
                output="",
                error=message,
                session_id=session_id,
                execution_time_ms=int((time.monotonic() - started) * 1000),
                rate_limit=info,
            )

        invalid = self._executor.validate_request(model, cwd)
        if invalid is not None:
            return _failed(invalid, None, None)
        try:
            command = self._executor.execute_task_with_retry(
                prompt, model, cwd, task_options, max_retries=self._max_retries
            )
        except RateLimitError as e:
            return _failed(str(e), e.session_id, e.info)
        except RetryBudgetExceeded as e:
            return _failed(str(e), e.session_id, RateLimitInfo(is_limited=True))
        except TaskExecutionError as e:
            return _failed(str(e), e.session_id, None)

        return TaskResult(
            task_id=f"task-{int(time.time() * 1000)}",
            success=True,
            output=extract_result_from_json(command.output),
            session_id=command.session_id,
            execution_time_ms=int((time.monotonic() - started) * 1000),
        )

    @staticmethod
    def _step_result(
        ref: TaskStepRef, *, session_id: str | None = None, output_session: bool | None = None
    ) -> WorkflowStepResult:
        result = WorkflowStateService.create_step_result(
            ref.position,
            ref.step_id,
            session_id=session_id,
            output_session=(
                ref.with_.output_session is True if output_session is None else output_session
            ),
            resume_session=ref.with_.resume_session,
        )
        return result.model_copy(update={"status": "running"})

    @staticmethod
    def _start_tracking(
        state_service: WorkflowStateService,
        execution: WorkflowExecution,
        workflow_path: str | Path,
        handle: RunHandle,
    ) -> WorkflowJobLog | None:
        """Create the persisted state and job log; the run goes on without them on failure."""
        try:
            state = state_service.create_workflow_state(execution, str(workflow_path))
        except StateStorageError as e:
            logger.warning(
                "Workflow state could not be created, running without checkpoints",
                extra={"workflow_path": str(workflow_path), "error": str(e)},
            )
            return None
        handle.execution_id = state.execution_id
        try:
            state = state_service.mark_running(state.execution_id) or state
        except StateStorageError as e:
            logger.warning(
                "Failed to mark workflow running",
                extra={"execution_id": state.execution_id, "error": str(e)},
            )
        job_log = WorkflowJobLog()
        job_log.initialize(state, workflow_path)
        return job_log

    def _record_outcome(
        self, execution_id: str | None, execution: WorkflowExecution, *, failed: bool
    ) -> None:
        if self._state is None or execution_id is None:
            return
        try:
            self._state.save_execution_snapshot(execution_id, execution)
            if failed:
                self._state.fail_workflow(execution_id)
            else:
                self._state.complete_workflow(execution_id)
        except StateStorageError as e:
            logger.warning(
                "Failed to persist workflow outcome",
                extra={"execution_id": execution_id, "error": str(e)},
            )

    def _checkpoint(
        self,
        execution_id: str | None,
        step_result: WorkflowStepResult,
        job_log: WorkflowJobLog | None,
        *,
        execution: WorkflowExecution | None = None,
    ) -> None:
        if self._state is None or execution_id is None:
            return
        try:
            if execution is not None:
                self._state.save_execution_snapshot(execution_id, execution)
            state = self._state.update_workflow_progress(execution_id, step_result)
        except StateStorageError as e:
            logger.warning(
                "Failed to persist step checkpoint",
                extra={
                    "execution_id": execution_id,
                    "step_id": step_result.step_id,
                    "error": str(e),
                },
            )
            return
        if state is not None and job_log is not None:
            job_log.update_step(step_result, state)

    def _pause_requested(self, execution_id: str | None) -> _Pause | None:
        if self._state is None or execution_id is None:
            return None
        try:
            state = self._state.get_workflow_state(execution_id)
        except StateStorageError as e:
            logger.warning(
                "Could not read workflow state for pause check",
                extra={"execution_id": execution_id, "error": str(e)},
            )
            return None
        if state is None or state.status not in ("paused", "timeout"):
            return None
        reason = state.pause_reason or "manual"
        return _Pause(reason=reason, message=f"Workflow paused ({reason})")

    def _stop_paused(
        self, execution: WorkflowExecution, position: int, job_log: WorkflowJobLog | None
    ) -> None:
        execution.current_step = position
        execution.status = transition(current=execution.status, to=ExecutionStatus.PAUSED)
        if job_log is not None:
            job_log.update_status("paused")
        logger.info("Workflow paused before step", extra={"step_index": position})

    def _pause_for_rate_limit(
        self,
        execution: WorkflowExecution,
        ref: TaskStepRef,
        result: TaskResult,
        execution_id: str | None,
        job_log: WorkflowJobLog | None,
    ) -> _Pause:
        info = result.rate_limit or RateLimitInfo(is_limited=True)
        reason = "timeout" if info.is_timeout else "rate_limit"
        status = ExecutionStatus.TIMEOUT if info.is_timeout else ExecutionStatus.PAUSED
        reset = info.reset_time.isoformat() if info.reset_time else "unknown"

        execution.current_step = ref.position
        execution.status = transition(current=execution.status, to=status)
        execution.error = result.error

        if self._state is not None and execution_id is not None:
            paused_step = self._step_result(ref, session_id=result.session_id).model_copy(
                update={
                    "status": "timeout" if info.is_timeout else "paused",
                    "end_time": utc_iso_now(),
                    "error": result.error,
                }
            )
            self._checkpoint(execution_id, paused_step, job_log, execution=execution)
            try:
                self._state.pause_workflow(execution_id, reason)
            except StateStorageError as e:
                logger.warning(
                    "Failed to persist rate-limit pause",
                    extra={"execution_id": execution_id, "error": str(e)},
                )

        logger.warning(
            "Rate limit reached, workflow paused",
            extra={"execution_id": execution_id, "step_id": ref.step_id, "reset_time": reset},
        )
        return _Pause(reason=reason, message=f"Rate limited until {reset}")
