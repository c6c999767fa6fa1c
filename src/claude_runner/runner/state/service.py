from __future__ import annotations

import logging
import re
import secrets
import string
import time
from collections.abc import Callable

from claude_runner.runner.state.models import (
    ExecutionSnapshot,
    PauseReason,
    WorkflowState,
    WorkflowStepResult,
    utc_iso_now,
)
from claude_runner.runner.state.storage import StorageStats, WorkflowStateStorage
from claude_runner.runner.workflow.document import WorkflowExecution
from claude_runner.runner.workflow.parser import iter_task_steps

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_SECONDS = 7 * 24 * 60 * 60

_ID_ALPHABET = string.digits + string.ascii_lowercase
_SESSION_TEMPLATE = re.compile(r"\$\{\{\s*steps\.([\w-]+)\.outputs\.session_id\s*\}\}")


def generate_execution_id(clock: Callable[[], float] = time.time) -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"exec_{int(clock() * 1000)}_{suffix}"


class WorkflowStateService:
    """Lifecycle of persisted workflow states.

    Every mutation goes through ``storage.mutate`` so that a pause requested
    from another thread and a checkpoint written by the engine never overwrite
    each other's fields.
    """

    def __init__(self, storage: WorkflowStateStorage) -> None:
        self._storage = storage

    @property
    def storage(self) -> WorkflowStateStorage:
        return self._storage

    def create_workflow_state(
        self, execution: WorkflowExecution, workflow_path: str
    ) -> WorkflowState:
        state = WorkflowState(
            execution_id=generate_execution_id(),
            workflow_path=workflow_path,
            workflow_name=execution.workflow.name,
            start_time=utc_iso_now(),
            current_step=0,
            total_steps=len(iter_task_steps(execution.workflow)),
            status="pending",
            execution=ExecutionSnapshot.from_execution(execution),
            can_resume=True,
        )
        self._storage.save_workflow_state(state)
        logger.info(
            "Workflow state created",
            extra={"execution_id": state.execution_id, "workflow": state.workflow_name},
        )
        return state

    def get_workflow_state(self, execution_id: str) -> WorkflowState | None:
        return self._storage.load_workflow_state(execution_id)

    def list_workflow_states(self) -> list[WorkflowState]:
        return self._storage.list_workflow_states()

    def get_resumable_workflows(self) -> list[WorkflowState]:
        return [s for s in self._storage.list_workflow_states() if s.is_resumable]

    def delete_workflow_state(self, execution_id: str) -> None:
        self._storage.delete_workflow_state(execution_id)

    def cleanup_old_workflows(self, max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS) -> int:
        removed = self._storage.cleanup_old_states(max_age_seconds)
        if removed:
            logger.info("Removed old workflow states", extra={"removed": removed})
        return removed

    def mark_running(self, execution_id: str) -> WorkflowState | None:
        def _apply(state: WorkflowState) -> WorkflowState | None:
            if state.status != "pending":
                return None
            return state.model_copy(update={"status": "running"})

        return self._storage.mutate(execution_id, _apply)

    def pause_workflow(
        self, execution_id: str, reason: PauseReason = "manual"
    ) -> WorkflowState | None:
        """Pause a running workflow; returns ``None`` if it is not running."""

        def _apply(state: WorkflowState) -> WorkflowState | None:
            if state.status != "running":
                return None
            return state.model_copy(
                update={
                    "status": "timeout" if reason == "timeout" else "paused",
                    "paused_at": utc_iso_now(),
                    "pause_reason": reason,
                    "can_resume": reason != "error",
                }
            )

        state = self._storage.mutate(execution_id, _apply)
        if state is not None:
            logger.info(
                "Workflow paused", extra={"execution_id": execution_id, "reason": reason}
            )
        return state

    def resume_workflow(self, execution_id: str) -> WorkflowState | None:
        """Move a paused or timed-out workflow back to running."""

        def _apply(state: WorkflowState) -> WorkflowState | None:
            if not state.is_resumable:
                return None
            return state.model_copy(
                update={"status": "running", "resumed_at": utc_iso_now(), "pause_reason": None}
            )

        return self._storage.mutate(execution_id, _apply)

    def update_workflow_progress(
        self, execution_id: str, step_result: WorkflowStepResult
    ) -> WorkflowState | None:
        def _apply(state: WorkflowState) -> WorkflowState:
            steps = list(state.completed_steps)
            for idx, existing in enumerate(steps):
                if existing.step_index == step_result.step_index:
                    steps[idx] = step_result
                    break
            else:
                steps.append(step_result)

            mappings = dict(state.session_mappings)
            if step_result.session_id and step_result.output_session and step_result.step_id:
                mappings[step_result.step_id] = step_result.session_id

            updates: dict[str, object] = {"completed_steps": steps, "session_mappings": mappings}
            if step_result.status == "running" and state.status == "pending":
                updates["status"] = "running"
            elif step_result.status == "completed":
                current = max(state.current_step, step_result.step_index + 1)
                updates["current_step"] = current
                if current >= state.total_steps:
                    updates["status"] = "completed"
            elif step_result.status == "failed":
                updates["status"] = "failed"
                updates["can_resume"] = False
            return state.model_copy(update=updates)

        return self._storage.mutate(execution_id, _apply)

    def save_execution_snapshot(
        self, execution_id: str, execution: WorkflowExecution
    ) -> WorkflowState | None:
        snapshot = ExecutionSnapshot.from_execution(execution)
        return self._storage.mutate(
            execution_id, lambda state: state.model_copy(update={"execution": snapshot})
        )

    def complete_workflow(self, execution_id: str) -> WorkflowState | None:
        return self._storage.mutate(
            execution_id,
            lambda state: state.model_copy(
                update={"status": "completed", "current_step": state.total_steps}
            ),
        )

    def fail_workflow(self, execution_id: str) -> WorkflowState | None:
        return self._storage.mutate(
            execution_id,
            lambda state: state.model_copy(update={"status": "failed", "can_resume": False}),
        )

    @staticmethod
    def resolve_session_reference(mappings: dict[str, str], reference: str) -> str | None:
        """Map a session reference to a recorded session id.

        Accepts a template pointing at a step's ``session_id`` or a bare step id.
        A literal session id (``ses_...``) is returned unchanged.
        """

        match = _SESSION_TEMPLATE.search(reference)
        if match:
            return mappings.get(match.group(1)) or None
        if reference in mappings:
            return mappings[reference]
        if reference.startswith("ses_"):
            return reference
        return None

    @staticmethod
    def create_step_result(
        step_index: int,
        step_id: str,
        session_id: str | None = None,
        output_session: bool = False,
        resume_session: str | None = None,
    ) -> WorkflowStepResult:
        return WorkflowStepResult(
            step_index=step_index,
            step_id=step_id,
            session_id=session_id,
            output_session=output_session,
            resume_session=resume_session,
            status="pending",
            start_time=utc_iso_now(),
        )

    @staticmethod
    def complete_step_result(
        step_result: WorkflowStepResult,
        success: bool,
        output: str | None = None,
        error: str | None = None,
    ) -> WorkflowStepResult:
        return step_result.model_copy(
            update={
                "status": "completed" if success else "failed",
                "end_time": utc_iso_now(),
                "output": output,
                "error": error,
            }
        )

    def storage_stats(self) -> StorageStats | None:
        stats = getattr(self._storage, "get_storage_stats", None)
        return stats() if stats is not None else None

    def clear_all(self) -> None:
        clear = getattr(self._storage, "clear_all_states", None)
        if clear is not None:
            clear()
