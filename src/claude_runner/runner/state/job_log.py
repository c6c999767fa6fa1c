"""Human-inspectable JSON log written next to the workflow file.

For ``.github/workflows/claude-review.yml`` the log lives at
``.github/workflows/claude-review.json``. Writing it is best-effort: an I/O
problem is logged as a warning and never interrupts the workflow.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from claude_runner.runner.state.models import WorkflowState, WorkflowStepResult, parse_iso
from claude_runner.runner.workflow.parser import iter_task_steps
from claude_runner.runner.workflow.variables import ResolutionContext, resolve_variables

logger = logging.getLogger(__name__)

_LOGGED_STATUSES = ("completed", "failed", "timeout", "paused")


def job_log_path(workflow_path: str | Path) -> Path:
    path = Path(workflow_path)
    return path.with_name(f"{path.stem}.json")


def _now() -> datetime:
    return datetime.now(tz=UTC)


class WorkflowJobLog:
    def __init__(self) -> None:
        self._path: Path | None = None
        self._log: dict[str, Any] | None = None

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def current(self) -> dict[str, Any] | None:
        return self._log

    def initialize(
        self, state: WorkflowState, workflow_path: str | Path, *, is_resume: bool = False
    ) -> None:
        try:
            self._initialize(state, Path(workflow_path), is_resume=is_resume)
        except OSError as e:
            logger.warning("Failed to initialize workflow job log", extra={"error": str(e)})

    def _initialize(self, state: WorkflowState, workflow_path: Path, *, is_resume: bool) -> None:
        self._path = job_log_path(workflow_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

        if is_resume:
            try:
                existing = json.loads(self._path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                logger.warning(
                    "Could not load existing job log, creating new one",
                    extra={"path": str(self._path)},
                )
            else:
                if isinstance(existing, dict) and isinstance(existing.get("steps"), list):
                    existing["last_update_time"] = _now().isoformat()
                    existing["status"] = "running"
                    self._log = existing
                    self._write()
                    return

        now = _now()
        self._log = {
            "workflow_name": state.workflow_name or workflow_path.stem,
            "workflow_file": workflow_path.name,
            "execution_id": now.strftime("%Y%m%d-%H%M%S"),
            "start_time": now.isoformat(),
            "last_update_time": now.isoformat(),
            "status": "running",
            "last_completed_step": -1,
            "total_steps": state.total_steps,
            "steps": [],
        }
        self._write()

    def update_step(self, step_result: WorkflowStepResult, state: WorkflowState) -> None:
        if self._log is None or self._path is None:
            return

        if step_result.status in _LOGGED_STATUSES:
            self._log["steps"].append(self._entry(step_result, state))
            if step_result.status == "completed":
                self._log["last_completed_step"] = max(
                    self._log["last_completed_step"], step_result.step_index
                )

        self._log["last_update_time"] = _now().isoformat()
        self._log["status"] = self._derive_status(state)
        self._write()

    def _entry(self, step_result: WorkflowStepResult, state: WorkflowState) -> dict[str, Any]:
        start = parse_iso(step_result.start_time) or _now()
        end = parse_iso(step_result.end_time) or _now()

        step_name = f"Step {step_result.step_index + 1}"
        output_session = False
        resume_session = ""
        refs = iter_task_steps(state.execution.workflow)
        if 0 <= step_result.step_index < len(refs):
            ref = refs[step_result.step_index]
            step_name = ref.step.name or step_name
            output_session = ref.with_.output_session is True
            resume_session = ref.with_.resume_session or ""
            if "${{" in resume_session:
                context = ResolutionContext(
                    steps={k: {"session_id": v} for k, v in state.session_mappings.items()}
                )
                resume_session = resolve_variables(resume_session, context) or resume_session

        entry: dict[str, Any] = {
            "step_index": step_result.step_index,
            "step_id": step_result.step_id,
            "step_name": step_name,
            "status": step_result.status,
            "start_time": start.isoformat(),
            "end_time": end.isoformat(),
            "duration_ms": int((end - start).total_seconds() * 1000),
            "output": step_result.output or "",
            "session_id": step_result.session_id or "",
            "output_session": output_session,
        }
        if resume_session:
            entry["resume_session"] = resume_session
        return entry

    def _derive_status(self, state: WorkflowState) -> str:
        if state.status in ("completed", "failed"):
            return state.status
        statuses = [step["status"] for step in self._log["steps"]] if self._log else []
        if "failed" in statuses:
            return "failed"
        if "timeout" in statuses or "paused" in statuses:
            return "paused"
        total = self._log["total_steps"] if self._log else 0
        if total > 0 and statuses.count("completed") >= total:
            return "completed"
        return "running"

    def update_status(self, status: str) -> None:
        if self._log is None:
            return
        self._log["status"] = status
        self._log["last_update_time"] = _now().isoformat()
        self._write()

    def finalize(self) -> None:
        if self._log is None:
            return
        if self._log["status"] == "running":
            self._log["status"] = "completed"
        self._write()

    def release(self) -> None:
        self._path = None
        self._log = None

    def _write(self) -> None:
        if self._path is None or self._log is None:
            return
        try:
            self._path.write_text(
                json.dumps(self._log, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
            )
        except OSError as e:
            logger.warning(
                "Failed to write workflow job log",
                extra={"path": str(self._path), "error": str(e)},
            )
