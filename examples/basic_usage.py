#!/usr/bin/env python3
"""Programmatic workflow run example.

This demonstrates using the runner components directly:

* load settings from `.env`
* turn an ad-hoc task list into a workflow document
* run it with persisted, resumable state and print engine events

The working directory is passed as an argument (not read from `.env`).
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Sequence

from claude_runner.runner.config import RunnerSettings
from claude_runner.runner.executor.task_executor import TaskExecutor
from claude_runner.runner.executor.types import TaskItem, WorkflowOptions
from claude_runner.runner.logging import configure_logging
from claude_runner.runner.state.service import WorkflowStateService
from claude_runner.runner.state.storage import JsonWorkflowStateStorage
from claude_runner.runner.workflow.engine import WorkflowEngine, create_execution
from claude_runner.runner.workflow.events import StepCompleted, StepFailed, WorkflowEvent
from claude_runner.runner.workflow.library import WorkflowLibrary, workflow_file_name
from claude_runner.runner.workflow.pipeline import workflow_from_tasks


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a two step review (programmatic example).")
    parser.add_argument("--cwd", required=True, help="Repository the tasks should work in")
    parser.add_argument("--topic", default="error handling", help="What to review")
    return parser.parse_args(argv)


def _print_event(event: WorkflowEvent) -> None:
    if isinstance(event, StepCompleted):
        print(f"[{event.step_id}] done (session {event.outputs.get('session_id')})")
    elif isinstance(event, StepFailed):
        print(f"[{event.step_id}] failed: {event.error}")


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = RunnerSettings()
    configure_logging(settings.log_level, fmt=settings.log_format)

    tasks = [
        TaskItem(id="review", name="Review", prompt=f"Review the code for {args.topic}"),
        TaskItem(
            id="fix",
            name="Fix",
            prompt="Fix the most important problem you found",
            resume_from_task_id="review",
        ),
    ]
    doc = workflow_from_tasks("Review and fix", tasks, allow_all_tools=True)

    library = WorkflowLibrary(settings.workflows_dir)
    path = library.save(Path(workflow_file_name(doc.name)).stem, doc)
    print(f"Saved workflow to: {path}")

    engine = WorkflowEngine(
        TaskExecutor(command=settings.task_command),
        WorkflowStateService(JsonWorkflowStateStorage(settings.state_path)),
        default_model=settings.default_model,
        max_retries=settings.max_retries,
    )
    result = engine.execute_workflow(
        create_execution(doc),
        WorkflowOptions(working_directory=args.cwd),
        _print_event,
        workflow_path=path,
    )

    if result.paused:
        print(f"Paused: {result.error}")
        print(f"Resume with: claude-runner resume {result.execution_id}")
        return 5
    if not result.success:
        print(f"Failed: {result.error}")
        return 4
    print(f"Completed {result.steps_executed} step(s)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
