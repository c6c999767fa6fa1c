"""CLI entrypoint for the local workflow runner.

Exit codes:
    0  success
    1  unexpected error
    2  configuration or workflow validation error
    3  resume or pause refused
    4  workflow failed
    5  workflow paused
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from claude_runner import __version__
from claude_runner.runner.config import RunnerSettings
from claude_runner.runner.executor.task_executor import TaskExecutor
from claude_runner.runner.executor.types import TaskOptions, WorkflowOptions, WorkflowResult
from claude_runner.runner.logging import configure_logging
from claude_runner.runner.state.service import WorkflowStateService
from claude_runner.runner.state.storage import JsonWorkflowStateStorage, StateStorageError
from claude_runner.runner.workflow.engine import (
    RunHandle,
    WorkflowEngine,
    WorkflowResumeError,
    create_execution,
)
from claude_runner.runner.workflow.library import (
    WorkflowLibrary,
    WorkflowNotFoundError,
    load_workflow_file,
    validate_workflow_file,
)
from claude_runner.runner.workflow.parser import WorkflowParseError, iter_task_steps, to_yaml
from claude_runner.runner.workflow.pipeline import create_sample_workflow

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INVALID = 2
EXIT_REFUSED = 3
EXIT_FAILED = 4
EXIT_PAUSED = 5


def _parse_inputs(values: list[str] | None) -> dict[str, str]:
    inputs: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise argparse.ArgumentTypeError(f"Invalid input '{item}', expected KEY=VALUE")
        inputs[key.strip()] = value
    return inputs


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="claude-runner",
        description="Run multi-step task workflows with resumable state",
    )
    parser.add_argument("--version", action="version", version=f"claude-runner {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Execute a workflow file")
    run.add_argument("workflow", help="Path to the workflow YAML file")
    run.add_argument(
        "--input",
        "-i",
        dest="inputs",
        action="append",
        default=None,
        metavar="KEY=VALUE",
        help="Workflow input (repeatable)",
    )
    run.add_argument("--model", default=None, help="Model for steps that do not pin one")
    run.add_argument(
        "--cwd",
        dest="working_directory",
        default=None,
        help="Working directory for steps that do not set one",
    )
    run.add_argument(
        "--no-state",
        action="store_true",
        help="Do not persist state (the run cannot be paused or resumed)",
    )

    resume = subparsers.add_parser("resume", help="Resume a paused workflow execution")
    resume.add_argument("execution_id", help="Execution id, e.g. exec_1718000000000_abc123def")
    resume.add_argument("--model", default=None, help="Model for steps that do not pin one")
    resume.add_argument("--cwd", dest="working_directory", default=None)

    pause = subparsers.add_parser(
        "pause", help="Request a pause; a running workflow stops before its next step"
    )
    pause.add_argument("execution_id")

    validate = subparsers.add_parser("validate", help="Validate a workflow file")
    validate.add_argument("workflow", help="Path to the workflow YAML file")

    list_cmd = subparsers.add_parser("list", help="List claude-*.yml workflows")
    list_cmd.add_argument(
        "--dir", dest="directory", default=None, help="Workflows directory (default from settings)"
    )

    states = subparsers.add_parser("states", help="List persisted workflow states")
    states.add_argument(
        "--resumable", action="store_true", help="Only paused or timed out states"
    )
    states.add_argument("--stats", action="store_true", help="Print storage statistics instead")

    delete_state = subparsers.add_parser("delete-state", help="Delete a persisted state")
    delete_state.add_argument("execution_id")

    cleanup = subparsers.add_parser("cleanup", help="Remove states older than the retention window")
    cleanup.add_argument(
        "--max-age-days",
        type=float,
        default=None,
        help="Override CLAUDE_RUNNER_STATE_MAX_AGE_DAYS",
    )
    cleanup.add_argument("--all", action="store_true", help="Remove every persisted state")

    preview = subparsers.add_parser("preview", help="Show the CLI command of every task step")
    preview.add_argument("workflow", help="Path to the workflow YAML file")
    preview.add_argument("--model", default=None)
    preview.add_argument("--cwd", dest="working_directory", default=None)

    init_sample = subparsers.add_parser("init-sample", help="Write a sample workflow")
    init_sample.add_argument(
        "--output",
        default=None,
        help="Target file (default: <workflows dir>/claude-sample.yml)",
    )
    init_sample.add_argument("--force", action="store_true", help="Overwrite an existing file")

    return parser


def _print_result(result: WorkflowResult) -> None:
    for step_id, output in result.outputs.items():
        session = output.get("session_id")
        suffix = f" (session {session})" if session else ""
        print(f"[{step_id}]{suffix}")
        text = output.get("result")
        if text:
            print(str(text).rstrip())
    if result.execution_id:
        print(f"Execution: {result.execution_id}")


def _finish(result: WorkflowResult) -> int:
    _print_result(result)
    if result.success:
        print(f"Workflow completed: {result.steps_executed} step(s) executed")
        return EXIT_OK
    if result.paused:
        print(f"Workflow paused: {result.error}")
        if result.execution_id:
            print(f"Resume with: claude-runner resume {result.execution_id}")
        return EXIT_PAUSED
    print(f"Workflow failed after {result.steps_executed} step(s): {result.error}", file=sys.stderr)
    return EXIT_FAILED


def _interrupted(
    executor: TaskExecutor, service: WorkflowStateService | None, handle: RunHandle
) -> int:
    executor.cancel_current_task()
    if service is not None and handle.execution_id is not None:
        service.pause_workflow(handle.execution_id, "manual")
        print(f"Interrupted; resume with: claude-runner resume {handle.execution_id}")
        return EXIT_PAUSED
    print("Interrupted", file=sys.stderr)
    return EXIT_ERROR


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = RunnerSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_INVALID

    configure_logging(settings.log_level, fmt=settings.log_format)

    storage = JsonWorkflowStateStorage(settings.state_path, max_states=settings.max_states)
    service = WorkflowStateService(storage)

    try:
        if args.command == "run":
            try:
                inputs = _parse_inputs(args.inputs)
            except argparse.ArgumentTypeError as e:
                print(str(e), file=sys.stderr)
                return EXIT_INVALID

            workflow_path = Path(args.workflow)
            doc = load_workflow_file(workflow_path)

            executor = TaskExecutor(command=settings.task_command)
            state_service = None if args.no_state else service
            engine = WorkflowEngine(
                executor,
                state_service,
                default_model=settings.default_model,
                max_retries=settings.max_retries,
            )
            handle = RunHandle()
            options = WorkflowOptions(
                model=args.model, working_directory=args.working_directory, inputs=inputs
            )
            try:
                result = engine.execute_workflow(
                    create_execution(doc, inputs),
                    options,
                    workflow_path=None if args.no_state else workflow_path,
                    handle=handle,
                )
            except KeyboardInterrupt:
                return _interrupted(executor, state_service, handle)
            return _finish(result)

        if args.command == "resume":
            executor = TaskExecutor(command=settings.task_command)
            engine = WorkflowEngine(
                executor,
                service,
                default_model=settings.default_model,
                max_retries=settings.max_retries,
            )
            handle = RunHandle(execution_id=args.execution_id)
            options = WorkflowOptions(model=args.model, working_directory=args.working_directory)
            try:
                result = engine.resume_workflow(args.execution_id, options, handle=handle)
            except KeyboardInterrupt:
                return _interrupted(executor, service, handle)
            return _finish(result)

        if args.command == "pause":
            state = service.pause_workflow(args.execution_id, "manual")
            if state is None:
                print(f"Execution {args.execution_id} is not running", file=sys.stderr)
                return EXIT_REFUSED
            print(f"Pause requested for {state.execution_id}")
            return EXIT_OK

        if args.command == "validate":
            report = validate_workflow_file(Path(args.workflow))
            if report["valid"]:
                print(f"{args.workflow}: valid")
                return EXIT_OK
            for error in report["errors"]:  # type: ignore[union-attr]
                print(f"{args.workflow}: {error}", file=sys.stderr)
            return EXIT_INVALID

        if args.command == "list":
            library = WorkflowLibrary(Path(args.directory) if args.directory else settings.workflows_dir)
            workflows = library.list_workflows()
            if not workflows:
                print(f"No workflows found in {library.directory}")
                return EXIT_OK
            for meta in workflows:
                print(f"{meta.id}\t{meta.name}\t{meta.path}")
            return EXIT_OK

        if args.command == "states":
            if args.stats:
                stats = storage.get_storage_stats()
                print(json.dumps(stats.to_json(), indent=2))
                return EXIT_OK
            states = (
                service.get_resumable_workflows() if args.resumable else service.list_workflow_states()
            )
            if not states:
                print("No workflow states")
                return EXIT_OK
            for state in states:
                print(
                    f"{state.execution_id}\t{state.status}\t"
                    f"{state.current_step}/{state.total_steps}\t{state.workflow_name}\t"
                    f"{state.start_time}"
                )
            return EXIT_OK

        if args.command == "delete-state":
            if service.get_workflow_state(args.execution_id) is None:
                print(f"No state for {args.execution_id}", file=sys.stderr)
                return EXIT_REFUSED
            service.delete_workflow_state(args.execution_id)
            print(f"Deleted {args.execution_id}")
            return EXIT_OK

        if args.command == "cleanup":
            if args.all:
                service.clear_all()
                print("Removed all workflow states")
                return EXIT_OK
            days = args.max_age_days if args.max_age_days is not None else settings.state_max_age_days
            removed = service.cleanup_old_workflows(days * 24 * 60 * 60)
            print(f"Removed {removed} workflow state(s)")
            return EXIT_OK

        if args.command == "preview":
            doc = load_workflow_file(Path(args.workflow))
            executor = TaskExecutor(command=settings.task_command)
            cwd = args.working_directory or str(Path.cwd())
            for ref in iter_task_steps(doc):
                params = ref.with_
                options = TaskOptions(
                    allow_all_tools=params.allow_all_tools is True,
                    bypass_permissions=params.bypass_permissions is True,
                    output_format="json",
                    resume_session_id=params.resume_session or None,
                )
                model = params.model or args.model or settings.default_model
                command = executor.format_command_preview(
                    params.prompt, model, params.working_directory or cwd, options
                )
                print(f"# {ref.step_id}")
                print(command)
            return EXIT_OK

        if args.command == "init-sample":
            target = (
                Path(args.output) if args.output else settings.workflows_dir / "claude-sample.yml"
            )
            if target.exists() and not args.force:
                print(f"{target} already exists (use --force to overwrite)", file=sys.stderr)
                return EXIT_REFUSED
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(to_yaml(create_sample_workflow()), encoding="utf-8")
            print(f"Wrote {target}")
            return EXIT_OK

        parser.error(f"Unknown command: {args.command}")
        return EXIT_INVALID

    except WorkflowParseError as e:
        print(str(e), file=sys.stderr)
        return EXIT_INVALID

    except (WorkflowNotFoundError, FileNotFoundError) as e:
        print(str(e), file=sys.stderr)
        return EXIT_INVALID

    except WorkflowResumeError as e:
        print(str(e), file=sys.stderr)
        return EXIT_REFUSED

    except StateStorageError as e:
        logger.error("State storage failed", extra={"error": str(e)})
        print(str(e), file=sys.stderr)
        return EXIT_ERROR

    except Exception:
        logger.exception("Command failed")
        return EXIT_ERROR
