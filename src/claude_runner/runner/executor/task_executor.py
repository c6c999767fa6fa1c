"""Run task CLI invocations as subprocesses.

One ``TaskExecutor`` owns at most one child process at a time. The handle is
published under a lock so ``cancel_current_task`` can be called from another
thread (HTTP pause, signal handler) while a task is running.
"""

from __future__ import annotations

import json
import logging
import math
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

from claude_runner.runner.executor.models import DEFAULT_MODEL, validate_model, validate_path
from claude_runner.runner.executor.rate_limit import RateLimitInfo, detect_rate_limit
from claude_runner.runner.executor.types import (
    CommandResult,
    TaskItem,
    TaskOptions,
    TaskResult,
)

logger = logging.getLogger(__name__)

MAX_SINGLE_WAIT_SECONDS = 30 * 60
MAX_CUMULATIVE_WAIT_SECONDS = 90 * 60
PROGRESS_LOG_INTERVAL_SECONDS = 30
DEFAULT_MAX_TURNS = 10

MANUALLY_PAUSED = "MANUALLY PAUSED"


class ExecutionError(RuntimeError):
    """Base class for failures raised while running a task."""

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id


class TaskExecutionError(ExecutionError):
    """The task failed for a reason other than a rate limit."""

    def __init__(
        self, message: str, *, exit_code: int | None = None, session_id: str | None = None
    ) -> None:
        super().__init__(message, session_id=session_id)
        self.exit_code = exit_code


class RateLimitError(ExecutionError):
    def __init__(
        self, message: str, *, info: RateLimitInfo, session_id: str | None = None
    ) -> None:
        super().__init__(message, session_id=session_id)
        self.info = info


class RateLimitTimeout(RateLimitError):
    """The quota resets too far in the future to wait for it."""


class RetryBudgetExceeded(ExecutionError):
    pass


def escape_shell_arg(arg: str) -> str:
    return "'" + arg.replace("'", "'\"'\"'") + "'"


def parse_task_result(output: str, output_format: str | None) -> tuple[str | None, str]:
    """Return ``(session_id, result_text)`` for raw CLI output."""

    if output_format != "json":
        return None, output
    try:
        data = json.loads(output.strip())
    except json.JSONDecodeError:
        logger.warning("Failed to parse JSON output", extra={"output_length": len(output)})
        return None, output
    if not isinstance(data, dict):
        return None, json.dumps(data, indent=2, ensure_ascii=False)
    session_id = data.get("session_id") if isinstance(data.get("session_id"), str) else None
    result = data.get("result")
    if isinstance(result, str) and result:
        return session_id, result
    return session_id, json.dumps(data, indent=2, ensure_ascii=False)


def extract_result_from_json(output: str) -> str:
    _, text = parse_task_result(output, "json")
    return text


@dataclass(frozen=True, slots=True)
class ConditionResult:
    should_run: bool
    reason: str | None = None


@dataclass
class PipelineCallbacks:
    on_progress: Callable[[list[TaskItem], int], None] | None = None
    on_complete: Callable[[list[TaskItem]], None] | None = None
    on_error: Callable[[str, list[TaskItem]], None] | None = None
    should_pause: Callable[[], bool] | None = None
    on_pause: Callable[[list[TaskItem], int], None] | None = None


def _kill_group(process: subprocess.Popen[str]) -> None:
    # The CLI runs under a shell in its own session; signal the whole group.
    try:
        os.killpg(process.pid, signal.SIGTERM)
    except ProcessLookupError:
        pass


class TaskExecutor:
    def __init__(
        self,
        *,
        command: str = "claude",
        clock: Callable[[], float] = time.time,
        max_single_wait_seconds: float = MAX_SINGLE_WAIT_SECONDS,
        max_cumulative_wait_seconds: float = MAX_CUMULATIVE_WAIT_SECONDS,
        progress_interval_seconds: float = PROGRESS_LOG_INTERVAL_SECONDS,
    ) -> None:
        self._command = command
        self._clock = clock
        self._max_single_wait = max_single_wait_seconds
        self._max_cumulative_wait = max_cumulative_wait_seconds
        self._progress_interval = progress_interval_seconds

        self._lock = threading.Lock()
        self._process: subprocess.Popen[str] | None = None
        self._cancelled = threading.Event()

    # ------------------------------------------------------------------
    # Command construction

    def build_command(self, prompt: str, model: str, options: TaskOptions) -> list[str]:
        args = [self._command]

        if options.continue_conversation:
            args.append("--continue")
        elif options.resume_session_id:
            args += ["-r", options.resume_session_id, "-p", escape_shell_arg(prompt)]
        else:
            args += ["-p", escape_shell_arg(prompt)]

        if model != DEFAULT_MODEL:
            args += ["--model", model]

        if options.output_format and options.output_format != "text":
            args += ["--output-format", options.output_format]

        if options.max_turns and options.max_turns != DEFAULT_MAX_TURNS:
            args += ["--max-turns", str(options.max_turns)]

        if options.verbose:
            args.append("--verbose")

        if options.is_fresh_session:
            if options.system_prompt:
                args += ["--system-prompt", escape_shell_arg(options.system_prompt)]
            if options.append_system_prompt:
                args += ["--append-system-prompt", escape_shell_arg(options.append_system_prompt)]

        if options.bypass_permissions or options.allow_all_tools:
            args.append("--dangerously-skip-permissions")
        else:
            if options.allowed_tools:
                args += ["--allowedTools", ",".join(options.allowed_tools)]
            if options.disallowed_tools:
                args += ["--disallowedTools", ",".join(options.disallowed_tools)]

        if options.mcp_config:
            args += ["--mcp-config", options.mcp_config]

        if options.permission_prompt_tool and options.is_fresh_session:
            args += ["--permission-prompt-tool", options.permission_prompt_tool]

        return args

    def format_command_preview(
        self, prompt: str, model: str, working_directory: str, options: TaskOptions
    ) -> str:
        args = self.build_command(prompt, model, options)
        return f'cd "{working_directory}" && {" ".join(args)}'

    # ------------------------------------------------------------------
    # Process handling

    def run_command(
        self, args: list[str], cwd: str, output_format: str | None = None
    ) -> CommandResult:
        try:
            process = subprocess.Popen(
                " ".join(args),
                shell=True,
                start_new_session=True,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            return CommandResult(success=False, output="", error=f"Spawn error: {e}", exit_code=-1)

        with self._lock:
            self._process = process
            cancelled_early = self._cancelled.is_set()
        if cancelled_early:
            _kill_group(process)
        try:
            stdout, stderr = process.communicate()
        finally:
            with self._lock:
                if self._process is process:
                    self._process = None

        exit_code = process.returncode
        stdout = stdout or ""
        stderr = stderr or ""
        if self._cancelled.is_set() and exit_code != 0:
            return CommandResult(
                success=False, output=stdout, error="Task cancelled", exit_code=exit_code
            )
        session_id, _ = (
            parse_task_result(stdout, output_format) if stdout.strip() else (None, stdout)
        )

        if exit_code == 0:
            return CommandResult(
                success=True, output=stdout, exit_code=0, session_id=session_id
            )

        if exit_code == 127:
            error = f"'{args[0]}' CLI not found in PATH. Please install Claude Code CLI."
        else:
            error = (
                stderr.strip() or stdout.strip() or f"Command failed with exit code {exit_code}"
            )
        return CommandResult(
            success=False, output=stdout, error=error, exit_code=exit_code, session_id=session_id
        )

    def cancel_current_task(self) -> None:
        self._cancelled.set()
        with self._lock:
            process = self._process
            self._process = None
        if process is not None:
            logger.info("Cancelling current task", extra={"pid": process.pid})
            _kill_group(process)

    def is_task_running(self) -> bool:
        with self._lock:
            return self._process is not None

    # ------------------------------------------------------------------
    # Single task

    @staticmethod
    def validate_request(model: str, working_directory: str) -> str | None:
        """Return an error message if the model or directory cannot be used."""

        if model != DEFAULT_MODEL and not validate_model(model):
            return f"Invalid model: {model}"
        if not validate_path(working_directory):
            return f"Invalid working directory: {working_directory}"
        return None

    def execute_task(
        self,
        prompt: str,
        model: str,
        working_directory: str,
        options: TaskOptions | None = None,
    ) -> TaskResult:
        options = options or TaskOptions()
        started = time.monotonic()
        self._cancelled.clear()

        def _elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        def _task_id() -> str:
            return f"task-{int(self._clock() * 1000)}"

        invalid = self.validate_request(model, working_directory)
        if invalid is not None:
            return self._failed_task(_task_id(), invalid, _elapsed_ms())

        args = self.build_command(prompt, model, options)
        result = self.run_command(args, working_directory, options.output_format)

        if not result.success:
            info = detect_rate_limit(result.output, result.error, clock=self._clock)
            return self._failed_task(
                _task_id(),
                result.error or "Command execution failed",
                _elapsed_ms(),
                session_id=result.session_id,
                rate_limit=info if info.is_limited else None,
            )

        output = result.output
        if options.output_format == "json":
            output = extract_result_from_json(result.output)

        return TaskResult(
            task_id=_task_id(),
            success=True,
            output=output,
            session_id=result.session_id,
            execution_time_ms=_elapsed_ms(),
        )

    def _failed_task(
        self,
        task_id: str,
        error: str,
        elapsed_ms: int,
        *,
        session_id: str | None = None,
        rate_limit: RateLimitInfo | None = None,
    ) -> TaskResult:
        logger.error("Task execution failed", extra={"task_id": task_id, "error": error})
        return TaskResult(
            task_id=task_id,
            success=False,
            output="",
            error=error,
            session_id=session_id,
            execution_time_ms=elapsed_ms,
            rate_limit=rate_limit,
        )

    # ------------------------------------------------------------------
    # Retry loop

    def execute_task_with_retry(
        self,
        prompt: str,
        model: str,
        working_directory: str,
        options: TaskOptions | None = None,
        max_retries: int = 3,
    ) -> CommandResult:
        """Run a task, waiting out rate limits between attempts.

        Raises:
            TaskExecutionError: the task failed for a non rate-limit reason.
            RateLimitTimeout: the quota resets more than six hours out.
            RetryBudgetExceeded: waiting again would exceed the cumulative budget.
            RateLimitError: still rate limited on the final attempt.
        """

        options = options or TaskOptions()
        self._cancelled.clear()
        total_wait = 0.0
        session_id = options.resume_session_id

        for attempt in range(max_retries):
            attempt_options = options
            if session_id and attempt > 0:
                attempt_options = replace(options, resume_session_id=session_id)

            args = self.build_command(prompt, model, attempt_options)
            result = self.run_command(args, working_directory, attempt_options.output_format)
            if result.success:
                return result

            if result.session_id:
                session_id = result.session_id

            info = detect_rate_limit(result.output, result.error, clock=self._clock)
            if not info.is_limited:
                raise TaskExecutionError(
                    result.error or "Command execution failed",
                    exit_code=result.exit_code,
                    session_id=session_id,
                )
            if info.is_timeout:
                raise RateLimitTimeout(
                    f"Rate limit resets at {info.reset_time.isoformat() if info.reset_time else '?'}, "
                    "more than 6 hours away",
                    info=info,
                    session_id=session_id,
                )
            if attempt == max_retries - 1:
                raise RateLimitError(
                    f"Rate limit still active after {max_retries} attempts",
                    info=info,
                    session_id=session_id,
                )
            if total_wait + info.wait_seconds > self._max_cumulative_wait:
                raise RetryBudgetExceeded(
                    "Cumulative wait time would exceed timeout limit", session_id=session_id
                )

            total_wait += info.wait_seconds
            logger.info(
                "Rate limit detected, waiting before retry",
                extra={
                    "attempt": attempt + 1,
                    "max_retries": max_retries,
                    "wait_seconds": round(info.wait_seconds),
                },
            )
            self.wait_for_rate_limit(info)

        # Only reachable with max_retries < 1.
        raise TaskExecutionError("Maximum retries exceeded", session_id=session_id)

    def wait_for_rate_limit(self, info: RateLimitInfo) -> None:
        """Sleep until the quota resets, capped per wait; returns early on cancel."""

        if not info.is_limited or info.wait_seconds <= 0:
            return
        wait = min(info.wait_seconds, self._max_single_wait)
        deadline = time.monotonic() + wait

        logger.warning(
            "Rate limit detected, waiting for reset",
            extra={
                "wait_minutes": round(wait / 60),
                "reset_time": info.reset_time.isoformat() if info.reset_time else None,
            },
        )
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            if self._cancelled.wait(timeout=min(remaining, self._progress_interval)):
                logger.info("Rate limit wait cancelled")
                return
            remaining = deadline - time.monotonic()
            if remaining > 0:
                logger.info(
                    "Waiting for rate limit reset",
                    extra={"remaining_minutes": math.ceil(remaining / 60)},
                )
        logger.info("Rate limit wait period completed")

    # ------------------------------------------------------------------
    # Pipelines

    def evaluate_condition(
        self,
        check: str | None,
        condition: str | None,
        previous_success: bool,
        working_directory: str,
    ) -> ConditionResult:
        if not condition:
            return ConditionResult(should_run=True)

        if condition == "always":
            met = True
        elif condition == "on_failure":
            met = not previous_success
        else:
            met = previous_success

        if not met:
            outcome = "succeeded" if previous_success else "failed"
            return ConditionResult(
                should_run=False,
                reason=f"Condition '{condition}' not met (previous step {outcome})",
            )

        if not check:
            return ConditionResult(should_run=True)

        result = self.run_command([check], working_directory)
        if result.success:
            return ConditionResult(should_run=True)
        return ConditionResult(
            should_run=False,
            reason=f"Check command failed: {result.error or 'Command returned non-zero exit code'}",
        )

    def execute_pipeline(
        self,
        tasks: list[TaskItem],
        model: str,
        working_directory: str,
        options: TaskOptions | None = None,
        callbacks: PipelineCallbacks | None = None,
    ) -> None:
        self._run_pipeline(
            tasks, 0, model, working_directory, options or TaskOptions(),
            callbacks or PipelineCallbacks(), resumed=False,
        )

    def resume_pipeline(
        self,
        tasks: list[TaskItem],
        model: str,
        working_directory: str,
        options: TaskOptions | None = None,
        callbacks: PipelineCallbacks | None = None,
    ) -> None:
        callbacks = callbacks or PipelineCallbacks()

        start = next((i for i, t in enumerate(tasks) if t.status == "paused"), None)
        if start is None:
            start = next((i for i, t in enumerate(tasks) if t.status == "pending"), None)
        if start is None:
            logger.info("No tasks to resume, all tasks completed")
            if callbacks.on_complete:
                callbacks.on_complete(tasks)
            return

        task = tasks[start]
        if task.status == "paused":
            task.status = "pending"
            task.results = None
            task.paused_until = None
            task.paused_at_index = None

        self._run_pipeline(
            tasks, start, model, working_directory, options or TaskOptions(), callbacks,
            resumed=True,
        )

    def _run_pipeline(
        self,
        tasks: list[TaskItem],
        start: int,
        model: str,
        working_directory: str,
        options: TaskOptions,
        callbacks: PipelineCallbacks,
        *,
        resumed: bool,
    ) -> None:
        self._cancelled.clear()

        for i in range(start, len(tasks)):
            task = tasks[i]

            if callbacks.should_pause and callbacks.should_pause():
                task.status = "paused"
                task.results = MANUALLY_PAUSED
                if callbacks.on_pause:
                    callbacks.on_pause(tasks, i)
                remaining = any(t.status == "pending" for t in tasks[i + 1 :])
                if not remaining and callbacks.on_complete:
                    callbacks.on_complete(tasks)
                return

            # A failed task halts the pipeline, so every task reached here follows a
            # success and on_failure tasks are always skipped.
            decision = self.evaluate_condition(
                task.check, task.condition, True, working_directory
            )
            if not decision.should_run:
                task.status = "skipped"
                task.skip_reason = decision.reason
                if callbacks.on_progress:
                    callbacks.on_progress(tasks, i)
                continue

            task.status = "running"
            if callbacks.on_progress:
                callbacks.on_progress(tasks, i)

            task_options = options
            if task.resume_from_task_id:
                source = next((t for t in tasks if t.id == task.resume_from_task_id), None)
                if source is not None and source.session_id:
                    task_options = replace(options, resume_session_id=source.session_id)

            args = self.build_command(task.prompt, task.model or model, task_options)
            result = self.run_command(args, working_directory, task_options.output_format)

            if not result.success:
                info = detect_rate_limit(result.output, result.error, clock=self._clock)
                if info.is_limited:
                    reset = info.reset_time.isoformat() if info.reset_time else "unknown"
                    label = "Rate limited (resume)" if resumed else "Rate limited"
                    task.status = "paused"
                    task.paused_until = info.reset_time.timestamp() if info.reset_time else None
                    task.paused_at_index = i
                    task.results = f"{label} - waiting for reset until {reset}"
                    if callbacks.on_progress:
                        callbacks.on_progress(tasks, i)
                    logger.warning(
                        "Rate limit detected, pausing pipeline",
                        extra={"task_id": task.id, "reset_time": reset},
                    )
                    return

                message = result.error or result.output or "Task execution failed"
                task.status = "error"
                task.results = message
                if callbacks.on_error:
                    callbacks.on_error(message, tasks)
                return

            session_id, text = parse_task_result(result.output, task_options.output_format)
            task.status = "completed"
            task.results = text
            task.session_id = session_id
            if callbacks.on_progress:
                callbacks.on_progress(tasks, i)

        if callbacks.on_complete:
            callbacks.on_complete(tasks)
