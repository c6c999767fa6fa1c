from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from claude_runner.runner.executor.models import (
    AVAILABLE_MODELS,
    DEFAULT_MODEL,
    model_display_name,
    validate_model,
    validate_path,
)
from claude_runner.runner.executor.rate_limit import RateLimitInfo
from claude_runner.runner.executor.task_executor import (
    MANUALLY_PAUSED,
    PipelineCallbacks,
    RateLimitError,
    RateLimitTimeout,
    RetryBudgetExceeded,
    TaskExecutionError,
    TaskExecutor,
    escape_shell_arg,
    parse_task_result,
)
from claude_runner.runner.executor.types import CommandResult, TaskItem, TaskOptions

NOW = 1_700_000_000.0


def _limited(reset_in: float) -> CommandResult:
    marker = f"Claude AI usage limit reached|{int(NOW + reset_in)}"
    return CommandResult(success=False, output=marker, error=marker, exit_code=1)


def _scripted(executor: TaskExecutor, monkeypatch: pytest.MonkeyPatch, *results: CommandResult):
    """Make ``run_command`` answer with ``results`` in order; returns the calls made."""
    queue = list(results)
    calls: list[list[str]] = []

    def fake_run_command(args, cwd, output_format=None):
        calls.append(list(args))
        return queue.pop(0)

    waits: list[float] = []
    monkeypatch.setattr(executor, "run_command", fake_run_command)
    monkeypatch.setattr(executor, "wait_for_rate_limit", lambda info: waits.append(info.wait_seconds))
    return calls, waits


# ---------------------------------------------------------------------------
# Command construction


def test_build_command_fresh_session() -> None:
    executor = TaskExecutor(command="claude")
    args = executor.build_command(
        "it's done", "sonnet", TaskOptions(output_format="json", allow_all_tools=True)
    )
    assert args == [
        "claude",
        "-p",
        escape_shell_arg("it's done"),
        "--model",
        "sonnet",
        "--output-format",
        "json",
        "--dangerously-skip-permissions",
    ]


def test_build_command_resume_skips_system_prompt() -> None:
    executor = TaskExecutor(command="claude")
    args = executor.build_command(
        "continue",
        DEFAULT_MODEL,
        TaskOptions(
            resume_session_id="ses_1",
            system_prompt="be brief",
            allowed_tools=("Read", "Edit"),
            max_turns=4,
        ),
    )
    assert args[:5] == ["claude", "-r", "ses_1", "-p", "'continue'"]
    assert "--model" not in args
    assert "--system-prompt" not in args
    assert args[args.index("--allowedTools") + 1] == "Read,Edit"
    assert args[args.index("--max-turns") + 1] == "4"


def test_build_command_escapes_system_prompts() -> None:
    args = TaskExecutor().build_command(
        "x", DEFAULT_MODEL, TaskOptions(system_prompt="don't stop")
    )
    assert args[args.index("--system-prompt") + 1] == escape_shell_arg("don't stop")


def test_format_command_preview() -> None:
    preview = TaskExecutor(command="claude").format_command_preview(
        "hello", DEFAULT_MODEL, "/repo", TaskOptions()
    )
    assert preview == "cd \"/repo\" && claude -p 'hello'"


def test_parse_task_result() -> None:
    assert parse_task_result('{"session_id": "ses_9", "result": "ok"}', "json") == ("ses_9", "ok")
    assert parse_task_result("plain text", "json") == (None, "plain text")
    assert parse_task_result("plain text", None) == (None, "plain text")

    session, text = parse_task_result('{"session_id": "ses_9", "cost": 1}', "json")
    assert session == "ses_9"
    assert '"cost": 1' in text


def test_model_catalog() -> None:
    assert AVAILABLE_MODELS[0].id == DEFAULT_MODEL
    assert validate_model("claude-sonnet-4-20250514")
    assert validate_model("opus")
    assert not validate_model("gpt-4")
    assert model_display_name("claude-3-5-haiku-20241022") == "Claude Haiku 3.5"
    assert model_display_name("custom") == "custom"
    assert not validate_path("")
    assert not validate_path("a\0b")


# ---------------------------------------------------------------------------
# Running single tasks against the fake CLI


def test_execute_task_success(executor: TaskExecutor, fake_cli, workdir: Path) -> None:
    result = executor.execute_task(
        "hello", DEFAULT_MODEL, str(workdir), TaskOptions(output_format="json")
    )

    assert result.success
    assert result.output == "done: hello"
    assert result.session_id == "ses_1"
    assert result.rate_limit is None
    assert fake_cli.calls() == [("", "hello")]


def test_execute_task_resume_passes_session(executor: TaskExecutor, fake_cli, workdir: Path) -> None:
    executor.execute_task(
        "again",
        DEFAULT_MODEL,
        str(workdir),
        TaskOptions(output_format="json", resume_session_id="ses_42"),
    )
    assert fake_cli.calls() == [("ses_42", "again")]


def test_execute_task_failure_keeps_session(executor: TaskExecutor, workdir: Path) -> None:
    result = executor.execute_task(
        "please FAIL", DEFAULT_MODEL, str(workdir), TaskOptions(output_format="json")
    )

    assert not result.success
    assert result.error == "boom: please FAIL"
    assert result.session_id == "ses_1"
    assert result.rate_limit is None


def test_execute_task_detects_rate_limit(executor: TaskExecutor, workdir: Path) -> None:
    result = executor.execute_task(
        "RATELIMIT", DEFAULT_MODEL, str(workdir), TaskOptions(output_format="json")
    )

    assert not result.success
    assert result.rate_limit is not None
    assert result.rate_limit.is_limited
    assert result.rate_limit.is_timeout


def test_execute_task_rejects_unknown_model(executor: TaskExecutor, fake_cli, workdir: Path) -> None:
    result = executor.execute_task("hello", "gpt-4", str(workdir))
    assert not result.success
    assert result.error == "Invalid model: gpt-4"
    assert fake_cli.calls() == []


def test_missing_binary_is_reported(tmp_path: Path) -> None:
    executor = TaskExecutor(command=str(tmp_path / "no-such-cli"))
    result = executor.execute_task("hello", DEFAULT_MODEL, str(tmp_path))
    assert not result.success
    assert result.error is not None
    assert "CLI not found" in result.error


def test_no_process_after_completion(executor: TaskExecutor, workdir: Path) -> None:
    executor.execute_task("hello", DEFAULT_MODEL, str(workdir))
    assert not executor.is_task_running()


# ---------------------------------------------------------------------------
# Retry loop


def test_retry_waits_out_rate_limits(monkeypatch: pytest.MonkeyPatch) -> None:
    executor = TaskExecutor(command="claude", clock=lambda: NOW)
    first = _limited(60)
    first = CommandResult(
        success=False, output=first.output, error=first.error, exit_code=1, session_id="ses_7"
    )
    calls, waits = _scripted(
        executor,
        monkeypatch,
        first,
        _limited(120),
        CommandResult(success=True, output='{"result": "ok"}', exit_code=0),
    )

    result = executor.execute_task_with_retry(
        "work", DEFAULT_MODEL, "/tmp", TaskOptions(output_format="json"), max_retries=3
    )

    assert result.success
    assert waits == [60, 120]
    assert calls[0][:2] == ["claude", "-p"]
    # Later attempts continue the session the failed attempt opened.
    assert calls[1][:3] == ["claude", "-r", "ses_7"]


def test_retry_final_attempt_raises_rate_limit_error(monkeypatch: pytest.MonkeyPatch) -> None:
    executor = TaskExecutor(command="claude", clock=lambda: NOW)
    _scripted(executor, monkeypatch, _limited(60), _limited(60))

    with pytest.raises(RateLimitError) as excinfo:
        executor.execute_task_with_retry("work", DEFAULT_MODEL, "/tmp", max_retries=2)
    assert not isinstance(excinfo.value, RateLimitTimeout)
    assert excinfo.value.info.is_limited


def test_retry_gives_up_on_distant_reset(monkeypatch: pytest.MonkeyPatch) -> None:
    executor = TaskExecutor(command="claude", clock=lambda: NOW)
    _, waits = _scripted(executor, monkeypatch, _limited(7 * 60 * 60))

    with pytest.raises(RateLimitTimeout):
        executor.execute_task_with_retry("work", DEFAULT_MODEL, "/tmp", max_retries=3)
    assert waits == []


def test_retry_respects_cumulative_budget(monkeypatch: pytest.MonkeyPatch) -> None:
    executor = TaskExecutor(command="claude", clock=lambda: NOW, max_cumulative_wait_seconds=100)
    _, waits = _scripted(executor, monkeypatch, _limited(60), _limited(60))

    with pytest.raises(RetryBudgetExceeded):
        executor.execute_task_with_retry("work", DEFAULT_MODEL, "/tmp", max_retries=5)
    assert waits == [60]


def test_retry_does_not_retry_other_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    executor = TaskExecutor(command="claude", clock=lambda: NOW)
    calls, _ = _scripted(
        executor,
        monkeypatch,
        CommandResult(success=False, output="", error="bad flag", exit_code=2, session_id="ses_3"),
    )

    with pytest.raises(TaskExecutionError) as excinfo:
        executor.execute_task_with_retry("work", DEFAULT_MODEL, "/tmp", max_retries=3)
    assert excinfo.value.exit_code == 2
    assert excinfo.value.session_id == "ses_3"
    assert len(calls) == 1


def test_wait_is_capped_per_attempt() -> None:
    executor = TaskExecutor(max_single_wait_seconds=0.05, progress_interval_seconds=0.01)
    started = time.monotonic()
    executor.wait_for_rate_limit(RateLimitInfo(is_limited=True, wait_seconds=3600))
    assert time.monotonic() - started < 5


def test_cancel_interrupts_wait() -> None:
    executor = TaskExecutor(progress_interval_seconds=0.01)
    executor.cancel_current_task()
    started = time.monotonic()
    executor.wait_for_rate_limit(RateLimitInfo(is_limited=True, wait_seconds=600))
    assert time.monotonic() - started < 5


def test_cancel_stops_running_cli(executor: TaskExecutor, fake_cli, workdir: Path) -> None:
    timer = threading.Timer(0.5, executor.cancel_current_task)
    timer.start()
    started = time.monotonic()
    try:
        result = executor.execute_task("SLOW", DEFAULT_MODEL, str(workdir))
    finally:
        timer.cancel()

    assert time.monotonic() - started < 10
    assert not result.success
    assert result.error == "Task cancelled"
    assert not executor.is_task_running()


# ---------------------------------------------------------------------------
# Conditions and pipelines


def test_evaluate_condition(workdir: Path) -> None:
    executor = TaskExecutor()
    cwd = str(workdir)

    assert executor.evaluate_condition(None, None, False, cwd).should_run
    assert executor.evaluate_condition("true", "always", False, cwd).should_run

    skipped = executor.evaluate_condition("true", "on_failure", True, cwd)
    assert not skipped.should_run
    assert skipped.reason == "Condition 'on_failure' not met (previous step succeeded)"

    failed_check = executor.evaluate_condition("false", "on_success", True, cwd)
    assert not failed_check.should_run
    assert failed_check.reason == "Check command failed: Command failed with exit code 1"


def test_pipeline_runs_independent_tasks(executor: TaskExecutor, fake_cli, workdir: Path) -> None:
    tasks = [TaskItem(id="a", prompt="first"), TaskItem(id="b", prompt="second")]
    completed: list[list[TaskItem]] = []

    executor.execute_pipeline(
        tasks,
        DEFAULT_MODEL,
        str(workdir),
        TaskOptions(output_format="json"),
        PipelineCallbacks(on_complete=completed.append),
    )

    assert [t.status for t in tasks] == ["completed", "completed"]
    assert [t.results for t in tasks] == ["done: first", "done: second"]
    assert fake_cli.calls() == [("", "first"), ("", "second")]
    assert len(completed) == 1


def test_pipeline_chains_sessions(executor: TaskExecutor, fake_cli, workdir: Path) -> None:
    tasks = [
        TaskItem(id="a", prompt="first"),
        TaskItem(id="b", prompt="second", resume_from_task_id="a"),
    ]
    executor.execute_pipeline(tasks, DEFAULT_MODEL, str(workdir), TaskOptions(output_format="json"))

    assert tasks[0].session_id == "ses_1"
    assert fake_cli.calls() == [("", "first"), ("ses_1", "second")]


def test_pipeline_stops_on_error(executor: TaskExecutor, fake_cli, workdir: Path) -> None:
    tasks = [
        TaskItem(id="a", prompt="FAIL now"),
        TaskItem(id="b", prompt="never"),
    ]
    errors: list[str] = []

    executor.execute_pipeline(
        tasks,
        DEFAULT_MODEL,
        str(workdir),
        callbacks=PipelineCallbacks(on_error=lambda message, _tasks: errors.append(message)),
    )

    assert [t.status for t in tasks] == ["error", "pending"]
    assert errors == ["boom: FAIL now"]
    assert len(fake_cli.calls()) == 1


def test_pipeline_skips_unmet_condition(executor: TaskExecutor, workdir: Path) -> None:
    tasks = [
        TaskItem(id="a", prompt="first"),
        TaskItem(id="b", prompt="second", check="false", condition="always"),
        TaskItem(id="c", prompt="third"),
    ]
    executor.execute_pipeline(tasks, DEFAULT_MODEL, str(workdir))

    assert [t.status for t in tasks] == ["completed", "skipped", "completed"]
    assert tasks[1].skip_reason is not None
    assert tasks[1].skip_reason.startswith("Check command failed")


def test_pipeline_manual_pause(executor: TaskExecutor, workdir: Path) -> None:
    tasks = [TaskItem(id=str(i), prompt=f"task {i}") for i in range(3)]
    answers = iter([False, True])
    paused_at: list[int] = []

    executor.execute_pipeline(
        tasks,
        DEFAULT_MODEL,
        str(workdir),
        callbacks=PipelineCallbacks(
            should_pause=lambda: next(answers),
            on_pause=lambda _tasks, index: paused_at.append(index),
        ),
    )

    assert [t.status for t in tasks] == ["completed", "paused", "pending"]
    assert tasks[1].results == MANUALLY_PAUSED
    assert paused_at == [1]


def test_pipeline_rate_limit_pauses_and_resumes(
    executor: TaskExecutor, fake_cli, workdir: Path
) -> None:
    tasks = [TaskItem(id="a", prompt="first"), TaskItem(id="b", prompt="RATELIMIT")]
    executor.execute_pipeline(tasks, DEFAULT_MODEL, str(workdir))

    assert tasks[1].status == "paused"
    assert tasks[1].paused_at_index == 1
    assert tasks[1].results is not None
    assert tasks[1].results.startswith("Rate limited - waiting for reset until 2100-01-01")

    executor.resume_pipeline(tasks, DEFAULT_MODEL, str(workdir))

    assert tasks[0].status == "completed"
    assert tasks[1].results is not None
    assert tasks[1].results.startswith("Rate limited (resume) - ")
    # The completed task is not run again.
    assert [prompt for _, prompt in fake_cli.calls()] == ["first", "RATELIMIT", "RATELIMIT"]


def test_pipeline_never_runs_on_failure_tasks(
    executor: TaskExecutor, fake_cli, workdir: Path
) -> None:
    tasks = [
        TaskItem(id="a", prompt="first"),
        TaskItem(id="cleanup", prompt="cleanup", check="true", condition="on_failure"),
        TaskItem(id="c", prompt="third", check="true", condition="on_success"),
    ]
    executor.execute_pipeline(tasks, DEFAULT_MODEL, str(workdir))

    assert [t.status for t in tasks] == ["completed", "skipped", "completed"]
    assert tasks[1].skip_reason == "Condition 'on_failure' not met (previous step succeeded)"
    assert [prompt for _, prompt in fake_cli.calls()] == ["first", "third"]
