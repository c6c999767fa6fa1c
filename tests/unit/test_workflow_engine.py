"""End-to-end tests for the workflow engine against the fake task CLI."""

from __future__ import annotations

import json
import time
from pathlib import Path

import pytest

from claude_runner.runner.executor.task_executor import TaskExecutor
from claude_runner.runner.executor.types import WorkflowOptions
from claude_runner.runner.state.service import WorkflowStateService
from claude_runner.runner.state.storage import (
    InMemoryWorkflowStateStorage,
    StateMutator,
    StateStorageError,
)
from claude_runner.runner.workflow.engine import (
    RunHandle,
    WorkflowEngine,
    WorkflowResumeError,
    create_execution,
)
from claude_runner.runner.workflow.events import (
    EventRecorder,
    StepCompleted,
    StepFailed,
    StepStarted,
    WorkflowCompleted,
    WorkflowFailed,
    WorkflowPaused,
)
from claude_runner.runner.workflow.parser import parse_workflow
from claude_runner.runner.workflow.state_machine import ExecutionStatus


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture
def workflow_file(tmp_path: Path, chain_workflow_text: str) -> Path:
    return _write(tmp_path / "workflows" / "claude-chain.yml", chain_workflow_text)


def test_runs_chain_without_state(
    executor: TaskExecutor, fake_cli, workdir: Path, chain_workflow_text: str
) -> None:
    engine = WorkflowEngine(executor)
    events = EventRecorder()

    result = engine.execute_workflow(
        create_execution(parse_workflow(chain_workflow_text)),
        WorkflowOptions(working_directory=str(workdir)),
        events,
    )

    assert result.success
    assert result.steps_executed == 3
    assert result.execution_id is None
    assert fake_cli.calls() == [
        ("", "analyze parsers"),
        ("ses_1", "implement after done: analyze parsers"),
        ("ses_2", "test it"),
    ]
    assert result.outputs["analyze"] == {"result": "done: analyze parsers", "session_id": "ses_1"}
    assert [type(e) for e in events] == [
        StepStarted,
        StepCompleted,
        StepStarted,
        StepCompleted,
        StepStarted,
        StepCompleted,
        WorkflowCompleted,
    ]


def test_inputs_override_declared_defaults(
    executor: TaskExecutor, fake_cli, workdir: Path, chain_workflow_text: str
) -> None:
    execution = create_execution(parse_workflow(chain_workflow_text), {"topic": "lexers"})
    WorkflowEngine(executor).execute_workflow(
        execution, WorkflowOptions(working_directory=str(workdir))
    )
    assert fake_cli.calls()[0] == ("", "analyze lexers")


def test_checkpoints_state_and_job_log(
    executor: TaskExecutor,
    state_service: WorkflowStateService,
    workdir: Path,
    workflow_file: Path,
) -> None:
    engine = WorkflowEngine(executor, state_service)

    result = engine.execute_workflow(
        create_execution(parse_workflow(workflow_file.read_text(encoding="utf-8"))),
        WorkflowOptions(working_directory=str(workdir)),
        workflow_path=workflow_file,
    )

    assert result.success
    assert result.execution_id is not None
    state = state_service.get_workflow_state(result.execution_id)
    assert state is not None
    assert state.status == "completed"
    assert state.current_step == state.total_steps == 3
    assert state.session_mappings == {"analyze": "ses_1", "implement": "ses_2", "test": "ses_3"}
    assert [s.status for s in state.completed_steps] == ["completed"] * 3

    log = json.loads((workflow_file.parent / "claude-chain.json").read_text(encoding="utf-8"))
    assert log["status"] == "completed"
    assert log["workflow_file"] == "claude-chain.yml"
    assert log["last_completed_step"] == 2
    assert [step["step_name"] for step in log["steps"]] == ["Analyze", "Implement", "Test"]
    assert log["steps"][2]["resume_session"] == "ses_2"


def test_failure_mid_workflow(
    executor: TaskExecutor,
    state_service: WorkflowStateService,
    fake_cli,
    workdir: Path,
    tmp_path: Path,
) -> None:
    path = _write(
        tmp_path / "claude-fail.yml",
        """\
name: Failing
jobs:
  main:
    steps:
      - id: one
        uses: anthropics/claude-pipeline-action@v1
        with:
          prompt: fine
      - id: two
        uses: anthropics/claude-pipeline-action@v1
        with:
          prompt: FAIL here
      - id: three
        uses: anthropics/claude-pipeline-action@v1
        with:
          prompt: unreachable
""",
    )
    events = EventRecorder()

    result = WorkflowEngine(executor, state_service).execute_workflow(
        create_execution(parse_workflow(path.read_text(encoding="utf-8"))),
        WorkflowOptions(working_directory=str(workdir)),
        events,
        workflow_path=path,
    )

    assert not result.success
    assert not result.paused
    assert result.error == "boom: FAIL here"
    assert result.steps_executed == 1
    assert [prompt for _, prompt in fake_cli.calls()] == ["fine", "FAIL here"]

    (failed,) = events.of_type(StepFailed)
    assert failed.step_id == "two"
    (workflow_failed,) = events.of_type(WorkflowFailed)
    assert workflow_failed.steps_executed == 1

    assert result.execution_id is not None
    state = state_service.get_workflow_state(result.execution_id)
    assert state is not None
    assert state.status == "failed"
    assert not state.can_resume
    assert state.completed_steps[-1].status == "failed"
    assert state.completed_steps[-1].session_id == "ses_2"

    with pytest.raises(WorkflowResumeError):
        WorkflowEngine(executor, state_service).resume_workflow(result.execution_id)


def test_manual_pause_then_resume(
    executor: TaskExecutor,
    state_service: WorkflowStateService,
    fake_cli,
    workdir: Path,
    workflow_file: Path,
) -> None:
    engine = WorkflowEngine(executor, state_service)
    handle = RunHandle()

    def pause_after_first_step(event) -> None:
        if isinstance(event, StepCompleted) and event.step_index == 0:
            assert engine.pause_current_workflow() == handle.execution_id

    options = WorkflowOptions(working_directory=str(workdir))
    paused = engine.execute_workflow(
        create_execution(parse_workflow(workflow_file.read_text(encoding="utf-8"))),
        options,
        pause_after_first_step,
        workflow_path=workflow_file,
        handle=handle,
    )

    assert paused.paused
    assert paused.error == "Workflow paused (manual)"
    assert paused.steps_executed == 1
    assert handle.finished.is_set()
    assert engine.current_execution_id is None

    execution_id = paused.execution_id
    assert execution_id is not None
    (resumable,) = state_service.get_resumable_workflows()
    assert resumable.execution_id == execution_id
    assert resumable.pause_reason == "manual"

    # A fresh engine (another process in practice) continues from the checkpoint.
    events = EventRecorder()
    resumed = WorkflowEngine(executor, state_service).resume_workflow(
        execution_id, options, events
    )

    assert resumed.success
    assert resumed.steps_executed == 3
    assert [(e.step_index, e.step_id) for e in events.of_type(StepStarted)] == [
        (1, "implement"),
        (2, "test"),
    ]
    # The resumed step continues the session recorded before the pause.
    assert fake_cli.calls() == [
        ("", "analyze parsers"),
        ("ses_1", "implement after done: analyze parsers"),
        ("ses_2", "test it"),
    ]
    state = state_service.get_workflow_state(execution_id)
    assert state is not None
    assert state.status == "completed"


def test_rate_limit_pauses_workflow(
    executor: TaskExecutor,
    state_service: WorkflowStateService,
    workdir: Path,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("FAKE_CLAUDE_RESET", str(int(time.time()) + 600))
    path = _write(
        tmp_path / "claude-limited.yml",
        """\
name: Limited
jobs:
  main:
    steps:
      - id: one
        uses: anthropics/claude-pipeline-action@v1
        with:
          prompt: fine
      - id: two
        uses: anthropics/claude-pipeline-action@v1
        with:
          prompt: RATELIMIT
""",
    )
    events = EventRecorder()

    result = WorkflowEngine(executor, state_service).execute_workflow(
        create_execution(parse_workflow(path.read_text(encoding="utf-8"))),
        WorkflowOptions(working_directory=str(workdir)),
        events,
        workflow_path=path,
    )

    assert result.paused
    assert result.error is not None
    assert result.error.startswith("Rate limited until ")
    (paused_event,) = events.of_type(WorkflowPaused)
    assert paused_event.reason == "rate_limit"
    assert paused_event.step_index == 1

    assert result.execution_id is not None
    state = state_service.get_workflow_state(result.execution_id)
    assert state is not None
    assert state.status == "paused"
    assert state.pause_reason == "rate_limit"
    assert state.is_resumable
    assert state.current_step == 1


def test_distant_rate_limit_times_out(
    executor: TaskExecutor,
    state_service: WorkflowStateService,
    workdir: Path,
    tmp_path: Path,
) -> None:
    path = _write(
        tmp_path / "claude-timeout.yml",
        """\
name: Timeout
jobs:
  main:
    steps:
      - id: only
        uses: anthropics/claude-pipeline-action@v1
        with:
          prompt: RATELIMIT
""",
    )

    result = WorkflowEngine(executor, state_service).execute_workflow(
        create_execution(parse_workflow(path.read_text(encoding="utf-8"))),
        WorkflowOptions(working_directory=str(workdir)),
        workflow_path=path,
    )

    assert result.paused
    assert result.execution_id is not None
    state = state_service.get_workflow_state(result.execution_id)
    assert state is not None
    assert state.status == "timeout"
    assert state.is_resumable


def test_resume_unknown_execution_is_refused(
    executor: TaskExecutor, state_service: WorkflowStateService
) -> None:
    with pytest.raises(WorkflowResumeError, match="Cannot resume workflow: exec_missing"):
        WorkflowEngine(executor, state_service).resume_workflow("exec_missing")


def test_resume_without_state_service_is_refused(executor: TaskExecutor) -> None:
    with pytest.raises(WorkflowResumeError):
        WorkflowEngine(executor).resume_workflow("exec_1")


def test_step_working_directory_and_job_env(
    executor: TaskExecutor, fake_cli, workdir: Path, tmp_path: Path
) -> None:
    other = tmp_path / "other"
    other.mkdir()
    doc = parse_workflow(
        f"""\
name: Env
env:
  TARGET: staging
jobs:
  main:
    env:
      TARGET: prod
    steps:
      - uses: anthropics/claude-pipeline-action@v1
        with:
          prompt: "deploy ${{{{ env.TARGET }}}} from ${{{{ env.ORIGIN }}}}"
          working_directory: {other}
"""
    )
    result = WorkflowEngine(executor).execute_workflow(
        create_execution(doc),
        WorkflowOptions(working_directory=str(workdir), environment={"ORIGIN": "ci"}),
    )

    assert result.success
    assert fake_cli.calls() == [("", "deploy prod from ci")]
    assert result.outputs["step-0"]["session_id"] == "ses_1"


class _BrokenStorage(InMemoryWorkflowStateStorage):
    """Raises ``StateStorageError`` on create, or once ``ok_mutations`` updates went through."""

    def __init__(self, *, fail_create: bool = False, ok_mutations: int | None = None) -> None:
        super().__init__()
        self.fail_create = fail_create
        self.ok_mutations = ok_mutations
        self.mutations = 0

    def save_workflow_state(self, state):
        if self.fail_create:
            raise StateStorageError("disk full")
        super().save_workflow_state(state)

    def mutate(self, execution_id: str, mutator: StateMutator):
        self.mutations += 1
        if self.ok_mutations is not None and self.mutations > self.ok_mutations:
            raise StateStorageError("disk full")
        return super().mutate(execution_id, mutator)


def test_state_creation_failure_runs_without_checkpoints(
    executor: TaskExecutor, fake_cli, workdir: Path, workflow_file: Path
) -> None:
    events = EventRecorder()
    execution = create_execution(parse_workflow(workflow_file.read_text(encoding="utf-8")))
    engine = WorkflowEngine(executor, WorkflowStateService(_BrokenStorage(fail_create=True)))

    result = engine.execute_workflow(
        execution,
        WorkflowOptions(working_directory=str(workdir)),
        events,
        workflow_path=workflow_file,
    )

    assert result.success
    assert result.execution_id is None
    assert result.steps_executed == 3
    assert execution.status is ExecutionStatus.COMPLETED
    assert len(fake_cli.calls()) == 3
    assert len(events.of_type(WorkflowCompleted)) == 1


def test_checkpoint_failures_do_not_abort_the_run(
    executor: TaskExecutor, fake_cli, workdir: Path, workflow_file: Path
) -> None:
    storage = _BrokenStorage(ok_mutations=3)
    execution = create_execution(parse_workflow(workflow_file.read_text(encoding="utf-8")))

    result = WorkflowEngine(executor, WorkflowStateService(storage)).execute_workflow(
        execution, WorkflowOptions(working_directory=str(workdir)), workflow_path=workflow_file
    )

    assert result.success
    assert result.steps_executed == 3
    assert result.execution_id is not None
    assert execution.status is ExecutionStatus.COMPLETED
    assert storage.mutations > 3


def test_unexpected_error_fails_the_workflow(
    executor: TaskExecutor,
    state_service: WorkflowStateService,
    workdir: Path,
    workflow_file: Path,
) -> None:
    seen = []

    def listener(event) -> None:
        seen.append(event)
        if isinstance(event, StepCompleted):
            raise ValueError("listener exploded")

    execution = create_execution(parse_workflow(workflow_file.read_text(encoding="utf-8")))
    result = WorkflowEngine(executor, state_service).execute_workflow(
        execution,
        WorkflowOptions(working_directory=str(workdir)),
        listener,
        workflow_path=workflow_file,
    )

    assert not result.success
    assert result.error == "listener exploded"
    assert result.steps_executed == 1
    assert execution.status is ExecutionStatus.FAILED
    assert isinstance(seen[-1], WorkflowFailed)

    assert result.execution_id is not None
    state = state_service.get_workflow_state(result.execution_id)
    assert state is not None
    assert state.status == "failed"
    assert not state.can_resume
