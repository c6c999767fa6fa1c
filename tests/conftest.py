"""Test configuration and fixtures."""

from __future__ import annotations

import stat
from dataclasses import dataclass
from pathlib import Path

import pytest

from claude_runner.runner.executor.task_executor import TaskExecutor
from claude_runner.runner.state.service import WorkflowStateService
from claude_runner.runner.state.storage import InMemoryWorkflowStateStorage

# Stand-in for the task CLI. Records "<resume id>|<prompt>" per call and
# answers with JSON carrying a fresh session id ("ses_<call number>").
# Prompts containing FAIL exit 1; prompts containing RATELIMIT print the
# usage-limit marker with the epoch from FAKE_CLAUDE_RESET. Prompts containing
# SLOW sleep before answering.
_FAKE_CLI = """#!/bin/sh
prompt=""
resume=""
while [ $# -gt 0 ]; do
  case "$1" in
    -p) prompt="$2"; shift 2 ;;
    -r) resume="$2"; shift 2 ;;
    *) shift ;;
  esac
done
echo "$resume|$prompt" >> "$FAKE_CLAUDE_LOG"
n=$(wc -l < "$FAKE_CLAUDE_LOG" | tr -d ' ')
case "$prompt" in
  *FAIL*)
    printf '{"session_id":"ses_%s","result":"partial"}\\n' "$n"
    echo "boom: $prompt" >&2
    exit 1 ;;
  *SLOW*)
    sleep 20 ;;
  *RATELIMIT*)
    echo "Claude AI usage limit reached|${FAKE_CLAUDE_RESET:-4102444800}"
    exit 1 ;;
esac
printf '{"session_id":"ses_%s","result":"done: %s"}\\n' "$n" "$prompt"
"""


@dataclass
class FakeCli:
    path: Path
    log: Path

    @property
    def command(self) -> str:
        return str(self.path)

    def calls(self) -> list[tuple[str, str]]:
        """``(resume_session_id, prompt)`` for every invocation, in order."""

        if not self.log.exists():
            return []
        calls: list[tuple[str, str]] = []
        for line in self.log.read_text(encoding="utf-8").splitlines():
            resume, _, prompt = line.partition("|")
            calls.append((resume, prompt))
        return calls


@pytest.fixture
def fake_cli(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeCli:
    """Provide an executable that behaves like the task CLI."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "fake-claude"
    script.write_text(_FAKE_CLI, encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    log = tmp_path / "cli-calls.log"
    monkeypatch.setenv("FAKE_CLAUDE_LOG", str(log))
    return FakeCli(path=script, log=log)


@pytest.fixture
def executor(fake_cli: FakeCli) -> TaskExecutor:
    """Provide an executor wired to the fake CLI."""
    return TaskExecutor(command=fake_cli.command)


@pytest.fixture
def state_service() -> WorkflowStateService:
    """Provide a state service backed by process memory."""
    return WorkflowStateService(InMemoryWorkflowStateStorage())


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    """Provide a working directory for task steps."""
    path = tmp_path / "work"
    path.mkdir()
    return path


CHAIN_WORKFLOW = """\
name: Chain
on:
  workflow_dispatch:
    inputs:
      topic:
        description: What to work on
        default: parsers
jobs:
  build:
    runs-on: ubuntu-latest
    steps:
      - uses: actions/checkout@v4
      - id: analyze
        name: Analyze
        uses: anthropics/claude-pipeline-action@v1
        with:
          prompt: "analyze ${{ inputs.topic }}"
          output_session: true
      - id: implement
        name: Implement
        uses: anthropics/claude-pipeline-action@v1
        with:
          prompt: "implement after ${{ steps.analyze.outputs.result }}"
          resume_session: analyze
          output_session: true
      - id: test
        name: Test
        uses: anthropics/claude-pipeline-action@v1
        with:
          prompt: "test it"
          resume_session: ${{ steps.implement.outputs.session_id }}
"""


@pytest.fixture
def chain_workflow_text() -> str:
    """Provide a three step workflow chaining sessions step to step."""
    return CHAIN_WORKFLOW
