"""Typed workflow document model.

Workflows follow GitHub Actions syntax with task-specific extensions: a step
whose ``uses`` names the pipeline action is executed by the task CLI, every
other step is a plain step the runner does not execute.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from claude_runner.runner.workflow.state_machine import ExecutionStatus

TASK_ACTION = "anthropics/claude-pipeline-action@v1"
TASK_ACTION_MARKER = "claude-pipeline-action"

ConditionType = Literal["on_success", "on_failure", "always"]
VALID_CONDITIONS: tuple[str, ...] = ("on_success", "on_failure", "always")


def _stringify_env(value: object) -> object:
    if not isinstance(value, dict):
        return value
    out: dict[object, object] = {}
    for key, item in value.items():
        if isinstance(item, bool):
            out[key] = "true" if item else "false"
        elif isinstance(item, (int, float)):
            out[key] = str(item)
        else:
            out[key] = item
    return out


class WorkflowInput(BaseModel):
    """A declared workflow input."""

    model_config = ConfigDict(extra="allow")

    description: str | None = None
    required: bool | None = None
    default: Any = None
    type: Literal["string", "boolean", "choice"] | None = None
    options: list[str] | None = None


class StepWith(BaseModel):
    """The ``with:`` block of a step.

    Known task fields are typed; anything else is kept in ``model_extra`` so
    documents survive a load/save cycle untouched.
    """

    model_config = ConfigDict(extra="allow")

    # Empty by default so the parser can report a missing prompt with context.
    prompt: str = ""
    model: str | None = None
    allow_all_tools: bool | None = None
    bypass_permissions: bool | None = None
    working_directory: str | None = None
    resume_session: str | None = None
    output_session: bool | None = None
    check: str | None = None
    condition: str | None = None

    @property
    def extensions(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class Step(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str | None = None
    name: str | None = None
    uses: str | None = None
    with_: StepWith | None = Field(default=None, alias="with")
    env: dict[str, str] | None = None
    run: str | None = None
    if_: str | None = Field(default=None, alias="if")
    continue_on_error: bool | None = Field(default=None, alias="continue-on-error")

    @field_validator("env", mode="before")
    @classmethod
    def normalize_env(cls, value: object) -> object:
        return _stringify_env(value)

    @property
    def is_task_step(self) -> bool:
        return is_task_step(self)

    @property
    def label(self) -> str:
        """Human readable name used in validation messages."""

        return self.name or self.id or "unnamed"


class Job(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str | None = None
    runs_on: str | None = Field(default=None, alias="runs-on")
    env: dict[str, str] | None = None
    steps: list[Step] = Field(default_factory=list)

    @field_validator("env", mode="before")
    @classmethod
    def normalize_env(cls, value: object) -> object:
        return _stringify_env(value)


class WorkflowDocument(BaseModel):
    """A parsed workflow definition."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str = ""
    trigger: Any = Field(default=None, alias="on")
    inputs: dict[str, WorkflowInput] | None = None
    env: dict[str, str] | None = None
    jobs: dict[str, Job] = Field(default_factory=dict)

    @field_validator("env", mode="before")
    @classmethod
    def normalize_env(cls, value: object) -> object:
        return _stringify_env(value)

    def declared_inputs(self) -> dict[str, WorkflowInput]:
        """Inputs declared at top level and under ``on.workflow_dispatch``."""

        declared: dict[str, WorkflowInput] = {}
        if isinstance(self.trigger, dict):
            dispatch = self.trigger.get("workflow_dispatch")
            if isinstance(dispatch, dict) and isinstance(dispatch.get("inputs"), dict):
                for key, raw in dispatch["inputs"].items():
                    if isinstance(raw, dict):
                        declared[str(key)] = WorkflowInput.model_validate(raw)
        declared.update(self.inputs or {})
        return declared


def is_task_step(step: Step) -> bool:
    return bool(step.uses) and TASK_ACTION_MARKER in (step.uses or "")


def has_session_output(step: Step) -> bool:
    return step.with_ is not None and step.with_.output_session is True


# ---------------------------------------------------------------------------
# Session references


_DIRECT_REF = re.compile(r"^[A-Za-z0-9_-]+$")
_TEMPLATE_REF = re.compile(r"^\s*\$\{\{\s*steps\.([A-Za-z0-9_-]+)\.outputs\.([A-Za-z0-9_-]+)\s*\}\}\s*$")


@dataclass(frozen=True, slots=True)
class DirectReference:
    """``resume_session: analyze``"""

    step_id: str


@dataclass(frozen=True, slots=True)
class TemplateReference:
    """``resume_session: ${{ steps.analyze.outputs.session_id }}``"""

    step_id: str
    output_key: str = "session_id"


@dataclass(frozen=True, slots=True)
class InvalidReference:
    raw: str


SessionReference = DirectReference | TemplateReference | InvalidReference


def parse_session_reference(value: str) -> SessionReference:
    """Classify a ``resume_session`` value.

    Only templates pointing at ``session_id`` are accepted; any other output
    key is not a session and is reported as invalid.
    """

    if _DIRECT_REF.match(value):
        return DirectReference(step_id=value)
    match = _TEMPLATE_REF.match(value)
    if match and match.group(2) == "session_id":
        return TemplateReference(step_id=match.group(1), output_key=match.group(2))
    return InvalidReference(raw=value)


def referenced_step_id(value: str) -> str | None:
    ref = parse_session_reference(value)
    if isinstance(ref, (DirectReference, TemplateReference)):
        return ref.step_id
    return None


# ---------------------------------------------------------------------------
# Execution (in-memory)


StepOutput = dict[str, Any]
"""Outputs of one step: ``session_id``, ``result`` and any extra keys."""


@dataclass(frozen=True, slots=True)
class TaskStepRef:
    """A task step located in its document."""

    job_name: str
    index_in_job: int
    position: int
    step: Step

    @property
    def step_id(self) -> str:
        return self.step.id or f"step-{self.index_in_job}"

    @property
    def with_(self) -> StepWith:
        return self.step.with_ or StepWith()


@dataclass
class WorkflowExecution:
    """Mutable state of one run; only the engine mutates it."""

    workflow: WorkflowDocument
    inputs: dict[str, str] = field(default_factory=dict)
    outputs: dict[str, StepOutput] = field(default_factory=dict)
    current_step: int = 0
    status: ExecutionStatus = ExecutionStatus.PENDING
    error: str | None = None
