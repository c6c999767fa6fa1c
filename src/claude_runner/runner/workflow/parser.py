"""Parse, validate and serialize workflow YAML.

Parsing is pure: no filesystem access and no logging. Every rejection is a
``WorkflowParseError`` whose message starts with ``Failed to parse workflow
YAML: `` followed by the concrete reason.
"""

from __future__ import annotations

from typing import Any

import yaml
from pydantic import ValidationError

from claude_runner.runner.workflow.document import (
    VALID_CONDITIONS,
    InvalidReference,
    Step,
    TaskStepRef,
    WorkflowDocument,
    is_task_step,
    parse_session_reference,
)

PARSE_ERROR_PREFIX = "Failed to parse workflow YAML: "


class WorkflowParseError(ValueError):
    """The workflow document was rejected before execution."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"{PARSE_ERROR_PREFIX}{reason}")
        self.reason = reason


class _Invalid(Exception):
    pass


def parse_workflow(text: str) -> WorkflowDocument:
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise WorkflowParseError(str(e)) from e

    try:
        return _build(raw)
    except _Invalid as e:
        raise WorkflowParseError(str(e)) from None


def _build(raw: object) -> WorkflowDocument:
    if not isinstance(raw, dict):
        raise _Invalid("Workflow document must be a mapping")

    # YAML 1.1 reads a bare `on:` key as boolean true.
    if True in raw and "on" not in raw:
        raw = {("on" if key is True else key): value for key, value in raw.items()}

    name = raw.get("name")
    if not name or not isinstance(name, str):
        raise _Invalid("Workflow must have a name")

    jobs = raw.get("jobs")
    if not isinstance(jobs, dict) or not jobs:
        raise _Invalid("Workflow must have at least one job")

    for job_name, job in jobs.items():
        steps = job.get("steps") if isinstance(job, dict) else None
        if not isinstance(steps, list) or not steps:
            raise _Invalid(f"Job '{job_name}' must have at least one step")
        for step in steps:
            if not isinstance(step, dict):
                raise _Invalid(f"Job '{job_name}' contains a step that is not a mapping")
            _check_step_fields(step)

    try:
        doc = WorkflowDocument.model_validate(raw)
    except ValidationError as e:
        raise _Invalid(_describe_validation_error(e)) from e

    _validate_session_references(doc)
    return doc


def _label(step: dict[str, Any]) -> str:
    return str(step.get("name") or step.get("id") or "unnamed")


def _check_step_fields(step: dict[str, Any]) -> None:
    """Validate task step fields on the raw mapping, before model coercion."""

    uses = step.get("uses")
    if not isinstance(uses, str) or "claude-pipeline-action" not in uses:
        return

    params = step.get("with")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise _Invalid(f"Claude step '{_label(step)}' has a 'with' block that is not a mapping")

    prompt = params.get("prompt")
    if not prompt or not isinstance(prompt, str):
        raise _Invalid(f"Claude step '{_label(step)}' must have a prompt")

    resume = params.get("resume_session")
    if resume:
        if not isinstance(resume, str) or isinstance(
            parse_session_reference(resume), InvalidReference
        ):
            raise _Invalid(f"Invalid session reference in step '{_label(step)}': {resume}")

    check = params.get("check")
    if check and not isinstance(check, str):
        raise _Invalid(f"Check command in step '{_label(step)}' must be a string")

    condition = params.get("condition")
    if condition:
        if condition not in VALID_CONDITIONS:
            raise _Invalid(
                f"Invalid condition type in step '{_label(step)}': {condition}. "
                f"Must be one of: {', '.join(VALID_CONDITIONS)}"
            )
        if not check:
            raise _Invalid(
                f"Step '{_label(step)}' has condition '{condition}' "
                "but no check command specified"
            )


def _validate_session_references(doc: WorkflowDocument) -> None:
    """Every ``resume_session`` must name a step declared earlier in the document."""

    seen: set[str] = set()
    for job in doc.jobs.values():
        for step in job.steps:
            if is_task_step(step) and step.with_ is not None and step.with_.resume_session:
                ref = parse_session_reference(step.with_.resume_session)
                target = getattr(ref, "step_id", None)
                if target is not None and target not in seen:
                    raise _Invalid(f"Step '{step.label}' references unknown step '{target}'")
            if step.id:
                seen.add(step.id)


def _describe_validation_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"Invalid value at '{location}': {first.get('msg', 'invalid')}"


def to_yaml(doc: WorkflowDocument) -> str:
    """Serialize a document back to YAML, preserving field and step order."""

    data = doc.model_dump(by_alias=True, exclude_unset=True, exclude_none=True)
    return yaml.safe_dump(
        data,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=10_000,
    )


def extract_task_steps(doc: WorkflowDocument) -> list[Step]:
    """All task steps in document order (job order, then step order)."""

    return [ref.step for ref in iter_task_steps(doc)]


def iter_task_steps(doc: WorkflowDocument) -> list[TaskStepRef]:
    """Task steps with their job name, index within the job and flat position."""

    refs: list[TaskStepRef] = []
    for job_name, job in doc.jobs.items():
        for index, step in enumerate(job.steps):
            if is_task_step(step):
                refs.append(
                    TaskStepRef(
                        job_name=job_name, index_in_job=index, position=len(refs), step=step
                    )
                )
    return refs
