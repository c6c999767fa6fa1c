"""Placeholder substitution for ``${{ ... }}`` expressions.

Supported forms::

    ${{ inputs.KEY }}
    ${{ env.KEY }}
    ${{ steps.ID.outputs.KEY }}

Resolution never raises. Unknown or missing values become an empty string and
substituted text is never scanned again.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from claude_runner.runner.workflow.document import (
    DirectReference,
    StepOutput,
    StepWith,
    parse_session_reference,
)

_PLACEHOLDER = re.compile(
    r"\$\{\{\s*(?:"
    r"inputs\.(?P<input>[\w-]+)"
    r"|env\.(?P<env>[\w-]+)"
    r"|steps\.(?P<step>[\w-]+)\.outputs\.(?P<output>[\w-]+)"
    r")\s*\}\}"
)


@dataclass(frozen=True, slots=True)
class ResolutionContext:
    inputs: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    steps: Mapping[str, StepOutput] = field(default_factory=dict)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def resolve_variables(template: str, context: ResolutionContext) -> str:
    def _replace(match: re.Match[str]) -> str:
        if match.group("input") is not None:
            return _stringify(context.inputs.get(match.group("input")))
        if match.group("env") is not None:
            return _stringify(context.env.get(match.group("env")))
        outputs = context.steps.get(match.group("step"))
        if not isinstance(outputs, Mapping):
            return ""
        return _stringify(outputs.get(match.group("output")))

    return _PLACEHOLDER.sub(_replace, template)


def resolve_session(value: str, context: ResolutionContext) -> str:
    """Resolve a ``resume_session`` value to a session id.

    A bare step id whose step recorded a ``session_id`` becomes that id. Any
    other value goes through regular placeholder resolution, which leaves a
    bare id without a recorded session untouched.
    """

    ref = parse_session_reference(value)
    if isinstance(ref, DirectReference):
        outputs = context.steps.get(ref.step_id)
        if isinstance(outputs, Mapping) and outputs.get("session_id"):
            return str(outputs["session_id"])
    return resolve_variables(value, context)


def resolve_step(params: StepWith, context: ResolutionContext) -> StepWith:
    """Return a copy of ``params`` with every string field resolved."""

    data = params.model_dump()
    resolved: dict[str, Any] = {}
    for key, value in data.items():
        if not isinstance(value, str):
            resolved[key] = value
        elif key == "resume_session":
            resolved[key] = resolve_session(value, context)
        else:
            resolved[key] = resolve_variables(value, context)
    return StepWith.model_validate(resolved)
