"""Conversion between ad-hoc task pipelines and workflow documents."""

from __future__ import annotations

from claude_runner.runner.executor.types import TaskItem
from claude_runner.runner.workflow.document import (
    TASK_ACTION,
    Job,
    Step,
    StepWith,
    WorkflowDocument,
    referenced_step_id,
)
from claude_runner.runner.workflow.parser import iter_task_steps


def create_sample_workflow() -> WorkflowDocument:
    """A three step analyze / implement / test workflow with chained sessions."""

    return WorkflowDocument.model_validate(
        {
            "name": "Claude Development Workflow",
            "on": {
                "workflow_dispatch": {
                    "inputs": {
                        "task_description": {
                            "description": "Description of the development task",
                            "required": True,
                            "type": "string",
                        }
                    }
                }
            },
            "jobs": {
                "development": {
                    "name": "Development Tasks",
                    "runs-on": "ubuntu-latest",
                    "steps": [
                        {
                            "id": "analyze",
                            "name": "Analyze Codebase",
                            "uses": TASK_ACTION,
                            "with": {
                                "prompt": (
                                    "Analyze the codebase structure and identify key components "
                                    "related to: ${{ inputs.task_description }}"
                                ),
                                "allow_all_tools": True,
                                "output_session": True,
                            },
                        },
                        {
                            "id": "implement",
                            "name": "Implement Changes",
                            "uses": TASK_ACTION,
                            "with": {
                                "prompt": (
                                    "Based on the analysis, implement the following task: "
                                    "${{ inputs.task_description }}"
                                ),
                                "allow_all_tools": True,
                                "resume_session": "analyze",
                                "output_session": True,
                            },
                        },
                        {
                            "id": "test",
                            "name": "Write Tests",
                            "uses": TASK_ACTION,
                            "with": {
                                "prompt": "Write comprehensive tests for the implemented changes",
                                "allow_all_tools": True,
                                "resume_session": "implement",
                            },
                        },
                    ],
                }
            },
        }
    )


def workflow_from_tasks(
    name: str,
    tasks: list[TaskItem],
    *,
    description: str = "",
    default_model: str | None = None,
    allow_all_tools: bool = False,
) -> WorkflowDocument:
    """Turn a pipeline into a single-job workflow.

    A task that resumes another one becomes a direct ``resume_session``
    reference, and the referenced step gets ``output_session: true``.
    """

    resumed_ids = {t.resume_from_task_id for t in tasks if t.resume_from_task_id}

    steps: list[Step] = []
    for task in tasks:
        params = StepWith(prompt=task.prompt, allow_all_tools=allow_all_tools)
        model = task.model or default_model
        if model:
            params.model = model
        if task.resume_from_task_id:
            params.resume_session = task.resume_from_task_id
        if task.id in resumed_ids:
            params.output_session = True
        if task.check:
            params.check = task.check
        if task.condition:
            params.condition = task.condition
        steps.append(
            Step(
                id=task.id,
                name=task.name or f"Task {task.id}",
                uses=TASK_ACTION,
                with_=params,
            )
        )

    return WorkflowDocument(
        name=name,
        trigger={
            "workflow_dispatch": {
                "inputs": {
                    "description": {
                        "description": description or "Pipeline execution",
                        "required": False,
                        "type": "string",
                    }
                }
            }
        },
        jobs={"pipeline": Job(name="Pipeline Execution", runs_on="ubuntu-latest", steps=steps)},
    )


def workflow_to_task_items(doc: WorkflowDocument) -> list[TaskItem]:
    items: list[TaskItem] = []
    for ref in iter_task_steps(doc):
        params = ref.with_
        items.append(
            TaskItem(
                id=ref.step_id,
                name=ref.step.name,
                prompt=params.prompt,
                model=params.model,
                resume_from_task_id=(
                    referenced_step_id(params.resume_session) if params.resume_session else None
                ),
                check=params.check,
                condition=params.condition,
            )
        )
    return items
