from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class StepStarted:
    execution_id: str | None
    step_index: int
    step_id: str


@dataclass(frozen=True, slots=True)
class StepCompleted:
    execution_id: str | None
    step_index: int
    step_id: str
    outputs: dict[str, Any]


@dataclass(frozen=True, slots=True)
class StepFailed:
    execution_id: str | None
    step_index: int
    step_id: str
    error: str


@dataclass(frozen=True, slots=True)
class WorkflowPaused:
    execution_id: str | None
    step_index: int
    reason: str


@dataclass(frozen=True, slots=True)
class WorkflowCompleted:
    execution_id: str | None
    steps_executed: int


@dataclass(frozen=True, slots=True)
class WorkflowFailed:
    execution_id: str | None
    error: str
    steps_executed: int


WorkflowEvent = (
    StepStarted | StepCompleted | StepFailed | WorkflowPaused | WorkflowCompleted | WorkflowFailed
)

EventListener = Callable[[WorkflowEvent], None]


@dataclass
class EventRecorder:
    """Listener that keeps every event it receives, in order."""

    events: list[WorkflowEvent] = field(default_factory=list)

    def __call__(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def __iter__(self) -> Iterator[WorkflowEvent]:
        return iter(self.events)

    def __len__(self) -> int:
        return len(self.events)

    def of_type(self, kind: type) -> list[WorkflowEvent]:
        return [event for event in self.events if isinstance(event, kind)]
