"""Persistence backends for workflow states.

The JSON backend keeps every state in one file under a namespaced key::

    {"claude-runner.workflow-states": [ {...}, {...} ]}

Entries that no longer validate are dropped on load, so a partially written
or hand-edited file never blocks the runner.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from claude_runner.runner.state.models import WorkflowState, parse_iso

logger = logging.getLogger(__name__)

STORAGE_KEY = "claude-runner.workflow-states"
DEFAULT_MAX_STATES = 50

StateMutator = Callable[[WorkflowState], WorkflowState | None]


class StateStorageError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class StorageStats:
    total_states: int
    total_size: int
    oldest_state: str | None = None
    newest_state: str | None = None

    def to_json(self) -> dict[str, object]:
        return {
            "total_states": self.total_states,
            "total_size": self.total_size,
            "oldest_state": self.oldest_state,
            "newest_state": self.newest_state,
        }


class WorkflowStateStorage(Protocol):
    def save_workflow_state(self, state: WorkflowState) -> None: ...

    def load_workflow_state(self, execution_id: str) -> WorkflowState | None: ...

    def list_workflow_states(self) -> list[WorkflowState]: ...

    def delete_workflow_state(self, execution_id: str) -> None: ...

    def cleanup_old_states(self, max_age_seconds: float) -> int: ...

    def mutate(self, execution_id: str, mutator: StateMutator) -> WorkflowState | None: ...


def write_atomic(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` so readers see either the old or the new file.

    Several processes (CLI runs, the HTTP server) share one state file.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            tmp.write(text)
        tmp_path.replace(path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def _start_epoch(state: WorkflowState) -> float:
    parsed = parse_iso(state.start_time)
    return parsed.timestamp() if parsed else 0.0


def _evict(states: list[WorkflowState], max_states: int) -> list[WorkflowState]:
    if len(states) <= max_states:
        return states
    newest_first = sorted(states, key=_start_epoch, reverse=True)
    return newest_first[:max_states]


def _upsert(states: list[WorkflowState], state: WorkflowState) -> None:
    for idx, existing in enumerate(states):
        if existing.execution_id == state.execution_id:
            states[idx] = state
            return
    states.append(state)


def _stats(states: list[WorkflowState], total_size: int) -> StorageStats:
    if not states:
        return StorageStats(total_states=0, total_size=0)
    ordered = sorted(states, key=_start_epoch)
    return StorageStats(
        total_states=len(states),
        total_size=total_size,
        oldest_state=ordered[0].start_time,
        newest_state=ordered[-1].start_time,
    )


@dataclass
class JsonWorkflowStateStorage:
    path: Path
    max_states: int = DEFAULT_MAX_STATES
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(tz=UTC))

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[WorkflowState]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(
                "Workflow state file unreadable, treating as empty",
                extra={"path": str(self.path), "error": str(e)},
            )
            return []
        items = raw.get(STORAGE_KEY) if isinstance(raw, dict) else None
        if not isinstance(items, list):
            return []

        states: list[WorkflowState] = []
        for item in items:
            try:
                states.append(WorkflowState.model_validate(item))
            except ValidationError:
                logger.debug("Dropping malformed workflow state entry")
        return states

    def _save_unlocked(self, states: list[WorkflowState]) -> None:
        payload = {STORAGE_KEY: [s.model_dump(mode="json") for s in states]}
        text = json.dumps(payload, indent=2, ensure_ascii=False) + "\n"
        try:
            write_atomic(self.path, text)
        except OSError as e:
            raise StateStorageError(f"Failed to save workflow state: {e}") from e

    def save_workflow_state(self, state: WorkflowState) -> None:
        with self._lock:
            states = self._load_unlocked()
            _upsert(states, state)
            self._save_unlocked(_evict(states, self.max_states))

    def load_workflow_state(self, execution_id: str) -> WorkflowState | None:
        with self._lock:
            for state in self._load_unlocked():
                if state.execution_id == execution_id:
                    return state
            return None

    def list_workflow_states(self) -> list[WorkflowState]:
        with self._lock:
            return self._load_unlocked()

    def delete_workflow_state(self, execution_id: str) -> None:
        with self._lock:
            states = self._load_unlocked()
            kept = [s for s in states if s.execution_id != execution_id]
            self._save_unlocked(kept)

    def cleanup_old_states(self, max_age_seconds: float) -> int:
        """Remove states started before the retention window; returns the count removed."""

        with self._lock:
            states = self._load_unlocked()
            cutoff = self.clock().timestamp() - max_age_seconds
            kept = [s for s in states if _start_epoch(s) > cutoff]
            if len(kept) != len(states):
                self._save_unlocked(kept)
            return len(states) - len(kept)

    def mutate(self, execution_id: str, mutator: StateMutator) -> WorkflowState | None:
        """Load, change and store one state under a single lock acquisition.

        ``mutator`` returns the new state, or ``None`` to leave the store untouched.
        """

        with self._lock:
            states = self._load_unlocked()
            current = next((s for s in states if s.execution_id == execution_id), None)
            if current is None:
                return None
            updated = mutator(current)
            if updated is None:
                return None
            _upsert(states, updated)
            self._save_unlocked(_evict(states, self.max_states))
            return updated

    def get_storage_stats(self) -> StorageStats:
        with self._lock:
            states = self._load_unlocked()
            size = len(json.dumps([s.model_dump(mode="json") for s in states]))
            return _stats(states, size)

    def clear_all_states(self) -> None:
        with self._lock:
            self._save_unlocked([])


@dataclass
class InMemoryWorkflowStateStorage:
    """Process-local backend, used by tests and embedders that need no persistence."""

    max_states: int = DEFAULT_MAX_STATES
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(tz=UTC))
    _states: list[WorkflowState] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def save_workflow_state(self, state: WorkflowState) -> None:
        with self._lock:
            _upsert(self._states, state.model_copy(deep=True))
            self._states = _evict(self._states, self.max_states)

    def load_workflow_state(self, execution_id: str) -> WorkflowState | None:
        with self._lock:
            for state in self._states:
                if state.execution_id == execution_id:
                    return state.model_copy(deep=True)
            return None

    def list_workflow_states(self) -> list[WorkflowState]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._states]

    def delete_workflow_state(self, execution_id: str) -> None:
        with self._lock:
            self._states = [s for s in self._states if s.execution_id != execution_id]

    def cleanup_old_states(self, max_age_seconds: float) -> int:
        with self._lock:
            cutoff = self.clock().timestamp() - max_age_seconds
            before = len(self._states)
            self._states = [s for s in self._states if _start_epoch(s) > cutoff]
            return before - len(self._states)

    def mutate(self, execution_id: str, mutator: StateMutator) -> WorkflowState | None:
        with self._lock:
            current = next((s for s in self._states if s.execution_id == execution_id), None)
            if current is None:
                return None
            updated = mutator(current.model_copy(deep=True))
            if updated is None:
                return None
            _upsert(self._states, updated)
            self._states = _evict(self._states, self.max_states)
            return updated.model_copy(deep=True)

    def get_storage_stats(self) -> StorageStats:
        with self._lock:
            size = len(json.dumps([s.model_dump(mode="json") for s in self._states]))
            return _stats(self._states, size)

    def clear_all_states(self) -> None:
        with self._lock:
            self._states = []
