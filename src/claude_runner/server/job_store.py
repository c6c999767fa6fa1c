"""Persisted tracking of background workflow runs started over HTTP.

Jobs live next to the workflow state file so a restarted server can still
report on runs it started earlier. Only the newest ``max_jobs`` records are
kept; queued and running jobs are never dropped.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ValidationError

from claude_runner.runner.state.models import utc_iso_now
from claude_runner.runner.state.storage import write_atomic

logger = logging.getLogger(__name__)

JobKind = Literal["run", "resume"]

DEFAULT_MAX_JOBS = 200
_ACTIVE = ("queued", "running")


class JobRecord(BaseModel):
    job_id: str
    kind: JobKind
    status: str
    created_at: str
    updated_at: str

    workflow_path: str | None = None
    execution_id: str | None = None
    steps_executed: int = 0
    error: str | None = None


def _trim(jobs: list[JobRecord], max_jobs: int) -> list[JobRecord]:
    if len(jobs) <= max_jobs:
        return jobs
    finished = [j for j in jobs if j.status not in _ACTIVE]
    drop = {j.job_id for j in sorted(finished, key=lambda j: j.created_at)[: len(jobs) - max_jobs]}
    return [j for j in jobs if j.job_id not in drop]


@dataclass
class JobStore:
    path: Path
    max_jobs: int = DEFAULT_MAX_JOBS

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[JobRecord]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("Job file unreadable, treating as empty", extra={"path": str(self.path)})
            return []
        if not isinstance(raw, list):
            return []
        jobs: list[JobRecord] = []
        for item in raw:
            try:
                jobs.append(JobRecord.model_validate(item))
            except ValidationError:
                logger.debug("Dropping malformed job entry")
        return jobs

    def _save_unlocked(self, jobs: list[JobRecord]) -> None:
        payload = [j.model_dump(mode="json") for j in jobs]
        write_atomic(self.path, json.dumps(payload, indent=2, ensure_ascii=False) + "\n")

    def list(self) -> list[JobRecord]:
        with self._lock:
            return self._load_unlocked()

    def get(self, job_id: str) -> JobRecord | None:
        with self._lock:
            return next((j for j in self._load_unlocked() if j.job_id == job_id), None)

    def for_execution(self, execution_id: str) -> list[JobRecord]:
        """Every run and resume job that worked on ``execution_id``, oldest first."""

        with self._lock:
            return [j for j in self._load_unlocked() if j.execution_id == execution_id]

    def create(
        self,
        *,
        job_id: str,
        kind: JobKind,
        workflow_path: str | None = None,
        execution_id: str | None = None,
    ) -> JobRecord:
        now = utc_iso_now()
        record = JobRecord(
            job_id=job_id,
            kind=kind,
            status="queued",
            created_at=now,
            updated_at=now,
            workflow_path=workflow_path,
            execution_id=execution_id,
        )
        with self._lock:
            jobs = self._load_unlocked()
            jobs.append(record)
            self._save_unlocked(_trim(jobs, self.max_jobs))
        return record

    def update(self, job_id: str, **updates: object) -> JobRecord:
        with self._lock:
            jobs = self._load_unlocked()
            for idx, job in enumerate(jobs):
                if job.job_id == job_id:
                    jobs[idx] = job.model_copy(update={"updated_at": utc_iso_now(), **updates})
                    self._save_unlocked(jobs)
                    return jobs[idx]
            raise KeyError(job_id)
