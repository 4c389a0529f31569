"""
In-memory upload job registry. No database — all state lives in this dict.
A server restart will clear all jobs.

State machine (wire names follow the app.bsky.video lexicon):

  processing ──► JOB_STATE_COMPLETED
       └───────► JOB_STATE_FAILED

Progress only goes up and nothing leaves a terminal state. Each job is
written by exactly one upload worker; updates publish a fresh Job object
so readers never see a half-applied change.
"""

import dataclasses
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from errors import JobTransitionError


class JobState(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "JOB_STATE_COMPLETED"
    FAILED = "JOB_STATE_FAILED"

    @property
    def terminal(self) -> bool:
        return self is not JobState.PROCESSING


@dataclass(frozen=True)
class Job:
    id: str
    did: str
    state: JobState = JobState.PROCESSING
    progress: int = 1
    # Relay inputs; cleared once the job is terminal
    token: Optional[str] = field(default=None, repr=False)
    content_type: Optional[str] = None
    blob: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    def message(self) -> str:
        if self.state is JobState.COMPLETED:
            return "uploaded!"
        if self.state is JobState.FAILED:
            return self.error or "upload failed"
        return "processing..."


# In-memory job store: { job_id: Job }
_jobs: Dict[str, Job] = {}


def create_job(did: str, token: Optional[str], content_type: Optional[str]) -> Job:
    """Register a new job in `processing` at progress 1 and return it."""
    job = Job(
        id=uuid.uuid4().hex,
        did=did,
        token=token,
        content_type=content_type,
    )
    _jobs[job.id] = job
    print(f"[Job {job.id}] Created for {did} ({content_type})")
    return job


def get_job(job_id: str) -> Optional[Job]:
    """Return a job or None if not found."""
    return _jobs.get(job_id)


def update_job(job_id: str, **changes: Any) -> Job:
    """
    Apply *changes* to a job and publish the result.

    Raises KeyError for an unknown id and JobTransitionError when the job
    is already terminal or the new progress is lower than the current one.
    """
    current = _jobs[job_id]
    if current.state.terminal:
        raise JobTransitionError(f"job {job_id} is already {current.state.value}")

    new_progress = changes.get("progress", current.progress)
    if new_progress < current.progress or not 0 <= new_progress <= 100:
        raise JobTransitionError(
            f"job {job_id}: progress {current.progress} -> {new_progress} is not allowed"
        )

    new_state = JobState(changes.get("state", current.state))
    changes["state"] = new_state
    if new_state.terminal:
        changes["finished_at"] = time.time()
        changes["token"] = None

    job = dataclasses.replace(current, **changes)
    _jobs[job_id] = job
    print(
        f"[Job {job.id}] {job.state.value} progress={job.progress} "
        f"blob={job.blob} error={job.error}"
    )
    return job


def complete_job(job_id: str, blob: Dict[str, Any]) -> Job:
    return update_job(job_id, state=JobState.COMPLETED, progress=100, blob=blob)


def fail_job(job_id: str, error: str) -> Job:
    return update_job(job_id, state=JobState.FAILED, error=error)


def sweep_jobs(retention: float, now: Optional[float] = None) -> int:
    """Drop terminal jobs that finished more than *retention* seconds ago."""
    now = time.time() if now is None else now
    expired = [
        job_id
        for job_id, job in list(_jobs.items())
        if job.finished_at is not None and now - job.finished_at > retention
    ]
    for job_id in expired:
        _jobs.pop(job_id, None)
    return len(expired)
