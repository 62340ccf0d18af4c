from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidTransition

# Job statuses
PENDING = "pending"
QUEUED = "queued"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELLED = "cancelled"

JOB_STATUSES = (PENDING, QUEUED, RUNNING, SUCCEEDED, FAILED, CANCELLED)
TERMINAL_STATUSES = frozenset((SUCCEEDED, FAILED, CANCELLED))

# Batch control states (distinct from job status)
CONTROL_RUNNING = "running"
CONTROL_PAUSED = "paused"
CONTROL_CANCELLED = "cancelled"


_ALLOWED = {
    PENDING: (QUEUED, CANCELLED),
    QUEUED: (RUNNING, CANCELLED),
    RUNNING: (SUCCEEDED, FAILED),
}


def can_transition(current: str, new: str) -> bool:
    return new in _ALLOWED.get(current, ())


@dataclass(frozen=True)
class JobInput:
    name: str
    content: str
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class JobResult:
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class JobError:
    kind: str
    message: str
    attempt: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "attempt": self.attempt}


@dataclass
class Job:
    id: str
    input: JobInput
    status: str = PENDING
    attempt: int = 0
    result: Optional[JobResult] = None
    last_error: Optional[JobError] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, new: str) -> str:
        """Move to `new`, returning the previous status.

        Raises InvalidTransition for any edge outside
        pending -> queued -> running -> succeeded|failed and
        pending|queued -> cancelled.
        """
        old = self.status
        if not can_transition(old, new):
            raise InvalidTransition(f"job {self.id}: {old} -> {new} is not allowed")
        self.status = new
        return old


@dataclass
class Outcome:
    result: Optional[JobResult] = None
    error: Optional[JobError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, result: JobResult) -> "Outcome":
        return cls(result=result)

    @classmethod
    def failure(cls, error: JobError) -> "Outcome":
        return cls(error=error)


@dataclass
class Batch:
    jobs: List[Job]
    concurrency_limit: int = 5
    max_attempts: int = 3
    backoff_delay: float = 2.5      # seconds, fixed between attempts
    timeout: Optional[float] = None  # per external call, seconds
    id: str = ""

    def validate(self):
        if self.concurrency_limit is None or int(self.concurrency_limit) < 1:
            raise ValueError("concurrency_limit must be >= 1")
        if self.max_attempts is None or int(self.max_attempts) < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_delay is None or self.backoff_delay < 0:
            raise ValueError("backoff_delay must be >= 0")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be > 0 seconds")
        if not self.jobs:
            raise ValueError("Batch must contain at least one job.")

        seen_ids, seen_names = set(), set()
        for job in self.jobs:
            if not job.id or not str(job.id).strip():
                raise ValueError("Job id cannot be empty.")
            if job.id in seen_ids:
                raise ValueError(f"Job '{job.id}' appears more than once.")
            if job.input.name in seen_names:
                raise ValueError(f"File name '{job.input.name}' appears more than once.")
            if job.status != PENDING:
                raise ValueError(f"Job '{job.id}' is {job.status}; only pending jobs can be submitted.")
            seen_ids.add(job.id)
            seen_names.add(job.input.name)


def identity(batch_id: str, job: Job) -> Tuple[str, str]:
    """Logical persistence key: batch + file name."""
    return (batch_id, job.input.name)


@dataclass
class ProgressEvent:
    batch_id: str
    kind: str                       # "transition", "attempt" or "batch_*"
    job_id: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    attempt: int = 0
    counts: Optional[Dict[str, int]] = None


@dataclass
class BatchSummary:
    batch_id: str
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    per_job_errors: Dict[str, JobError] = field(default_factory=dict)
    persistence_warnings: Dict[str, str] = field(default_factory=dict)
    elapsed: float = 0.0

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.cancelled

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "per_job_errors": {k: v.to_dict() for k, v in self.per_job_errors.items()},
            "persistence_warnings": dict(self.persistence_warnings),
            "elapsed_seconds": round(self.elapsed, 3),
        }
