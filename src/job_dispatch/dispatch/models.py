"""Domain models for the job queue and worker pool."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from job_dispatch.dispatch.errors import InvalidTransitionError


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class JobStatus(str, Enum):
    """Job lifecycle states."""

    WAITING = "waiting"
    RUNNING = "running"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETE, JobStatus.ERROR})

_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.WAITING: frozenset({JobStatus.RUNNING, JobStatus.ERROR}),
    JobStatus.RUNNING: frozenset({JobStatus.VERIFYING, JobStatus.ERROR}),
    JobStatus.VERIFYING: frozenset({JobStatus.COMPLETE, JobStatus.ERROR}),
    JobStatus.COMPLETE: frozenset(),
    JobStatus.ERROR: frozenset(),
}


class WorkerState(str, Enum):
    """Worker state machine: idle -> dispatching -> settling -> settled -> idle."""

    IDLE = "idle"
    DISPATCHING = "dispatching"
    SETTLING = "settling"
    SETTLED = "settled"
    RETIRED = "retired"


class FailureClass(str, Enum):
    """Normalized reasons a job ended in error."""

    LAUNCH_FAILED = "launch_failed"
    DISPATCH_FAILED = "dispatch_failed"
    REPORTED_FAILURE = "reported_failure"
    PROCESS_EXITED = "process_exited"
    TIMEOUT = "timeout"
    CANCELED = "canceled"
    VERIFICATION_FAILED = "verification_failed"


# Settle outcomes after which the worker process can no longer be trusted.
RECYCLE_FAILURES = frozenset({FailureClass.PROCESS_EXITED, FailureClass.TIMEOUT})


@dataclass(slots=True, frozen=True)
class JobDescriptor:
    """Submitter input: display name plus opaque payload."""

    name: str
    payload: Any = None
    timeout_seconds: float | None = None


@dataclass(slots=True, frozen=True)
class JobView:
    """Point-in-time status row returned to status readers."""

    job_id: str
    name: str
    status: JobStatus


@dataclass(slots=True, eq=False)
class Job:
    """Unit of work tracked through the dispatch lifecycle."""

    name: str
    payload: Any = None
    timeout_seconds: float | None = None
    job_id: str = field(default_factory=lambda: uuid4().hex)
    status: JobStatus = JobStatus.WAITING
    submitted_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def from_descriptor(cls, descriptor: JobDescriptor) -> Job:
        return cls(
            name=descriptor.name,
            payload=descriptor.payload,
            timeout_seconds=descriptor.timeout_seconds,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: JobStatus) -> None:
        """Move the job forward, refusing any backward or repeated step."""

        with self._lock:
            if status not in _ALLOWED_TRANSITIONS[self.status]:
                raise InvalidTransitionError(
                    f"Job {self.job_id} cannot move from {self.status.value} to {status.value}.",
                )
            self.status = status
            self.updated_at = utc_now()

    def view(self) -> JobView:
        return JobView(job_id=self.job_id, name=self.name, status=self.status)


@dataclass(slots=True)
class SettleResult:
    """Outcome recorded by a worker once its job stops running."""

    job: Job
    failure_class: FailureClass | None = None
    exit_code: int | None = None
    output: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failure_class is None


@dataclass(slots=True)
class CycleSummary:
    """Aggregate scheduler counters for CLI reporting."""

    cycles: int = 0
    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    workers_created: int = 0
    workers_retired: int = 0
    idle_cycles: int = 0

    def add(self, other: CycleSummary) -> None:
        self.cycles += other.cycles
        self.dispatched += other.dispatched
        self.completed += other.completed
        self.failed += other.failed
        self.workers_created += other.workers_created
        self.workers_retired += other.workers_retired
        self.idle_cycles += other.idle_cycles
