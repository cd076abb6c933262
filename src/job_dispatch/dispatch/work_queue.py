"""Thread-safe hand-off between job submitters and the scheduler."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict, deque

from job_dispatch.dispatch.models import Job, JobDescriptor, JobStatus, JobView

logger = logging.getLogger(__name__)


class WorkQueue:
    """Pending FIFO, in-flight jobs, and a bounded ring of finished jobs.

    Any number of threads may submit; only the scheduler dequeues. One lock
    guards all three collections so a snapshot never misses a job that is
    moving between them.
    """

    def __init__(self, *, completed_limit: int = 1_000) -> None:
        self._lock = threading.Lock()
        self._pending: deque[Job] = deque()
        self._in_flight: OrderedDict[str, Job] = OrderedDict()
        self._completed: deque[Job] = deque(maxlen=completed_limit)
        self.non_empty = threading.Event()
        self.evicted = 0

    def submit(self, descriptor: JobDescriptor) -> Job:
        job = Job.from_descriptor(descriptor)
        with self._lock:
            self._pending.append(job)
            self.non_empty.set()
        logger.debug("Job %s submitted (%s)", job.job_id, job.name)
        return job

    def dequeue(self) -> Job | None:
        with self._lock:
            if not self._pending:
                return None
            job = self._pending.popleft()
            self._in_flight[job.job_id] = job
            return job

    def peek(self) -> Job | None:
        with self._lock:
            return self._pending[0] if self._pending else None

    def complete(self, job: Job) -> None:
        job.transition(JobStatus.COMPLETE)
        self._retire(job)

    def fail(self, job: Job) -> None:
        if job.status != JobStatus.ERROR:
            job.transition(JobStatus.ERROR)
        self._retire(job)

    def snapshot(self) -> list[JobView]:
        """Completed, then in-flight, then pending jobs, read atomically."""

        with self._lock:
            jobs = [*self._completed, *self._in_flight.values(), *self._pending]
            return [job.view() for job in jobs]

    def clear_signal_if_empty(self) -> bool:
        with self._lock:
            if self._pending:
                return False
            self.non_empty.clear()
            return True

    def wait_non_empty(self, timeout: float | None = None) -> bool:
        return self.non_empty.wait(timeout=timeout)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def completed_count(self) -> int:
        with self._lock:
            return len(self._completed)

    def is_drained(self) -> bool:
        with self._lock:
            return not self._pending and not self._in_flight

    def _retire(self, job: Job) -> None:
        with self._lock:
            self._in_flight.pop(job.job_id, None)
            if len(self._completed) == self._completed.maxlen:
                self.evicted += 1
                logger.debug("Completed ring full; evicting job %s", self._completed[0].job_id)
            self._completed.append(job)
