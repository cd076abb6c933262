"""Worker that runs jobs one at a time against a long-lived external process."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from uuid import uuid4

from job_dispatch.config import Settings
from job_dispatch.dispatch.errors import DispatchError, WorkerBusyError, WorkerProcessError
from job_dispatch.dispatch.failure_classifier import OutputFailureClassifier, OutputFailureMatch
from job_dispatch.dispatch.models import (
    FailureClass,
    Job,
    JobStatus,
    SettleResult,
    WorkerState,
)
from job_dispatch.dispatch.process import STDOUT, OutputLine, WorkerProcess, build_worker_argv

logger = logging.getLogger(__name__)

ScriptBuilder = Callable[[Job], Iterable[str]]

_READ_SLICE_SECONDS = 0.1
_TRAILING_QUIET_SECONDS = 0.05
_TRAILING_LIMIT_SECONDS = 1.0


def default_script_builder(job: Job) -> list[str]:
    """Turn a job payload into stdin lines: a string or an iterable of strings."""

    payload = job.payload
    if payload is None:
        return []
    if isinstance(payload, str):
        return payload.splitlines()
    if isinstance(payload, Iterable):
        return [str(line) for line in payload]
    raise TypeError(f"Unsupported job payload type: {type(payload).__name__}")


class Worker:
    """Own one worker process for its whole lifetime.

    State moves idle -> dispatching -> settling -> settled and back to idle only
    when the scheduler calls :meth:`release` during reconciliation. Every state
    change happens under ``_lock``, so a worker never reports idle while a
    finished job is still attached.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        worker_id: str | None = None,
        on_settled: Callable[[Worker], None] | None = None,
        script_builder: ScriptBuilder = default_script_builder,
    ) -> None:
        self.worker_id = worker_id or f"worker-{uuid4().hex[:8]}"
        self.settings = settings
        self._on_settled = on_settled or (lambda _worker: None)
        self._script_builder = script_builder
        self._classifier = OutputFailureClassifier(settings.protocol.failure_patterns)
        self._process = WorkerProcess.launch(
            build_worker_argv(settings.worker.command),
            exit_command=settings.protocol.exit_command,
            output_buffer_lines=settings.worker.output_buffer_lines,
        )
        self._lock = threading.Lock()
        self._state = WorkerState.IDLE
        self._current_job: Job | None = None
        self._settle_result: SettleResult | None = None
        self._settle_thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._broken = False
        self._log: deque[str] = deque(maxlen=settings.worker.log_limit)
        logger.info("Worker %s launched pid=%s", self.worker_id, self._process.pid)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def state(self) -> WorkerState:
        with self._lock:
            return self._state

    @property
    def idle(self) -> bool:
        with self._lock:
            return self._state == WorkerState.IDLE and self._current_job is None

    @property
    def current_job(self) -> Job | None:
        with self._lock:
            return self._current_job

    @property
    def settle_result(self) -> SettleResult | None:
        with self._lock:
            return self._settle_result

    def is_healthy(self) -> bool:
        """Liveness probe: the process is running and its stdin still works."""

        with self._lock:
            if self._state == WorkerState.RETIRED or self._broken:
                return False
        return self._process.is_alive()

    def log_lines(self) -> list[str]:
        with self._lock:
            return list(self._log)

    def dispatch(self, job: Job, cancel_event: threading.Event | None = None) -> None:
        """Start ``job`` on this worker and return without waiting for it."""

        with self._lock:
            if self._state != WorkerState.IDLE or self._current_job is not None:
                raise WorkerBusyError(
                    f"Worker {self.worker_id} is {self._state.value}; cannot dispatch.",
                )
            if self._broken or not self._process.is_alive():
                raise WorkerProcessError(f"Worker {self.worker_id} process is not running.")
            self._state = WorkerState.DISPATCHING
            self._current_job = job
            self._settle_result = None
            job.transition(JobStatus.RUNNING)

        self._drain_to_log()
        logger.debug("Worker %s dispatching job %s (%s)", self.worker_id, job.job_id, job.name)

        try:
            script = list(self._script_builder(job))
        except (TypeError, ValueError) as error:
            self._append_log(f"dispatch failed: {error}")
            self._finish(SettleResult(job=job, failure_class=FailureClass.DISPATCH_FAILED))
            raise DispatchError(f"Could not build script for job {job.job_id}: {error}") from error

        try:
            for line in script:
                self._process.write_line(line)
            self._process.write_line(self.settings.protocol.probe_for(job.job_id))
        except WorkerProcessError as error:
            with self._lock:
                self._broken = True
            self._append_log(f"dispatch failed: {error}")
            self._finish(SettleResult(job=job, failure_class=FailureClass.DISPATCH_FAILED))
            raise

        timeout = job.timeout_seconds or self.settings.scheduler.job_timeout_seconds
        with self._lock:
            self._state = WorkerState.SETTLING
            self._settle_thread = threading.Thread(
                target=self._settle,
                args=(job, cancel_event or threading.Event(), timeout),
                daemon=True,
                name=f"{self.worker_id}-settle",
            )
            self._settle_thread.start()

    def release(self) -> SettleResult:
        """Detach the settled job and return to idle in one step."""

        with self._lock:
            if self._state != WorkerState.SETTLED or self._settle_result is None:
                raise WorkerBusyError(
                    f"Worker {self.worker_id} is {self._state.value}; nothing to release.",
                )
            result = self._settle_result
            self._settle_result = None
            self._current_job = None
            self._state = WorkerState.IDLE
        return result

    def pump_output(self) -> int:
        """Move buffered output lines into the log without blocking.

        While a job is settling the settle thread owns the channel, so this is a
        no-op then.
        """

        with self._lock:
            if self._state not in (WorkerState.IDLE, WorkerState.SETTLED):
                return 0
        return self._drain_to_log()

    def _drain_to_log(self) -> int:
        moved = 0
        for item in self._process.drain():
            if item.eof:
                continue
            self._append_output(item)
            moved += 1
        return moved

    def stop(self, timeout: float | None = None) -> int | None:
        """Request graceful exit, then terminate and kill after ``timeout``."""

        wait_seconds = self.settings.worker.stop_timeout_seconds if timeout is None else timeout
        with self._lock:
            if self._state == WorkerState.RETIRED:
                return self._process.returncode
            self._state = WorkerState.RETIRED
            settle_thread = self._settle_thread
        self._stop_event.set()
        if settle_thread is not None:
            settle_thread.join(timeout=max(wait_seconds, _READ_SLICE_SECONDS * 2))
        returncode = self._process.terminate(wait_seconds)
        logger.info("Worker %s stopped pid=%s exit_code=%s", self.worker_id, self.pid, returncode)
        return returncode

    def _settle(self, job: Job, cancel_event: threading.Event, timeout: float) -> None:
        marker = self.settings.protocol.marker_for(job.job_id)
        deadline = time.monotonic() + timeout
        reported: OutputFailureMatch | None = None
        failure_class: FailureClass | None = None
        output: list[str] = []

        while True:
            if cancel_event.is_set() or self._stop_event.is_set():
                failure_class = FailureClass.CANCELED
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                failure_class = FailureClass.TIMEOUT
                break
            item = self._process.read_line(timeout=min(_READ_SLICE_SECONDS, remaining))
            if item is None:
                if not self._process.is_alive():
                    failure_class = FailureClass.PROCESS_EXITED
                    break
                continue
            if item.eof:
                if item.stream == STDOUT:
                    failure_class = FailureClass.PROCESS_EXITED
                    break
                continue
            self._append_output(item)
            text = item.text or ""
            output.append(text)
            if item.stream == STDOUT and text.strip() == marker:
                trailing = self._read_trailing(job, output)
                reported = reported or trailing
                break
            reported = reported or self._report(job, item)

        if failure_class is None and reported is not None:
            failure_class = FailureClass.REPORTED_FAILURE
        if failure_class is not None and failure_class != FailureClass.REPORTED_FAILURE:
            logger.warning(
                "Worker %s job %s ended with %s",
                self.worker_id,
                job.job_id,
                failure_class.value,
            )
        self._finish(
            SettleResult(
                job=job,
                failure_class=failure_class,
                exit_code=self._process.returncode,
                output=output,
            ),
        )

    def _read_trailing(self, job: Job, output: list[str]) -> OutputFailureMatch | None:
        """Collect lines still in transit after the marker until the streams go quiet.

        stderr is read on its own thread, so a failure line printed before the
        marker can reach the channel after it.
        """

        reported: OutputFailureMatch | None = None
        deadline = time.monotonic() + _TRAILING_LIMIT_SECONDS
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return reported
            item = self._process.read_line(timeout=min(_TRAILING_QUIET_SECONDS, remaining))
            if item is None:
                return reported
            if item.eof:
                continue
            self._append_output(item)
            output.append(item.text or "")
            reported = reported or self._report(job, item)

    def _report(self, job: Job, item: OutputLine) -> OutputFailureMatch | None:
        match = self._classifier.classify(stream=item.stream, line=item.text or "")
        if match is not None:
            logger.warning(
                "Worker %s job %s reported failure: %s",
                self.worker_id,
                job.job_id,
                match.to_log_details(),
            )
        return match

    def _finish(self, result: SettleResult) -> None:
        if not result.job.is_terminal:
            result.job.transition(
                JobStatus.ERROR if result.failure_class else JobStatus.VERIFYING,
            )
        with self._lock:
            self._settle_result = result
            if self._state != WorkerState.RETIRED:
                self._state = WorkerState.SETTLED
        logger.debug(
            "Worker %s settled job %s status=%s",
            self.worker_id,
            result.job.job_id,
            result.job.status.value,
        )
        self._on_settled(self)

    def _append_output(self, item: OutputLine) -> None:
        if item.text is not None:
            self._append_log(item.text)

    def _append_log(self, line: str) -> None:
        with self._lock:
            self._log.append(line)
