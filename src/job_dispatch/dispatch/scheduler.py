"""Scheduler loop that assigns queued jobs to workers and reconciles results."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from job_dispatch.config import Settings
from job_dispatch.dispatch.errors import DispatchError, WorkerLaunchError
from job_dispatch.dispatch.models import (
    RECYCLE_FAILURES,
    CycleSummary,
    Job,
    JobDescriptor,
    JobStatus,
    JobView,
    WorkerState,
)
from job_dispatch.dispatch.work_queue import WorkQueue
from job_dispatch.dispatch.worker import ScriptBuilder, Worker, default_script_builder

logger = logging.getLogger(__name__)

Verifier = Callable[[Job, list[str]], bool]
WorkerFactory = Callable[..., Worker]

_WAIT_SLICE_SECONDS = 0.1
_BUSY_STATES = frozenset({WorkerState.DISPATCHING, WorkerState.SETTLING})


class Scheduler:
    """Match idle workers to pending jobs, one cycle at a time.

    Each cycle pumps worker output, assigns up to ``max_dispatch_per_cycle``
    jobs in FIFO order, waits for the poll interval or a dispatch to settle,
    then reconciles settled workers. Jobs are never skipped: if the head of the
    queue cannot be placed, nothing behind it is either.
    """

    def __init__(
        self,
        queue: WorkQueue,
        settings: Settings,
        *,
        worker_factory: WorkerFactory = Worker,
        verifier: Verifier | None = None,
        script_builder: ScriptBuilder = default_script_builder,
    ) -> None:
        self.queue = queue
        self.settings = settings
        self.worker_factory = worker_factory
        self.verifier = verifier
        self.script_builder = script_builder
        self._workers: list[Worker] = []
        self._workers_lock = threading.Lock()
        self._settled = threading.Event()
        self._stop_requested = threading.Event()
        self._cancel = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def workers(self) -> list[Worker]:
        with self._workers_lock:
            return list(self._workers)

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def submit(self, descriptor: JobDescriptor) -> Job:
        return self.queue.submit(descriptor)

    def get_status(self) -> list[JobView]:
        return self.queue.snapshot()

    def run_once(self, *, wait: bool = True) -> CycleSummary:
        """Run one assign / wait / reconcile cycle."""

        summary = CycleSummary(cycles=1)
        self._check_workers(summary)

        queue_empty = self.queue.clear_signal_if_empty()
        if queue_empty:
            summary.idle_cycles = 1
        else:
            self._assign(summary)

        if wait:
            self._wait_for_activity(idle=queue_empty and not self._has_busy_workers())
        self._settled.clear()
        self._reconcile(summary)
        return summary

    def run_loop(
        self,
        *,
        max_cycles: int | None = None,
        until_drained: bool = False,
    ) -> CycleSummary:
        """Repeat cycles until stop is requested.

        Args:
            max_cycles: Stop after this many cycles (None = unlimited).
            until_drained: Also stop once no job is pending or in flight.
        """

        aggregate = CycleSummary()
        with self._signal_handlers():
            while not self._stop_requested.is_set():
                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    break
                if until_drained and self.queue.is_drained():
                    break
                try:
                    summary = self.run_once()
                except Exception:
                    logger.exception("Scheduler cycle error")
                    aggregate.cycles += 1
                    self._sleep_with_stop(self.settings.scheduler.poll_interval_seconds)
                    continue
                aggregate.add(summary)
        return aggregate

    def start(self) -> None:
        """Run the loop on a background thread until :meth:`stop`."""

        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_requested.clear()
        self._cancel.clear()
        self._thread = threading.Thread(
            target=self.run_loop,
            daemon=True,
            name="job-dispatch-scheduler",
        )
        self._thread.start()
        logger.info("Scheduler thread started")

    def stop(self, timeout: float | None = None) -> CycleSummary:
        """Stop the loop, let in-flight jobs settle, then shut down every worker.

        Jobs still running after ``graceful_shutdown_seconds`` are cancelled and
        end in error. Pending jobs stay pending.
        """

        self._request_stop()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                # The loop thread still owns reconciliation; retry stop() later.
                logger.warning("Scheduler thread did not stop within %s seconds", timeout)
                return CycleSummary()
            self._thread = None

        summary = CycleSummary()
        deadline = time.monotonic() + self.settings.scheduler.graceful_shutdown_seconds
        while self._has_busy_workers() and time.monotonic() < deadline:
            self._settled.wait(timeout=_WAIT_SLICE_SECONDS)
            self._settled.clear()
            self._reconcile(summary)

        self._cancel.set()
        for worker in self.workers:
            worker.stop()
            result = worker.settle_result
            if result is not None:
                self._record_settled_job(
                    job=result.job,
                    result_ok=result.ok and self._verify(result.job, result.output),
                    summary=summary,
                )
            else:
                job = worker.current_job
                if job is not None and not job.is_terminal:
                    self.queue.fail(job)
                    summary.failed += 1
            self._remove_worker(worker, summary)
        logger.info(
            "Scheduler stopped: completed=%d failed=%d pending=%d",
            summary.completed,
            summary.failed,
            self.queue.pending_count(),
        )
        return summary

    def _assign(self, summary: CycleSummary) -> None:
        for _ in range(self.settings.scheduler.max_dispatch_per_cycle):
            if self.queue.peek() is None:
                return
            worker = self._idle_worker()
            if worker is None:
                if len(self.workers) >= self.settings.scheduler.max_workers:
                    return
                try:
                    worker = self._launch_worker()
                except WorkerLaunchError as error:
                    job = self.queue.dequeue()
                    logger.error(
                        "Worker launch failed (transient=%s): %s",
                        error.transient,
                        error,
                    )
                    if job is not None:
                        logger.warning("Job %s (%s) failed: no worker", job.job_id, job.name)
                        self.queue.fail(job)
                        summary.failed += 1
                    continue
                summary.workers_created += 1

            job = self.queue.dequeue()
            if job is None:
                return
            try:
                worker.dispatch(job, self._cancel)
            except DispatchError as error:
                logger.warning(
                    "Dispatch of job %s to %s failed: %s",
                    job.job_id,
                    worker.worker_id,
                    error,
                )
                if worker.state == WorkerState.SETTLED:
                    self._reconcile_worker(worker, summary)
                else:
                    self.queue.fail(job)
                    summary.failed += 1
                    self._retire_worker(worker, summary)
                continue
            summary.dispatched += 1

    def _check_workers(self, summary: CycleSummary) -> None:
        for worker in self.workers:
            if worker.state not in (WorkerState.IDLE, WorkerState.SETTLED):
                continue
            worker.pump_output()
            if worker.state == WorkerState.IDLE and not worker.is_healthy():
                logger.warning("Worker %s failed liveness probe; retiring", worker.worker_id)
                self._retire_worker(worker, summary)

    def _reconcile(self, summary: CycleSummary) -> None:
        for worker in self.workers:
            if worker.state == WorkerState.SETTLED:
                self._reconcile_worker(worker, summary)

    def _reconcile_worker(self, worker: Worker, summary: CycleSummary) -> None:
        result = worker.settle_result
        if result is None:
            return
        job = result.job
        result_ok = result.ok and self._verify(job, result.output)
        self._record_settled_job(job=job, result_ok=result_ok, summary=summary)

        if result.failure_class in RECYCLE_FAILURES or not worker.is_healthy():
            self._retire_worker(worker, summary)
            return
        worker.release()

    def _record_settled_job(self, *, job: Job, result_ok: bool, summary: CycleSummary) -> None:
        if result_ok and job.status == JobStatus.VERIFYING:
            self.queue.complete(job)
            summary.completed += 1
            logger.debug("Job %s (%s) complete", job.job_id, job.name)
            return
        self.queue.fail(job)
        summary.failed += 1
        logger.warning("Job %s (%s) ended in error", job.job_id, job.name)

    def _verify(self, job: Job, output: list[str]) -> bool:
        if self.verifier is None:
            return True
        try:
            verified = bool(self.verifier(job, output))
        except Exception:  # noqa: BLE001
            logger.exception("Verifier raised for job %s", job.job_id)
            return False
        if not verified:
            logger.warning("Job %s (%s) failed verification", job.job_id, job.name)
        return verified

    def _idle_worker(self) -> Worker | None:
        for worker in self.workers:
            if worker.idle and worker.is_healthy():
                return worker
        return None

    def _has_busy_workers(self) -> bool:
        return any(worker.state in _BUSY_STATES for worker in self.workers)

    def _launch_worker(self) -> Worker:
        worker = self.worker_factory(
            settings=self.settings,
            on_settled=self._on_worker_settled,
            script_builder=self.script_builder,
        )
        with self._workers_lock:
            self._workers.append(worker)
        return worker

    def _retire_worker(self, worker: Worker, summary: CycleSummary) -> None:
        worker.stop()
        self._remove_worker(worker, summary)

    def _remove_worker(self, worker: Worker, summary: CycleSummary) -> None:
        with self._workers_lock:
            if worker not in self._workers:
                return
            self._workers.remove(worker)
        summary.workers_retired += 1
        logger.info("Worker %s retired", worker.worker_id)

    def _on_worker_settled(self, _worker: Worker) -> None:
        self._settled.set()

    def _wait_for_activity(self, *, idle: bool) -> None:
        deadline = time.monotonic() + self.settings.scheduler.poll_interval_seconds
        while not self._stop_requested.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            if self._settled.wait(timeout=min(_WAIT_SLICE_SECONDS, remaining)):
                return
            if idle and self.queue.non_empty.is_set():
                return

    def _sleep_with_stop(self, seconds: float) -> None:
        self._stop_requested.wait(timeout=max(0.0, seconds))

    def _request_stop(self, *, signal_name: str | None = None) -> None:
        if signal_name is not None:
            logger.info("Scheduler stop requested by %s", signal_name)
        self._stop_requested.set()
        self._settled.set()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
