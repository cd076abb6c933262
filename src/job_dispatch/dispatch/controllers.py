"""Controllers for dispatch CLI commands."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, replace

from job_dispatch.config import Settings
from job_dispatch.dispatch.models import CycleSummary, JobDescriptor, JobStatus, JobView
from job_dispatch.dispatch.scheduler import Scheduler
from job_dispatch.dispatch.work_queue import WorkQueue

logger = logging.getLogger(__name__)

JOB_SCRIPT_SEPARATOR = ";"


@dataclass(slots=True)
class DispatchRunCommand:
    """CLI input for a run-until-drained dispatch session."""

    jobs: tuple[str, ...]
    worker_command: str | None = None
    max_workers: int | None = None
    dispatch_per_cycle: int | None = None
    poll_interval_seconds: float | None = None
    job_timeout_seconds: float | None = None
    max_cycles: int | None = None


@dataclass(slots=True)
class DispatchRunResult:
    """Rendered output lines plus overall success flag."""

    lines: list[str]
    success: bool


def parse_job_spec(value: str) -> JobDescriptor:
    """Parse ``NAME=LINE[;LINE...]`` into a job descriptor."""

    name, separator, script = value.partition("=")
    name = name.strip()
    if not separator or not name:
        raise ValueError(f"Invalid job {value!r}. Expected format 'NAME=LINE[;LINE...]'.")
    lines = [line.strip() for line in script.split(JOB_SCRIPT_SEPARATOR) if line.strip()]
    return JobDescriptor(name=name, payload=lines)


class DispatchCliController:
    """Coordinates queue, scheduler, and status rendering for CLI commands."""

    def run(self, command: DispatchRunCommand) -> DispatchRunResult:
        settings = _apply_overrides(Settings.from_env(), command)
        settings.validate()
        descriptors = [parse_job_spec(value) for value in command.jobs]

        queue = WorkQueue(completed_limit=max(settings.scheduler.completed_limit, len(descriptors)))
        scheduler = Scheduler(queue, settings)
        for descriptor in descriptors:
            scheduler.submit(descriptor)
        logger.info(
            "Dispatching %d jobs: max_workers=%d dispatch_per_cycle=%d",
            len(descriptors),
            settings.scheduler.max_workers,
            settings.scheduler.max_dispatch_per_cycle,
        )

        try:
            summary = scheduler.run_loop(max_cycles=command.max_cycles, until_drained=True)
        finally:
            summary_on_stop = scheduler.stop()
        summary.add(summary_on_stop)

        views = scheduler.get_status()
        lines = [_render_job(view) for view in views]
        lines.append(_render_summary(summary, views))
        success = all(view.status == JobStatus.COMPLETE for view in views)
        return DispatchRunResult(lines=lines, success=success)


def _apply_overrides(settings: Settings, command: DispatchRunCommand) -> Settings:
    worker = settings.worker
    if command.worker_command is not None:
        worker = replace(worker, command=command.worker_command)

    scheduler = settings.scheduler
    overrides: dict[str, object] = {}
    if command.max_workers is not None:
        overrides["max_workers"] = command.max_workers
    if command.dispatch_per_cycle is not None:
        overrides["max_dispatch_per_cycle"] = command.dispatch_per_cycle
    if command.poll_interval_seconds is not None:
        overrides["poll_interval_seconds"] = command.poll_interval_seconds
    if command.job_timeout_seconds is not None:
        overrides["job_timeout_seconds"] = command.job_timeout_seconds
    if overrides:
        scheduler = replace(scheduler, **overrides)
    return replace(settings, worker=worker, scheduler=scheduler)


def _render_job(view: JobView) -> str:
    return f"{view.job_id} {view.name} {view.status.value}"


def _render_summary(summary: CycleSummary, views: list[JobView]) -> str:
    counts = Counter(view.status for view in views)
    return (
        "Dispatch summary: "
        f"cycles={summary.cycles} dispatched={summary.dispatched} "
        f"complete={counts[JobStatus.COMPLETE]} error={counts[JobStatus.ERROR]} "
        f"waiting={counts[JobStatus.WAITING]} "
        f"workers_created={summary.workers_created} workers_retired={summary.workers_retired}"
    )
