"""Runtime configuration for the dispatch engine."""

from __future__ import annotations

import logging
import os
import shlex
import sys
from dataclasses import dataclass, field

from job_dispatch.dispatch.failure_classifier import (
    DEFAULT_FAILURE_PATTERNS,
    validate_failure_patterns,
)


def default_worker_command() -> str:
    return f"{shlex.quote(sys.executable)} -m job_dispatch.dispatch.echo_worker"


@dataclass(slots=True)
class WorkerSettings:
    """External worker process settings."""

    command: str = field(default_factory=default_worker_command)
    stop_timeout_seconds: float = 5.0
    log_limit: int = 2_000
    output_buffer_lines: int = 1_000


@dataclass(slots=True)
class SchedulerSettings:
    """Scheduler loop and pool sizing settings."""

    max_workers: int = 1
    max_dispatch_per_cycle: int = 1
    poll_interval_seconds: float = 5.0
    job_timeout_seconds: float = 600.0
    graceful_shutdown_seconds: float = 30.0
    completed_limit: int = 1_000


@dataclass(slots=True)
class ProtocolSettings:
    """Line protocol spoken with the worker executable."""

    exit_command: str = "exit"
    probe_template: str = "echo {marker}"
    done_marker_template: str = "__job_done__ {job_id}"
    failure_patterns: tuple[str, ...] = DEFAULT_FAILURE_PATTERNS

    def marker_for(self, job_id: str) -> str:
        return self.done_marker_template.format(job_id=job_id)

    def probe_for(self, job_id: str) -> str:
        return self.probe_template.format(marker=self.marker_for(job_id), job_id=job_id)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    worker: WorkerSettings = field(default_factory=WorkerSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    protocol: ProtocolSettings = field(default_factory=ProtocolSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            worker=WorkerSettings(
                command=os.getenv("JOB_DISPATCH_WORKER_COMMAND", "").strip()
                or default_worker_command(),
                stop_timeout_seconds=_env_float("JOB_DISPATCH_WORKER_STOP_TIMEOUT_SECONDS", "5"),
                log_limit=_env_int("JOB_DISPATCH_WORKER_LOG_LIMIT", "2000"),
                output_buffer_lines=_env_int("JOB_DISPATCH_OUTPUT_BUFFER_LINES", "1000"),
            ),
            scheduler=SchedulerSettings(
                max_workers=_env_int("JOB_DISPATCH_MAX_WORKERS", "1"),
                max_dispatch_per_cycle=_env_int("JOB_DISPATCH_DISPATCH_PER_CYCLE", "1"),
                poll_interval_seconds=_env_float("JOB_DISPATCH_POLL_INTERVAL_SECONDS", "5.0"),
                job_timeout_seconds=_env_float("JOB_DISPATCH_JOB_TIMEOUT_SECONDS", "600"),
                graceful_shutdown_seconds=_env_float(
                    "JOB_DISPATCH_GRACEFUL_SHUTDOWN_SECONDS",
                    "30",
                ),
                completed_limit=_env_int("JOB_DISPATCH_COMPLETED_LIMIT", "1000"),
            ),
            protocol=ProtocolSettings(
                exit_command=os.getenv("JOB_DISPATCH_EXIT_COMMAND", "exit"),
                probe_template=os.getenv("JOB_DISPATCH_PROBE_TEMPLATE", "echo {marker}"),
                done_marker_template=os.getenv(
                    "JOB_DISPATCH_DONE_MARKER_TEMPLATE",
                    "__job_done__ {job_id}",
                ),
                failure_patterns=_collect_failure_patterns(),
            ),
            log_level=os.getenv("JOB_DISPATCH_LOG_LEVEL", "INFO").strip().upper(),
        )

    def validate(self) -> None:
        """Raise configuration error for values the scheduler cannot run with."""

        if not self.worker.command.strip():
            raise ValueError("JOB_DISPATCH_WORKER_COMMAND must not be empty.")
        if self.worker.stop_timeout_seconds < 0:
            raise ValueError("JOB_DISPATCH_WORKER_STOP_TIMEOUT_SECONDS must be >= 0.")
        if self.worker.log_limit <= 0:
            raise ValueError("JOB_DISPATCH_WORKER_LOG_LIMIT must be > 0.")
        if self.worker.output_buffer_lines <= 0:
            raise ValueError("JOB_DISPATCH_OUTPUT_BUFFER_LINES must be > 0.")
        if self.scheduler.max_workers <= 0:
            raise ValueError("JOB_DISPATCH_MAX_WORKERS must be > 0.")
        if self.scheduler.max_dispatch_per_cycle <= 0:
            raise ValueError("JOB_DISPATCH_DISPATCH_PER_CYCLE must be > 0.")
        if self.scheduler.poll_interval_seconds < 0:
            raise ValueError("JOB_DISPATCH_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.scheduler.job_timeout_seconds <= 0:
            raise ValueError("JOB_DISPATCH_JOB_TIMEOUT_SECONDS must be > 0.")
        if self.scheduler.graceful_shutdown_seconds < 0:
            raise ValueError("JOB_DISPATCH_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.scheduler.completed_limit <= 0:
            raise ValueError("JOB_DISPATCH_COMPLETED_LIMIT must be > 0.")
        if not self.protocol.exit_command.strip():
            raise ValueError("JOB_DISPATCH_EXIT_COMMAND must not be empty.")
        if "{job_id}" not in self.protocol.done_marker_template:
            raise ValueError("JOB_DISPATCH_DONE_MARKER_TEMPLATE must include {job_id}.")
        if "{marker}" not in self.protocol.probe_template:
            raise ValueError("JOB_DISPATCH_PROBE_TEMPLATE must include {marker}.")
        try:
            self.protocol.probe_for("validate")
        except (KeyError, IndexError, ValueError) as error:
            raise ValueError(
                f"Unsupported placeholder in JOB_DISPATCH_PROBE_TEMPLATE or "
                f"JOB_DISPATCH_DONE_MARKER_TEMPLATE: {error}",
            ) from error
        validate_failure_patterns(self.protocol.failure_patterns)
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Invalid JOB_DISPATCH_LOG_LEVEL: {self.log_level!r}")


def _collect_failure_patterns() -> tuple[str, ...]:
    raw = os.getenv("JOB_DISPATCH_FAILURE_PATTERNS")
    if raw is None:
        return DEFAULT_FAILURE_PATTERNS
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default).strip()
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"{name} must be an integer, got {raw!r}.") from error


def _env_float(name: str, default: str) -> float:
    raw = os.getenv(name, default).strip()
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"{name} must be a number, got {raw!r}.") from error
