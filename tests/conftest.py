"""Shared test fixtures."""

from __future__ import annotations

import sys
import time
from collections.abc import Callable, Iterator
from dataclasses import replace

import pytest

from job_dispatch.config import SchedulerSettings, Settings, WorkerSettings
from job_dispatch.dispatch.scheduler import Scheduler
from job_dispatch.dispatch.work_queue import WorkQueue

_ECHO_WORKER_COMMAND = f'"{sys.executable}" -m job_dispatch.dispatch.echo_worker'


def _wait_until(predicate: Callable[[], bool], *, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _make_settings(**scheduler_overrides: object) -> Settings:
    scheduler = replace(
        SchedulerSettings(
            poll_interval_seconds=0.05,
            job_timeout_seconds=20.0,
            graceful_shutdown_seconds=2.0,
        ),
        **scheduler_overrides,
    )
    return Settings(
        worker=WorkerSettings(command=_ECHO_WORKER_COMMAND, stop_timeout_seconds=2.0),
        scheduler=scheduler,
    )


@pytest.fixture()
def echo_worker_command() -> str:
    """Command line that starts the bundled echo worker with this interpreter."""
    return _ECHO_WORKER_COMMAND


@pytest.fixture()
def wait_until() -> Callable[..., bool]:
    """Poll a predicate until it holds or the timeout (default 10s) expires."""
    return _wait_until


@pytest.fixture()
def settings_factory() -> Callable[..., Settings]:
    """Fast-cycling echo-worker settings; keyword arguments override scheduler fields."""
    return _make_settings


@pytest.fixture()
def settings() -> Settings:
    return _make_settings()


@pytest.fixture()
def scheduler_factory() -> Iterator[Callable[..., Scheduler]]:
    """Build schedulers wired to the echo worker and stop them after the test."""

    created: list[Scheduler] = []

    def _factory(*, settings: Settings | None = None, **kwargs: object) -> Scheduler:
        effective = settings or _make_settings()
        queue = WorkQueue(completed_limit=effective.scheduler.completed_limit)
        scheduler = Scheduler(queue, effective, **kwargs)
        created.append(scheduler)
        return scheduler

    yield _factory
    for scheduler in created:
        scheduler.stop(timeout=5)
