from __future__ import annotations

import allure
import pytest

from job_dispatch.dispatch.errors import InvalidTransitionError
from job_dispatch.dispatch.models import (
    CycleSummary,
    Job,
    JobDescriptor,
    JobStatus,
    JobView,
)

pytestmark = [
    allure.epic("Dispatch Engine"),
    allure.feature("Job Lifecycle"),
]


def test_job_from_descriptor_starts_waiting_with_unique_id() -> None:
    first = Job.from_descriptor(JobDescriptor(name="plot", payload=["echo a"]))
    second = Job.from_descriptor(JobDescriptor(name="plot", payload=["echo a"]))

    assert first.status == JobStatus.WAITING
    assert first.job_id != second.job_id
    assert first.view() == JobView(job_id=first.job_id, name="plot", status=JobStatus.WAITING)


def test_job_transitions_forward_through_full_lifecycle() -> None:
    job = Job(name="plot")
    job.transition(JobStatus.RUNNING)
    job.transition(JobStatus.VERIFYING)
    job.transition(JobStatus.COMPLETE)

    assert job.is_terminal
    assert job.status == JobStatus.COMPLETE


@pytest.mark.parametrize(
    ("path", "target"),
    [
        ((JobStatus.RUNNING, JobStatus.VERIFYING), JobStatus.RUNNING),
        ((JobStatus.RUNNING,), JobStatus.WAITING),
        ((JobStatus.RUNNING, JobStatus.VERIFYING, JobStatus.COMPLETE), JobStatus.ERROR),
        ((JobStatus.ERROR,), JobStatus.RUNNING),
        ((), JobStatus.VERIFYING),
    ],
)
def test_job_rejects_backward_or_skipping_transitions(
    path: tuple[JobStatus, ...],
    target: JobStatus,
) -> None:
    job = Job(name="plot")
    for status in path:
        job.transition(status)

    with pytest.raises(InvalidTransitionError):
        job.transition(target)


def test_job_can_fail_before_it_runs() -> None:
    job = Job(name="plot")
    job.transition(JobStatus.ERROR)

    assert job.status == JobStatus.ERROR


def test_cycle_summary_add_accumulates_counters() -> None:
    total = CycleSummary()
    total.add(CycleSummary(cycles=1, dispatched=1, workers_created=1))
    total.add(CycleSummary(cycles=1, completed=1, idle_cycles=1))

    assert total == CycleSummary(
        cycles=2,
        dispatched=1,
        completed=1,
        workers_created=1,
        idle_cycles=1,
    )
