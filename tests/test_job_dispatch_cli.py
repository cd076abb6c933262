from __future__ import annotations

import allure
import pytest
from click.testing import CliRunner

from job_dispatch import __version__
from job_dispatch.dispatch.controllers import parse_job_spec
from job_dispatch.main import job_dispatch

pytestmark = [
    allure.epic("Dispatch Engine"),
    allure.feature("CLI"),
]


@pytest.fixture(autouse=True)
def _fast_scheduler(monkeypatch, echo_worker_command: str) -> None:
    monkeypatch.setenv("JOB_DISPATCH_POLL_INTERVAL_SECONDS", "0.05")
    monkeypatch.setenv("JOB_DISPATCH_GRACEFUL_SHUTDOWN_SECONDS", "1")
    monkeypatch.setenv("JOB_DISPATCH_WORKER_STOP_TIMEOUT_SECONDS", "2")
    monkeypatch.setenv("JOB_DISPATCH_WORKER_COMMAND", echo_worker_command)


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(job_dispatch, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_parse_job_spec_splits_script_lines() -> None:
    descriptor = parse_job_spec("sheet-A1= echo open ; echo plot ;")

    assert descriptor.name == "sheet-A1"
    assert descriptor.payload == ["echo open", "echo plot"]


@pytest.mark.parametrize("value", ["no-separator", "=echo a"])
def test_parse_job_spec_rejects_malformed_values(value: str) -> None:
    with pytest.raises(ValueError, match="Expected format"):
        parse_job_spec(value)


def test_run_dispatches_jobs_and_prints_status() -> None:
    runner = CliRunner()
    result = runner.invoke(
        job_dispatch,
        ["run", "--job", "first=echo a", "--job", "second=echo b;echo c"],
    )

    assert result.exit_code == 0, result.output
    lines = [line for line in result.output.splitlines() if line.endswith(" complete")]
    assert [line.split()[1] for line in lines] == ["first", "second"]
    summary = next(line for line in result.output.splitlines() if "Dispatch summary:" in line)
    assert "complete=2" in summary
    assert "workers_created=1" in summary


def test_run_reports_failed_jobs_with_error_exit() -> None:
    runner = CliRunner()
    result = runner.invoke(
        job_dispatch,
        ["run", "--job", "broken=echo error: missing xref", "--job", "fine=echo ok"],
    )

    assert result.exit_code != 0
    assert " broken error" in result.output
    assert " fine complete" in result.output
    assert "One or more jobs did not complete" in result.output


def test_run_with_missing_worker_executable_fails_every_job() -> None:
    runner = CliRunner()
    result = runner.invoke(
        job_dispatch,
        [
            "run",
            "--worker-command",
            "/nonexistent/bin/drawing-console",
            "--job",
            "a=echo a",
            "--job",
            "b=echo b",
        ],
    )

    assert result.exit_code != 0
    assert "error=2" in result.output
    assert "workers_created=0" in result.output


def test_run_rejects_malformed_job() -> None:
    runner = CliRunner()
    result = runner.invoke(job_dispatch, ["run", "--job", "missing-separator"])

    assert result.exit_code == 2
    assert "Expected format" in result.output


def test_run_reports_malformed_numeric_env_as_usage_error(monkeypatch) -> None:
    monkeypatch.setenv("JOB_DISPATCH_MAX_WORKERS", "abc")
    runner = CliRunner()
    result = runner.invoke(job_dispatch, ["run", "--job", "a=echo a"])

    assert result.exit_code == 2
    assert "JOB_DISPATCH_MAX_WORKERS" in result.output
    assert not isinstance(result.exception, ValueError)


def test_group_rejects_invalid_env_log_level(monkeypatch) -> None:
    monkeypatch.setenv("JOB_DISPATCH_LOG_LEVEL", "chatty")
    runner = CliRunner()
    result = runner.invoke(job_dispatch, ["run", "--job", "a=echo a"])

    assert result.exit_code == 2
    assert "--log-level" in result.output
