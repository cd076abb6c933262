"""CLI entrypoint for job-dispatch."""

import logging
import sys

import rich_click as click

from job_dispatch import __version__
from job_dispatch.dispatch.controllers import DispatchCliController, DispatchRunCommand
from job_dispatch.dispatch.echo_worker import serve

click.rich_click.USE_MARKDOWN = True
DISPATCH_CONTROLLER = DispatchCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="job-dispatch")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    envvar="JOB_DISPATCH_LOG_LEVEL",
    show_envvar=True,
    help="Logging level.",
)
def job_dispatch(log_level: str) -> None:
    """Dispatch jobs onto long-lived external worker processes."""

    level = log_level.upper()
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


@job_dispatch.command("run")
@click.option(
    "--job",
    "jobs",
    multiple=True,
    required=True,
    help="Job as NAME=LINE[;LINE...]. Lines are written to the worker stdin. Can be repeated.",
)
@click.option(
    "--worker-command",
    default=None,
    help="Worker executable command line. If omitted, JOB_DISPATCH_WORKER_COMMAND is used.",
)
@click.option(
    "--max-workers",
    type=click.IntRange(min=1),
    default=None,
    help="Upper bound on the worker pool size.",
)
@click.option(
    "--dispatch-per-cycle",
    type=click.IntRange(min=1),
    default=None,
    help="How many jobs a single scheduler cycle may assign.",
)
@click.option(
    "--poll-interval",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds the scheduler waits between cycles when nothing settles.",
)
@click.option(
    "--job-timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds before a running job is failed and its worker recycled.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many scheduler cycles even if jobs remain.",
)
def run(  # noqa: PLR0913
    jobs: tuple[str, ...],
    worker_command: str | None,
    max_workers: int | None,
    dispatch_per_cycle: int | None,
    poll_interval: float | None,
    job_timeout: float | None,
    max_cycles: int | None,
) -> None:
    """Submit jobs, run the scheduler until the queue drains, and print job status."""

    try:
        result = DISPATCH_CONTROLLER.run(
            DispatchRunCommand(
                jobs=jobs,
                worker_command=worker_command,
                max_workers=max_workers,
                dispatch_per_cycle=dispatch_per_cycle,
                poll_interval_seconds=poll_interval,
                job_timeout_seconds=job_timeout,
                max_cycles=max_cycles,
            ),
        )
    except ValueError as error:
        raise click.BadParameter(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("One or more jobs did not complete.")


@job_dispatch.command("echo-worker")
@click.option("--banner", default=None, help="Line printed on startup.")
def echo_worker(banner: str | None) -> None:
    """Run the bundled demo worker on stdin/stdout."""

    sys.exit(serve(sys.stdin, sys.stdout, sys.stderr, banner=banner))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    job_dispatch()
