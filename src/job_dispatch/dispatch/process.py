"""Subprocess channel to one long-lived worker executable."""

from __future__ import annotations

import logging
import os
import queue
import shlex
import subprocess
import threading
from dataclasses import dataclass
from typing import IO

from job_dispatch.dispatch.errors import WorkerLaunchError, WorkerProcessError

logger = logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"


@dataclass(slots=True, frozen=True)
class OutputLine:
    """One line read from a worker stream; ``text`` is None at end of stream."""

    stream: str
    text: str | None

    @property
    def eof(self) -> bool:
        return self.text is None


def build_worker_argv(command: str, *, os_name: str | None = None) -> list[str]:
    stripped = command.strip()
    if not stripped:
        raise WorkerLaunchError("Worker command is empty.", transient=False)
    posix = (os_name or os.name) != "nt"
    argv = shlex.split(stripped, posix=posix)
    if not argv:
        raise WorkerLaunchError("Worker command rendered empty argv.", transient=False)
    return argv


class WorkerProcess:
    """Own one external process with redirected stdio.

    stdout and stderr are each read by a daemon thread that pushes lines into a
    bounded queue, so callers never block on a pipe that has no data.
    """

    def __init__(
        self,
        process: subprocess.Popen[str],
        *,
        exit_command: str = "exit",
        output_buffer_lines: int = 1000,
    ) -> None:
        self._process = process
        self.exit_command = exit_command
        self._lines: queue.Queue[OutputLine] = queue.Queue(maxsize=max(1, output_buffer_lines))
        self._stdin_lock = threading.Lock()
        self._readers = [
            self._start_reader(process.stdout, STDOUT),
            self._start_reader(process.stderr, STDERR),
        ]

    @classmethod
    def launch(
        cls,
        argv: list[str],
        *,
        exit_command: str = "exit",
        output_buffer_lines: int = 1000,
        env: dict[str, str] | None = None,
    ) -> WorkerProcess:
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=env,
            )
        except FileNotFoundError as error:
            raise WorkerLaunchError(
                f"Worker executable not found: {argv[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise WorkerLaunchError(
                f"Worker executable failed to start: {error}",
                transient=True,
            ) from error
        logger.debug("Worker process started pid=%s argv=%s", process.pid, argv[0])
        return cls(
            process,
            exit_command=exit_command,
            output_buffer_lines=output_buffer_lines,
        )

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.poll()

    def is_alive(self) -> bool:
        return self._process.poll() is None

    def write_line(self, text: str) -> None:
        stdin = self._process.stdin
        if stdin is None:
            raise WorkerProcessError("Worker stdin is not available.")
        with self._stdin_lock:
            try:
                stdin.write(f"{text}\n")
                stdin.flush()
            except (BrokenPipeError, ValueError, OSError) as error:
                raise WorkerProcessError(f"Worker stdin write failed: {error}") from error

    def read_line(self, timeout: float) -> OutputLine | None:
        try:
            return self._lines.get(timeout=max(0.0, timeout))
        except queue.Empty:
            return None

    def drain(self) -> list[OutputLine]:
        drained: list[OutputLine] = []
        while True:
            try:
                drained.append(self._lines.get_nowait())
            except queue.Empty:
                return drained

    def terminate(self, timeout: float) -> int | None:
        """Ask the process to exit, then escalate to terminate and kill."""

        if self.is_alive():
            try:
                self.write_line(self.exit_command)
            except WorkerProcessError:
                logger.debug("Worker pid=%s stdin closed before exit command", self.pid)
            try:
                self._process.wait(timeout=max(0.0, timeout))
            except subprocess.TimeoutExpired:
                _terminate_process(self._process)
        self._close_stdin()
        # Unblock readers stuck on a full buffer so they can reach EOF.
        self.drain()
        return self._process.poll()

    def _close_stdin(self) -> None:
        stdin = self._process.stdin
        if stdin is None:
            return
        with self._stdin_lock:
            try:
                stdin.close()
            except OSError:
                pass

    def _start_reader(self, stream: IO[str] | None, name: str) -> threading.Thread:
        thread = threading.Thread(
            target=self._pump,
            args=(stream, name),
            daemon=True,
            name=f"worker-{self._process.pid}-{name}",
        )
        thread.start()
        return thread

    def _pump(self, stream: IO[str] | None, name: str) -> None:
        if stream is not None:
            try:
                for raw in iter(stream.readline, ""):
                    self._lines.put(OutputLine(stream=name, text=raw.rstrip("\r\n")))
            except (OSError, ValueError):
                logger.debug("Worker pid=%s %s reader stopped", self._process.pid, name)
        self._lines.put(OutputLine(stream=name, text=None))


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)

