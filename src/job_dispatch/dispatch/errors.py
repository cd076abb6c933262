"""Exceptions raised inside the dispatch engine."""

from __future__ import annotations


class DispatchError(RuntimeError):
    """Base class for dispatch engine errors."""


class WorkerLaunchError(DispatchError):
    """Worker executable could not be started."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class WorkerProcessError(DispatchError):
    """Worker process is gone or its stdin is no longer writable."""


class WorkerBusyError(DispatchError):
    """Dispatch was attempted on a worker that is not idle."""


class InvalidTransitionError(DispatchError):
    """Job status change would move the lifecycle backwards."""
