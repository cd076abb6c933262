"""Job dispatch onto long-lived external worker processes.

Why not multiprocessing.Pool / concurrent.futures?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The workers here are not Python callables but opaque console executables that
are expensive to start and speak a line protocol on stdio. A job is a script
written to an already running process, and completion is only observable as a
marker line echoed back. Key responsibilities no generic pool covers:

- One process per worker for its whole lifetime, reused across jobs.
- Completion detection from output, failure detection from output patterns.
- Recycling workers that hang, crash, or time out, without losing the job status.
- FIFO admission with a bounded number of assignments per scheduler cycle.
"""
