"""Local demo worker executable for dispatch integration tests.

Reads commands from stdin, one per line:

- ``echo TEXT``: print TEXT to stdout
- ``fail TEXT``: print ``error: TEXT`` to stderr
- ``sleep SECONDS``: pause before reading the next command
- ``crash [CODE]``: exit immediately with CODE (default 3)
- ``exit``: shut down cleanly

Anything else is acknowledged on stdout as ``ok <line>``.
"""

from __future__ import annotations

import argparse
import sys
import time
from typing import TextIO


def serve(stdin: TextIO, stdout: TextIO, stderr: TextIO, *, banner: str | None = None) -> int:
    """Process commands until ``exit`` or end of input."""

    if banner:
        print(banner, file=stdout, flush=True)
    for raw in stdin:
        line = raw.strip()
        if not line:
            continue
        command, _, argument = line.partition(" ")
        if command == "exit":
            return 0
        if command == "echo":
            print(argument, file=stdout, flush=True)
        elif command == "fail":
            print(f"error: {argument}", file=stderr, flush=True)
        elif command == "sleep":
            time.sleep(float(argument or "0"))
        elif command == "crash":
            return int(argument or "3")
        else:
            print(f"ok {line}", file=stdout, flush=True)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Line-oriented demo worker.")
    parser.add_argument("--banner", default=None, help="Line printed on startup.")
    args = parser.parse_args(argv)
    return serve(sys.stdin, sys.stdout, sys.stderr, banner=args.banner)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
