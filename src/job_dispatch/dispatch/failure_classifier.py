"""Deterministic detection of job failures reported on worker output."""

from __future__ import annotations

import re
from dataclasses import dataclass

DEFAULT_FAILURE_PATTERNS: tuple[str, ...] = (r"^error\b",)


@dataclass(slots=True, frozen=True)
class OutputFailureMatch:
    """Failure line found in worker output."""

    stream: str
    line: str
    matched_pattern: str

    def to_log_details(self) -> dict[str, str]:
        return {
            "stream": self.stream,
            "matched_pattern": self.matched_pattern,
            "line": self.line,
        }


class OutputFailureClassifier:
    """Match worker output lines against configured failure regexes."""

    def __init__(self, patterns: tuple[str, ...] = DEFAULT_FAILURE_PATTERNS) -> None:
        self.patterns = patterns
        self._compiled = tuple(
            (pattern, re.compile(pattern, re.IGNORECASE)) for pattern in patterns
        )

    def classify(self, *, stream: str, line: str) -> OutputFailureMatch | None:
        text = line.strip()
        for pattern, compiled in self._compiled:
            if compiled.search(text):
                return OutputFailureMatch(stream=stream, line=text, matched_pattern=pattern)
        return None


def validate_failure_patterns(patterns: tuple[str, ...]) -> None:
    """Raise ValueError for any pattern that is not a valid regex."""

    for pattern in patterns:
        try:
            re.compile(pattern)
        except re.error as error:
            raise ValueError(f"Invalid failure pattern {pattern!r}: {error}") from error
