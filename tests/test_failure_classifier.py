from __future__ import annotations

import allure
import pytest

from job_dispatch.dispatch.failure_classifier import (
    OutputFailureClassifier,
    validate_failure_patterns,
)

pytestmark = [
    allure.epic("Dispatch Engine"),
    allure.feature("Failure Detection"),
]


@pytest.mark.parametrize(
    "line",
    ["error: plot device not found", "ERROR layout missing", "  Error: bad xref  "],
)
def test_default_patterns_match_error_prefix(line: str) -> None:
    match = OutputFailureClassifier().classify(stream="stderr", line=line)

    assert match is not None
    assert match.matched_pattern == r"^error\b"
    assert match.line == line.strip()
    assert match.to_log_details()["stream"] == "stderr"


@pytest.mark.parametrize("line", ["no errors found", "errors=0", "ok echo"])
def test_default_patterns_ignore_regular_output(line: str) -> None:
    assert OutputFailureClassifier().classify(stream="stdout", line=line) is None


def test_custom_patterns_report_first_match() -> None:
    classifier = OutputFailureClassifier(("fatal", "unhandled exception"))

    match = classifier.classify(stream="stdout", line="Unhandled Exception in plot")

    assert match is not None
    assert match.matched_pattern == "unhandled exception"


def test_validate_failure_patterns_rejects_bad_regex() -> None:
    with pytest.raises(ValueError, match="Invalid failure pattern"):
        validate_failure_patterns(("[unclosed",))
