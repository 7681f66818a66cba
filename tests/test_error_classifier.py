from __future__ import annotations

import allure
import pytest

from taskloop.coordinator.error_classifier import classify_error, describe_error_category
from taskloop.coordinator.models import ErrorCategory, ErrorConfidence

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Failure Classification"),
]


def test_cancellation_wins_over_everything() -> None:
    result = classify_error(exit_code=124, stderr="rate limit exceeded", was_cancelled=True)

    assert result.category == ErrorCategory.CANCELLED
    assert result.confidence == ErrorConfidence.HIGH


@pytest.mark.parametrize(
    ("exit_code", "stderr", "expected"),
    [
        (124, "", ErrorCategory.TIMEOUT),
        (1, "Operation timed out while waiting", ErrorCategory.TIMEOUT),
        (137, "", ErrorCategory.OOM),
        (1, "FATAL: JavaScript heap out of memory", ErrorCategory.OOM),
        (1, "429 Too Many Requests", ErrorCategory.RATE_LIMIT),
        (1, "API is overloaded", ErrorCategory.RATE_LIMIT),
        (1, "Error: EACCES: permission denied, open '/etc/x'", ErrorCategory.PERMISSION_DENIED),
        (1, "Cannot find module 'left-pad'", ErrorCategory.DEPENDENCY_ERROR),
        (127, "bash: claude: command not found", ErrorCategory.DEPENDENCY_ERROR),
        (2, "segfault somewhere", ErrorCategory.CRASH),
    ],
)
def test_classification_by_exit_code_and_stderr(
    exit_code: int,
    stderr: str,
    expected: ErrorCategory,
) -> None:
    assert classify_error(exit_code=exit_code, stderr=stderr).category == expected


def test_timeout_rule_precedes_rate_limit_when_both_match() -> None:
    result = classify_error(exit_code=1, stderr="request timeout after rate limit backoff")

    assert result.category == ErrorCategory.TIMEOUT
    assert result.matched_pattern == "timeout"


def test_dependency_errors_have_medium_confidence() -> None:
    result = classify_error(exit_code=1, stderr="ENOENT: no such file or directory")

    assert result.category == ErrorCategory.DEPENDENCY_ERROR
    assert result.confidence == ErrorConfidence.MEDIUM


def test_zero_exit_without_signal_is_unknown_low() -> None:
    result = classify_error(exit_code=0, stderr="")

    assert result.category == ErrorCategory.UNKNOWN
    assert result.confidence == ErrorConfidence.LOW


def test_missing_exit_code_is_unknown() -> None:
    assert classify_error(exit_code=None, stderr="something odd").category == ErrorCategory.UNKNOWN


def test_nonzero_exit_without_known_pattern_is_low_confidence_crash() -> None:
    result = classify_error(exit_code=3, stderr="kaput")

    assert result.category == ErrorCategory.CRASH
    assert result.confidence == ErrorConfidence.LOW
    assert result.to_event_details() == {
        "category": "crash",
        "confidence": "low",
        "matched_pattern": None,
    }


def test_every_category_has_an_operator_description() -> None:
    for category in ErrorCategory:
        assert describe_error_category(category)
