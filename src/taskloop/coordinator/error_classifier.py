"""Deterministic classification of agent execution failures."""

from __future__ import annotations

from dataclasses import dataclass

from taskloop.coordinator.models import ErrorCategory, ErrorConfidence

TIMEOUT_EXIT_CODE = 124
OOM_EXIT_CODE = 137

_TIMEOUT_PATTERNS: tuple[str, ...] = ("timed out", "timeout")
_OOM_PATTERNS: tuple[str, ...] = ("out of memory", "oom")
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "429",
    "too many requests",
    "overloaded",
)
_PERMISSION_PATTERNS: tuple[str, ...] = (
    "eacces",
    "permission denied",
    "access denied",
)
_DEPENDENCY_PATTERNS: tuple[str, ...] = (
    "enoent",
    "not found",
    "no such file",
    "module not found",
    "cannot find module",
)

_DESCRIPTIONS: dict[ErrorCategory, str] = {
    ErrorCategory.CANCELLED: "Task was cancelled by the user.",
    ErrorCategory.TIMEOUT: "Execution exceeded the time limit.",
    ErrorCategory.OOM: "Process ran out of memory.",
    ErrorCategory.RATE_LIMIT: "Upstream API rate limit or overload; retry later.",
    ErrorCategory.PERMISSION_DENIED: "Missing file or system permissions.",
    ErrorCategory.DEPENDENCY_ERROR: "A required file, command, or module is missing.",
    ErrorCategory.CRASH: "Process exited with an unexpected error.",
    ErrorCategory.UNKNOWN: "Failure cause could not be determined.",
}


@dataclass(slots=True, frozen=True)
class ErrorClassification:
    """Normalized failure classification result."""

    category: ErrorCategory
    confidence: ErrorConfidence
    matched_pattern: str | None = None

    def to_event_details(self) -> dict[str, object]:
        return {
            "category": self.category.value,
            "confidence": self.confidence.value,
            "matched_pattern": self.matched_pattern,
        }


def classify_error(
    *,
    exit_code: int | None,
    stderr: str,
    was_cancelled: bool = False,
) -> ErrorClassification:
    """Classify a failed execution; the first matching rule wins."""

    if was_cancelled:
        return ErrorClassification(ErrorCategory.CANCELLED, ErrorConfidence.HIGH)

    haystack = stderr.lower()

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if exit_code == TIMEOUT_EXIT_CODE or pattern is not None:
        return ErrorClassification(ErrorCategory.TIMEOUT, ErrorConfidence.HIGH, pattern)

    pattern = _first_match(haystack, _OOM_PATTERNS)
    if exit_code == OOM_EXIT_CODE or pattern is not None:
        return ErrorClassification(ErrorCategory.OOM, ErrorConfidence.HIGH, pattern)

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return ErrorClassification(ErrorCategory.RATE_LIMIT, ErrorConfidence.HIGH, pattern)

    pattern = _first_match(haystack, _PERMISSION_PATTERNS)
    if pattern is not None:
        return ErrorClassification(
            ErrorCategory.PERMISSION_DENIED,
            ErrorConfidence.HIGH,
            pattern,
        )

    pattern = _first_match(haystack, _DEPENDENCY_PATTERNS)
    if pattern is not None:
        return ErrorClassification(
            ErrorCategory.DEPENDENCY_ERROR,
            ErrorConfidence.MEDIUM,
            pattern,
        )

    if exit_code is not None and exit_code != 0:
        return ErrorClassification(ErrorCategory.CRASH, ErrorConfidence.LOW)
    return ErrorClassification(ErrorCategory.UNKNOWN, ErrorConfidence.LOW)


def describe_error_category(category: ErrorCategory) -> str:
    """Human-readable explanation for operators."""

    return _DESCRIPTIONS[category]


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
