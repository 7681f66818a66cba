"""Heuristic complexity classification of a task's textual scope.

Pure pattern matching over explicit inputs; the result only selects which
execution strategy block the agent receives.
"""

from __future__ import annotations

import re
from enum import Enum


class Scope(str, Enum):
    SIMPLE = "simple"
    COMPLEX = "complex"


ALWAYS_COMPLEX_TYPES = frozenset({"project"})
ALWAYS_SIMPLE_TYPES = frozenset({"research", "write", "usertask"})
SHORT_BUG_MAX_CHARS = 200
LONG_DESCRIPTION_CHARS = 500
MODERATE_DESCRIPTION_CHARS = 300
FEATURE_DESCRIPTION_CHARS = 150
COMPLEX_SIGNAL_THRESHOLD = 2

_MULTI_PHASE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"research\s+(then|and then|before)\s+(build|implement|create)", re.IGNORECASE),
    re.compile(r"first\s+.{5,}\s+then\s+", re.IGNORECASE),
    re.compile(r"phase\s*[12]", re.IGNORECASE),
    re.compile(r"step\s*1\b[\s\S]*step\s*2\b", re.IGNORECASE),
)
_ORCHESTRATION_KEYWORDS: tuple[str, ...] = (
    "integrate",
    "migration",
    "full-stack",
    "fullstack",
    "end-to-end",
    "microservice",
    "multi-service",
    "redesign",
    "overhaul",
    "rewrite from scratch",
    "rebuild",
)
_MULTIPLE_DELIVERABLES: tuple[re.Pattern[str], ...] = (
    re.compile(r"\band\b.*\band\b", re.IGNORECASE),
    re.compile(r"\d+\.\s+.+\n\d+\.\s+", re.MULTILINE),
    re.compile(r"both\s+.+\s+and\s+", re.IGNORECASE),
)


def analyze_scope(
    *,
    task_type: str,
    subtype: str | None,
    title: str,
    description: str | None,
) -> Scope:
    """Classify a task as simple or complex; rules are evaluated in fixed order."""

    kind = task_type.strip().lower()
    sub = (subtype or "").strip().lower()
    body = description or ""
    text = f"{title} {body}"
    desc_length = len(body)

    if kind in ALWAYS_COMPLEX_TYPES:
        return Scope.COMPLEX
    if kind in ALWAYS_SIMPLE_TYPES:
        return Scope.SIMPLE
    if _is_bug(kind, sub) and desc_length < SHORT_BUG_MAX_CHARS:
        return Scope.SIMPLE

    if any(pattern.search(text) for pattern in _MULTI_PHASE_PATTERNS):
        return Scope.COMPLEX
    if desc_length > LONG_DESCRIPTION_CHARS:
        return Scope.COMPLEX

    signals = count_moderate_signals(
        kind=kind,
        subtype=sub,
        text=text,
        desc_length=desc_length,
    )
    return Scope.COMPLEX if signals >= COMPLEX_SIGNAL_THRESHOLD else Scope.SIMPLE


def count_moderate_signals(*, kind: str, subtype: str, text: str, desc_length: int) -> int:
    lowered = text.lower()
    signals = 0
    if any(keyword in lowered for keyword in _ORCHESTRATION_KEYWORDS):
        signals += 1
    if any(pattern.search(text) for pattern in _MULTIPLE_DELIVERABLES):
        signals += 1
    if desc_length > MODERATE_DESCRIPTION_CHARS:
        signals += 1
    if _is_feature(kind, subtype) and desc_length > FEATURE_DESCRIPTION_CHARS:
        signals += 1
    return signals


def _is_bug(kind: str, subtype: str) -> bool:
    return kind == "bug" or (kind == "codechange" and subtype == "bug")


def _is_feature(kind: str, subtype: str) -> bool:
    return kind == "feature" or (kind == "codechange" and subtype == "feature")
