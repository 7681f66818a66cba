"""Turn human feedback on finished tasks into episode records."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from taskloop.coordinator.models import TaskView, ThreadMessage
from taskloop.coordinator.output_fallback import parse_json_object
from taskloop.coordinator.prompts import render_prompt
from taskloop.learning.models import EpisodeCreate, EpisodeDecision, FeedbackType
from taskloop.learning.prompts import EPISODE_PROMPT
from taskloop.learning.repository import LearningRepository
from taskloop.learning.synthesis import SynthesisClient

logger = logging.getLogger(__name__)

RESULT_EXCERPT_CHARS = 2_000
NO_DIRECT_INPUT = "(no direct input)"


@dataclass(slots=True)
class RecorderSummary:
    examined: int = 0
    captured: int = 0
    skipped: int = 0
    retry_later: int = 0


class EpisodeRecorder:
    """Evaluates each rated task at most once and records reusable signals."""

    def __init__(self, *, repository: LearningRepository, client: SynthesisClient) -> None:
        self.repository = repository
        self.client = client

    def poll_once(self, *, limit: int | None = None) -> RecorderSummary:
        summary = RecorderSummary()
        tasks = self.repository.list_unprocessed_feedback(limit=limit)
        if tasks:
            logger.info("Found %s task(s) with unprocessed feedback", len(tasks))
        for task in tasks:
            summary.examined += 1
            outcome = self.process_task(task)
            if outcome == "captured":
                summary.captured += 1
            elif outcome == "skipped":
                summary.skipped += 1
            else:
                summary.retry_later += 1
        return summary

    def process_task(self, task: TaskView) -> str:
        """Return ``captured``, ``skipped`` or ``retry`` for one rated task."""

        logger.info("Processing feedback for %r (rating=%s)", task.title, task.rating)
        response = self.client.complete(build_episode_prompt(task))
        decision = parse_episode_decision(response) if response is not None else None
        if decision is None:
            logger.warning("No usable episode decision for task %s, will retry", task.task_id)
            return "retry"

        if not decision.should_capture:
            reason = decision.skip_reason or "not a reusable signal"
            logger.info("Skipping task %s: %s", task.task_id, reason)
            self.repository.mark_feedback_processed(task_id=task.task_id, reason=reason)
            return "skipped"

        feedback_type = decision.feedback_type or FeedbackType.CORRECTION
        episode = self.repository.record_episode(
            EpisodeCreate(
                source_task_id=task.task_id,
                narrative=decision.narrative,
                feedback_type=feedback_type,
                user_input=build_user_input(task),
                project_type=decision.project_type,
                project_path=task.project_path,
                work_context=decision.work_context,
                tags=decision.tags,
            ),
        )
        if episode is None:
            logger.info("Feedback for task %s was processed concurrently", task.task_id)
            return "skipped"
        logger.info(
            "Created %s episode %s: %s",
            episode.feedback_type.value,
            episode.episode_id,
            episode.narrative[:80],
        )
        return "captured"


def extract_user_feedback(messages: list[ThreadMessage]) -> str:
    return "\n".join(
        f"User: {message.content}" for message in messages if message.role == "user"
    )


def build_user_input(task: TaskView) -> str:
    parts = [task.rating_comment or "", extract_user_feedback(task.messages)]
    text = "\n".join(part for part in parts if part).strip()
    return text or NO_DIRECT_INPUT


def build_episode_prompt(task: TaskView) -> str:
    return render_prompt(
        EPISODE_PROMPT,
        {
            "TASK_TYPE": task.task_type,
            "TASK_TITLE": task.title,
            "TASK_DESCRIPTION": task.description or "(none)",
            "PROJECT_PATH": task.project_path or "(none)",
            "RATING": str(task.rating) if task.rating is not None else "N/A",
            "RATING_TAGS": ", ".join(task.rating_tags) or "(none)",
            "RATING_COMMENT": task.rating_comment or "(none)",
            "THREAD_MESSAGES": extract_user_feedback(task.messages) or "(no thread messages)",
            "TASK_RESULT": task.result[:RESULT_EXCERPT_CHARS] if task.result else "(no result)",
        },
    )


def parse_episode_decision(text: str) -> EpisodeDecision | None:
    """Parse the synthesis verdict; None when it is missing or unusable."""

    payload = parse_json_object(text)
    if payload is None:
        return None
    should_capture = payload.get("shouldCapture", payload.get("should_capture"))
    if not isinstance(should_capture, bool):
        return None
    skip_reason = _optional_str(payload.get("skipReason", payload.get("skip_reason")))
    if not should_capture:
        return EpisodeDecision(should_capture=False, skip_reason=skip_reason)

    narrative = _optional_str(payload.get("narrative"))
    if narrative is None:
        return None
    raw_type = payload.get("feedbackType", payload.get("feedback_type"))
    try:
        feedback_type = FeedbackType(str(raw_type).strip().lower())
    except ValueError:
        return None
    tags = payload.get("tags")
    return EpisodeDecision(
        should_capture=True,
        narrative=narrative,
        feedback_type=feedback_type,
        project_type=_optional_str(payload.get("projectType", payload.get("project_type"))),
        work_context=_optional_str(payload.get("workContext", payload.get("work_context"))),
        tags=[tag.strip() for tag in tags if isinstance(tag, str) and tag.strip()]
        if isinstance(tags, list)
        else [],
        skip_reason=skip_reason,
    )


def _optional_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None
