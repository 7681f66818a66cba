"""State machine for long-running exploratory idea tasks.

none -> running -> awaiting_feedback, re-entered through pending_variant
(the human picked a discovered alternative) or pending_feedback (free-text
correction). A failed or timed out run ends in failed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from taskloop.coordinator.error_classifier import ErrorClassification
from taskloop.coordinator.execution import AgentInvoker
from taskloop.coordinator.models import (
    ErrorCategory,
    ErrorConfidence,
    IdeaRunOutcome,
    IdeaVariant,
    TaskStatus,
    TaskView,
    WorkflowMode,
    WorkflowStatus,
)
from taskloop.coordinator.output_fallback import parse_trailing_json_block
from taskloop.coordinator.prompts import build_idea_prompt
from taskloop.coordinator.repository import TaskRepository, variants_from_payload

logger = logging.getLogger(__name__)

IDEA_OUTPUT_KEYS = ("assumptions", "variants")


@dataclass(slots=True)
class IdeaOutput:
    """Structured block parsed from an idea run; None means the key was absent."""

    assumptions: dict[str, str] | None = None
    variants: list[IdeaVariant] | None = None
    implemented: int | None = None
    epic_id: str | None = None


def parse_idea_output(text: str) -> IdeaOutput:
    """Best-effort parse of the agent's trailing JSON block. Never raises."""

    payload = parse_trailing_json_block(text, expected_keys=IDEA_OUTPUT_KEYS)
    output = IdeaOutput()

    assumptions = payload.get("assumptions")
    if isinstance(assumptions, dict):
        output.assumptions = {
            str(key): str(value) for key, value in assumptions.items() if value is not None
        }

    variants = payload.get("variants")
    if isinstance(variants, list):
        output.variants = variants_from_payload(variants)

    implemented = payload.get("implemented")
    if isinstance(implemented, int) and not isinstance(implemented, bool) and implemented >= 0:
        output.implemented = implemented

    epic_id = payload.get("epicId", payload.get("epic_id"))
    if isinstance(epic_id, str) and epic_id.strip():
        output.epic_id = epic_id.strip()
    return output


def route_idea(task: TaskView) -> WorkflowMode | None:
    """Pick the entry edge for a claimed idea, or None when its state is inconsistent."""

    if task.workflow_status == WorkflowStatus.NONE:
        return WorkflowMode.NEW
    if (
        task.workflow_status == WorkflowStatus.PENDING_VARIANT
        and task.selected_variant_index is not None
    ):
        return WorkflowMode.VARIANT
    if task.workflow_status == WorkflowStatus.PENDING_FEEDBACK and task.user_feedback:
        return WorkflowMode.FEEDBACK
    return None


class IdeaWorkflow:
    """Runs one idea iteration for a task the coordinator already claimed."""

    def __init__(
        self,
        *,
        repository: TaskRepository,
        invoker: AgentInvoker,
        timeout_seconds: int,
        rules_block: Callable[[TaskView], str] | None = None,
    ) -> None:
        self.repository = repository
        self.invoker = invoker
        self.timeout_seconds = timeout_seconds
        self.rules_block = rules_block

    def run(
        self,
        task: TaskView,
        *,
        should_cancel: Callable[[], bool] | None = None,
        shutdown_requested: Callable[[], bool] | None = None,
    ) -> TaskStatus | None:
        """Return the status the task ended in, or None if the claim was lost."""

        claim_token = task.claim_token or ""
        mode = route_idea(task)
        if mode is None:
            message = (
                "Idea task is in an inconsistent workflow state: "
                f"workflow_status={task.workflow_status.value} "
                f"selected_variant_index={task.selected_variant_index} "
                f"has_feedback={bool(task.user_feedback)}"
            )
            logger.error("%s (task %s)", message, task.task_id)
            failed = self.repository.fail_task(
                task_id=task.task_id,
                claim_token=claim_token,
                error_message=message,
                classification=ErrorClassification(ErrorCategory.UNKNOWN, ErrorConfidence.LOW),
            )
            return TaskStatus.FAILED if failed else None

        if not self.repository.begin_idea_run(
            task_id=task.task_id,
            claim_token=claim_token,
            expected_state=task.workflow_status,
            mode=mode,
        ):
            logger.info("Idea %s changed before the run started, skipping", task.task_id)
            return None

        logger.info("Idea %s: starting %s run", task.task_id, mode.value)
        prompt = build_idea_prompt(
            task=task,
            mode=mode,
            rules_block=self.rules_block(task) if self.rules_block is not None else "",
        )
        outcome = self.invoker.invoke(
            task=task,
            prompt=prompt,
            timeout_seconds=self.timeout_seconds,
            label=f"idea-{mode.value}",
            should_cancel=should_cancel,
            shutdown_requested=shutdown_requested,
        )

        if outcome.interrupted:
            released = self.repository.release_claim(
                task_id=task.task_id,
                claim_token=claim_token,
                reason="shutdown",
            )
            return TaskStatus.PENDING if released else None

        if not outcome.succeeded:
            classification = outcome.classification or ErrorClassification(
                ErrorCategory.UNKNOWN,
                ErrorConfidence.LOW,
            )
            recorded = self.repository.fail_task(
                task_id=task.task_id,
                claim_token=claim_token,
                error_message=outcome.error_message or "Idea run failed.",
                classification=classification,
            )
            if not recorded:
                return None
            if classification.category == ErrorCategory.CANCELLED:
                return TaskStatus.CANCELLED
            return TaskStatus.FAILED

        parsed = parse_idea_output(outcome.run.stdout if outcome.run is not None else "")
        finished = self.repository.finish_idea_run(
            task_id=task.task_id,
            claim_token=claim_token,
            outcome=_build_run_outcome(task=task, mode=mode, parsed=parsed),
        )
        if not finished:
            logger.info("Idea %s was changed by another writer, deferring", task.task_id)
            return None
        logger.info(
            "Idea %s awaiting feedback (%s variants)",
            task.task_id,
            len(parsed.variants) if parsed.variants is not None else "unchanged",
        )
        return TaskStatus.AWAITING_FEEDBACK


def _build_run_outcome(*, task: TaskView, mode: WorkflowMode, parsed: IdeaOutput) -> IdeaRunOutcome:
    if mode == WorkflowMode.VARIANT:
        index = task.selected_variant_index
        result = f"Variant {index} implemented."
    elif mode == WorkflowMode.FEEDBACK:
        index = parsed.implemented
        if index is None:
            index = task.selected_variant_index
        result = "Feedback incorporated. Iteration complete."
    else:
        index = parsed.implemented
        discovered = len(parsed.variants) if parsed.variants is not None else 0
        result = f"Idea run completed. {discovered} variants discovered."
    return IdeaRunOutcome(
        result=result,
        assumptions=parsed.assumptions,
        variants=parsed.variants,
        selected_variant_index=index,
        epic_id=parsed.epic_id,
    )
