"""Pick the learned rules that apply to a task and render them for the agent."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from taskloop.coordinator.models import TaskView
from taskloop.learning.models import (
    RuleConflict,
    RuleScope,
    RuleSelection,
    RuleStrength,
    RuleView,
    SelectedRule,
)
from taskloop.learning.project_type import ProjectTypeInferrer
from taskloop.learning.repository import LearningRepository

logger = logging.getLogger(__name__)

MAX_SELECTED_RULES = 15
GLOBAL_MIN_CONFIDENCE = 0.7
PROJECT_TYPE_MIN_CONFIDENCE = 0.5
STRONG_MIN_CONFIDENCE = 0.8
MODERATE_MIN_CONFIDENCE = 0.6


def rule_applies(rule: RuleView, *, project_type: str | None, project_path: str | None) -> bool:
    if not rule.active:
        return False
    if rule.scope == RuleScope.GLOBAL:
        return rule.confidence >= GLOBAL_MIN_CONFIDENCE
    if rule.scope == RuleScope.PROJECT_TYPE:
        return (
            rule.confidence >= PROJECT_TYPE_MIN_CONFIDENCE
            and project_type is not None
            and rule.scope_qualifier == project_type
        )
    return project_path is not None and rule.scope_qualifier == project_path


def select_rules(
    rules: list[RuleView],
    *,
    project_type: str | None,
    project_path: str | None,
    max_rules: int = MAX_SELECTED_RULES,
) -> RuleSelection:
    """Filter by scope, rank by confidence, truncate, then look up declared conflicts."""

    matched = [
        rule
        for rule in rules
        if rule_applies(rule, project_type=project_type, project_path=project_path)
    ]
    matched.sort(key=lambda rule: (-rule.confidence, rule.rule_id))
    kept = matched[:max_rules]

    selected = {
        rule.rule_id: SelectedRule(
            rule_id=rule.rule_id,
            content=rule.content,
            confidence=rule.confidence,
            scope=rule.scope,
            category=rule.category,
        )
        for rule in kept
    }
    conflicts: list[RuleConflict] = []
    seen_pairs: set[frozenset[str]] = set()
    for rule in kept:
        for other_id in rule.conflicts_with:
            pair = frozenset((rule.rule_id, other_id))
            if other_id not in selected or other_id == rule.rule_id or pair in seen_pairs:
                continue
            seen_pairs.add(pair)
            conflicts.append(
                RuleConflict(rule_a=selected[rule.rule_id], rule_b=selected[other_id]),
            )

    return RuleSelection(
        rules=[selected[rule.rule_id] for rule in kept],
        conflicts=conflicts,
        project_type=project_type,
    )


def rule_strength(confidence: float) -> RuleStrength:
    if confidence >= STRONG_MIN_CONFIDENCE:
        return RuleStrength.STRONG
    if confidence >= MODERATE_MIN_CONFIDENCE:
        return RuleStrength.MODERATE
    return RuleStrength.TENTATIVE


def format_rules_for_prompt(selection: RuleSelection) -> str:
    """Render selected rules as a prompt block; empty when nothing was selected."""

    if not selection.rules:
        return ""

    lines = ["LEARNED PREFERENCES (from previous work):"]
    lines.extend(
        f"- [{rule_strength(rule.confidence).value}] {rule.content}" for rule in selection.rules
    )
    lines.append("")
    lines.append("Apply these unless they conflict with explicit instructions in this task.")

    if selection.conflicts:
        lines.append("")
        lines.append("NOTE: These preferences conflict for this context:")
        for conflict in selection.conflicts:
            lines.append(f'- Rule A: "{conflict.rule_a.content}"')
            lines.append(f'- Rule B: "{conflict.rule_b.content}"')
        lines.append("Ask the user which approach to use before proceeding.")
    return "\n".join(lines)


class RuleSelector:
    """Loads active rules and selects those relevant to one task."""

    def __init__(
        self,
        *,
        repository: LearningRepository,
        inferrer: ProjectTypeInferrer,
        max_rules: int = MAX_SELECTED_RULES,
    ) -> None:
        self.repository = repository
        self.inferrer = inferrer
        self.max_rules = max_rules

    def select(
        self,
        *,
        task_type: str,
        title: str,
        description: str | None = None,
        project_path: str | None = None,
    ) -> RuleSelection:
        rules = self.repository.list_active_rules()
        if not rules:
            return RuleSelection()
        project_type = self.inferrer.infer(
            task_type=task_type,
            title=title,
            description=description,
            project_path=project_path,
        )
        return select_rules(
            rules,
            project_type=project_type,
            project_path=project_path,
            max_rules=self.max_rules,
        )

    def prompt_block(self, task: TaskView) -> str:
        """Rules block for the agent prompt; a store error yields no rules, not a failed task."""

        try:
            selection = self.select(
                task_type=task.task_type,
                title=task.title,
                description=task.description,
                project_path=task.project_path,
            )
        except SQLAlchemyError:
            logger.exception(
                "Rule selection failed for task %s, continuing without rules",
                task.task_id,
            )
            return ""
        if selection.rules:
            logger.info(
                "Selected %s rules for task %s (project_type=%s, conflicts=%s)",
                len(selection.rules),
                task.task_id,
                selection.project_type or "-",
                len(selection.conflicts),
            )
        return format_rules_for_prompt(selection)
