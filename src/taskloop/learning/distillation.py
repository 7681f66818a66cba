"""Batch undistilled episodes into scoped, confidence-bounded rules.

Confidence never comes from the model. A new rule gets the baseline for its
support count (1 episode 0.5, 2 episodes 0.7, 3 or more 0.85). An update moves
an existing rule by the proposed delta, capped by that baseline plus 0.1 when
the newly cited episodes approve it. Each contradiction costs 0.2. Everything
is clamped to [0.1, 0.95].
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from uuid import uuid4

from taskloop.coordinator.output_fallback import parse_json_object
from taskloop.coordinator.prompts import render_prompt
from taskloop.learning.models import (
    DistillationPlan,
    EpisodeView,
    FeedbackType,
    NewRuleWrite,
    RuleCategory,
    RuleScope,
    RuleUpdateWrite,
    RuleView,
)
from taskloop.learning.prompts import DISTILLATION_PROMPT
from taskloop.learning.repository import LearningRepository
from taskloop.learning.synthesis import SynthesisClient

logger = logging.getLogger(__name__)

MIN_BATCH_SIZE = 3
CONFIDENCE_FLOOR = 0.1
CONFIDENCE_CEILING = 0.95
APPROVAL_BONUS = 0.1
CONTRADICTION_PENALTY = 0.2
_SUPPORT_BASELINE = {1: 0.5, 2: 0.7}
_MANY_EPISODES_BASELINE = 0.85


def clamp_confidence(value: float, *, ceiling: float = CONFIDENCE_CEILING) -> float:
    upper = max(CONFIDENCE_FLOOR, min(ceiling, CONFIDENCE_CEILING))
    return round(max(CONFIDENCE_FLOOR, min(value, upper)), 4)


def support_baseline(support_count: int) -> float:
    if support_count <= 0:
        return CONFIDENCE_FLOOR
    return _SUPPORT_BASELINE.get(support_count, _MANY_EPISODES_BASELINE)


def confidence_envelope(*, support_count: int, approved: bool, contradictions: int = 0) -> float:
    """Highest confidence the evidence allows."""

    value = support_baseline(support_count)
    if approved:
        value += APPROVAL_BONUS
    value -= CONTRADICTION_PENALTY * contradictions
    return clamp_confidence(value)


@dataclass(slots=True)
class DistillationSummary:
    episodes: int = 0
    new_rules: int = 0
    updated_rules: int = 0
    conflicts: int = 0
    rejected_proposals: int = 0
    applied: bool = False
    skipped_reason: str | None = None


@dataclass(slots=True)
class _RuleState:
    """Mutable working copy of an existing rule during plan building."""

    rule: RuleView
    confidence: float
    support_count: int
    source_episode_ids: list[str]
    conflicts_with: list[str]
    touched: bool = False

    @classmethod
    def of(cls, rule: RuleView) -> _RuleState:
        return cls(
            rule=rule,
            confidence=rule.confidence,
            support_count=rule.support_count,
            source_episode_ids=list(rule.source_episode_ids),
            conflicts_with=list(rule.conflicts_with),
        )


@dataclass(slots=True)
class _PlanBuilder:
    episodes: dict[str, EpisodeView]
    states: dict[str, _RuleState]
    new_rules: list[NewRuleWrite] = field(default_factory=list)
    summary: DistillationSummary = field(default_factory=DistillationSummary)


class DistillationEngine:
    """Runs one distillation pass over the undistilled episode backlog."""

    def __init__(
        self,
        *,
        repository: LearningRepository,
        client: SynthesisClient,
        min_batch_size: int = MIN_BATCH_SIZE,
    ) -> None:
        self.repository = repository
        self.client = client
        self.min_batch_size = min_batch_size

    def run_once(self) -> DistillationSummary:
        episodes = self.repository.list_undistilled_episodes()
        if len(episodes) < self.min_batch_size:
            logger.info(
                "Distillation: %s undistilled episodes (need %s), skipping",
                len(episodes),
                self.min_batch_size,
            )
            return DistillationSummary(
                episodes=len(episodes),
                skipped_reason=f"need {self.min_batch_size} episodes, have {len(episodes)}",
            )

        rules = self.repository.list_active_rules()
        logger.info(
            "Distillation: processing %s episodes against %s active rules",
            len(episodes),
            len(rules),
        )
        response = self.client.complete(build_distillation_prompt(episodes, rules))
        payload = parse_json_object(response) if response is not None else None
        if payload is None:
            logger.error("Distillation: no parseable synthesis response, episodes stay queued")
            return DistillationSummary(episodes=len(episodes), skipped_reason="synthesis failed")

        plan, summary = self.build_plan(episodes=episodes, rules=rules, payload=payload)
        if not self.repository.apply_distillation(plan):
            summary.skipped_reason = "batch consumed concurrently"
            return summary
        summary.applied = True
        logger.info(
            "Distillation complete: %s new rules, %s updates, %s conflicts, %s rejected",
            summary.new_rules,
            summary.updated_rules,
            summary.conflicts,
            summary.rejected_proposals,
        )
        return summary

    def build_plan(
        self,
        *,
        episodes: list[EpisodeView],
        rules: list[RuleView],
        payload: dict[str, object],
    ) -> tuple[DistillationPlan, DistillationSummary]:
        """Validate the model's proposals; confidences come from the evidence."""

        builder = _PlanBuilder(
            episodes={episode.episode_id: episode for episode in episodes},
            states={rule.rule_id: _RuleState.of(rule) for rule in rules},
        )
        builder.summary.episodes = len(episodes)

        for item in _dict_items(payload, "newRules", "new_rules"):
            self._add_new_rule(builder, item)
        for item in _dict_items(payload, "updatedRules", "updated_rules"):
            self._apply_update(builder, item)
        for item in _dict_items(payload, "conflicts"):
            self._apply_conflict(builder, item)

        updates = [
            RuleUpdateWrite(
                rule_id=state.rule.rule_id,
                confidence=state.confidence,
                support_count=state.support_count,
                source_episode_ids=state.source_episode_ids,
                conflicts_with=state.conflicts_with,
            )
            for state in builder.states.values()
            if state.touched
        ]
        plan = DistillationPlan(
            episode_ids=[episode.episode_id for episode in episodes],
            new_rules=builder.new_rules,
            updates=updates,
        )
        return plan, builder.summary

    def _add_new_rule(self, builder: _PlanBuilder, item: dict[str, object]) -> None:
        content = _str_or_none(item.get("content"))
        try:
            scope = RuleScope(str(item.get("scope", "")).strip().lower())
            category = RuleCategory(str(item.get("category", "")).strip().lower())
        except ValueError:
            logger.warning("Rejecting proposed rule with invalid scope/category: %s", item)
            builder.summary.rejected_proposals += 1
            return
        qualifier = _str_or_none(item.get("scopeQualifier", item.get("scope_qualifier")))
        if scope == RuleScope.GLOBAL:
            qualifier = None
        elif qualifier is None:
            logger.warning("Rejecting %s rule without a qualifier: %s", scope.value, content)
            builder.summary.rejected_proposals += 1
            return

        cited = _str_list(item.get("sourceEpisodeIds", item.get("source_episode_ids")))
        source_ids = _unique(episode_id for episode_id in cited if episode_id in builder.episodes)
        if content is None or not source_ids:
            logger.warning("Rejecting rule without content or batch evidence: %s", content)
            builder.summary.rejected_proposals += 1
            return

        confidence = clamp_confidence(support_baseline(len(source_ids)))
        builder.new_rules.append(
            NewRuleWrite(
                rule_id=str(uuid4()),
                content=content,
                scope=scope,
                scope_qualifier=qualifier,
                category=category,
                confidence=confidence,
                support_count=len(source_ids),
                source_episode_ids=source_ids,
                tags=_str_list(item.get("tags")),
            ),
        )
        builder.summary.new_rules += 1
        logger.info("New rule (%s, %.2f): %s", scope.value, confidence, content)

    def _apply_update(self, builder: _PlanBuilder, item: dict[str, object]) -> None:
        rule_id = _str_or_none(item.get("ruleId", item.get("rule_id")))
        state = builder.states.get(rule_id or "")
        if state is None:
            logger.warning("Skipping update for unknown rule: %s", rule_id)
            builder.summary.rejected_proposals += 1
            return

        added = [
            episode_id
            for episode_id in _unique(
                _str_list(item.get("newSourceEpisodeIds", item.get("new_source_episode_ids"))),
            )
            if episode_id in builder.episodes and episode_id not in state.source_episode_ids
        ]
        state.source_episode_ids = [*state.source_episode_ids, *added]
        state.support_count += len(added)

        approved = any(
            builder.episodes[episode_id].feedback_type == FeedbackType.APPROVAL
            for episode_id in added
        )
        ceiling = confidence_envelope(support_count=state.support_count, approved=approved)
        delta = _float_or_none(item.get("confidenceDelta", item.get("confidence_delta"))) or 0.0
        before = state.confidence
        state.confidence = clamp_confidence(state.confidence + delta, ceiling=ceiling)
        state.touched = True
        builder.summary.updated_rules += 1
        logger.info(
            "Updated rule %s: confidence %.2f -> %.2f, support %s",
            rule_id,
            before,
            state.confidence,
            state.support_count,
        )

    def _apply_conflict(self, builder: _PlanBuilder, item: dict[str, object]) -> None:
        rule_id = _str_or_none(item.get("ruleId", item.get("rule_id")))
        episode_id = _str_or_none(
            item.get("conflictingEpisodeId", item.get("conflicting_episode_id")),
        )
        state = builder.states.get(rule_id or "")
        if state is None or episode_id not in builder.episodes:
            logger.warning(
                "Skipping conflict for unknown rule/episode: %s / %s",
                rule_id,
                episode_id,
            )
            builder.summary.rejected_proposals += 1
            return

        before = state.confidence
        state.confidence = clamp_confidence(state.confidence - CONTRADICTION_PENALTY)
        state.touched = True
        for new_rule in builder.new_rules:
            if episode_id not in new_rule.source_episode_ids:
                continue
            if new_rule.rule_id not in state.conflicts_with:
                state.conflicts_with.append(new_rule.rule_id)
            if state.rule.rule_id not in new_rule.conflicts_with:
                new_rule.conflicts_with.append(state.rule.rule_id)
        builder.summary.conflicts += 1
        logger.info(
            "Conflict on rule %s: confidence %.2f -> %.2f",
            rule_id,
            before,
            state.confidence,
        )


def build_distillation_prompt(episodes: list[EpisodeView], rules: list[RuleView]) -> str:
    episodes_text = "\n\n".join(
        f"Episode {index} (ID: {episode.episode_id}):\n"
        f"  Type: {episode.feedback_type.value}\n"
        f"  Project Type: {episode.project_type or 'unknown'}\n"
        f"  Project Path: {episode.project_path or 'none'}\n"
        f"  Work Context: {episode.work_context or 'general'}\n"
        f"  Narrative: {episode.narrative}\n"
        f"  Tags: {', '.join(episode.tags) or 'none'}"
        for index, episode in enumerate(episodes, start=1)
    )
    rules_text = (
        "\n\n".join(
            f"Rule (ID: {rule.rule_id}):\n"
            f"  Content: {rule.content}\n"
            f"  Scope: {rule.scope.value} ({rule.scope_qualifier or 'all'})\n"
            f"  Category: {rule.category.value}\n"
            f"  Confidence: {rule.confidence}\n"
            f"  Support Count: {rule.support_count}"
            for rule in rules
        )
        if rules
        else "No existing rules yet."
    )
    return render_prompt(
        DISTILLATION_PROMPT,
        {"EPISODES": episodes_text, "EXISTING_RULES": rules_text},
    )


def _dict_items(payload: dict[str, object], *keys: str) -> list[dict[str, object]]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
    return []


def _str_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _unique(values: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        seen.setdefault(value, None)
    return list(seen)


def _str_or_none(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _float_or_none(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)
