from __future__ import annotations

import json

import allure
import pytest
from conftest import FakeSynthesisClient, create_task, finish_task

from taskloop.coordinator.repository import TaskRepository
from taskloop.learning.distillation import (
    DistillationEngine,
    clamp_confidence,
    confidence_envelope,
    support_baseline,
)
from taskloop.learning.models import (
    DistillationPlan,
    EpisodeCreate,
    EpisodeView,
    FeedbackType,
    NewRuleWrite,
    RuleCategory,
    RuleScope,
    RuleView,
)
from taskloop.learning.repository import LearningRepository

pytestmark = [
    allure.epic("Learning Loop"),
    allure.feature("Rule Distillation"),
]


def _episode(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
    *,
    feedback_type: FeedbackType,
    narrative: str = "User liked the bold hero section.",
    project_type: str | None = "landing-page",
) -> EpisodeView:
    task = finish_task(task_repository, create_task(task_repository, title="Landing page hero"))
    task_repository.rate_task(task_id=task.task_id, rating=4, tags=[], comment=None)
    episode = learning_repository.record_episode(
        EpisodeCreate(
            source_task_id=task.task_id,
            narrative=narrative,
            feedback_type=feedback_type,
            user_input="(no direct input)",
            project_type=project_type,
            work_context="design",
        ),
    )
    assert episode is not None
    return episode


def _seed_rule(
    learning_repository: LearningRepository,
    *,
    rule_id: str,
    confidence: float,
    content: str = "Use a dark hero section.",
    source_episode_ids: list[str] | None = None,
) -> RuleView:
    assert learning_repository.apply_distillation(
        DistillationPlan(
            episode_ids=[],
            new_rules=[
                NewRuleWrite(
                    rule_id=rule_id,
                    content=content,
                    scope=RuleScope.PROJECT_TYPE,
                    scope_qualifier="landing-page",
                    category=RuleCategory.DESIGN,
                    confidence=confidence,
                    support_count=len(source_episode_ids or []) or 1,
                    source_episode_ids=source_episode_ids or ["seed-episode"],
                ),
            ],
        ),
    )
    return learning_repository.require_rule(rule_id=rule_id)


def _engine(learning_repository: LearningRepository, *responses: str | None) -> DistillationEngine:
    return DistillationEngine(
        repository=learning_repository,
        client=FakeSynthesisClient(responses=list(responses)),
    )


def _new_rule_payload(episodes: list[EpisodeView], **overrides: object) -> str:
    rule: dict[str, object] = {
        "content": "Use bold, high-contrast hero sections on landing pages.",
        "scope": "project-type",
        "scopeQualifier": "landing-page",
        "category": "design",
        "tags": ["hero"],
        "sourceEpisodeIds": [episode.episode_id for episode in episodes],
    }
    rule.update(overrides)
    return json.dumps({"newRules": [rule], "updatedRules": [], "conflicts": []})


@pytest.mark.parametrize(
    ("support_count", "expected"),
    [(0, 0.1), (1, 0.5), (2, 0.7), (3, 0.85), (7, 0.85)],
)
def test_support_baseline(support_count: int, expected: float) -> None:
    assert support_baseline(support_count) == expected


def test_confidence_envelope_bounds() -> None:
    assert confidence_envelope(support_count=3, approved=True) == 0.95
    assert confidence_envelope(support_count=1, approved=False, contradictions=1) == 0.3
    assert confidence_envelope(support_count=1, approved=False, contradictions=5) == 0.1
    assert clamp_confidence(1.7) == 0.95
    assert clamp_confidence(0.6, ceiling=0.5) == 0.5


def test_three_approvals_produce_project_type_rule(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
) -> None:
    episodes = [
        _episode(task_repository, learning_repository, feedback_type=FeedbackType.APPROVAL)
        for _ in range(3)
    ]
    engine = _engine(learning_repository, _new_rule_payload(episodes, confidence=0.95))

    summary = engine.run_once()

    assert summary.applied is True
    assert summary.new_rules == 1
    rules = learning_repository.list_active_rules()
    assert len(rules) == 1
    rule = rules[0]
    assert rule.confidence == pytest.approx(0.85)
    assert rule.scope == RuleScope.PROJECT_TYPE
    assert rule.scope_qualifier == "landing-page"
    assert rule.category == RuleCategory.DESIGN
    assert rule.support_count == 3
    assert sorted(rule.source_episode_ids) == sorted(e.episode_id for e in episodes)
    assert learning_repository.list_undistilled_episodes() == []


@pytest.mark.parametrize("proposed", [1.2, 0.95, 0.2, "high", None])
@pytest.mark.parametrize("feedback_type", [FeedbackType.APPROVAL, FeedbackType.CORRECTION])
def test_new_rule_confidence_ignores_model_proposal(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
    proposed: object,
    feedback_type: FeedbackType,
) -> None:
    episodes = [
        _episode(task_repository, learning_repository, feedback_type=feedback_type)
        for _ in range(3)
    ]

    _engine(learning_repository, _new_rule_payload(episodes, confidence=proposed)).run_once()

    assert learning_repository.list_active_rules()[0].confidence == pytest.approx(0.85)


@pytest.mark.parametrize(
    ("feedback_type", "expected"),
    [(FeedbackType.APPROVAL, 0.95), (FeedbackType.CORRECTION, 0.85)],
)
def test_update_confidence_is_capped_by_approving_evidence(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
    feedback_type: FeedbackType,
    expected: float,
) -> None:
    seeds = [
        _episode(task_repository, learning_repository, feedback_type=FeedbackType.APPROVAL)
        for _ in range(3)
    ]
    seed_ids = [episode.episode_id for episode in seeds]
    learning_repository.apply_distillation(DistillationPlan(episode_ids=seed_ids))
    existing = _seed_rule(
        learning_repository,
        rule_id="rule-hero",
        confidence=0.85,
        source_episode_ids=seed_ids,
    )
    batch = [
        _episode(task_repository, learning_repository, feedback_type=feedback_type)
        for _ in range(3)
    ]
    payload = {
        "updatedRules": [
            {
                "ruleId": existing.rule_id,
                "confidenceDelta": 0.35,
                "newSourceEpisodeIds": [batch[0].episode_id],
            },
        ],
    }

    _engine(learning_repository, json.dumps(payload)).run_once()

    updated = learning_repository.require_rule(rule_id=existing.rule_id)
    assert updated.support_count == 4
    assert updated.confidence == pytest.approx(expected)


def test_missing_confidence_uses_support_baseline(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
) -> None:
    episodes = [
        _episode(task_repository, learning_repository, feedback_type=FeedbackType.CORRECTION)
        for _ in range(3)
    ]

    _engine(learning_repository, _new_rule_payload(episodes[:2])).run_once()

    assert learning_repository.list_active_rules()[0].confidence == pytest.approx(0.7)


def test_small_batch_is_skipped_without_synthesis(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
) -> None:
    for _ in range(2):
        _episode(task_repository, learning_repository, feedback_type=FeedbackType.APPROVAL)
    client = FakeSynthesisClient(responses=["{}"])
    engine = DistillationEngine(repository=learning_repository, client=client)

    summary = engine.run_once()

    assert summary.applied is False
    assert summary.skipped_reason == "need 3 episodes, have 2"
    assert client.prompts == []
    assert len(learning_repository.list_undistilled_episodes()) == 2


def test_synthesis_failure_writes_nothing(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
) -> None:
    for _ in range(3):
        _episode(task_repository, learning_repository, feedback_type=FeedbackType.APPROVAL)

    summary = _engine(learning_repository, None).run_once()

    assert summary.applied is False
    assert summary.skipped_reason == "synthesis failed"
    assert learning_repository.list_rules(include_inactive=True) == []
    assert len(learning_repository.list_undistilled_episodes()) == 3


def test_invalid_proposals_are_rejected(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
) -> None:
    episodes = [
        _episode(task_repository, learning_repository, feedback_type=FeedbackType.CORRECTION)
        for _ in range(3)
    ]
    cited = [episode.episode_id for episode in episodes]
    payload: dict[str, list[dict[str, object]]] = {
        "newRules": [
            {"content": "A", "scope": "galaxy", "category": "design", "sourceEpisodeIds": cited},
            {"content": "B", "scope": "project-type", "category": "tooling", "tags": ["x"]},
            {
                "content": "C",
                "scope": "global",
                "category": "design",
                "sourceEpisodeIds": ["not-in-batch"],
            },
            {
                "content": "D",
                "scope": "global",
                "scopeQualifier": "ignored",
                "category": "workflow",
                "sourceEpisodeIds": cited[:1],
            },
        ],
        "updatedRules": [{"ruleId": "ghost", "confidenceDelta": 0.1}],
    }

    summary = _engine(learning_repository, json.dumps(payload)).run_once()

    assert summary.applied is True
    assert summary.new_rules == 1
    assert summary.rejected_proposals == 4
    (rule,) = learning_repository.list_active_rules()
    assert rule.content == "D"
    assert rule.scope_qualifier is None
    assert rule.confidence == pytest.approx(0.5)


def test_update_adds_support_and_respects_envelope(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
) -> None:
    seed = _episode(task_repository, learning_repository, feedback_type=FeedbackType.CORRECTION)
    learning_repository.apply_distillation(DistillationPlan(episode_ids=[seed.episode_id]))
    existing = _seed_rule(
        learning_repository,
        rule_id="rule-hero",
        confidence=0.5,
        source_episode_ids=[seed.episode_id],
    )
    batch = [
        _episode(task_repository, learning_repository, feedback_type=FeedbackType.CORRECTION)
        for _ in range(3)
    ]
    payload = {
        "updatedRules": [
            {
                "ruleId": existing.rule_id,
                "confidenceDelta": 0.6,
                "newSourceEpisodeIds": [batch[0].episode_id, seed.episode_id],
            },
        ],
    }

    summary = _engine(learning_repository, json.dumps(payload)).run_once()

    assert summary.updated_rules == 1
    updated = learning_repository.require_rule(rule_id=existing.rule_id)
    assert updated.support_count == 2
    assert updated.source_episode_ids == [seed.episode_id, batch[0].episode_id]
    assert updated.confidence == pytest.approx(0.7)


def test_conflict_penalizes_and_cross_links(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
) -> None:
    existing = _seed_rule(learning_repository, rule_id="rule-dark", confidence=0.85)
    episodes = [
        _episode(
            task_repository,
            learning_repository,
            feedback_type=FeedbackType.CORRECTION,
            narrative="User asked for a light hero section.",
        )
        for _ in range(3)
    ]
    payload = {
        "newRules": [
            {
                "content": "Use a light hero section.",
                "scope": "project-type",
                "scopeQualifier": "landing-page",
                "category": "design",
                "sourceEpisodeIds": [episodes[0].episode_id],
            },
        ],
        "conflicts": [
            {"ruleId": existing.rule_id, "conflictingEpisodeId": episodes[0].episode_id},
        ],
    }

    summary = _engine(learning_repository, json.dumps(payload)).run_once()

    assert summary.conflicts == 1
    dark = learning_repository.require_rule(rule_id=existing.rule_id)
    assert dark.confidence == pytest.approx(0.65)
    light = next(
        rule for rule in learning_repository.list_active_rules() if rule.rule_id != dark.rule_id
    )
    assert dark.conflicts_with == [light.rule_id]
    assert light.conflicts_with == [dark.rule_id]


def test_batch_is_consumed_exactly_once(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
) -> None:
    episodes = [
        _episode(task_repository, learning_repository, feedback_type=FeedbackType.APPROVAL)
        for _ in range(3)
    ]
    plan = DistillationPlan(
        episode_ids=[episode.episode_id for episode in episodes],
        new_rules=[
            NewRuleWrite(
                rule_id="rule-once",
                content="Once",
                scope=RuleScope.GLOBAL,
                scope_qualifier=None,
                category=RuleCategory.WORKFLOW,
                confidence=0.7,
                support_count=3,
                source_episode_ids=[episode.episode_id for episode in episodes],
            ),
        ],
    )
    replay = DistillationPlan(
        episode_ids=plan.episode_ids,
        new_rules=[
            NewRuleWrite(
                rule_id="rule-twice",
                content="Twice",
                scope=RuleScope.GLOBAL,
                scope_qualifier=None,
                category=RuleCategory.WORKFLOW,
                confidence=0.7,
                support_count=3,
                source_episode_ids=plan.episode_ids,
            ),
        ],
    )

    assert learning_repository.apply_distillation(plan) is True
    assert learning_repository.apply_distillation(replay) is False
    assert [rule.rule_id for rule in learning_repository.list_active_rules()] == ["rule-once"]


def test_prompt_lists_episodes_and_existing_rules(
    task_repository: TaskRepository,
    learning_repository: LearningRepository,
) -> None:
    _seed_rule(learning_repository, rule_id="rule-dark", confidence=0.85)
    for _ in range(3):
        _episode(task_repository, learning_repository, feedback_type=FeedbackType.APPROVAL)
    client = FakeSynthesisClient(responses=['{"newRules": []}'])

    DistillationEngine(repository=learning_repository, client=client).run_once()

    prompt = client.prompts[0]
    assert "Rule (ID: rule-dark)" in prompt
    assert prompt.count("Type: approval") == 3
    assert "Project Type: landing-page" in prompt
