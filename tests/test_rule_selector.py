from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from taskloop.learning.models import (
    DistillationPlan,
    NewRuleWrite,
    RuleCategory,
    RuleScope,
    RuleSelection,
    RuleStrength,
    RuleView,
)
from taskloop.learning.project_type import ProjectTypeInferrer
from taskloop.learning.repository import LearningRepository
from taskloop.learning.rule_selector import (
    MAX_SELECTED_RULES,
    RuleSelector,
    format_rules_for_prompt,
    rule_strength,
    select_rules,
)

pytestmark = [
    allure.epic("Learning Loop"),
    allure.feature("Rule Selection"),
]

_NOW = datetime(2026, 1, 1, tzinfo=UTC)


def _rule(
    rule_id: str,
    confidence: float,
    *,
    scope: RuleScope = RuleScope.GLOBAL,
    qualifier: str | None = None,
    conflicts_with: list[str] | None = None,
    active: bool = True,
) -> RuleView:
    return RuleView(
        rule_id=rule_id,
        content=f"Rule {rule_id}",
        scope=scope,
        scope_qualifier=qualifier,
        category=RuleCategory.DESIGN,
        tags=[],
        confidence=confidence,
        active=active,
        support_count=3,
        source_episode_ids=[],
        conflicts_with=conflicts_with or [],
        created_at=_NOW,
        updated_at=_NOW,
    )


def test_scope_thresholds_and_qualifiers() -> None:
    rules = [
        _rule("global-high", 0.7),
        _rule("global-low", 0.69),
        _rule("type-match", 0.5, scope=RuleScope.PROJECT_TYPE, qualifier="landing-page"),
        _rule("type-low", 0.49, scope=RuleScope.PROJECT_TYPE, qualifier="landing-page"),
        _rule("type-other", 0.9, scope=RuleScope.PROJECT_TYPE, qualifier="dashboard"),
        _rule("path-match", 0.2, scope=RuleScope.PROJECT_SPECIFIC, qualifier="acme-site"),
        _rule("path-other", 0.9, scope=RuleScope.PROJECT_SPECIFIC, qualifier="other-site"),
        _rule("inactive", 0.95, active=False),
    ]

    selection = select_rules(rules, project_type="landing-page", project_path="acme-site")

    assert [rule.rule_id for rule in selection.rules] == ["global-high", "type-match", "path-match"]


def test_project_type_rules_need_an_inferred_type() -> None:
    rules = [_rule("type-match", 0.9, scope=RuleScope.PROJECT_TYPE, qualifier="landing-page")]

    assert select_rules(rules, project_type=None, project_path=None).rules == []


def test_selection_is_capped_and_ordered() -> None:
    rules = [_rule(f"r{index:02d}", 0.7 + index / 100) for index in range(20)]
    rules.append(_rule("tie-b", 0.9))
    rules.append(_rule("tie-a", 0.9))

    selection = select_rules(rules, project_type=None, project_path=None)

    assert len(selection.rules) == MAX_SELECTED_RULES
    ids = [rule.rule_id for rule in selection.rules]
    assert ids[:2] == ["tie-a", "tie-b"]
    confidences = [rule.confidence for rule in selection.rules]
    assert confidences == sorted(confidences, reverse=True)


def test_conflicts_reported_once_and_only_when_both_selected() -> None:
    rules = [
        _rule("dark", 0.9, conflicts_with=["light", "hidden"]),
        _rule("light", 0.8, conflicts_with=["dark"]),
        _rule("hidden", 0.6, conflicts_with=["dark"]),
    ]

    selection = select_rules(rules, project_type=None, project_path=None)

    assert len(selection.conflicts) == 1
    conflict = selection.conflicts[0]
    assert {conflict.rule_a.rule_id, conflict.rule_b.rule_id} == {"dark", "light"}
    assert conflict.category == RuleCategory.DESIGN


@pytest.mark.parametrize(
    ("confidence", "strength"),
    [
        (0.95, RuleStrength.STRONG),
        (0.8, RuleStrength.STRONG),
        (0.79, RuleStrength.MODERATE),
        (0.6, RuleStrength.MODERATE),
        (0.59, RuleStrength.TENTATIVE),
    ],
)
def test_rule_strength_tiers(confidence: float, strength: RuleStrength) -> None:
    assert rule_strength(confidence) == strength


def test_format_rules_for_prompt() -> None:
    selection = select_rules(
        [
            _rule("dark", 0.9, conflicts_with=["light"]),
            _rule("light", 0.7),
            _rule("proj", 0.3, scope=RuleScope.PROJECT_SPECIFIC, qualifier="acme"),
        ],
        project_type=None,
        project_path="acme",
    )

    block = format_rules_for_prompt(selection)

    lines = block.splitlines()
    assert lines[0] == "LEARNED PREFERENCES (from previous work):"
    assert lines[1:4] == [
        "- [STRONG] Rule dark",
        "- [MODERATE] Rule light",
        "- [TENTATIVE] Rule proj",
    ]
    assert "NOTE: These preferences conflict for this context:" in block
    assert '- Rule A: "Rule dark"' in block
    assert '- Rule B: "Rule light"' in block
    assert lines[-1] == "Ask the user which approach to use before proceeding."


def test_empty_selection_renders_nothing() -> None:
    assert format_rules_for_prompt(RuleSelection()) == ""


def test_selector_infers_project_type_from_directory(
    tmp_path: Path,
    learning_repository: LearningRepository,
) -> None:
    project = tmp_path / "acme-site"
    project.mkdir()
    (project / "package.json").write_text('{"name": "acme-landing"}', "utf-8")
    learning_repository.apply_distillation(
        DistillationPlan(
            episode_ids=[],
            new_rules=[
                NewRuleWrite(
                    rule_id="hero",
                    content="Lead with a bold hero.",
                    scope=RuleScope.PROJECT_TYPE,
                    scope_qualifier="landing-page",
                    category=RuleCategory.DESIGN,
                    confidence=0.6,
                    support_count=2,
                    source_episode_ids=["e1", "e2"],
                ),
            ],
        ),
    )
    selector = RuleSelector(
        repository=learning_repository,
        inferrer=ProjectTypeInferrer(projects_root=tmp_path),
    )

    selection = selector.select(task_type="Feature", title="Tweak footer", project_path="acme-site")

    assert selection.project_type == "landing-page"
    assert [rule.rule_id for rule in selection.rules] == ["hero"]


def test_selector_without_rules_returns_empty(
    tmp_path: Path,
    learning_repository: LearningRepository,
) -> None:
    selector = RuleSelector(
        repository=learning_repository,
        inferrer=ProjectTypeInferrer(projects_root=tmp_path),
    )

    assert selector.select(task_type="Feature", title="Landing page").rules == []
