"""Domain models for episodes, rules, and rule selection."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class FeedbackType(str, Enum):
    CORRECTION = "correction"
    APPROVAL = "approval"
    REJECTION = "rejection"


class RuleScope(str, Enum):
    """Applicability boundary of a rule, narrowest last."""

    GLOBAL = "global"
    PROJECT_TYPE = "project-type"
    PROJECT_SPECIFIC = "project-specific"


class RuleCategory(str, Enum):
    DESIGN = "design"
    TOOLING = "tooling"
    ARCHITECTURE = "architecture"
    WORKFLOW = "workflow"
    CONTENT = "content"


class RuleStrength(str, Enum):
    STRONG = "STRONG"
    MODERATE = "MODERATE"
    TENTATIVE = "TENTATIVE"


@dataclass(slots=True)
class EpisodeDecision:
    """Synthesis verdict on whether a piece of feedback is a reusable signal."""

    should_capture: bool
    narrative: str = ""
    feedback_type: FeedbackType | None = None
    project_type: str | None = None
    work_context: str | None = None
    tags: list[str] = field(default_factory=list)
    skip_reason: str | None = None


@dataclass(slots=True)
class EpisodeCreate:
    """Input payload for recording an episode against its source task."""

    source_task_id: str
    narrative: str
    feedback_type: FeedbackType
    user_input: str
    project_type: str | None = None
    project_path: str | None = None
    work_context: str | None = None
    tags: list[str] = field(default_factory=list)


@dataclass(slots=True)
class EpisodeView:
    episode_id: str
    narrative: str
    feedback_type: FeedbackType
    project_type: str | None
    project_path: str | None
    work_context: str | None
    user_input: str
    tags: list[str]
    distilled: bool
    created_at: datetime
    source_task_id: str | None


@dataclass(slots=True)
class RuleView:
    rule_id: str
    content: str
    scope: RuleScope
    scope_qualifier: str | None
    category: RuleCategory
    tags: list[str]
    confidence: float
    active: bool
    support_count: int
    source_episode_ids: list[str]
    conflicts_with: list[str]
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class NewRuleWrite:
    """Rule created by a distillation pass; the id is assigned up front for cross-links."""

    rule_id: str
    content: str
    scope: RuleScope
    scope_qualifier: str | None
    category: RuleCategory
    confidence: float
    support_count: int
    source_episode_ids: list[str]
    tags: list[str] = field(default_factory=list)
    conflicts_with: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RuleUpdateWrite:
    """Full replacement values for an existing rule touched by a distillation pass."""

    rule_id: str
    confidence: float
    support_count: int
    source_episode_ids: list[str]
    conflicts_with: list[str]


@dataclass(slots=True)
class DistillationPlan:
    """Everything one distillation pass writes, applied in a single transaction."""

    episode_ids: list[str]
    new_rules: list[NewRuleWrite] = field(default_factory=list)
    updates: list[RuleUpdateWrite] = field(default_factory=list)


@dataclass(slots=True)
class SelectedRule:
    rule_id: str
    content: str
    confidence: float
    scope: RuleScope
    category: RuleCategory


@dataclass(slots=True)
class RuleConflict:
    """Two selected rules explicitly cross-linked as contradicting each other."""

    rule_a: SelectedRule
    rule_b: SelectedRule

    @property
    def category(self) -> RuleCategory:
        return self.rule_a.category


@dataclass(slots=True)
class RuleSelection:
    rules: list[SelectedRule] = field(default_factory=list)
    conflicts: list[RuleConflict] = field(default_factory=list)
    project_type: str | None = None
