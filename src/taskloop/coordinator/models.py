"""Domain models for the task queue and idea workflow."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    AWAITING_FEEDBACK = "awaiting_feedback"
    CANCELLED = "cancelled"


class WorkflowStatus(str, Enum):
    """Idea workflow states, orthogonal to the task status."""

    NONE = "none"
    RUNNING = "running"
    AWAITING_FEEDBACK = "awaiting_feedback"
    PENDING_VARIANT = "pending_variant"
    PENDING_FEEDBACK = "pending_feedback"
    FAILED = "failed"


class WorkflowMode(str, Enum):
    """Entry edge that started the current idea run."""

    NEW = "new"
    VARIANT = "variant"
    FEEDBACK = "feedback"


class ErrorCategory(str, Enum):
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    OOM = "oom"
    RATE_LIMIT = "rate_limit"
    PERMISSION_DENIED = "permission_denied"
    DEPENDENCY_ERROR = "dependency_error"
    CRASH = "crash"
    UNKNOWN = "unknown"


class ErrorConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


IDEA_TASK_TYPE = "Idea"
CLAIMABLE_IDEA_STATES = (
    WorkflowStatus.NONE,
    WorkflowStatus.PENDING_VARIANT,
    WorkflowStatus.PENDING_FEEDBACK,
)
RESUME_STATE_BY_MODE = {
    WorkflowMode.NEW: WorkflowStatus.NONE,
    WorkflowMode.VARIANT: WorkflowStatus.PENDING_VARIANT,
    WorkflowMode.FEEDBACK: WorkflowStatus.PENDING_FEEDBACK,
}


@dataclass(slots=True)
class ThreadMessage:
    """One entry of a task conversation thread."""

    role: str
    content: str
    timestamp: str | None = None


@dataclass(slots=True)
class IdeaVariant:
    name: str
    description: str = ""
    pros: list[str] = field(default_factory=list)
    cons: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    task_type: str
    title: str
    description: str | None = None
    subtype: str | None = None
    project_path: str | None = None
    idempotency_key: str | None = None
    source_event_id: str | None = None
    messages: list[ThreadMessage] = field(default_factory=list)


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and coordinator logic."""

    task_id: str
    idempotency_key: str
    source_event_id: str | None
    task_type: str
    subtype: str | None
    title: str
    description: str | None
    status: TaskStatus
    project_path: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    result: str | None
    error_message: str | None
    error_category: ErrorCategory | None
    error_confidence: ErrorConfidence | None
    claimed_by: str | None
    claim_token: str | None
    cancel_requested: bool
    messages: list[ThreadMessage]
    rating: int | None
    rating_tags: list[str]
    rating_comment: str | None
    feedback_processed: bool
    workflow_status: WorkflowStatus
    workflow_mode: WorkflowMode | None
    assumptions: dict[str, str]
    variants: list[IdeaVariant]
    selected_variant_index: int | None
    user_feedback: str | None
    epic_id: str | None

    @property
    def is_idea(self) -> bool:
        return self.task_type.lower() == IDEA_TASK_TYPE.lower()


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class IdeaRunOutcome:
    """Fields written when an idea run reaches awaiting_feedback."""

    result: str
    assumptions: dict[str, str] | None
    variants: list[IdeaVariant] | None
    selected_variant_index: int | None
    epic_id: str | None

