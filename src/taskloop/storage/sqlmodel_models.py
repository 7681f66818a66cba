"""SQLModel ORM tables for the shared task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_status_created", "status", "created_at"),)

    task_id: str = Field(primary_key=True)
    idempotency_key: str = Field(unique=True, index=True)
    source_event_id: str | None = Field(default=None, index=True)
    task_type: str = Field(index=True)
    subtype: str | None = None
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(index=True)
    project_path: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    result: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    error_category: str | None = None
    error_confidence: str | None = None
    claimed_by: str | None = None
    claim_token: str | None = None
    cancel_requested: bool = False
    messages_json: str | None = Field(default=None, sa_column=Column(Text))
    rating: int | None = Field(default=None, index=True)
    rating_tags_json: str | None = None
    rating_comment: str | None = Field(default=None, sa_column=Column(Text))
    feedback_processed: bool = Field(default=False, index=True)
    workflow_status: str = Field(default="none", index=True)
    workflow_mode: str | None = None
    assumptions_json: str | None = Field(default=None, sa_column=Column(Text))
    variants_json: str | None = Field(default=None, sa_column=Column(Text))
    selected_variant_index: int | None = None
    user_feedback: str | None = Field(default=None, sa_column=Column(Text))
    epic_id: str | None = None


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Episode(SQLModel, table=True):
    __tablename__ = "episodes"  # type: ignore[bad-override]

    episode_id: str = Field(primary_key=True)
    narrative: str = Field(sa_column=Column(Text, nullable=False))
    feedback_type: str = Field(index=True)
    project_type: str | None = Field(default=None, index=True)
    project_path: str | None = None
    work_context: str | None = None
    user_input: str = Field(sa_column=Column(Text, nullable=False))
    tags_json: str | None = None
    distilled: bool = Field(default=False, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    source_task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )


class Rule(SQLModel, table=True):
    __tablename__ = "rules"  # type: ignore[bad-override]

    rule_id: str = Field(primary_key=True)
    content: str = Field(sa_column=Column(Text, nullable=False))
    scope: str = Field(index=True)
    scope_qualifier: str | None = Field(default=None, index=True)
    category: str = Field(index=True)
    tags_json: str | None = None
    confidence: float
    active: bool = Field(default=True, index=True)
    support_count: int = 1
    source_episode_ids_json: str | None = Field(default=None, sa_column=Column(Text))
    conflicts_with_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkerHeartbeat(SQLModel, table=True):
    __tablename__ = "worker_heartbeats"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    last_seen: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    status: str | None = None
