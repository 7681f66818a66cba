"""Initial task queue and learning schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("source_event_id", sa.String(), nullable=True),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("subtype", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("project_path", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_category", sa.String(), nullable=True),
        sa.Column("error_confidence", sa.String(), nullable=True),
        sa.Column("claimed_by", sa.String(), nullable=True),
        sa.Column("claim_token", sa.String(), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("messages_json", sa.Text(), nullable=True),
        sa.Column("rating", sa.Integer(), nullable=True),
        sa.Column("rating_tags_json", sa.String(), nullable=True),
        sa.Column("rating_comment", sa.Text(), nullable=True),
        sa.Column(
            "feedback_processed",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("workflow_status", sa.String(), nullable=False, server_default="none"),
        sa.Column("workflow_mode", sa.String(), nullable=True),
        sa.Column("assumptions_json", sa.Text(), nullable=True),
        sa.Column("variants_json", sa.Text(), nullable=True),
        sa.Column("selected_variant_index", sa.Integer(), nullable=True),
        sa.Column("user_feedback", sa.Text(), nullable=True),
        sa.Column("epic_id", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_tasks_idempotency_key", "tasks", ["idempotency_key"], unique=True)
    op.create_index("ix_tasks_source_event_id", "tasks", ["source_event_id"], unique=False)
    op.create_index("ix_tasks_task_type", "tasks", ["task_type"], unique=False)
    op.create_index("ix_tasks_status", "tasks", ["status"], unique=False)
    op.create_index("ix_tasks_project_path", "tasks", ["project_path"], unique=False)
    op.create_index("ix_tasks_rating", "tasks", ["rating"], unique=False)
    op.create_index("ix_tasks_feedback_processed", "tasks", ["feedback_processed"], unique=False)
    op.create_index("ix_tasks_workflow_status", "tasks", ["workflow_status"], unique=False)
    op.create_index("idx_tasks_status_created", "tasks", ["status", "created_at"], unique=False)

    op.create_table(
        "task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_events_task_id", "task_events", ["task_id"], unique=False)
    op.create_index("ix_task_events_event_type", "task_events", ["event_type"], unique=False)

    op.create_table(
        "episodes",
        sa.Column("episode_id", sa.String(), nullable=False),
        sa.Column("narrative", sa.Text(), nullable=False),
        sa.Column("feedback_type", sa.String(), nullable=False),
        sa.Column("project_type", sa.String(), nullable=True),
        sa.Column("project_path", sa.String(), nullable=True),
        sa.Column("work_context", sa.String(), nullable=True),
        sa.Column("user_input", sa.Text(), nullable=False),
        sa.Column("tags_json", sa.String(), nullable=True),
        sa.Column("distilled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("source_task_id", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["source_task_id"], ["tasks.task_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("episode_id"),
    )
    op.create_index("ix_episodes_feedback_type", "episodes", ["feedback_type"], unique=False)
    op.create_index("ix_episodes_project_type", "episodes", ["project_type"], unique=False)
    op.create_index("ix_episodes_distilled", "episodes", ["distilled"], unique=False)
    op.create_index("ix_episodes_source_task_id", "episodes", ["source_task_id"], unique=False)

    op.create_table(
        "rules",
        sa.Column("rule_id", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("scope", sa.String(), nullable=False),
        sa.Column("scope_qualifier", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("tags_json", sa.String(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("support_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("source_episode_ids_json", sa.Text(), nullable=True),
        sa.Column("conflicts_with_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("rule_id"),
    )
    op.create_index("ix_rules_scope", "rules", ["scope"], unique=False)
    op.create_index("ix_rules_scope_qualifier", "rules", ["scope_qualifier"], unique=False)
    op.create_index("ix_rules_category", "rules", ["category"], unique=False)
    op.create_index("ix_rules_active", "rules", ["active"], unique=False)

    op.create_table(
        "worker_heartbeats",
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    op.drop_table("worker_heartbeats")
    op.drop_index("ix_rules_active", table_name="rules")
    op.drop_index("ix_rules_category", table_name="rules")
    op.drop_index("ix_rules_scope_qualifier", table_name="rules")
    op.drop_index("ix_rules_scope", table_name="rules")
    op.drop_table("rules")
    op.drop_index("ix_episodes_source_task_id", table_name="episodes")
    op.drop_index("ix_episodes_distilled", table_name="episodes")
    op.drop_index("ix_episodes_project_type", table_name="episodes")
    op.drop_index("ix_episodes_feedback_type", table_name="episodes")
    op.drop_table("episodes")
    op.drop_index("ix_task_events_event_type", table_name="task_events")
    op.drop_index("ix_task_events_task_id", table_name="task_events")
    op.drop_table("task_events")
    op.drop_table("tasks")
