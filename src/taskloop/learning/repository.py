"""Persistence for episodes and rules, plus the rated-task feed they learn from."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from taskloop.coordinator.models import TaskView
from taskloop.coordinator.repository import to_task_view
from taskloop.learning.models import (
    DistillationPlan,
    EpisodeCreate,
    EpisodeView,
    FeedbackType,
    RuleCategory,
    RuleScope,
    RuleView,
)
from taskloop.storage.base import StoreRepository
from taskloop.storage.common import (
    dump_json,
    load_str_list,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from taskloop.storage.sqlmodel_models import Episode, Rule, Task, TaskEvent

logger = logging.getLogger(__name__)


class RuleNotFoundError(RuntimeError):
    def __init__(self, rule_id: str) -> None:
        super().__init__(f"Rule not found: {rule_id}")
        self.rule_id = rule_id


class LearningRepository(StoreRepository):
    """Episode/rule persistence facade backed by SQLModel + SQLite."""

    def list_unprocessed_feedback(self, *, limit: int | None = None) -> list[TaskView]:
        """Rated tasks whose feedback has not been evaluated yet, oldest rating first."""

        with Session(self.engine) as session:
            statement = (
                select(Task)
                .where(
                    col(Task.rating).is_not(None),
                    col(Task.feedback_processed).is_(False),
                )
                .order_by(col(Task.updated_at).asc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return [to_task_view(row) for row in rows]

    def mark_feedback_processed(self, *, task_id: str, reason: str | None = None) -> bool:
        """Flag feedback as evaluated without recording an episode."""

        with Session(self.engine) as session:
            update = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.feedback_processed).is_(False),
                )
                .values(feedback_processed=True),
            )
            if update.rowcount != 1:
                session.rollback()
                return False
            _add_task_event(
                session=session,
                task_id=task_id,
                event_type="feedback_skipped",
                details={"reason": reason} if reason else {},
            )
            session.commit()
            return True

    def record_episode(self, payload: EpisodeCreate) -> EpisodeView | None:
        """Create an episode and flag its task processed in one transaction.

        Returns None when the feedback was already processed by someone else.
        """

        now = to_db_datetime(utc_now())
        episode_id = str(uuid4())
        with Session(self.engine) as session:
            update = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == payload.source_task_id,
                    col(Task.feedback_processed).is_(False),
                )
                .values(feedback_processed=True),
            )
            if update.rowcount != 1:
                session.rollback()
                return None
            row = Episode(
                episode_id=episode_id,
                narrative=payload.narrative,
                feedback_type=payload.feedback_type.value,
                project_type=payload.project_type,
                project_path=payload.project_path,
                work_context=payload.work_context,
                user_input=payload.user_input,
                tags_json=dump_json(payload.tags) if payload.tags else None,
                distilled=False,
                created_at=now,
                source_task_id=payload.source_task_id,
            )
            session.add(row)
            _add_task_event(
                session=session,
                task_id=payload.source_task_id,
                event_type="episode_recorded",
                details={"episode_id": episode_id, "feedback_type": payload.feedback_type.value},
            )
            session.commit()
            session.refresh(row)
            return _to_episode_view(row)

    def list_undistilled_episodes(self) -> list[EpisodeView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Episode)
                .where(col(Episode.distilled).is_(False))
                .order_by(col(Episode.created_at).asc()),
            ).all()
            return _episode_views(rows)

    def list_episodes(self, *, distilled: bool | None = None, limit: int = 50) -> list[EpisodeView]:
        with Session(self.engine) as session:
            statement = select(Episode).order_by(col(Episode.created_at).desc()).limit(limit)
            if distilled is not None:
                statement = statement.where(col(Episode.distilled).is_(distilled))
            rows = session.exec(statement).all()
            return _episode_views(rows)

    def list_rules(self, *, include_inactive: bool = False) -> list[RuleView]:
        with Session(self.engine) as session:
            statement = select(Rule).order_by(col(Rule.confidence).desc(), col(Rule.rule_id))
            if not include_inactive:
                statement = statement.where(col(Rule.active).is_(True))
            rows = session.exec(statement).all()
            views: list[RuleView] = []
            for row in rows:
                view = _to_rule_view_or_none(row)
                if view is not None:
                    views.append(view)
            return views

    def list_active_rules(self) -> list[RuleView]:
        return self.list_rules(include_inactive=False)

    def get_rule(self, *, rule_id: str) -> RuleView | None:
        with Session(self.engine) as session:
            row = session.get(Rule, rule_id)
            return _to_rule_view_or_none(row) if row is not None else None

    def require_rule(self, *, rule_id: str) -> RuleView:
        rule = self.get_rule(rule_id=rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    def apply_distillation(self, plan: DistillationPlan) -> bool:
        """Write one distillation pass and consume its episode batch.

        Everything is rolled back when any batch episode was already distilled,
        so a batch is consumed exactly once.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            for new_rule in plan.new_rules:
                session.add(
                    Rule(
                        rule_id=new_rule.rule_id,
                        content=new_rule.content,
                        scope=new_rule.scope.value,
                        scope_qualifier=new_rule.scope_qualifier,
                        category=new_rule.category.value,
                        tags_json=dump_json(new_rule.tags) if new_rule.tags else None,
                        confidence=new_rule.confidence,
                        active=True,
                        support_count=new_rule.support_count,
                        source_episode_ids_json=dump_json(new_rule.source_episode_ids),
                        conflicts_with_json=(
                            dump_json(new_rule.conflicts_with) if new_rule.conflicts_with else None
                        ),
                        created_at=now,
                        updated_at=now,
                    ),
                )
            for change in plan.updates:
                row = session.get(Rule, change.rule_id)
                if row is None:
                    logger.warning("Rule %s disappeared during distillation", change.rule_id)
                    continue
                row.confidence = change.confidence
                row.support_count = change.support_count
                row.source_episode_ids_json = dump_json(change.source_episode_ids)
                row.conflicts_with_json = (
                    dump_json(change.conflicts_with) if change.conflicts_with else None
                )
                row.updated_at = now
                session.add(row)

            if plan.episode_ids:
                update = session.exec(
                    sa_update(Episode)
                    .where(
                        col(Episode.episode_id).in_(plan.episode_ids),
                        col(Episode.distilled).is_(False),
                    )
                    .values(distilled=True),
                )
                if update.rowcount != len(plan.episode_ids):
                    session.rollback()
                    logger.warning(
                        "Episode batch was consumed concurrently (%s of %s still undistilled)",
                        update.rowcount,
                        len(plan.episode_ids),
                    )
                    return False
            session.commit()
            return True

    def deactivate_rule(self, *, rule_id: str) -> RuleView:
        """Soft-deactivate a rule; it stays stored for audit."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Rule, rule_id)
            if row is None:
                raise RuleNotFoundError(rule_id)
            row.active = False
            row.updated_at = now
            session.add(row)
            session.commit()
        return self.require_rule(rule_id=rule_id)

    def resolve_conflict(self, *, keep_rule_id: str, drop_rule_id: str) -> RuleView:
        """Settle a flagged contradiction: drop one side and unlink the pair."""

        if keep_rule_id == drop_rule_id:
            raise ValueError("A rule cannot conflict with itself.")
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            keep = session.get(Rule, keep_rule_id)
            if keep is None:
                raise RuleNotFoundError(keep_rule_id)
            drop = session.get(Rule, drop_rule_id)
            if drop is None:
                raise RuleNotFoundError(drop_rule_id)

            keep_links = _links(keep)
            drop_links = _links(drop)
            if drop_rule_id not in keep_links and keep_rule_id not in drop_links:
                raise ValueError(
                    f"Rules {keep_rule_id} and {drop_rule_id} are not linked as conflicting.",
                )
            keep.conflicts_with_json = _dump_links(
                [item for item in keep_links if item != drop_rule_id],
            )
            drop.conflicts_with_json = _dump_links(
                [item for item in drop_links if item != keep_rule_id],
            )
            drop.active = False
            keep.updated_at = now
            drop.updated_at = now
            session.add(keep)
            session.add(drop)
            session.commit()
        logger.info("Conflict resolved: kept %s, deactivated %s", keep_rule_id, drop_rule_id)
        return self.require_rule(rule_id=keep_rule_id)


def _add_task_event(
    *,
    session: Session,
    task_id: str,
    event_type: str,
    details: dict[str, object],
) -> None:
    session.add(
        TaskEvent(
            task_id=task_id,
            event_type=event_type,
            details_json=dump_json(details) if details else None,
            created_at=to_db_datetime(utc_now()),
        ),
    )


def _links(row: Rule) -> list[str]:
    return load_str_list(
        row.conflicts_with_json,
        field_name="rules.conflicts_with_json",
        record_id=row.rule_id,
    )


def _dump_links(links: list[str]) -> str | None:
    return dump_json(links) if links else None


def _episode_views(rows: Sequence[Episode]) -> list[EpisodeView]:
    views: list[EpisodeView] = []
    for row in rows:
        try:
            views.append(_to_episode_view(row))
        except ValueError:
            logger.warning("Skipping malformed episode %s", row.episode_id)
    return views


def _to_episode_view(row: Episode) -> EpisodeView:
    return EpisodeView(
        episode_id=row.episode_id,
        narrative=row.narrative,
        feedback_type=FeedbackType(row.feedback_type),
        project_type=row.project_type,
        project_path=row.project_path,
        work_context=row.work_context,
        user_input=row.user_input,
        tags=load_str_list(
            row.tags_json,
            field_name="episodes.tags_json",
            record_id=row.episode_id,
        ),
        distilled=row.distilled,
        created_at=to_utc_aware_datetime(row.created_at),
        source_task_id=row.source_task_id,
    )


def _to_rule_view_or_none(row: Rule) -> RuleView | None:
    try:
        scope = RuleScope(row.scope)
        category = RuleCategory(row.category)
    except ValueError:
        logger.warning("Skipping rule %s with unknown scope or category", row.rule_id)
        return None
    return RuleView(
        rule_id=row.rule_id,
        content=row.content,
        scope=scope,
        scope_qualifier=row.scope_qualifier,
        category=category,
        tags=load_str_list(row.tags_json, field_name="rules.tags_json", record_id=row.rule_id),
        confidence=row.confidence,
        active=row.active,
        support_count=row.support_count,
        source_episode_ids=load_str_list(
            row.source_episode_ids_json,
            field_name="rules.source_episode_ids_json",
            record_id=row.rule_id,
        ),
        conflicts_with=_links(row),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
