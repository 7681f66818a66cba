"""Persistent task queue repository with optimistic claims."""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import timedelta
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from taskloop.coordinator.error_classifier import ErrorClassification
from taskloop.coordinator.models import (
    CLAIMABLE_IDEA_STATES,
    IDEA_TASK_TYPE,
    RESUME_STATE_BY_MODE,
    ErrorCategory,
    ErrorConfidence,
    IdeaRunOutcome,
    IdeaVariant,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
    ThreadMessage,
    WorkflowMode,
    WorkflowStatus,
)
from taskloop.storage.base import StoreRepository
from taskloop.storage.common import (
    dump_json,
    load_json_dict,
    load_json_list,
    load_str_list,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from taskloop.storage.sqlmodel_models import Task, TaskEvent

logger = logging.getLogger(__name__)

RATEABLE_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.AWAITING_FEEDBACK},
)
MIN_RATING = 1
MAX_RATING = 5


class TaskNotFoundError(RuntimeError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTransitionError(RuntimeError):
    """Requested change is not allowed from the task's current state."""


class DuplicateTaskError(ValueError):
    def __init__(self, idempotency_key: str) -> None:
        super().__init__(f"Task already exists for idempotency key: {idempotency_key}")
        self.idempotency_key = idempotency_key


class TaskRepository(StoreRepository):
    """Queue persistence facade backed by SQLModel + SQLite."""

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a pending task; the idempotency key must be unused."""

        now = to_db_datetime(utc_now())
        task_id = str(uuid4())
        idempotency_key = payload.idempotency_key or f"manual:{task_id}"
        is_idea = payload.task_type.lower() == IDEA_TASK_TYPE.lower()
        row = Task(
            task_id=task_id,
            idempotency_key=idempotency_key,
            source_event_id=payload.source_event_id,
            task_type=payload.task_type,
            subtype=payload.subtype,
            title=payload.title,
            description=payload.description,
            status=TaskStatus.PENDING.value,
            project_path=payload.project_path,
            created_at=now,
            updated_at=now,
            messages_json=_dump_messages(payload.messages) if payload.messages else None,
            workflow_status=WorkflowStatus.NONE.value,
        )
        try:
            with Session(self.engine) as session:
                session.add(row)
                session.flush()
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="created",
                    status_from=None,
                    status_to=TaskStatus.PENDING,
                    details={
                        "task_type": payload.task_type,
                        "idempotency_key": idempotency_key,
                        "idea": is_idea,
                    },
                )
                session.commit()
                session.refresh(row)
                return to_task_view(row)
        except IntegrityError as error:
            raise DuplicateTaskError(idempotency_key) from error

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return to_task_view(row) if row is not None else None

    def require_task(self, *, task_id: str) -> TaskView:
        task = self.get_task(task_id=task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_claimable_tasks(self, *, limit: int | None = None) -> list[TaskView]:
        """Pending tasks oldest first; idea tasks only in a claimable workflow state."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(Task.status == TaskStatus.PENDING.value)
                .order_by(col(Task.created_at).asc()),
            ).all()
            tasks = [to_task_view(row) for row in rows]

        claimable = [
            task
            for task in tasks
            if not task.is_idea or task.workflow_status in CLAIMABLE_IDEA_STATES
        ]
        if limit is not None:
            return claimable[:limit]
        return claimable

    def claim_task(self, *, task_id: str, worker_id: str) -> TaskView | None:
        """Claim a pending task, then re-read to verify the claim is ours.

        Returns None when another executor won the race.
        """

        now = to_db_datetime(utc_now())
        claim_token = uuid4().hex
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.IN_PROGRESS.value,
                    started_at=now,
                    claimed_by=worker_id,
                    claim_token=claim_token,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="claimed",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.IN_PROGRESS,
                details={"worker_id": worker_id, "claim_token": claim_token},
            )
            session.commit()

        claimed = self.get_task(task_id=task_id)
        if (
            claimed is None
            or claimed.status != TaskStatus.IN_PROGRESS
            or claimed.claim_token != claim_token
        ):
            logger.info("Claim on task %s was not confirmed, skipping", task_id)
            return None
        return claimed

    def complete_task(self, *, task_id: str, claim_token: str, result: str | None = None) -> bool:
        """Mark our in-progress claim as completed."""

        now = to_db_datetime(utc_now())
        values: dict[str, object] = {
            "status": TaskStatus.COMPLETED.value,
            "completed_at": now,
            "updated_at": now,
        }
        if result is not None:
            values["result"] = result
        with Session(self.engine) as session:
            update = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.IN_PROGRESS.value,
                    col(Task.claim_token) == claim_token,
                )
                .values(**values),
            )
            if update.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=TaskStatus.COMPLETED,
                details={},
            )
            session.commit()
            return True

    def fail_task(
        self,
        *,
        task_id: str,
        claim_token: str,
        error_message: str,
        classification: ErrorClassification,
    ) -> bool:
        """Mark our in-progress claim as failed with a classified error."""

        now = to_db_datetime(utc_now())
        cancelled = classification.category == ErrorCategory.CANCELLED
        status_to = TaskStatus.CANCELLED if cancelled else TaskStatus.FAILED
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                return False
            values: dict[str, object] = {
                "status": status_to.value,
                "error_message": error_message,
                "error_category": classification.category.value,
                "error_confidence": classification.confidence.value,
                "cancel_requested": False,
                "completed_at": now,
                "updated_at": now,
            }
            if row.task_type.lower() == IDEA_TASK_TYPE.lower():
                values["workflow_status"] = WorkflowStatus.FAILED.value
            update = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.IN_PROGRESS.value,
                    col(Task.claim_token) == claim_token,
                )
                .values(**values),
            )
            if update.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="cancelled" if cancelled else "failed",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=status_to,
                details={**classification.to_event_details(), "error_message": error_message},
            )
            session.commit()
            return True

    def release_claim(self, *, task_id: str, claim_token: str, reason: str) -> bool:
        """Hand our claim back to the queue without recording an outcome."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                return False
            values: dict[str, object] = {
                "status": TaskStatus.PENDING.value,
                "started_at": None,
                "claimed_by": None,
                "claim_token": None,
                "updated_at": now,
            }
            if row.task_type.lower() == IDEA_TASK_TYPE.lower():
                mode = WorkflowMode(row.workflow_mode) if row.workflow_mode else WorkflowMode.NEW
                values["workflow_status"] = RESUME_STATE_BY_MODE[mode].value
            update = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.IN_PROGRESS.value,
                    col(Task.claim_token) == claim_token,
                )
                .values(**values),
            )
            if update.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="released",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=TaskStatus.PENDING,
                details={"reason": reason},
            )
            session.commit()
            return True

    def request_cancel(self, *, task_id: str) -> TaskView:
        """Cancel a waiting task now, or flag an in-progress one for the coordinator."""

        task = self.require_task(task_id=task_id)
        now = to_db_datetime(utc_now())
        if task.status in {TaskStatus.PENDING, TaskStatus.AWAITING_FEEDBACK}:
            values: dict[str, object] = {
                "status": TaskStatus.CANCELLED.value,
                "error_category": ErrorCategory.CANCELLED.value,
                "error_confidence": ErrorConfidence.HIGH.value,
                "completed_at": now,
                "updated_at": now,
            }
            event_type = "cancelled"
            status_to = TaskStatus.CANCELLED
        elif task.status == TaskStatus.IN_PROGRESS:
            values = {"cancel_requested": True, "updated_at": now}
            event_type = "cancel_requested"
            status_to = TaskStatus.IN_PROGRESS
        else:
            raise InvalidTransitionError(
                f"Task cannot be cancelled from status={task.status.value}",
            )

        with Session(self.engine) as session:
            update = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == task.status.value,
                )
                .values(**values),
            )
            if update.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(
                    "Task state changed concurrently while cancelling; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=task.status,
                status_to=status_to,
                details={},
            )
            session.commit()
        return self.require_task(task_id=task_id)

    def is_cancel_requested(self, *, task_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return bool(row is not None and row.cancel_requested)

    def recover_stale_tasks(self, *, stale_after: timedelta) -> int:
        """Return stale in-progress claims to pending.

        Each reset is conditional on the row still being the same stale claim,
        so a second pass right after the first is a no-op.
        """

        cutoff = to_db_datetime(utc_now() - stale_after)
        with Session(self.engine) as session:
            candidates = session.exec(
                select(Task).where(
                    Task.status == TaskStatus.IN_PROGRESS.value,
                    col(Task.started_at).is_not(None),
                    col(Task.started_at) <= cutoff,
                ),
            ).all()
            stale = [
                (row.task_id, row.claim_token, row.claimed_by, row.task_type, row.workflow_mode)
                for row in candidates
            ]

        recovered = 0
        for task_id, claim_token, claimed_by, task_type, workflow_mode in stale:
            now = to_db_datetime(utc_now())
            values: dict[str, object] = {
                "status": TaskStatus.PENDING.value,
                "started_at": None,
                "claimed_by": None,
                "claim_token": None,
                "updated_at": now,
            }
            if task_type.lower() == IDEA_TASK_TYPE.lower():
                mode = WorkflowMode(workflow_mode) if workflow_mode else WorkflowMode.NEW
                values["workflow_status"] = RESUME_STATE_BY_MODE[mode].value
            claim_filter = (
                col(Task.claim_token) == claim_token
                if claim_token is not None
                else col(Task.claim_token).is_(None)
            )
            with Session(self.engine) as session:
                update = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.task_id) == task_id,
                        col(Task.status) == TaskStatus.IN_PROGRESS.value,
                        col(Task.started_at) <= cutoff,
                        claim_filter,
                    )
                    .values(**values),
                )
                if update.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="recovered",
                    status_from=TaskStatus.IN_PROGRESS,
                    status_to=TaskStatus.PENDING,
                    details={
                        "stale_after_seconds": int(stale_after.total_seconds()),
                        "claimed_by": claimed_by,
                    },
                )
                session.commit()
                recovered += 1
                logger.warning("Recovered stale task %s claimed by %s", task_id, claimed_by)
        return recovered

    def begin_idea_run(
        self,
        *,
        task_id: str,
        claim_token: str,
        expected_state: WorkflowStatus,
        mode: WorkflowMode,
    ) -> bool:
        """Move a claimed idea task to workflow running and reset prior outcome fields."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            update = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.IN_PROGRESS.value,
                    col(Task.claim_token) == claim_token,
                    col(Task.workflow_status) == expected_state.value,
                )
                .values(
                    workflow_status=WorkflowStatus.RUNNING.value,
                    workflow_mode=mode.value,
                    result=None,
                    error_message=None,
                    error_category=None,
                    error_confidence=None,
                    completed_at=None,
                    updated_at=now,
                ),
            )
            if update.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="idea_run_started",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=TaskStatus.IN_PROGRESS,
                details={"mode": mode.value, "from_workflow_status": expected_state.value},
            )
            session.commit()
            return True

    def finish_idea_run(self, *, task_id: str, claim_token: str, outcome: IdeaRunOutcome) -> bool:
        """Store parsed idea output and wait for the human."""

        now = to_db_datetime(utc_now())
        values: dict[str, object] = {
            "status": TaskStatus.AWAITING_FEEDBACK.value,
            "workflow_status": WorkflowStatus.AWAITING_FEEDBACK.value,
            "result": outcome.result,
            "selected_variant_index": outcome.selected_variant_index,
            "completed_at": now,
            "updated_at": now,
        }
        if outcome.assumptions is not None:
            values["assumptions_json"] = dump_json(outcome.assumptions)
        if outcome.variants is not None:
            values["variants_json"] = dump_json([asdict(item) for item in outcome.variants])
        if outcome.epic_id is not None:
            values["epic_id"] = outcome.epic_id

        with Session(self.engine) as session:
            update = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.IN_PROGRESS.value,
                    col(Task.claim_token) == claim_token,
                    col(Task.workflow_status) == WorkflowStatus.RUNNING.value,
                )
                .values(**values),
            )
            if update.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="idea_awaiting_feedback",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=TaskStatus.AWAITING_FEEDBACK,
                details={
                    "variants": len(outcome.variants) if outcome.variants is not None else None,
                    "selected_variant_index": outcome.selected_variant_index,
                },
            )
            session.commit()
            return True

    def submit_variant_selection(self, *, task_id: str, variant_index: int) -> TaskView:
        """awaiting_feedback -> pending_variant; the task returns to the queue."""

        task = self._require_awaiting_idea(task_id=task_id)
        if not 0 <= variant_index < len(task.variants):
            raise ValueError(
                f"Variant index {variant_index} out of range; "
                f"task {task_id} has {len(task.variants)} variants.",
            )
        return self._requeue_idea(
            task_id=task_id,
            workflow_status=WorkflowStatus.PENDING_VARIANT,
            event_type="variant_selected",
            extra_values={"selected_variant_index": variant_index},
            details={"variant_index": variant_index},
        )

    def submit_feedback(self, *, task_id: str, feedback: str) -> TaskView:
        """awaiting_feedback -> pending_feedback; the task returns to the queue."""

        text = feedback.strip()
        if not text:
            raise ValueError("Feedback text must not be empty.")
        self._require_awaiting_idea(task_id=task_id)
        return self._requeue_idea(
            task_id=task_id,
            workflow_status=WorkflowStatus.PENDING_FEEDBACK,
            event_type="feedback_submitted",
            extra_values={"user_feedback": text},
            details={"feedback_chars": len(text)},
        )

    def report_from_agent(
        self,
        *,
        task_id: str,
        status: TaskStatus | None,
        result: str | None,
        message: str | None,
    ) -> TaskView:
        """Side channel used by the running agent to write progress and results."""

        task = self.require_task(task_id=task_id)
        if task.status != TaskStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Agent reports are only accepted while in_progress, got {task.status.value}",
            )
        if status is not None:
            if status not in {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.IN_PROGRESS}:
                raise InvalidTransitionError(f"Agent cannot set status={status.value}")
            if task.is_idea and status != TaskStatus.IN_PROGRESS:
                raise InvalidTransitionError("Idea task status is owned by the idea workflow.")

        now = to_db_datetime(utc_now())
        values: dict[str, object] = {"updated_at": now}
        if result is not None:
            values["result"] = result
        if message:
            messages = [
                *task.messages,
                ThreadMessage(role="assistant", content=message, timestamp=utc_now().isoformat()),
            ]
            values["messages_json"] = _dump_messages(messages)
        status_to = status or TaskStatus.IN_PROGRESS
        if status_to != TaskStatus.IN_PROGRESS:
            values["status"] = status_to.value
            values["completed_at"] = now

        with Session(self.engine) as session:
            update = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.IN_PROGRESS.value,
                    col(Task.updated_at) == to_db_datetime(task.updated_at),
                )
                .values(**values),
            )
            if update.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(
                    f"Task changed concurrently while reporting; please retry (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="agent_reported",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=status_to,
                details={"has_result": result is not None, "has_message": bool(message)},
            )
            session.commit()
        return self.require_task(task_id=task_id)

    def rate_task(
        self,
        *,
        task_id: str,
        rating: int,
        tags: list[str],
        comment: str | None,
    ) -> TaskView:
        """Attach human feedback; the episode recorder picks it up on its next poll."""

        if not MIN_RATING <= rating <= MAX_RATING:
            raise ValueError(f"Rating must be between {MIN_RATING} and {MAX_RATING}, got {rating}")
        task = self.require_task(task_id=task_id)
        if task.status not in RATEABLE_STATUSES:
            raise InvalidTransitionError(
                f"Only finished tasks can be rated, got status={task.status.value}",
            )
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            update = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == task.status.value,
                )
                .values(
                    rating=rating,
                    rating_tags_json=dump_json(tags) if tags else None,
                    rating_comment=comment,
                    feedback_processed=False,
                    updated_at=now,
                ),
            )
            if update.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(
                    f"Task changed concurrently while rating; please retry (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="rated",
                status_from=task.status,
                status_to=task.status,
                details={"rating": rating, "tags": tags},
            )
            session.commit()
        return self.require_task(task_id=task_id)

    def add_task_event(
        self,
        *,
        task_id: str,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        with Session(self.engine) as session:
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            rows = session.exec(statement).all()
            return [to_task_view(row) for row in rows]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.get(Task, task_id)
            if task is None:
                return None
            view = to_task_view(task)
            event_rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.created_at).asc(), col(TaskEvent.id).asc()),
            ).all()
            events = [
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=load_json_dict(
                        row.details_json,
                        field_name="task_events.details_json",
                        record_id=str(row.id),
                    ),
                )
                for row in event_rows
            ]
        return TaskDetails(task=view, events=events)

    def _require_awaiting_idea(self, *, task_id: str) -> TaskView:
        task = self.require_task(task_id=task_id)
        if not task.is_idea:
            raise InvalidTransitionError(f"Task {task_id} is not an idea task.")
        if task.status != TaskStatus.AWAITING_FEEDBACK:
            raise InvalidTransitionError(
                f"Idea must be awaiting_feedback, got status={task.status.value}",
            )
        if task.workflow_status != WorkflowStatus.AWAITING_FEEDBACK:
            raise InvalidTransitionError(
                "Idea must be awaiting_feedback, "
                f"got workflow_status={task.workflow_status.value}",
            )
        return task

    def _requeue_idea(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        workflow_status: WorkflowStatus,
        event_type: str,
        extra_values: dict[str, object],
        details: dict[str, object],
    ) -> TaskView:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            update = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.workflow_status) == WorkflowStatus.AWAITING_FEEDBACK.value,
                    col(Task.status) == TaskStatus.AWAITING_FEEDBACK.value,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    workflow_status=workflow_status.value,
                    started_at=None,
                    completed_at=None,
                    result=None,
                    error_message=None,
                    updated_at=now,
                    **extra_values,
                ),
            )
            if update.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(
                    f"Idea changed concurrently; please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=TaskStatus.AWAITING_FEEDBACK,
                status_to=TaskStatus.PENDING,
                details=details,
            )
            session.commit()
        return self.require_task(task_id=task_id)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _dump_messages(messages: list[ThreadMessage]) -> str:
    return dump_json([asdict(message) for message in messages])


def _load_messages(row: Task) -> list[ThreadMessage]:
    messages: list[ThreadMessage] = []
    raw = load_json_list(row.messages_json, field_name="messages_json", record_id=row.task_id)
    for item in raw:
        if not isinstance(item, dict) or not isinstance(item.get("content"), str):
            continue
        role = item.get("role")
        timestamp = item.get("timestamp")
        messages.append(
            ThreadMessage(
                role=role if isinstance(role, str) else "user",
                content=item["content"],
                timestamp=str(timestamp) if timestamp is not None else None,
            ),
        )
    return messages


def _load_assumptions(row: Task) -> dict[str, str]:
    raw = load_json_dict(row.assumptions_json, field_name="assumptions_json", record_id=row.task_id)
    return {
        str(key): value if isinstance(value, str) else dump_json(value)
        for key, value in raw.items()
    }


def _load_variants(row: Task) -> list[IdeaVariant]:
    return variants_from_payload(
        load_json_list(row.variants_json, field_name="variants_json", record_id=row.task_id),
    )


def variants_from_payload(items: list[object]) -> list[IdeaVariant]:
    """Coerce a loosely-typed variant list, dropping entries without a name."""

    variants: list[IdeaVariant] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        description = item.get("description")
        variants.append(
            IdeaVariant(
                name=name,
                description=description if isinstance(description, str) else "",
                pros=_string_list(item.get("pros")),
                cons=_string_list(item.get("cons")),
            ),
        )
    return variants


def _string_list(value: object) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        idempotency_key=row.idempotency_key,
        source_event_id=row.source_event_id,
        task_type=row.task_type,
        subtype=row.subtype,
        title=row.title,
        description=row.description,
        status=TaskStatus(row.status),
        project_path=row.project_path,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        result=row.result,
        error_message=row.error_message,
        error_category=ErrorCategory(row.error_category) if row.error_category else None,
        error_confidence=ErrorConfidence(row.error_confidence) if row.error_confidence else None,
        claimed_by=row.claimed_by,
        claim_token=row.claim_token,
        cancel_requested=row.cancel_requested,
        messages=_load_messages(row),
        rating=row.rating,
        rating_tags=load_str_list(
            row.rating_tags_json,
            field_name="rating_tags_json",
            record_id=row.task_id,
        ),
        rating_comment=row.rating_comment,
        feedback_processed=row.feedback_processed,
        workflow_status=WorkflowStatus(row.workflow_status),
        workflow_mode=WorkflowMode(row.workflow_mode) if row.workflow_mode else None,
        assumptions=_load_assumptions(row),
        variants=_load_variants(row),
        selected_variant_index=row.selected_variant_index,
        user_feedback=row.user_feedback,
        epic_id=row.epic_id,
    )
