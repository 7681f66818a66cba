"""Use-case services for putting work into the task queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from taskloop.coordinator.models import TaskCreate, TaskView, ThreadMessage
from taskloop.coordinator.repository import DuplicateTaskError, TaskRepository
from taskloop.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExtractedTask:
    """One task extracted from an upstream event (a note, a transcript, a message)."""

    task_type: str
    title: str
    description: str | None = None
    subtype: str | None = None
    project_path: str | None = None


@dataclass(slots=True)
class IngestResult:
    """Tasks created for a source event and ordinals skipped as already ingested."""

    created: list[TaskView] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)


def idempotency_key_for(source_event_id: str, ordinal: int) -> str:
    return f"{source_event_id}:{ordinal}"


class TaskService:
    """Creates tasks from manual input or from upstream extraction events."""

    def __init__(self, *, repository: TaskRepository) -> None:
        self.repository = repository

    def add_task(  # noqa: PLR0913
        self,
        *,
        task_type: str,
        title: str,
        description: str | None = None,
        subtype: str | None = None,
        project_path: str | None = None,
        message: str | None = None,
    ) -> TaskView:
        """Create a manual task; an optional opening message starts its thread."""

        messages = (
            [ThreadMessage(role="user", content=message, timestamp=utc_now().isoformat())]
            if message
            else []
        )
        return self.repository.create_task(
            TaskCreate(
                task_type=task_type,
                title=title,
                description=description,
                subtype=subtype,
                project_path=project_path,
                messages=messages,
            ),
        )

    def ingest(self, *, source_event_id: str, items: list[ExtractedTask]) -> IngestResult:
        """Create one task per item keyed by ``<source_event_id>:<ordinal>``.

        Re-processing the same event skips items whose key already exists.
        """

        result = IngestResult()
        for ordinal, item in enumerate(items):
            key = idempotency_key_for(source_event_id, ordinal)
            try:
                task = self.repository.create_task(
                    TaskCreate(
                        task_type=item.task_type,
                        title=item.title,
                        description=item.description,
                        subtype=item.subtype,
                        project_path=item.project_path,
                        idempotency_key=key,
                        source_event_id=source_event_id,
                    ),
                )
            except DuplicateTaskError:
                logger.info("Skipping already ingested task %s", key)
                result.duplicates.append(key)
                continue
            result.created.append(task)
        return result
