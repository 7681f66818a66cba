"""Controllers for task queue, executor and idea CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from taskloop.config import Settings
from taskloop.coordinator.backend import CliAgentBackend
from taskloop.coordinator.complexity import analyze_scope
from taskloop.coordinator.models import TaskStatus, TaskView
from taskloop.coordinator.repository import TaskRepository
from taskloop.coordinator.services import ExtractedTask, TaskService
from taskloop.coordinator.worker import TaskCoordinator
from taskloop.learning.project_type import ProjectTypeInferrer
from taskloop.learning.repository import LearningRepository
from taskloop.learning.rule_selector import RuleSelector


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for manual task creation."""

    db_path: Path | None
    task_type: str
    title: str
    description: str | None
    subtype: str | None
    project_path: str | None
    message: str | None


@dataclass(slots=True)
class TaskIngestCommand:
    """CLI input for idempotent ingestion of extracted tasks."""

    db_path: Path | None
    source_event_id: str
    items_json: str


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input for commands that address one task."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskRateCommand:
    db_path: Path | None
    task_id: str
    rating: int
    tags: tuple[str, ...]
    comment: str | None


@dataclass(slots=True)
class TaskReportCommand:
    """CLI input for the agent side channel."""

    db_path: Path | None
    task_id: str
    status: str | None
    result: str | None
    message: str | None


@dataclass(slots=True)
class TaskScopeCommand:
    task_type: str
    title: str
    description: str | None
    subtype: str | None


@dataclass(slots=True)
class ExecutorRunCommand:
    """CLI input for coordinator execution."""

    db_path: Path | None
    once: bool
    limit: int | None
    dry_run: bool
    max_cycles: int | None = None
    use_rules: bool = True


@dataclass(slots=True)
class ExecutorRecoverCommand:
    db_path: Path | None
    stale_after_seconds: int | None


@dataclass(slots=True)
class IdeaVariantCommand:
    db_path: Path | None
    task_id: str
    variant_index: int


@dataclass(slots=True)
class IdeaFeedbackCommand:
    db_path: Path | None
    task_id: str
    feedback: str


@dataclass(slots=True)
class HeartbeatsCommand:
    db_path: Path | None


class CoordinatorCliController:
    """Coordinates queue, executor and idea workflow CLI operations."""

    def add_task(self, command: TaskAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = TaskService(repository=repository).add_task(
                task_type=command.task_type,
                title=command.title,
                description=command.description,
                subtype=command.subtype,
                project_path=command.project_path,
                message=command.message,
            )
        return [
            f"Task created: task_id={task.task_id} type={task.task_type} "
            f"status={task.status.value}",
        ]

    def ingest(self, command: TaskIngestCommand) -> list[str]:
        """Create tasks for one upstream event; re-running the same event is a no-op."""

        items = parse_extracted_items(command.items_json)
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            result = TaskService(repository=repository).ingest(
                source_event_id=command.source_event_id,
                items=items,
            )
        lines = [
            f"Ingested event {command.source_event_id}: "
            f"created={len(result.created)} duplicates={len(result.duplicates)}",
        ]
        lines.extend(f"  {task.task_id} key={task.idempotency_key}" for task in result.created)
        return lines

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            workflow = f" workflow={task.workflow_status.value}" if task.is_idea else ""
            lines.append(
                f"  {task.task_id} type={task.task_type} status={task.status.value}{workflow} "
                f"rating={task.rating if task.rating is not None else '-'} title={task.title}",
            )
        return lines

    def inspect_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type}{f'/{task.subtype}' if task.subtype else ''}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Project: {task.project_path or '-'}",
            f"Idempotency key: {task.idempotency_key}",
            f"Claimed by: {task.claimed_by or '-'}",
            f"Error: {_error_line(task)}",
            f"Rating: {task.rating if task.rating is not None else '-'}",
            f"Result: {(task.result or '-')[:200]}",
        ]
        if task.is_idea:
            lines.append(
                f"Workflow: {task.workflow_status.value} "
                f"mode={task.workflow_mode.value if task.workflow_mode else '-'} "
                f"epic={task.epic_id or '-'}",
            )
            for index, variant in enumerate(task.variants):
                marker = "*" if index == task.selected_variant_index else " "
                lines.append(f"  {marker}[{index}] {variant.name}: {variant.description}")
        lines.append(f"Messages: {len(task.messages)}")
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            transition = ""
            if event.status_from is not None or event.status_to is not None:
                status_from = event.status_from.value if event.status_from else "-"
                status_to = event.status_to.value if event.status_to else "-"
                transition = f" {status_from}->{status_to}"
            lines.append(f"  {event.created_at.isoformat()} {event.event_type}{transition}")
        return lines

    def cancel_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.request_cancel(task_id=command.task_id)
        if task.status == TaskStatus.CANCELLED:
            return [f"Task cancelled: {task.task_id}"]
        return [f"Cancellation requested for running task: {task.task_id}"]

    def rate_task(self, command: TaskRateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        tags = [tag.strip() for tag in command.tags if tag.strip()]
        with _repository(settings) as repository:
            task = repository.rate_task(
                task_id=command.task_id,
                rating=command.rating,
                tags=tags,
                comment=command.comment,
            )
        return [f"Task rated: {task.task_id} rating={task.rating} tags={','.join(tags) or '-'}"]

    def report(self, command: TaskReportCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = _parse_status(command.status)
        with _repository(settings) as repository:
            task = repository.report_from_agent(
                task_id=command.task_id,
                status=status,
                result=command.result,
                message=command.message,
            )
        return [f"Report recorded: {task.task_id} status={task.status.value}"]

    def scope(self, command: TaskScopeCommand) -> list[str]:
        scope = analyze_scope(
            task_type=command.task_type,
            subtype=command.subtype,
            title=command.title,
            description=command.description,
        )
        return [f"Scope: {scope.value}"]

    def run_executor(self, command: ExecutorRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository, _learning_repository(settings) as learning:
            selector = RuleSelector(
                repository=learning,
                inferrer=ProjectTypeInferrer(projects_root=settings.coordinator.projects_root),
                max_rules=settings.learning.max_selected_rules,
            )
            coordinator = TaskCoordinator(
                repository=repository,
                backend=CliAgentBackend(),
                settings=settings.coordinator,
                db_path=settings.db_path,
                rules_provider=selector.prompt_block if command.use_rules else None,
                dry_run=command.dry_run,
            )
            summary = (
                coordinator.run_once(limit=command.limit)
                if command.once
                else coordinator.run_loop(max_cycles=command.max_cycles, limit=command.limit)
            )

        return [
            "Executor summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} cancelled={summary.cancelled} "
            f"awaiting_feedback={summary.awaiting_feedback} deferred={summary.deferred} "
            f"released={summary.released} skipped={summary.skipped} "
            f"recovered={summary.recovered} idle_polls={summary.idle_polls}",
        ]

    def recover(self, command: ExecutorRecoverCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        seconds = command.stale_after_seconds or settings.coordinator.stale_after_seconds
        with _repository(settings) as repository:
            recovered = repository.recover_stale_tasks(stale_after=timedelta(seconds=seconds))
        return [f"Recovered stale tasks: {recovered} (threshold={seconds}s)"]

    def select_variant(self, command: IdeaVariantCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.submit_variant_selection(
                task_id=command.task_id,
                variant_index=command.variant_index,
            )
        return [
            f"Variant {command.variant_index} selected: {task.task_id} "
            f"status={task.status.value} workflow={task.workflow_status.value}",
        ]

    def feedback(self, command: IdeaFeedbackCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.submit_feedback(task_id=command.task_id, feedback=command.feedback)
        return [
            f"Feedback queued: {task.task_id} "
            f"status={task.status.value} workflow={task.workflow_status.value}",
        ]

    def heartbeats(self, command: HeartbeatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            beats = repository.list_heartbeats()
        lines = [f"Heartbeats: {len(beats)}"]
        lines.extend(
            f"  {beat.name} last_seen={beat.last_seen.isoformat()} status={beat.status or '-'}"
            for beat in beats
        )
        return lines


def parse_extracted_items(raw: str) -> list[ExtractedTask]:
    """Parse a JSON array of ``{"type", "title", ...}`` objects."""

    try:
        payload = json.loads(raw)
    except ValueError as error:
        raise ValueError(f"Items must be a JSON array: {error}") from error
    if not isinstance(payload, list):
        raise ValueError("Items must be a JSON array of task objects.")

    items: list[ExtractedTask] = []
    for index, entry in enumerate(payload):
        if not isinstance(entry, dict):
            raise ValueError(f"Item {index} must be an object.")
        task_type = entry.get("type", entry.get("task_type"))
        title = entry.get("title")
        if not isinstance(task_type, str) or not task_type.strip():
            raise ValueError(f"Item {index} has no type.")
        if not isinstance(title, str) or not title.strip():
            raise ValueError(f"Item {index} has no title.")
        items.append(
            ExtractedTask(
                task_type=task_type.strip(),
                title=title.strip(),
                description=_optional(entry.get("description")),
                subtype=_optional(entry.get("subtype")),
                project_path=_optional(entry.get("project_path", entry.get("projectPath"))),
            ),
        )
    return items


def _optional(value: object) -> str | None:
    return value if isinstance(value, str) and value.strip() else None


def _error_line(task: TaskView) -> str:
    if task.error_message is None:
        return "-"
    category = task.error_category.value if task.error_category else "-"
    confidence = task.error_confidence.value if task.error_confidence else "-"
    return f"[{category}/{confidence}] {task.error_message}"


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _learning_repository(settings: Settings) -> Iterator[LearningRepository]:
    repository = LearningRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        yield repository
    finally:
        repository.close()
