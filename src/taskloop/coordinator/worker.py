"""Polling coordinator that claims tasks and runs them through the CLI agent."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, fields
from datetime import timedelta
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from taskloop.config import CoordinatorSettings
from taskloop.coordinator.backend import AgentBackend
from taskloop.coordinator.complexity import analyze_scope
from taskloop.coordinator.error_classifier import ErrorClassification, classify_error
from taskloop.coordinator.execution import AgentInvoker
from taskloop.coordinator.idea_workflow import IdeaWorkflow
from taskloop.coordinator.models import ErrorCategory, ErrorConfidence, TaskStatus, TaskView
from taskloop.coordinator.prompts import build_execution_prompt, prompt_version
from taskloop.coordinator.repository import TaskRepository
from taskloop.coordinator.workdir import TaskWorkdirManager
from taskloop.loop_control import StoppableLoop

logger = logging.getLogger(__name__)

RESULT_TAIL_CHARS = 2_000

RulesProvider = Callable[[TaskView], str]


@dataclass(slots=True)
class CoordinatorRunSummary:
    """Aggregate coordinator counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    awaiting_feedback: int = 0
    deferred: int = 0
    released: int = 0
    skipped: int = 0
    recovered: int = 0
    idle_polls: int = 0

    def merge(self, other: CoordinatorRunSummary) -> None:
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))


class TaskCoordinator(StoppableLoop):
    """Claims pending tasks one by one and executes them sequentially."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        backend: AgentBackend,
        settings: CoordinatorSettings,
        db_path: Path,
        rules_provider: RulesProvider | None = None,
        dry_run: bool = False,
        graceful_shutdown_seconds: int = 30,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.rules_provider = rules_provider
        self.dry_run = dry_run
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.invoker = AgentInvoker(
            backend=backend,
            workdir=TaskWorkdirManager(
                projects_root=settings.projects_root,
                runs_root=settings.runs_root,
            ),
            db_path=db_path,
            command_template=settings.agent_command_template,
            model=settings.agent_model,
            cancel_check_seconds=settings.cancel_check_seconds,
            error_message_max_chars=settings.error_message_max_chars,
            graceful_shutdown_seconds=graceful_shutdown_seconds,
        )
        self.idea_workflow = IdeaWorkflow(
            repository=repository,
            invoker=self.invoker,
            timeout_seconds=settings.idea_timeout_seconds,
            rules_block=self._rules_block,
        )
        super().__init__()
        self._last_stale_check: float | None = None
        self._current_task_id: str | None = None

    def run_once(self, *, limit: int | None = None) -> CoordinatorRunSummary:
        """Recover stale claims when due, then work through the pending queue once."""

        summary = CoordinatorRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        summary.recovered = self._recover_stale_if_due()
        tasks = self.repository.list_claimable_tasks(limit=limit)
        if not tasks:
            summary.idle_polls = 1
            return summary

        for task in tasks:
            if self._stop_requested:
                break
            if self.dry_run:
                logger.info(
                    "[dry-run] would execute task %s (%s): %s",
                    task.task_id,
                    task.task_type,
                    task.title,
                )
                summary.skipped += 1
                continue

            claimed = self.repository.claim_task(
                task_id=task.task_id,
                worker_id=self.settings.worker_id,
            )
            if claimed is None:
                summary.skipped += 1
                continue

            summary.processed += 1
            self._current_task_id = claimed.task_id
            try:
                final_status = self._execute_claimed(claimed)
            except Exception as error:  # noqa: BLE001
                final_status = self._fail_unexpected(claimed, error)
            finally:
                self._current_task_id = None
            _count_outcome(summary, final_status)
        return summary

    def run_loop(
        self,
        *,
        max_cycles: int | None = None,
        limit: int | None = None,
    ) -> CoordinatorRunSummary:
        """Poll until stopped by a signal or after ``max_cycles`` cycles."""

        aggregate = CoordinatorRunSummary()
        cycles = 0
        with self._signal_handlers():
            while not self._stop_requested:
                try:
                    summary = self.run_once(limit=limit)
                    self.repository.record_heartbeat(
                        name=self.settings.worker_id,
                        status="idle" if summary.processed == 0 else "active",
                    )
                except SQLAlchemyError:
                    logger.exception("Coordinator cycle failed, retrying on next poll")
                    summary = CoordinatorRunSummary()
                aggregate.merge(summary)
                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    break
                self._sleep_with_stop(self.settings.poll_interval_seconds)
        return aggregate

    def _execute_claimed(self, task: TaskView) -> TaskStatus | None:
        claim_token = task.claim_token or ""
        if task.cancel_requested:
            cancelled = self.repository.fail_task(
                task_id=task.task_id,
                claim_token=claim_token,
                error_message="Cancelled by user.",
                classification=classify_error(exit_code=None, stderr="", was_cancelled=True),
            )
            return TaskStatus.CANCELLED if cancelled else None

        details: dict[str, object] = {
            "worker_id": self.settings.worker_id,
            "prompt_version": prompt_version(),
        }
        if task.is_idea:
            self.repository.add_task_event(
                task_id=task.task_id,
                event_type="execution_started",
                details={**details, "kind": "idea"},
            )
            return self.idea_workflow.run(
                task,
                should_cancel=self._cancel_probe(task.task_id),
                shutdown_requested=self._shutdown_probe,
            )

        scope = analyze_scope(
            task_type=task.task_type,
            subtype=task.subtype,
            title=task.title,
            description=task.description,
        )
        self.repository.add_task_event(
            task_id=task.task_id,
            event_type="execution_started",
            details={**details, "kind": "standard", "scope": scope.value},
        )
        prompt = build_execution_prompt(
            task=task,
            scope=scope,
            rules_block=self._rules_block(task),
        )
        outcome = self.invoker.invoke(
            task=task,
            prompt=prompt,
            timeout_seconds=self.settings.execution_timeout_seconds,
            label="run",
            should_cancel=self._cancel_probe(task.task_id),
            shutdown_requested=self._shutdown_probe,
        )

        if outcome.interrupted:
            released = self.repository.release_claim(
                task_id=task.task_id,
                claim_token=claim_token,
                reason=f"shutdown:{self._stop_signal_name or 'unknown'}",
            )
            return TaskStatus.PENDING if released else None

        if not outcome.succeeded:
            classification = outcome.classification or ErrorClassification(
                ErrorCategory.UNKNOWN,
                ErrorConfidence.LOW,
            )
            recorded = self.repository.fail_task(
                task_id=task.task_id,
                claim_token=claim_token,
                error_message=outcome.error_message or "Agent run failed.",
                classification=classification,
            )
            if not recorded:
                return None
            logger.warning(
                "Task %s failed (%s): %s",
                task.task_id,
                classification.category.value,
                outcome.error_message,
            )
            if classification.category == ErrorCategory.CANCELLED:
                return TaskStatus.CANCELLED
            return TaskStatus.FAILED

        current = self.repository.get_task(task_id=task.task_id)
        if (
            current is None
            or current.status != TaskStatus.IN_PROGRESS
            or current.claim_token != task.claim_token
        ):
            logger.info(
                "Task %s was finalized by the agent (status=%s), deferring",
                task.task_id,
                current.status.value if current is not None else "missing",
            )
            return None

        result = None
        if not current.result and outcome.run is not None and outcome.run.stdout.strip():
            result = outcome.run.stdout.strip()[-RESULT_TAIL_CHARS:]
        if not self.repository.complete_task(
            task_id=task.task_id,
            claim_token=claim_token,
            result=result,
        ):
            return None
        logger.info("Task %s completed", task.task_id)
        return TaskStatus.COMPLETED

    def _fail_unexpected(self, task: TaskView, error: Exception) -> TaskStatus | None:
        logger.exception("Task %s crashed the coordinator run", task.task_id)
        message = f"Coordinator error: {type(error).__name__}: {error}"
        recorded = self.repository.fail_task(
            task_id=task.task_id,
            claim_token=task.claim_token or "",
            error_message=message[: self.settings.error_message_max_chars],
            classification=ErrorClassification(ErrorCategory.CRASH, ErrorConfidence.LOW),
        )
        return TaskStatus.FAILED if recorded else None

    def _rules_block(self, task: TaskView) -> str:
        if self.rules_provider is None:
            return ""
        return self.rules_provider(task)

    def _recover_stale_if_due(self) -> int:
        now = time.monotonic()
        if (
            self._last_stale_check is not None
            and now - self._last_stale_check < self.settings.stale_check_interval_seconds
        ):
            return 0
        self._last_stale_check = now
        return self.repository.recover_stale_tasks(
            stale_after=timedelta(seconds=self.settings.stale_after_seconds),
        )

    def _cancel_probe(self, task_id: str) -> Callable[[], bool]:
        def _probe() -> bool:
            try:
                return self.repository.is_cancel_requested(task_id=task_id)
            except SQLAlchemyError:
                logger.warning("Cancel check for task %s failed, will retry", task_id)
                return False

        return _probe

    def _shutdown_probe(self) -> bool:
        return self._stop_requested

    def _on_stop_requested(self, signal_name: str) -> None:
        if self._current_task_id is None:
            return
        try:
            self.repository.add_task_event(
                task_id=self._current_task_id,
                event_type="shutdown_requested",
                details={
                    "signal": signal_name,
                    "graceful_shutdown_seconds": self.graceful_shutdown_seconds,
                },
            )
        except SQLAlchemyError:  # pragma: no cover - best effort
            return


def _count_outcome(summary: CoordinatorRunSummary, status: TaskStatus | None) -> None:
    if status is None:
        summary.deferred += 1
    elif status == TaskStatus.COMPLETED:
        summary.completed += 1
    elif status == TaskStatus.FAILED:
        summary.failed += 1
    elif status == TaskStatus.CANCELLED:
        summary.cancelled += 1
    elif status == TaskStatus.AWAITING_FEEDBACK:
        summary.awaiting_feedback += 1
    elif status == TaskStatus.PENDING:
        summary.released += 1
