"""One agent invocation for a claimed task, with failure classification."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from taskloop.coordinator.backend import (
    AgentBackend,
    AgentRunError,
    AgentRunRequest,
    AgentRunResult,
)
from taskloop.coordinator.error_classifier import ErrorClassification, classify_error
from taskloop.coordinator.models import ErrorCategory, ErrorConfidence, TaskView
from taskloop.coordinator.workdir import TaskWorkdirManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class InvocationOutcome:
    """Agent result plus the failure classification when it did not succeed."""

    succeeded: bool
    run: AgentRunResult | None
    classification: ErrorClassification | None = None
    error_message: str | None = None

    @property
    def interrupted(self) -> bool:
        return self.run is not None and self.run.interrupted


class AgentInvoker:
    """Prepares the run directory and environment, then runs the backend."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: AgentBackend,
        workdir: TaskWorkdirManager,
        db_path: Path,
        command_template: str,
        model: str,
        cancel_check_seconds: float,
        error_message_max_chars: int,
        graceful_shutdown_seconds: int = 30,
    ) -> None:
        self.backend = backend
        self.workdir = workdir
        self.db_path = db_path
        self.command_template = command_template
        self.model = model
        self.cancel_check_seconds = cancel_check_seconds
        self.error_message_max_chars = error_message_max_chars
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    def invoke(  # noqa: PLR0913
        self,
        *,
        task: TaskView,
        prompt: str,
        timeout_seconds: int,
        label: str,
        should_cancel: Callable[[], bool] | None,
        shutdown_requested: Callable[[], bool] | None,
    ) -> InvocationOutcome:
        try:
            run_dir = self.workdir.new_run_dir(task_id=task.task_id, label=label)
        except OSError as error:
            return self._start_failure(task, f"Cannot create run directory: {error}")
        cwd = self.workdir.resolve_project_dir(task.project_path)
        request = AgentRunRequest(
            prompt=prompt,
            cwd=cwd,
            run_dir=run_dir,
            timeout_seconds=timeout_seconds,
            command_template=self.command_template,
            model=self.model,
            env={
                "TASKLOOP_DB_PATH": str(self.db_path.resolve()),
                "TASKLOOP_TASK_ID": task.task_id,
            },
            should_cancel=should_cancel,
            cancel_check_seconds=self.cancel_check_seconds,
            shutdown_requested=shutdown_requested,
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
        )
        logger.info("Running agent for task %s in %s (logs: %s)", task.task_id, cwd, run_dir)
        try:
            run = self.backend.run(request)
        except AgentRunError as error:
            return self._start_failure(task, str(error))

        if run.interrupted:
            return InvocationOutcome(succeeded=False, run=run)
        if run.exit_code == 0 and not run.timed_out and not run.cancelled:
            return InvocationOutcome(succeeded=True, run=run)

        classification = classify_error(
            exit_code=run.exit_code,
            stderr=run.stderr,
            was_cancelled=run.cancelled,
        )
        return InvocationOutcome(
            succeeded=False,
            run=run,
            classification=classification,
            error_message=self.format_error_message(run, timeout_seconds=timeout_seconds),
        )

    def _start_failure(self, task: TaskView, message: str) -> InvocationOutcome:
        logger.error("Agent for task %s could not start: %s", task.task_id, message)
        return InvocationOutcome(
            succeeded=False,
            run=None,
            classification=ErrorClassification(
                ErrorCategory.DEPENDENCY_ERROR,
                ErrorConfidence.MEDIUM,
            ),
            error_message=message[: self.error_message_max_chars],
        )

    def format_error_message(self, run: AgentRunResult, *, timeout_seconds: int) -> str:
        if run.cancelled:
            return "Cancelled by user."
        stderr_excerpt = run.stderr.strip()[: self.error_message_max_chars]
        if run.timed_out:
            message = f"Timed out after {timeout_seconds}s"
            return f"{message}: {stderr_excerpt}" if stderr_excerpt else message
        return f"Exit code {run.exit_code}: {stderr_excerpt}"
