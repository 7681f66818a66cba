"""CLI entrypoint for taskloop."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import IO, TypeVar

import rich_click as click
from rich.logging import RichHandler

from taskloop import __version__
from taskloop.coordinator.controllers import (
    CoordinatorCliController,
    ExecutorRecoverCommand,
    ExecutorRunCommand,
    HeartbeatsCommand,
    IdeaFeedbackCommand,
    IdeaVariantCommand,
    TaskAddCommand,
    TaskIngestCommand,
    TaskListCommand,
    TaskRateCommand,
    TaskRefCommand,
    TaskReportCommand,
    TaskScopeCommand,
)
from taskloop.coordinator.models import TaskStatus
from taskloop.coordinator.repository import (
    DuplicateTaskError,
    InvalidTransitionError,
    TaskNotFoundError,
)
from taskloop.learning.controllers import (
    LearningCliController,
    LearningDistillCommand,
    LearningEpisodesCommand,
    LearningPreviewCommand,
    LearningRecordCommand,
    LearningResolveCommand,
    LearningRuleRefCommand,
    LearningRulesCommand,
    LearningRunCommand,
)
from taskloop.learning.repository import RuleNotFoundError

click.rich_click.USE_MARKDOWN = True
COORDINATOR_CONTROLLER = CoordinatorCliController()
LEARNING_CONTROLLER = LearningCliController()

_OPERATOR_ERRORS = (
    TaskNotFoundError,
    InvalidTransitionError,
    DuplicateTaskError,
    RuleNotFoundError,
    ValueError,
)
_T = TypeVar("_T")

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path. Defaults to TASKLOOP_DB_PATH.",
)


@click.group()
@click.version_option(version=__version__, prog_name="taskloop")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    envvar="TASKLOOP_LOG_LEVEL",
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
def taskloop(log_level: str) -> None:
    """Task queue coordinator with a feedback learning loop."""

    _configure_logging(log_level)


@taskloop.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("add")
@DB_PATH_OPTION
@click.option("--type", "task_type", required=True, help="Task type, e.g. Feature, Bug, Idea.")
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default=None, help="Task description.")
@click.option("--subtype", default=None, help="Optional subtype, e.g. Bug for a Project.")
@click.option("--project-path", default=None, help="Project directory for the agent.")
@click.option("--message", default=None, help="Opening message for the task thread.")
def tasks_add(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str,
    title: str,
    description: str | None,
    subtype: str | None,
    project_path: str | None,
    message: str | None,
) -> None:
    """Create one pending task."""

    _emit_lines(
        _guard(
            lambda: COORDINATOR_CONTROLLER.add_task(
                TaskAddCommand(
                    db_path=db_path,
                    task_type=task_type,
                    title=title,
                    description=description,
                    subtype=subtype,
                    project_path=project_path,
                    message=message,
                ),
            ),
        ),
    )


@tasks.command("ingest")
@DB_PATH_OPTION
@click.option("--source-event-id", required=True, help="Upstream event the tasks came from.")
@click.option(
    "--items-file",
    type=click.File("r", encoding="utf-8"),
    default="-",
    show_default=True,
    help="JSON array of {type, title, description?, subtype?, project_path?}; '-' for stdin.",
)
def tasks_ingest(db_path: Path | None, source_event_id: str, items_file: IO[str]) -> None:
    """Create tasks extracted from one upstream event, idempotently."""

    items_json = items_file.read()
    _emit_lines(
        _guard(
            lambda: COORDINATOR_CONTROLLER.ingest(
                TaskIngestCommand(
                    db_path=db_path,
                    source_event_id=source_event_id,
                    items_json=items_json,
                ),
            ),
        ),
    )


@tasks.command("list")
@DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent tasks."""

    _emit_lines(
        COORDINATOR_CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@tasks.command("inspect")
@DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with event history."""

    _emit_lines(
        COORDINATOR_CONTROLLER.inspect_task(TaskRefCommand(db_path=db_path, task_id=task_id)),
    )


@tasks.command("cancel")
@DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a waiting task, or ask the coordinator to stop a running one."""

    _emit_lines(
        _guard(
            lambda: COORDINATOR_CONTROLLER.cancel_task(
                TaskRefCommand(db_path=db_path, task_id=task_id),
            ),
        ),
    )


@tasks.command("rate")
@DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
@click.option("--rating", type=click.IntRange(min=1, max=5), required=True, help="1 to 5.")
@click.option("--tag", "tags", multiple=True, help="Rating tag. Can be repeated.")
@click.option("--comment", default=None, help="Free-text feedback.")
def tasks_rate(
    db_path: Path | None,
    task_id: str,
    rating: int,
    tags: tuple[str, ...],
    comment: str | None,
) -> None:
    """Rate a finished task; the learning loop picks it up."""

    _emit_lines(
        _guard(
            lambda: COORDINATOR_CONTROLLER.rate_task(
                TaskRateCommand(
                    db_path=db_path,
                    task_id=task_id,
                    rating=rating,
                    tags=tags,
                    comment=comment,
                ),
            ),
        ),
    )


@tasks.command("report")
@DB_PATH_OPTION
@click.option("--task-id", envvar="TASKLOOP_TASK_ID", required=True, help="Task id.")
@click.option(
    "--status",
    type=click.Choice(["in_progress", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Final status reported by the agent.",
)
@click.option("--result", default=None, help="Result summary.")
@click.option("--message", default=None, help="Progress message appended to the thread.")
def tasks_report(
    db_path: Path | None,
    task_id: str,
    status: str | None,
    result: str | None,
    message: str | None,
) -> None:
    """Side channel for the running agent to report progress and results."""

    _emit_lines(
        _guard(
            lambda: COORDINATOR_CONTROLLER.report(
                TaskReportCommand(
                    db_path=db_path,
                    task_id=task_id,
                    status=status,
                    result=result,
                    message=message,
                ),
            ),
        ),
    )


@tasks.command("scope")
@click.option("--type", "task_type", required=True, help="Task type.")
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default=None, help="Task description.")
@click.option("--subtype", default=None, help="Optional subtype.")
def tasks_scope(
    task_type: str,
    title: str,
    description: str | None,
    subtype: str | None,
) -> None:
    """Show the complexity classification for a task without queueing it."""

    _emit_lines(
        COORDINATOR_CONTROLLER.scope(
            TaskScopeCommand(
                task_type=task_type,
                title=title,
                description=description,
                subtype=subtype,
            ),
        ),
    )


@taskloop.group()
def executor() -> None:
    """Coordinator commands."""


@executor.command("run")
@DB_PATH_OPTION
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Process the current queue once, or keep polling until stopped.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Max tasks to pick up per poll.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the loop after this many polls.",
)
@click.option(
    "--dry-run/--no-dry-run",
    default=False,
    show_default=True,
    help="Log what would run without claiming anything.",
)
@click.option(
    "--rules/--no-rules",
    "use_rules",
    default=True,
    show_default=True,
    help="Inject learned rules into agent prompts.",
)
def executor_run(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    limit: int | None,
    max_cycles: int | None,
    dry_run: bool,
    use_rules: bool,
) -> None:
    """Claim pending tasks and run them through the agent."""

    _emit_lines(
        _guard(
            lambda: COORDINATOR_CONTROLLER.run_executor(
                ExecutorRunCommand(
                    db_path=db_path,
                    once=once,
                    limit=limit,
                    dry_run=dry_run,
                    max_cycles=max_cycles,
                    use_rules=use_rules,
                ),
            ),
        ),
    )


@executor.command("recover")
@DB_PATH_OPTION
@click.option(
    "--stale-after-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Claim age after which a task is stale. Defaults to TASKLOOP_STALE_AFTER_SECONDS.",
)
def executor_recover(db_path: Path | None, stale_after_seconds: int | None) -> None:
    """Return stale in-progress claims to the queue."""

    _emit_lines(
        COORDINATOR_CONTROLLER.recover(
            ExecutorRecoverCommand(db_path=db_path, stale_after_seconds=stale_after_seconds),
        ),
    )


@taskloop.group()
def ideas() -> None:
    """Idea workflow commands."""


@ideas.command("select-variant")
@DB_PATH_OPTION
@click.option("--task-id", required=True, help="Idea task id.")
@click.option("--index", "variant_index", type=click.IntRange(min=0), required=True)
def ideas_select_variant(db_path: Path | None, task_id: str, variant_index: int) -> None:
    """Pick a variant to implement next."""

    _emit_lines(
        _guard(
            lambda: COORDINATOR_CONTROLLER.select_variant(
                IdeaVariantCommand(db_path=db_path, task_id=task_id, variant_index=variant_index),
            ),
        ),
    )


@ideas.command("feedback")
@DB_PATH_OPTION
@click.option("--task-id", required=True, help="Idea task id.")
@click.option("--text", "feedback", required=True, help="Feedback for the next iteration.")
def ideas_feedback(db_path: Path | None, task_id: str, feedback: str) -> None:
    """Send feedback and queue another iteration."""

    _emit_lines(
        _guard(
            lambda: COORDINATOR_CONTROLLER.feedback(
                IdeaFeedbackCommand(db_path=db_path, task_id=task_id, feedback=feedback),
            ),
        ),
    )


@taskloop.group()
def learning() -> None:
    """Episode recording and rule distillation commands."""


@learning.command("run")
@DB_PATH_OPTION
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="One recorder poll plus a distillation pass, or keep polling until stopped.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the loop after this many polls.",
)
def learning_run(db_path: Path | None, once: bool, max_cycles: int | None) -> None:
    """Run the learning loop."""

    _emit_lines(
        _guard(
            lambda: LEARNING_CONTROLLER.run(
                LearningRunCommand(db_path=db_path, once=once, max_cycles=max_cycles),
            ),
        ),
    )


@learning.command("record")
@DB_PATH_OPTION
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max tasks to examine.")
def learning_record(db_path: Path | None, limit: int | None) -> None:
    """Turn unprocessed task ratings into episodes."""

    _emit_lines(
        LEARNING_CONTROLLER.record(LearningRecordCommand(db_path=db_path, limit=limit)),
    )


@learning.command("distill")
@DB_PATH_OPTION
@click.option(
    "--min-batch",
    type=click.IntRange(min=1),
    default=None,
    help="Minimum undistilled episodes. Defaults to TASKLOOP_DISTILLATION_MIN_BATCH.",
)
def learning_distill(db_path: Path | None, min_batch: int | None) -> None:
    """Distill the undistilled episode backlog into rules now."""

    _emit_lines(
        LEARNING_CONTROLLER.distill(LearningDistillCommand(db_path=db_path, min_batch=min_batch)),
    )


@learning.command("rules")
@DB_PATH_OPTION
@click.option(
    "--all/--active",
    "include_inactive",
    default=False,
    show_default=True,
    help="Include deactivated rules.",
)
def learning_rules(db_path: Path | None, include_inactive: bool) -> None:
    """List learned rules."""

    _emit_lines(
        LEARNING_CONTROLLER.rules(
            LearningRulesCommand(db_path=db_path, include_inactive=include_inactive),
        ),
    )


@learning.command("episodes")
@DB_PATH_OPTION
@click.option(
    "--pending/--all",
    "pending_only",
    default=False,
    show_default=True,
    help="Only show episodes not yet distilled.",
)
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
def learning_episodes(db_path: Path | None, pending_only: bool, limit: int) -> None:
    """List recorded episodes."""

    _emit_lines(
        LEARNING_CONTROLLER.episodes(
            LearningEpisodesCommand(db_path=db_path, pending_only=pending_only, limit=limit),
        ),
    )


@learning.command("preview")
@DB_PATH_OPTION
@click.option("--type", "task_type", required=True, help="Task type.")
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default=None, help="Task description.")
@click.option("--project-path", default=None, help="Project directory.")
def learning_preview(
    db_path: Path | None,
    task_type: str,
    title: str,
    description: str | None,
    project_path: str | None,
) -> None:
    """Show the rules block an agent would receive for a task."""

    _emit_lines(
        LEARNING_CONTROLLER.preview(
            LearningPreviewCommand(
                db_path=db_path,
                task_type=task_type,
                title=title,
                description=description,
                project_path=project_path,
            ),
        ),
    )


@learning.command("deactivate")
@DB_PATH_OPTION
@click.option("--rule-id", required=True, help="Rule id.")
def learning_deactivate(db_path: Path | None, rule_id: str) -> None:
    """Stop injecting a rule without deleting it."""

    _emit_lines(
        _guard(
            lambda: LEARNING_CONTROLLER.deactivate(
                LearningRuleRefCommand(db_path=db_path, rule_id=rule_id),
            ),
        ),
    )


@learning.command("resolve-conflict")
@DB_PATH_OPTION
@click.option("--keep", "keep_rule_id", required=True, help="Rule id to keep.")
@click.option("--drop", "drop_rule_id", required=True, help="Rule id to deactivate.")
def learning_resolve_conflict(db_path: Path | None, keep_rule_id: str, drop_rule_id: str) -> None:
    """Settle two conflicting rules by keeping one."""

    _emit_lines(
        _guard(
            lambda: LEARNING_CONTROLLER.resolve_conflict(
                LearningResolveCommand(
                    db_path=db_path,
                    keep_rule_id=keep_rule_id,
                    drop_rule_id=drop_rule_id,
                ),
            ),
        ),
    )


@taskloop.command("heartbeats")
@DB_PATH_OPTION
def heartbeats(db_path: Path | None) -> None:
    """Show when each polling loop was last seen."""

    _emit_lines(COORDINATOR_CONTROLLER.heartbeats(HeartbeatsCommand(db_path=db_path)))


def _configure_logging(level: str) -> None:
    root = logging.getLogger()
    if any(isinstance(handler, RichHandler) for handler in root.handlers):
        root.setLevel(level.upper())
        return
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _guard(call: Callable[[], _T]) -> _T:
    try:
        return call()
    except _OPERATOR_ERRORS as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskloop()
