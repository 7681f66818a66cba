from __future__ import annotations

import json
import re
import sys
from pathlib import Path

import pytest
from click.testing import CliRunner, Result
from conftest import ECHO_AGENT_COMMAND_TEMPLATE

from taskloop.main import taskloop

_TASK_ID = re.compile(r"task_id=(\S+)")


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    projects_root = tmp_path / "projects"
    projects_root.mkdir()
    monkeypatch.setenv("TASKLOOP_PROJECTS_ROOT", str(projects_root))
    monkeypatch.setenv("TASKLOOP_RUNS_ROOT", str(tmp_path / "runs"))
    monkeypatch.setenv("TASKLOOP_WORKER_ID", "cli-test")
    monkeypatch.setenv("TASKLOOP_POLL_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("TASKLOOP_AGENT_COMMAND_TEMPLATE", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.delenv("TASKLOOP_DB_PATH", raising=False)


def _invoke(db_path: Path, *args: str, stdin: str | None = None) -> Result:
    runner = CliRunner()
    group, command, *rest = args
    return runner.invoke(taskloop, [group, command, "--db-path", str(db_path), *rest], input=stdin)


def _add(db_path: Path, *extra: str) -> str:
    result = _invoke(db_path, "tasks", "add", "--type", "Feature", "--title", "Export", *extra)
    assert result.exit_code == 0, result.output
    match = _TASK_ID.search(result.output)
    assert match is not None
    return match.group(1)


def test_tasks_add_and_list(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    task_id = _add(db_path, "--message", "CSV please")

    listed = _invoke(db_path, "tasks", "list")

    assert listed.exit_code == 0, listed.output
    assert "Tasks: 1" in listed.output
    assert task_id in listed.output
    assert "status=pending" in listed.output


def test_tasks_ingest_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    items = json.dumps(
        [
            {"type": "Bug", "title": "Crash on save"},
            {"type": "Research", "title": "Compare queues", "description": "SQLite vs Redis"},
        ],
    )

    first = _invoke(db_path, "tasks", "ingest", "--source-event-id", "note-42", stdin=items)
    second = _invoke(db_path, "tasks", "ingest", "--source-event-id", "note-42", stdin=items)

    assert first.exit_code == 0, first.output
    assert "created=2 duplicates=0" in first.output
    assert "key=note-42:0" in first.output
    assert second.exit_code == 0, second.output
    assert "created=0 duplicates=2" in second.output


def test_tasks_ingest_rejects_malformed_items(tmp_path: Path) -> None:
    result = _invoke(
        tmp_path / "cli.db",
        "tasks",
        "ingest",
        "--source-event-id",
        "note-1",
        stdin='[{"title": "no type"}]',
    )

    assert result.exit_code == 1
    assert "Item 0 has no type" in result.output


def test_executor_once_then_rate_and_inspect(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    task_id = _add(db_path)

    run = _invoke(db_path, "executor", "run", "--once", "--no-rules")
    rated = _invoke(
        db_path,
        "tasks",
        "rate",
        "--task-id",
        task_id,
        "--rating",
        "4",
        "--tag",
        "clean",
        "--comment",
        "Nice",
    )
    inspected = _invoke(db_path, "tasks", "inspect", "--task-id", task_id)

    assert run.exit_code == 0, run.output
    assert "processed=1 completed=1" in run.output
    assert rated.exit_code == 0, rated.output
    assert "rating=4 tags=clean" in rated.output
    assert "Status: completed" in inspected.output
    assert "Rating: 4" in inspected.output


def test_rating_pending_task_is_an_operator_error(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    task_id = _add(db_path)

    result = _invoke(db_path, "tasks", "rate", "--task-id", task_id, "--rating", "3")

    assert result.exit_code == 1
    assert "Error" in result.output


def test_cancel_unknown_task_fails(tmp_path: Path) -> None:
    result = _invoke(tmp_path / "cli.db", "tasks", "cancel", "--task-id", "nope")

    assert result.exit_code == 1
    assert "Task not found: nope" in result.output


def test_tasks_scope_classifies_without_queueing(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        taskloop,
        ["tasks", "scope", "--type", "Project", "--title", "Launch the store"],
    )

    assert result.exit_code == 0, result.output
    assert "Scope: complex" in result.output


def test_idea_feedback_requires_awaiting_state(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    result = _invoke(db_path, "tasks", "add", "--type", "Idea", "--title", "Habit app")
    task_id = _TASK_ID.search(result.output).group(1)  # type: ignore[union-attr]

    feedback = _invoke(db_path, "ideas", "feedback", "--task-id", task_id, "--text", "more")

    assert feedback.exit_code == 1
    assert "awaiting_feedback" in feedback.output


def test_heartbeats_after_executor_loop(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    run = _invoke(db_path, "executor", "run", "--loop", "--max-cycles", "1", "--no-rules")
    beats = CliRunner().invoke(taskloop, ["heartbeats", "--db-path", str(db_path)])

    assert run.exit_code == 0, run.output
    assert "idle_polls=1" in run.output
    assert beats.exit_code == 0, beats.output
    assert "cli-test" in beats.output


def test_learning_record_skips_non_capturable_feedback(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv(
        "TASKLOOP_SYNTHESIS_COMMAND_TEMPLATE",
        f'{sys.executable} -c "print(\'{{{{\\"shouldCapture\\": false}}}}\')" {{prompt}}',
    )
    db_path = tmp_path / "cli.db"
    task_id = _add(db_path)
    assert _invoke(db_path, "executor", "run", "--once", "--no-rules").exit_code == 0
    _invoke(db_path, "tasks", "rate", "--task-id", task_id, "--rating", "5", "--tag", "perfect")

    recorded = _invoke(db_path, "learning", "record")
    episodes = _invoke(db_path, "learning", "episodes")

    assert recorded.exit_code == 0, recorded.output
    assert "examined=1 captured=0 skipped=1" in recorded.output
    assert "Episodes: 0" in episodes.output


def test_learning_rules_and_preview_on_empty_store(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    rules = _invoke(db_path, "learning", "rules")
    preview = _invoke(
        db_path,
        "learning",
        "preview",
        "--type",
        "Feature",
        "--title",
        "Landing page hero",
    )

    assert rules.exit_code == 0, rules.output
    assert "Rules: 0" in rules.output
    assert preview.exit_code == 0, preview.output
    assert "Selected rules: 0" in preview.output


def test_learning_deactivate_unknown_rule_fails(tmp_path: Path) -> None:
    result = _invoke(tmp_path / "cli.db", "learning", "deactivate", "--rule-id", "ghost")

    assert result.exit_code == 1
    assert "Rule not found: ghost" in result.output
