from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from taskloop.config import (
    DEFAULT_AGENT_COMMAND_TEMPLATE,
    CoordinatorSettings,
    LearningSettings,
    Settings,
    SynthesisSettings,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "TASKLOOP_DB_PATH",
        "TASKLOOP_LOG_LEVEL",
        "TASKLOOP_AGENT_COMMAND_TEMPLATE",
        "TASKLOOP_EXECUTION_TIMEOUT_SECONDS",
        "TASKLOOP_DISTILLATION_MIN_BATCH",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".taskloop.db")
    assert settings.log_level == "INFO"
    assert settings.coordinator.agent_command_template == DEFAULT_AGENT_COMMAND_TEMPLATE
    assert settings.coordinator.execution_timeout_seconds == 3_600
    assert settings.coordinator.worker_id.startswith("coordinator-")
    assert settings.learning.distillation_min_batch == 3
    assert settings.learning.max_selected_rules == 15
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKLOOP_DB_PATH", str(tmp_path / "queue.db"))
    monkeypatch.setenv("TASKLOOP_LOG_LEVEL", "debug")
    monkeypatch.setenv("TASKLOOP_WORKER_ID", "box-7")
    monkeypatch.setenv("TASKLOOP_POLL_INTERVAL_SECONDS", "0.5")
    monkeypatch.setenv("TASKLOOP_STALE_AFTER_SECONDS", "120")
    monkeypatch.setenv("TASKLOOP_AGENT_MODEL", "opus")
    monkeypatch.setenv("TASKLOOP_PROJECTS_ROOT", str(tmp_path / "projects"))
    monkeypatch.setenv("TASKLOOP_DISTILLATION_INTERVAL_SECONDS", "60")
    monkeypatch.setenv("TASKLOOP_SYNTHESIS_MODEL", "haiku")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "queue.db"
    assert settings.log_level == "DEBUG"
    assert settings.coordinator.worker_id == "box-7"
    assert settings.coordinator.poll_interval_seconds == 0.5
    assert settings.coordinator.stale_after_seconds == 120
    assert settings.coordinator.agent_model == "opus"
    assert settings.coordinator.projects_root == tmp_path / "projects"
    assert settings.learning.distillation_interval_seconds == 60
    assert settings.synthesis.model == "haiku"


def test_explicit_db_path_wins_over_environment(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("TASKLOOP_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_from_env_rejects_non_numeric_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKLOOP_EXECUTION_TIMEOUT_SECONDS", "soon")

    with pytest.raises(ValueError, match="invalid literal"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(log_level="LOUD"), "TASKLOOP_LOG_LEVEL"),
        (
            Settings(coordinator=CoordinatorSettings(execution_timeout_seconds=0)),
            "TASKLOOP_EXECUTION_TIMEOUT_SECONDS",
        ),
        (
            Settings(coordinator=CoordinatorSettings(stale_after_seconds=0)),
            "TASKLOOP_STALE_AFTER_SECONDS",
        ),
        (
            Settings(coordinator=CoordinatorSettings(cancel_check_seconds=0)),
            "TASKLOOP_CANCEL_CHECK_SECONDS",
        ),
        (
            Settings(coordinator=CoordinatorSettings(agent_command_template="claude -p")),
            "TASKLOOP_AGENT_COMMAND_TEMPLATE",
        ),
        (
            Settings(learning=LearningSettings(distillation_min_batch=0)),
            "TASKLOOP_DISTILLATION_MIN_BATCH",
        ),
        (
            Settings(learning=LearningSettings(max_selected_rules=0)),
            "TASKLOOP_MAX_SELECTED_RULES",
        ),
        (
            Settings(synthesis=SynthesisSettings(command_template="claude --print")),
            "TASKLOOP_SYNTHESIS_COMMAND_TEMPLATE",
        ),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_prompt_file_placeholder_is_accepted() -> None:
    coordinator = replace(
        CoordinatorSettings(),
        agent_command_template="my-agent --input {prompt_file}",
    )

    Settings(coordinator=coordinator).validate()
