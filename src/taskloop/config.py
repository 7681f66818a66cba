"""Runtime configuration for the coordinator and learning loops."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_AGENT_COMMAND_TEMPLATE = (
    "claude -p {prompt} --dangerously-skip-permissions --output-format text"
)
DEFAULT_SYNTHESIS_COMMAND_TEMPLATE = "claude -p {prompt} --output-format text --max-turns 1"
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(slots=True)
class CoordinatorSettings:
    """Task queue coordinator settings."""

    worker_id: str = "coordinator-local"
    poll_interval_seconds: float = 5.0
    execution_timeout_seconds: int = 3_600
    idea_timeout_seconds: int = 14_400
    stale_after_seconds: int = 3_600
    stale_check_interval_seconds: int = 300
    cancel_check_seconds: float = 5.0
    error_message_max_chars: int = 500
    agent_command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    agent_model: str = ""
    projects_root: Path = Path("workspace/projects")
    runs_root: Path = Path(".taskloop/runs")


@dataclass(slots=True)
class LearningSettings:
    """Episode recording and rule distillation settings."""

    poll_interval_seconds: float = 30.0
    distillation_interval_seconds: int = 21_600
    distillation_min_batch: int = 3
    max_selected_rules: int = 15


@dataclass(slots=True)
class SynthesisSettings:
    """Single-shot synthesis call settings."""

    command_template: str = DEFAULT_SYNTHESIS_COMMAND_TEMPLATE
    model: str = "sonnet"
    timeout_seconds: int = 300


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".taskloop.db")
    log_level: str = "INFO"
    sqlite_busy_timeout_ms: int = 5_000
    coordinator: CoordinatorSettings = field(default_factory=CoordinatorSettings)
    learning: LearningSettings = field(default_factory=LearningSettings)
    synthesis: SynthesisSettings = field(default_factory=SynthesisSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASKLOOP_DB_PATH", ".taskloop.db")),
            log_level=os.getenv("TASKLOOP_LOG_LEVEL", "INFO").strip().upper(),
            sqlite_busy_timeout_ms=int(os.getenv("TASKLOOP_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            coordinator=CoordinatorSettings(
                worker_id=os.getenv("TASKLOOP_WORKER_ID", f"coordinator-{socket.gethostname()}"),
                poll_interval_seconds=float(os.getenv("TASKLOOP_POLL_INTERVAL_SECONDS", "5")),
                execution_timeout_seconds=int(
                    os.getenv("TASKLOOP_EXECUTION_TIMEOUT_SECONDS", "3600"),
                ),
                idea_timeout_seconds=int(os.getenv("TASKLOOP_IDEA_TIMEOUT_SECONDS", "14400")),
                stale_after_seconds=int(os.getenv("TASKLOOP_STALE_AFTER_SECONDS", "3600")),
                stale_check_interval_seconds=int(
                    os.getenv("TASKLOOP_STALE_CHECK_INTERVAL_SECONDS", "300"),
                ),
                cancel_check_seconds=float(os.getenv("TASKLOOP_CANCEL_CHECK_SECONDS", "5")),
                error_message_max_chars=int(
                    os.getenv("TASKLOOP_ERROR_MESSAGE_MAX_CHARS", "500"),
                ),
                agent_command_template=os.getenv(
                    "TASKLOOP_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                agent_model=os.getenv("TASKLOOP_AGENT_MODEL", ""),
                projects_root=Path(os.getenv("TASKLOOP_PROJECTS_ROOT", "workspace/projects")),
                runs_root=Path(os.getenv("TASKLOOP_RUNS_ROOT", ".taskloop/runs")),
            ),
            learning=LearningSettings(
                poll_interval_seconds=float(
                    os.getenv("TASKLOOP_LEARNING_POLL_INTERVAL_SECONDS", "30"),
                ),
                distillation_interval_seconds=int(
                    os.getenv("TASKLOOP_DISTILLATION_INTERVAL_SECONDS", "21600"),
                ),
                distillation_min_batch=int(os.getenv("TASKLOOP_DISTILLATION_MIN_BATCH", "3")),
                max_selected_rules=int(os.getenv("TASKLOOP_MAX_SELECTED_RULES", "15")),
            ),
            synthesis=SynthesisSettings(
                command_template=os.getenv(
                    "TASKLOOP_SYNTHESIS_COMMAND_TEMPLATE",
                    DEFAULT_SYNTHESIS_COMMAND_TEMPLATE,
                ),
                model=os.getenv("TASKLOOP_SYNTHESIS_MODEL", "sonnet"),
                timeout_seconds=int(os.getenv("TASKLOOP_SYNTHESIS_TIMEOUT_SECONDS", "300")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the loops cannot run with."""

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"TASKLOOP_LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}, got {self.log_level!r}.",
            )
        coordinator = self.coordinator
        if coordinator.poll_interval_seconds < 0:
            raise ValueError("TASKLOOP_POLL_INTERVAL_SECONDS must be >= 0.")
        if coordinator.execution_timeout_seconds <= 0:
            raise ValueError("TASKLOOP_EXECUTION_TIMEOUT_SECONDS must be > 0.")
        if coordinator.idea_timeout_seconds <= 0:
            raise ValueError("TASKLOOP_IDEA_TIMEOUT_SECONDS must be > 0.")
        if coordinator.stale_after_seconds <= 0:
            raise ValueError("TASKLOOP_STALE_AFTER_SECONDS must be > 0.")
        if coordinator.stale_check_interval_seconds < 0:
            raise ValueError("TASKLOOP_STALE_CHECK_INTERVAL_SECONDS must be >= 0.")
        if coordinator.cancel_check_seconds <= 0:
            raise ValueError("TASKLOOP_CANCEL_CHECK_SECONDS must be > 0.")
        if coordinator.error_message_max_chars <= 0:
            raise ValueError("TASKLOOP_ERROR_MESSAGE_MAX_CHARS must be > 0.")
        if "{prompt" not in coordinator.agent_command_template:
            raise ValueError(
                "TASKLOOP_AGENT_COMMAND_TEMPLATE must include {prompt} or {prompt_file}.",
            )
        if self.learning.distillation_min_batch < 1:
            raise ValueError("TASKLOOP_DISTILLATION_MIN_BATCH must be >= 1.")
        if self.learning.max_selected_rules < 1:
            raise ValueError("TASKLOOP_MAX_SELECTED_RULES must be >= 1.")
        if self.learning.poll_interval_seconds < 0:
            raise ValueError("TASKLOOP_LEARNING_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.synthesis.timeout_seconds <= 0:
            raise ValueError("TASKLOOP_SYNTHESIS_TIMEOUT_SECONDS must be > 0.")
        if "{prompt}" not in self.synthesis.command_template:
            raise ValueError("TASKLOOP_SYNTHESIS_COMMAND_TEMPLATE must include {prompt}.")
