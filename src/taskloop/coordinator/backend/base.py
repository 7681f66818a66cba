"""Backend interface for agent task execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one agent invocation."""

    prompt: str
    cwd: Path
    run_dir: Path
    timeout_seconds: int
    command_template: str
    model: str = ""
    env: dict[str, str] = field(default_factory=dict)
    should_cancel: Callable[[], bool] | None = None
    cancel_check_seconds: float = 5.0
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int = 30


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome from backend runner."""

    exit_code: int
    timed_out: bool
    stdout: str
    stderr: str
    cancelled: bool = False
    interrupted: bool = False
    stdout_path: Path | None = None
    stderr_path: Path | None = None


class AgentBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run one agent invocation and return execution metadata."""
