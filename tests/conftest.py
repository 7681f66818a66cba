"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from taskloop.config import CoordinatorSettings
from taskloop.coordinator.backend import AgentRunRequest, AgentRunResult
from taskloop.coordinator.models import TaskCreate, TaskStatus, TaskView
from taskloop.coordinator.repository import TaskRepository
from taskloop.learning.repository import LearningRepository

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m taskloop.coordinator.backend.echo_agent --prompt-file {{prompt_file}}"
)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "taskloop.db"


@pytest.fixture()
def task_repository(db_path: Path) -> Iterator[TaskRepository]:
    repository = TaskRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def learning_repository(
    db_path: Path,
    task_repository: TaskRepository,
) -> Iterator[LearningRepository]:
    repository = LearningRepository(db_path)
    yield repository
    repository.close()


@pytest.fixture()
def coordinator_settings(tmp_path: Path) -> CoordinatorSettings:
    projects_root = tmp_path / "projects"
    projects_root.mkdir()
    return CoordinatorSettings(
        worker_id="worker-test",
        poll_interval_seconds=0.0,
        execution_timeout_seconds=30,
        idea_timeout_seconds=30,
        cancel_check_seconds=0.1,
        agent_command_template=ECHO_AGENT_COMMAND_TEMPLATE,
        projects_root=projects_root,
        runs_root=tmp_path / "runs",
    )


@dataclass
class FakeBackend:
    """Scripted backend: each call pops the next result, or runs a side effect."""

    results: list[AgentRunResult] = field(default_factory=list)
    on_run: Callable[[AgentRunRequest], None] | None = None
    requests: list[AgentRunRequest] = field(default_factory=list)

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        self.requests.append(request)
        if self.on_run is not None:
            self.on_run(request)
        if self.results:
            return self.results.pop(0)
        return AgentRunResult(exit_code=0, timed_out=False, stdout="done\n", stderr="")


@dataclass
class FakeSynthesisClient:
    """Returns queued responses in order; None once exhausted."""

    responses: list[str | None] = field(default_factory=list)
    prompts: list[str] = field(default_factory=list)

    def complete(self, prompt: str) -> str | None:
        self.prompts.append(prompt)
        if not self.responses:
            return None
        return self.responses.pop(0)


def create_task(
    repository: TaskRepository,
    *,
    task_type: str = "Feature",
    title: str = "Add export button",
    description: str | None = None,
    project_path: str | None = None,
) -> TaskView:
    return repository.create_task(
        TaskCreate(
            task_type=task_type,
            title=title,
            description=description,
            project_path=project_path,
        ),
    )


def finish_task(repository: TaskRepository, task: TaskView, *, result: str = "ok") -> TaskView:
    claimed = repository.claim_task(task_id=task.task_id, worker_id="worker-test")
    assert claimed is not None
    assert repository.complete_task(
        task_id=task.task_id,
        claim_token=claimed.claim_token or "",
        result=result,
    )
    finished = repository.require_task(task_id=task.task_id)
    assert finished.status == TaskStatus.COMPLETED
    return finished
