"""Working directory resolution and per-run log layout."""

from __future__ import annotations

from pathlib import Path

from taskloop.storage.common import utc_now


class TaskWorkdirManager:
    """Resolves where the agent runs and where its logs land."""

    def __init__(self, *, projects_root: Path, runs_root: Path) -> None:
        self.projects_root = projects_root
        self.runs_root = runs_root

    def resolve_project_dir(self, project_path: str | None) -> Path:
        """Absolute paths are used as-is; relative ones live under the projects root."""

        if not project_path:
            return self.projects_root.resolve()
        candidate = Path(project_path).expanduser()
        if candidate.is_absolute():
            return candidate
        return (self.projects_root / candidate).resolve()

    def new_run_dir(self, *, task_id: str, label: str = "run") -> Path:
        stamp = utc_now().strftime("%Y%m%dT%H%M%S%fZ")
        run_dir = self.runs_root / task_id / f"{stamp}-{label}"
        run_dir.mkdir(parents=True, exist_ok=True)
        return run_dir
