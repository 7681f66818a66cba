"""Project-type inference from a project directory or, failing that, task text."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

PROJECT_TYPES = (
    "landing-page",
    "dashboard",
    "api",
    "mobile-app",
    "cli-tool",
    "library",
    "content",
    "research",
)

_DOC_FILES = ("CLAUDE.md", "README.md")
_DOC_HEAD_CHARS = 500
_FRONTEND_DEPS = ("react", "next", "vue")
_API_DEPS = ("express", "fastify", "hono", "@hono/node-server")
_CLI_DEPS = ("commander", "yargs", "meow", "inquirer")
_MOBILE_DEPS = ("expo", "react-native", "@expo/cli")
_DB_DEPS = ("@prisma/client", "drizzle-orm")

_TEXT_SIGNALS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("landing-page", re.compile(r"landing page|marketing page")),
    ("dashboard", re.compile(r"dashboard|admin panel")),
    ("api", re.compile(r"\bapi\b|backend|endpoint")),
    ("mobile-app", re.compile(r"mobile|\bapps?\b|\bexpo\b")),
    ("cli-tool", re.compile(r"\bcli\b|command line|\bscript\b")),
)
_DOC_SIGNALS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("landing-page", re.compile(r"landing page|marketing")),
    ("dashboard", re.compile(r"dashboard|admin panel")),
    ("api", re.compile(r"\bapi\b|backend")),
    ("mobile-app", re.compile(r"mobile|\bexpo\b")),
    ("cli-tool", re.compile(r"\bcli\b|command line")),
)
_TYPE_FALLBACKS = {"research": "research", "write": "content"}


class ProjectTypeInferrer:
    """Directory-based inference with a per-path cache."""

    def __init__(self, *, projects_root: Path) -> None:
        self.projects_root = projects_root
        self._cache: dict[str, str | None] = {}

    def from_directory(self, project_path: str) -> str | None:
        if project_path in self._cache:
            return self._cache[project_path]
        candidate = Path(project_path).expanduser()
        directory = candidate if candidate.is_absolute() else self.projects_root / candidate
        inferred = _infer_from_directory(directory) if directory.is_dir() else None
        self._cache[project_path] = inferred
        return inferred

    def infer(
        self,
        *,
        task_type: str,
        title: str,
        description: str | None,
        project_path: str | None,
    ) -> str | None:
        """Directory signals first; task text only when the directory gives nothing."""

        if project_path:
            inferred = self.from_directory(project_path)
            if inferred is not None:
                return inferred
        return infer_from_text(task_type=task_type, title=title, description=description)

    def clear_cache(self) -> None:
        self._cache.clear()


def infer_from_text(*, task_type: str, title: str, description: str | None) -> str | None:
    text = f"{title} {description or ''}".lower()
    for project_type, pattern in _TEXT_SIGNALS:
        if pattern.search(text):
            return project_type
    return _TYPE_FALLBACKS.get(task_type.strip().lower())


def _infer_from_directory(directory: Path) -> str | None:
    inferred = _infer_from_package_json(directory / "package.json")
    if inferred is not None:
        return inferred
    for filename in _DOC_FILES:
        inferred = _infer_from_doc(directory / filename)
        if inferred is not None:
            return inferred
    return None


def _infer_from_package_json(path: Path) -> str | None:  # noqa: C901, PLR0911
    if not path.is_file():
        return None
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, ValueError) as error:
        logger.warning("Cannot read %s for project type: %s", path, error)
        return None
    if not isinstance(payload, dict):
        return None

    deps: dict[str, object] = {}
    for key in ("dependencies", "devDependencies"):
        section = payload.get(key)
        if isinstance(section, dict):
            deps.update(section)
    name = str(payload.get("name") or "").lower()
    description = str(payload.get("description") or "").lower()
    has_frontend = any(dep in deps for dep in _FRONTEND_DEPS)

    if any(dep in deps for dep in _MOBILE_DEPS):
        return "mobile-app"
    if (
        "dashboard" in description
        or "dashboard" in name
        or ("react" in deps and ("recharts" in deps or "chart.js" in deps))
    ):
        return "dashboard"
    if any(dep in deps for dep in _API_DEPS):
        return "api"
    if not has_frontend and ("api" in name or re.search(r"\bapi\b", description)):
        return "api"
    if (
        "landing" in name
        or "landing" in description
        or "marketing" in description
        or ("next" in deps and not any(dep in deps for dep in _DB_DEPS))
    ):
        return "landing-page"
    if any(dep in deps for dep in _CLI_DEPS) or payload.get("bin"):
        return "cli-tool"
    if not has_frontend and any(payload.get(key) for key in ("main", "exports", "types")):
        return "library"
    if has_frontend:
        return "landing-page"
    return None


def _infer_from_doc(path: Path) -> str | None:
    if not path.is_file():
        return None
    try:
        head = path.read_text("utf-8", errors="replace")[:_DOC_HEAD_CHARS].lower()
    except OSError as error:
        logger.warning("Cannot read %s for project type: %s", path, error)
        return None
    for project_type, pattern in _DOC_SIGNALS:
        if pattern.search(head):
            return project_type
    return None
