"""Controllers for learning CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from taskloop.config import Settings
from taskloop.learning.distillation import DistillationEngine, DistillationSummary
from taskloop.learning.episode_recorder import EpisodeRecorder
from taskloop.learning.project_type import ProjectTypeInferrer
from taskloop.learning.repository import LearningRepository
from taskloop.learning.rule_selector import RuleSelector, format_rules_for_prompt, rule_strength
from taskloop.learning.synthesis import CliSynthesisClient, SynthesisClient
from taskloop.learning.worker import LearningWorker


@dataclass(slots=True)
class LearningRunCommand:
    """CLI input for the learning loop."""

    db_path: Path | None
    once: bool
    max_cycles: int | None = None


@dataclass(slots=True)
class LearningRecordCommand:
    db_path: Path | None
    limit: int | None


@dataclass(slots=True)
class LearningDistillCommand:
    db_path: Path | None
    min_batch: int | None


@dataclass(slots=True)
class LearningRulesCommand:
    db_path: Path | None
    include_inactive: bool


@dataclass(slots=True)
class LearningEpisodesCommand:
    db_path: Path | None
    pending_only: bool
    limit: int


@dataclass(slots=True)
class LearningPreviewCommand:
    """CLI input for previewing the rules block a task would receive."""

    db_path: Path | None
    task_type: str
    title: str
    description: str | None
    project_path: str | None


@dataclass(slots=True)
class LearningRuleRefCommand:
    db_path: Path | None
    rule_id: str


@dataclass(slots=True)
class LearningResolveCommand:
    db_path: Path | None
    keep_rule_id: str
    drop_rule_id: str


class LearningCliController:
    """Coordinates episode, distillation and rule CLI operations."""

    def __init__(self, *, client: SynthesisClient | None = None) -> None:
        self._client = client

    def run(self, command: LearningRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository:
            client = self._synthesis_client(settings)
            worker = LearningWorker(
                repository=repository,
                recorder=EpisodeRecorder(repository=repository, client=client),
                engine=DistillationEngine(
                    repository=repository,
                    client=client,
                    min_batch_size=settings.learning.distillation_min_batch,
                ),
                settings=settings.learning,
            )
            if command.once:
                cycle = worker.run_once()
                recorder = cycle.recorder
                lines = [
                    "Learning cycle: "
                    f"examined={recorder.examined} captured={recorder.captured} "
                    f"skipped={recorder.skipped} retry_later={recorder.retry_later}",
                ]
                if cycle.distillation is not None:
                    lines.append(_distillation_line(cycle.distillation))
                return lines
            summary = worker.run_loop(max_cycles=command.max_cycles)

        return [
            "Learning summary: "
            f"cycles={summary.cycles} examined={summary.examined} "
            f"captured={summary.captured} skipped={summary.skipped} "
            f"retry_later={summary.retry_later} distillations={summary.distillations} "
            f"new_rules={summary.new_rules} updated_rules={summary.updated_rules} "
            f"conflicts={summary.conflicts}",
        ]

    def record(self, command: LearningRecordCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            recorder = EpisodeRecorder(
                repository=repository,
                client=self._synthesis_client(settings),
            )
            summary = recorder.poll_once(limit=command.limit)
        return [
            "Episode recorder: "
            f"examined={summary.examined} captured={summary.captured} "
            f"skipped={summary.skipped} retry_later={summary.retry_later}",
        ]

    def distill(self, command: LearningDistillCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            engine = DistillationEngine(
                repository=repository,
                client=self._synthesis_client(settings),
                min_batch_size=command.min_batch or settings.learning.distillation_min_batch,
            )
            summary = engine.run_once()
        return [_distillation_line(summary)]

    def rules(self, command: LearningRulesCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            rules = repository.list_rules(include_inactive=command.include_inactive)
        lines = [f"Rules: {len(rules)}"]
        for rule in rules:
            qualifier = f":{rule.scope_qualifier}" if rule.scope_qualifier else ""
            state = "" if rule.active else " inactive"
            lines.append(
                f"  {rule.rule_id} [{rule_strength(rule.confidence).value}] "
                f"confidence={rule.confidence:.2f} scope={rule.scope.value}{qualifier} "
                f"category={rule.category.value} support={rule.support_count}{state}",
            )
            lines.append(f"    {rule.content}")
            if rule.conflicts_with:
                lines.append(f"    conflicts_with={','.join(rule.conflicts_with)}")
        return lines

    def episodes(self, command: LearningEpisodesCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            episodes = repository.list_episodes(
                distilled=False if command.pending_only else None,
                limit=command.limit,
            )
        lines = [f"Episodes: {len(episodes)}"]
        for episode in episodes:
            lines.append(
                f"  {episode.episode_id} {episode.feedback_type.value} "
                f"project_type={episode.project_type or '-'} "
                f"distilled={'yes' if episode.distilled else 'no'} "
                f"task={episode.source_task_id or '-'}",
            )
            lines.append(f"    {episode.narrative[:160]}")
        return lines

    def preview(self, command: LearningPreviewCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            selector = RuleSelector(
                repository=repository,
                inferrer=ProjectTypeInferrer(projects_root=settings.coordinator.projects_root),
                max_rules=settings.learning.max_selected_rules,
            )
            selection = selector.select(
                task_type=command.task_type,
                title=command.title,
                description=command.description,
                project_path=command.project_path,
            )
        lines = [
            f"Project type: {selection.project_type or '-'}",
            f"Selected rules: {len(selection.rules)} conflicts={len(selection.conflicts)}",
        ]
        block = format_rules_for_prompt(selection)
        if block:
            lines.append("")
            lines.extend(block.splitlines())
        return lines

    def deactivate(self, command: LearningRuleRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            rule = repository.deactivate_rule(rule_id=command.rule_id)
        return [f"Rule deactivated: {rule.rule_id}"]

    def resolve_conflict(self, command: LearningResolveCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            kept = repository.resolve_conflict(
                keep_rule_id=command.keep_rule_id,
                drop_rule_id=command.drop_rule_id,
            )
        return [f"Conflict resolved: kept {kept.rule_id}, deactivated {command.drop_rule_id}"]

    def _synthesis_client(self, settings: Settings) -> SynthesisClient:
        if self._client is not None:
            return self._client
        return CliSynthesisClient(
            command_template=settings.synthesis.command_template,
            model=settings.synthesis.model,
            timeout_seconds=settings.synthesis.timeout_seconds,
        )


def _distillation_line(summary: DistillationSummary) -> str:
    if not summary.applied:
        return (
            f"Distillation skipped: episodes={summary.episodes} "
            f"reason={summary.skipped_reason or '-'}"
        )
    return (
        "Distillation applied: "
        f"episodes={summary.episodes} new_rules={summary.new_rules} "
        f"updated_rules={summary.updated_rules} conflicts={summary.conflicts} "
        f"rejected={summary.rejected_proposals}"
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[LearningRepository]:
    repository = LearningRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
