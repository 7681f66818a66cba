"""Background loop that records episodes and distills rules on a timer."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from taskloop.config import LearningSettings
from taskloop.learning.distillation import DistillationEngine, DistillationSummary
from taskloop.learning.episode_recorder import EpisodeRecorder, RecorderSummary
from taskloop.learning.repository import LearningRepository
from taskloop.loop_control import StoppableLoop

logger = logging.getLogger(__name__)

HEARTBEAT_NAME = "learning"


@dataclass(slots=True)
class LearningCycleSummary:
    recorder: RecorderSummary = field(default_factory=RecorderSummary)
    distillation: DistillationSummary | None = None


@dataclass(slots=True)
class LearningRunSummary:
    """Aggregate learning counters for CLI reporting."""

    cycles: int = 0
    examined: int = 0
    captured: int = 0
    skipped: int = 0
    retry_later: int = 0
    distillations: int = 0
    new_rules: int = 0
    updated_rules: int = 0
    conflicts: int = 0

    def add(self, cycle: LearningCycleSummary) -> None:
        self.cycles += 1
        self.examined += cycle.recorder.examined
        self.captured += cycle.recorder.captured
        self.skipped += cycle.recorder.skipped
        self.retry_later += cycle.recorder.retry_later
        if cycle.distillation is not None and cycle.distillation.applied:
            self.distillations += 1
            self.new_rules += cycle.distillation.new_rules
            self.updated_rules += cycle.distillation.updated_rules
            self.conflicts += cycle.distillation.conflicts


class LearningWorker(StoppableLoop):
    """Polls rated tasks for episodes; distills the backlog every interval."""

    def __init__(
        self,
        *,
        repository: LearningRepository,
        recorder: EpisodeRecorder,
        engine: DistillationEngine,
        settings: LearningSettings,
    ) -> None:
        super().__init__()
        self.repository = repository
        self.recorder = recorder
        self.engine = engine
        self.settings = settings
        self._last_distillation: float | None = None

    def run_once(self, *, distill: bool | None = None) -> LearningCycleSummary:
        """One recorder poll, plus a distillation pass when due or forced."""

        cycle = LearningCycleSummary(recorder=self.recorder.poll_once())
        if distill is None:
            distill = self._distillation_due()
        if distill:
            self.repository.record_heartbeat(name=HEARTBEAT_NAME, status="distilling")
            self._last_distillation = time.monotonic()
            cycle.distillation = self.engine.run_once()
        return cycle

    def run_loop(self, *, max_cycles: int | None = None) -> LearningRunSummary:
        aggregate = LearningRunSummary()
        with self._signal_handlers():
            while not self._stop_requested:
                try:
                    aggregate.add(self.run_once())
                    self.repository.record_heartbeat(name=HEARTBEAT_NAME, status="listening")
                except SQLAlchemyError:
                    logger.exception("Learning cycle failed, retrying on next poll")
                    aggregate.cycles += 1
                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    break
                self._sleep_with_stop(self.settings.poll_interval_seconds)
        return aggregate

    def _distillation_due(self) -> bool:
        if self._last_distillation is None:
            return True
        elapsed = time.monotonic() - self._last_distillation
        return elapsed >= self.settings.distillation_interval_seconds
