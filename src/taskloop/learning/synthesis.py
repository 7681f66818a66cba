"""Single-turn language-model calls used by the learning pipeline."""

from __future__ import annotations

import logging
import shlex
import subprocess
from typing import Protocol

logger = logging.getLogger(__name__)

_STDERR_PREVIEW_CHARS = 300


class SynthesisClient(Protocol):
    """Prompt in, text out. Returns None whenever no usable response came back."""

    def complete(self, prompt: str) -> str | None: ...


class CliSynthesisClient:
    """Runs a CLI model (``claude -p`` by default) as one blocking subprocess."""

    def __init__(self, *, command_template: str, model: str, timeout_seconds: int) -> None:
        self.command_template = command_template
        self.model = model
        self.timeout_seconds = timeout_seconds

    def build_args(self, prompt: str) -> list[str]:
        rendered = self.command_template.strip().format(
            prompt=shlex.quote(prompt),
            model=shlex.quote(self.model),
        )
        argv = shlex.split(rendered)
        if self.model and "{model}" not in self.command_template:
            argv.extend(["--model", self.model])
        return argv

    def complete(self, prompt: str) -> str | None:
        try:
            argv = self.build_args(prompt)
        except (KeyError, IndexError, ValueError) as error:
            logger.error("Synthesis command template is invalid: %s", error)
            return None
        if not argv:
            logger.error("Synthesis command template rendered an empty command")
            return None

        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.error("Synthesis call timed out after %ss", self.timeout_seconds)
            return None
        except OSError as error:
            logger.error("Synthesis call could not start: %s", error)
            return None

        if completed.returncode != 0:
            logger.error(
                "Synthesis call exited with code %s: %s",
                completed.returncode,
                completed.stderr[:_STDERR_PREVIEW_CHARS],
            )
            return None
        text = completed.stdout.strip()
        return text or None
