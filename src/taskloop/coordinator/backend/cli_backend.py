"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from taskloop.coordinator.backend.base import AgentRunRequest, AgentRunResult

logger = logging.getLogger(__name__)
agent_logger = logging.getLogger("taskloop.agent")

TIMEOUT_EXIT_CODE = 124
COMMAND_NOT_FOUND_EXIT_CODE = 127
_POLL_SECONDS = 0.1
_READER_JOIN_SECONDS = 5.0


class AgentRunError(RuntimeError):
    """Agent could not be started at all."""


@dataclass(slots=True)
class _ProcessOutcome:
    exit_code: int
    timed_out: bool = False
    cancelled: bool = False
    interrupted: bool = False
    stdout_lines: list[str] = field(default_factory=list)


class CliAgentBackend:
    """Run the agent command template as one blocking subprocess per invocation."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        if not request.cwd.is_dir():
            raise AgentRunError(f"Project directory does not exist: {request.cwd}")

        prompt_file = request.run_dir / "prompt.txt"
        try:
            request.run_dir.mkdir(parents=True, exist_ok=True)
            prompt_file.write_text(request.prompt, "utf-8")
        except OSError as error:
            message = f"Cannot prepare run directory {request.run_dir}: {error}"
            raise AgentRunError(message) from error
        stdout_path = request.run_dir / "stdout.log"
        stderr_path = request.run_dir / "stderr.log"

        run_args = build_run_args(
            command_template=request.command_template,
            prompt=request.prompt,
            prompt_file=prompt_file,
            model=request.model,
        )
        env = os.environ.copy()
        env.update(request.env)

        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                outcome = _run_subprocess(
                    run_args=run_args,
                    request=request,
                    env=env,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                )
        except FileNotFoundError:
            message = f"command not found: {run_args[0]}"
            logger.error("Agent %s", message)
            stderr_path.write_text(message, "utf-8")
            return AgentRunResult(
                exit_code=COMMAND_NOT_FOUND_EXIT_CODE,
                timed_out=False,
                stdout="",
                stderr=message,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )
        except OSError as error:
            raise AgentRunError(f"Agent failed to start: {error}") from error

        return AgentRunResult(
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
            cancelled=outcome.cancelled,
            interrupted=outcome.interrupted,
            stdout="".join(outcome.stdout_lines),
            stderr=_read_text(stderr_path),
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    model: str,
) -> list[str]:
    """Render a shell-style template into argv with each value quoted as one token."""

    stripped = command_template.strip()
    if not stripped:
        raise AgentRunError("Agent command template is empty.")
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise AgentRunError("Agent command template must include {prompt} or {prompt_file}.")
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            model=shlex.quote(model),
        )
    except (KeyError, IndexError) as error:
        raise AgentRunError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentRunError("Agent command template rendered empty command.")
    return argv


def _run_subprocess(
    *,
    run_args: list[str],
    request: AgentRunRequest,
    env: dict[str, str],
    stdout_handle: IO[str],
    stderr_handle: IO[str],
) -> _ProcessOutcome:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=request.cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=stderr_handle,
        text=True,
        encoding="utf-8",
        errors="replace",
        bufsize=1,
    )
    outcome = _ProcessOutcome(exit_code=-1)
    reader = threading.Thread(
        target=_pump_stdout,
        args=(process.stdout, stdout_handle, outcome.stdout_lines),
        name="agent-stdout",
        daemon=True,
    )
    reader.start()

    start_monotonic = time.monotonic()
    next_cancel_check = start_monotonic + request.cancel_check_seconds
    shutdown_deadline: float | None = None
    try:
        while True:
            returncode = process.poll()
            if returncode is not None:
                outcome.exit_code = returncode
                return outcome

            now = time.monotonic()
            if now - start_monotonic >= request.timeout_seconds:
                logger.warning("Agent exceeded %ss timeout, terminating", request.timeout_seconds)
                _terminate_process(process)
                outcome.exit_code = TIMEOUT_EXIT_CODE
                outcome.timed_out = True
                return outcome

            if request.should_cancel is not None and now >= next_cancel_check:
                next_cancel_check = now + request.cancel_check_seconds
                if request.should_cancel():
                    logger.info("Cancellation requested, terminating agent")
                    _terminate_process(process)
                    outcome.exit_code = _returncode(process)
                    outcome.cancelled = True
                    return outcome

            if request.shutdown_requested is not None and request.shutdown_requested():
                if shutdown_deadline is None:
                    shutdown_deadline = now + max(0, request.graceful_shutdown_seconds)
                    logger.info(
                        "Shutdown requested, agent gets %ss to finish",
                        request.graceful_shutdown_seconds,
                    )
                if now >= shutdown_deadline:
                    _terminate_process(process)
                    outcome.exit_code = _returncode(process)
                    outcome.interrupted = True
                    return outcome

            time.sleep(_POLL_SECONDS)
    except BaseException:
        _terminate_process(process)
        raise
    finally:
        reader.join(timeout=_READER_JOIN_SECONDS)


def _pump_stdout(stream: IO[str] | None, sink: IO[str], lines: list[str]) -> None:
    if stream is None:
        return
    for line in stream:
        lines.append(line)
        sink.write(line)
        sink.flush()
        agent_logger.info("%s", line.rstrip("\n"))
    stream.close()


def _returncode(process: subprocess.Popen[str]) -> int:
    return process.returncode if process.returncode is not None else -1


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _read_text(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text("utf-8", errors="replace")
