"""Local deterministic agent for CLI backend integration tests."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path

from taskloop.coordinator.models import TaskStatus
from taskloop.coordinator.repository import TaskRepository


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt head, optionally report back and emit an idea block."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--stderr", default="")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--emit-idea-block", action="store_true")
    parser.add_argument("--report-status", choices=["completed", "failed", "in_progress"])
    parser.add_argument("--report-result", default=None)
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    first_line = prompt.strip().splitlines()[0] if prompt.strip() else ""
    print(f"echo: {first_line}", flush=True)
    print(f"cwd: {Path.cwd()}", flush=True)

    if args.sleep > 0:
        time.sleep(args.sleep)

    if args.report_status is not None:
        _report(status=TaskStatus(args.report_status), result=args.report_result)

    if args.emit_idea_block:
        payload = {
            "assumptions": {"customer": "solo developers", "problem": "context switching"},
            "variants": [
                {"name": "CLI", "description": "Terminal first", "pros": ["fast"], "cons": []},
                {"name": "Web", "description": "Browser UI", "pros": [], "cons": ["heavier"]},
            ],
            "implemented": 0,
            "epicId": "epic-echo",
        }
        print("Done.\n```json\n" + json.dumps(payload) + "\n```", flush=True)

    if args.stderr:
        print(args.stderr, file=sys.stderr, flush=True)
    return args.exit_code


def _report(*, status: TaskStatus, result: str | None) -> None:
    repository = TaskRepository(Path(os.environ["TASKLOOP_DB_PATH"]))
    try:
        repository.report_from_agent(
            task_id=os.environ["TASKLOOP_TASK_ID"],
            status=status,
            result=result,
            message=f"echo agent reported {status.value}",
        )
    finally:
        repository.close()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
