"""Instruction templates handed to the execution agent."""

from __future__ import annotations

import hashlib

from taskloop.coordinator.complexity import Scope
from taskloop.coordinator.models import IdeaVariant, TaskView, WorkflowMode

EXECUTION_PROMPT = """\
You are executing a task from the taskloop queue.

TASK DETAILS:
- ID: {{TASK_ID}}
- Type: {{TASK_TYPE}}
- Title: {{TITLE}}
{{DESCRIPTION_LINE}}
{{THREAD}}
{{RULES}}
{{STRATEGY}}
INSTRUCTIONS:
1. Working directory: {{WORKDIR_NOTE}}
2. Read CLAUDE.md in the working directory if present and follow project conventions.
3. Complete this {{TASK_TYPE}} task.
4. Report back as you work. TASKLOOP_DB_PATH and TASKLOOP_TASK_ID are set in your environment:
   - progress: taskloop tasks report --task-id {{TASK_ID}} --message "what you did so far"
   - result:   taskloop tasks report --task-id {{TASK_ID}} --result "summary of the outcome"
5. When done, report --status completed (or --status failed with the reason in --result).

Now execute this task.
"""

SINGLE_AGENT_STRATEGY = """\
EXECUTION STRATEGY: single agent.
This task is narrow in scope. Work through it directly yourself; do not spawn
subagents or split the work into parallel tracks.
"""

LEAD_SUBAGENT_STRATEGY = """\
EXECUTION STRATEGY: lead agent with subagents.
This task spans several phases or deliverables. Act as the lead:
1. Break the work into independent pieces and write the plan down first.
2. Delegate research and self-contained implementation pieces to subagents.
3. Integrate their results yourself and verify the whole before reporting.
"""

IDEA_OUTPUT_CONTRACT = """\
At the end of your work, output a JSON block in exactly this format, even if
implementation fails:

```json
{
  "assumptions": {
    "customer": "Description of assumed target customer",
    "problem": "The core problem being solved",
    "market": "Market context and existing solutions"
  },
  "variants": [
    {
      "name": "Approach name",
      "description": "Brief description of this approach",
      "pros": ["Advantage 1"],
      "cons": ["Disadvantage 1"]
    }
  ],
  "implemented": {{IMPLEMENTED}},
  "epicId": "epic_id_if_available"
}
```
"""

IDEA_NEW_PROMPT = """\
IDEA: {{TITLE}}
{{DESCRIPTION_LINE}}
{{PROJECT_LINE}}
{{RULES}}
INSTRUCTIONS:
- Make logical assumptions about customer, problem, and market.
- Document all assumptions clearly in ASSUMPTIONS.md.
- During research, capture alternative approaches as variants (at least 2-3 ways to solve this).
- Build a working prototype of the most promising approach.
"""

IDEA_VARIANT_PROMPT = """\
IDEA: {{TITLE}}
{{DESCRIPTION_LINE}}
{{PROJECT_LINE}}

SELECTED VARIANT (the user chose this approach):
{{VARIANT}}

Focus on implementing THIS variant, not the original idea.
{{RULES}}
INSTRUCTIONS:
- Build a working prototype of the selected variant.
- Refine assumptions and variants if your work changes them.
"""

IDEA_FEEDBACK_PROMPT = """\
IDEA: {{TITLE}}
{{DESCRIPTION_LINE}}
{{PROJECT_LINE}}

PREVIOUS ASSUMPTIONS:
{{ASSUMPTIONS}}

USER FEEDBACK:
{{FEEDBACK}}
{{RULES}}
INSTRUCTIONS:
- The user reviewed the previous iteration; incorporate this feedback.
- Build an updated working prototype.
"""

_ALL_TEMPLATES = (
    EXECUTION_PROMPT,
    SINGLE_AGENT_STRATEGY,
    LEAD_SUBAGENT_STRATEGY,
    IDEA_OUTPUT_CONTRACT,
    IDEA_NEW_PROMPT,
    IDEA_VARIANT_PROMPT,
    IDEA_FEEDBACK_PROMPT,
)


def render_prompt(template: str, values: dict[str, str]) -> str:
    """Replace ``{{NAME}}`` placeholders; unknown names are left untouched."""

    rendered = template
    for key, value in values.items():
        rendered = rendered.replace("{{" + key + "}}", value)
    return rendered


def prompt_version() -> str:
    """Short content hash of all agent templates, recorded with each claim."""

    combined = "\n---\n".join(_ALL_TEMPLATES)
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()[:12]


def build_execution_prompt(*, task: TaskView, scope: Scope, rules_block: str) -> str:
    return render_prompt(
        EXECUTION_PROMPT,
        {
            "TASK_ID": task.task_id,
            "TASK_TYPE": task.task_type,
            "TITLE": task.title,
            "DESCRIPTION_LINE": f"- Description: {task.description}" if task.description else "",
            "THREAD": _format_thread(task),
            "RULES": rules_block,
            "STRATEGY": (
                LEAD_SUBAGENT_STRATEGY if scope == Scope.COMPLEX else SINGLE_AGENT_STRATEGY
            ),
            "WORKDIR_NOTE": (
                f"you are in the project directory {task.project_path}."
                if task.project_path
                else "you are in the projects root; locate the target project first."
            ),
        },
    )


def build_idea_prompt(*, task: TaskView, mode: WorkflowMode, rules_block: str) -> str:
    common = {
        "TITLE": task.title,
        "DESCRIPTION_LINE": f"DESCRIPTION: {task.description}" if task.description else "",
        "PROJECT_LINE": f"PROJECT PATH: {task.project_path}" if task.project_path else "",
        "RULES": rules_block,
    }
    if mode == WorkflowMode.VARIANT:
        index = task.selected_variant_index or 0
        variant = task.variants[index] if 0 <= index < len(task.variants) else None
        body = render_prompt(
            IDEA_VARIANT_PROMPT,
            {**common, "VARIANT": _format_variant(variant)},
        )
        implemented = str(index)
    elif mode == WorkflowMode.FEEDBACK:
        body = render_prompt(
            IDEA_FEEDBACK_PROMPT,
            {
                **common,
                "ASSUMPTIONS": _format_assumptions(task.assumptions),
                "FEEDBACK": task.user_feedback or "",
            },
        )
        implemented = "0"
    else:
        body = render_prompt(IDEA_NEW_PROMPT, common)
        implemented = "0"
    return body + "\n" + render_prompt(IDEA_OUTPUT_CONTRACT, {"IMPLEMENTED": implemented})


def _format_thread(task: TaskView) -> str:
    if not any(message.role == "user" for message in task.messages):
        return ""
    lines = ["CONVERSATION THREAD:"]
    lines.extend(f"[{message.role.upper()}]: {message.content}" for message in task.messages)
    lines.append("")
    lines.append("The user has provided feedback. Continue iterating based on their input.")
    return "\n".join(lines) + "\n"


def _format_variant(variant: IdeaVariant | None) -> str:
    if variant is None:
        return "(variant details unavailable)"
    lines = [f"Name: {variant.name}", f"Description: {variant.description}"]
    if variant.pros:
        lines.append(f"Pros: {', '.join(variant.pros)}")
    if variant.cons:
        lines.append(f"Cons: {', '.join(variant.cons)}")
    return "\n".join(lines)


def _format_assumptions(assumptions: dict[str, str]) -> str:
    if not assumptions:
        return "None recorded"
    return "\n".join(f"- {key}: {value}" for key, value in assumptions.items())
