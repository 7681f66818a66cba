"""Prompt templates for episode capture and rule distillation."""

from __future__ import annotations

EPISODE_PROMPT = """\
You review human feedback on work an autonomous agent did, and decide whether
it teaches something reusable about how this person wants work done.

TASK
- Type: {{TASK_TYPE}}
- Title: {{TASK_TITLE}}
- Description: {{TASK_DESCRIPTION}}
- Project path: {{PROJECT_PATH}}

FEEDBACK
- Rating (1-5): {{RATING}}
- Rating tags: {{RATING_TAGS}}
- Comment: {{RATING_COMMENT}}
- Thread:
{{THREAD_MESSAGES}}

RESULT (excerpt)
{{TASK_RESULT}}

Do NOT capture:
- complaints about the execution infrastructure (timeouts, crashes, missing tools);
- one-off requirements that only apply to this single task;
- ratings with no information beyond "good" or "bad".

Capture preferences that would change how similar future work is done.

Respond with a single JSON object and nothing else:
{
  "shouldCapture": true,
  "narrative": "Third-person account of what the user wanted and why.",
  "feedbackType": "correction" | "approval" | "rejection",
  "projectType": "landing-page" | "dashboard" | "api" | "mobile-app" | "cli-tool"
                 | "library" | "content" | "research" | null,
  "workContext": "short label such as color-palette or test-setup",
  "tags": ["design", "..."],
  "skipReason": null
}
When the feedback is not reusable, set "shouldCapture" to false and explain in "skipReason".
"""

DISTILLATION_PROMPT = """\
You turn accumulated feedback episodes into durable, scoped working rules.

EPISODES
{{EPISODES}}

EXISTING ACTIVE RULES
{{EXISTING_RULES}}

Instructions:
1. Propose new rules only when episodes support them. Scope each rule as
   narrowly as the evidence allows: "project-specific" (scopeQualifier = the
   literal project path) or "project-type" (scopeQualifier = the project type)
   before "global" (scopeQualifier = null).
2. When episodes corroborate an existing rule, propose an update instead of a
   duplicate rule.
3. When an episode contradicts an existing rule, report a conflict.
4. New rule confidence is set from the number of supporting episodes, so
   cite every episode that supports a rule. For an updated rule, propose a
   confidenceDelta: raise it when new episodes approve the rule, never above 0.95.
5. category is one of: design, tooling, architecture, workflow, content.

Respond with a single JSON object and nothing else:
{
  "newRules": [
    {
      "content": "Imperative rule text.",
      "scope": "global" | "project-type" | "project-specific",
      "scopeQualifier": "landing-page",
      "category": "design",
      "tags": ["palette"],
      "sourceEpisodeIds": ["<episode id>"]
    }
  ],
  "updatedRules": [
    {
      "ruleId": "<rule id>",
      "confidenceDelta": 0.1,
      "newSourceEpisodeIds": ["<episode id>"],
      "reason": "why"
    }
  ],
  "conflicts": [
    {
      "ruleId": "<rule id>",
      "conflictingEpisodeId": "<episode id>",
      "description": "what contradicts what"
    }
  ]
}
"""
