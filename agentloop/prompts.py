"""Prompt construction for planner and implementer jobs."""

from __future__ import annotations

from typing import Iterable, Optional

from .remote.base import ConversationMessage
from .models import WorkflowRecord

DEFAULT_PLANNER_SYSTEM_PROMPT = """## Planning Mode - DO NOT MODIFY CODE

You are in PLANNING MODE. Your task is to deeply analyze the codebase and create a detailed
implementation plan for the requested change. You must NOT:
- Create, modify, or delete any files
- Create branches or pull requests
- Make any code changes whatsoever

You MUST:
1. Read any contributor or agent instruction files in the repository
2. Thoroughly investigate the codebase areas relevant to the task
3. Identify all files that would need to change
4. Describe the specific changes needed in each file
5. Consider edge cases, tests that need updating, and potential regressions
6. Output a clear, structured implementation plan

Format your plan as:
### Summary
### Files to Change
### Implementation Steps
### Testing Strategy
### Risks & Considerations"""


def _section(tag: str, body: str) -> str:
    return f"<{tag}>\n{body}\n</{tag}>\n"


def build_planner_prompt(
    record: WorkflowRecord, system_prompt: Optional[str] = None
) -> str:
    """Prompt for a planning pass; revisions include the previous plan and feedback."""
    parts = [
        _section("system-instructions", system_prompt or DEFAULT_PLANNER_SYSTEM_PROMPT),
        _section("task", record.task_context()),
    ]
    if record.iteration_count > 0 and record.previous_plan:
        parts.append(_section("previous-plan", record.previous_plan))
    if record.plan_feedback:
        parts.append(_section("user-feedback", record.plan_feedback))
        parts.append("Please revise the plan based on the user's feedback above.\n")
    return "\n".join(parts)


def build_implementer_prompt(record: WorkflowRecord) -> str:
    """Prompt for the implementation job, carrying the approved plan when there is one."""
    parts = [_section("task", record.task_context())]
    if record.approved_plan:
        parts.append(_section("approved-plan", record.approved_plan))
        parts.append("Implement the approved plan above.\n")
    return "\n".join(parts)


def extract_plan(messages: Iterable[ConversationMessage]) -> str:
    """Return the text of the last assistant message.

    Earlier assistant messages are progress updates; the final one holds
    the structured plan.
    """
    plan = ""
    for message in messages:
        if message.type == "assistant_message":
            plan = message.text
    return plan.strip()
