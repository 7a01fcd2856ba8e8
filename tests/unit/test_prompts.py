from agentloop.models import WorkflowRecord
from agentloop.prompts import (
    DEFAULT_PLANNER_SYSTEM_PROMPT,
    build_implementer_prompt,
    build_planner_prompt,
    extract_plan,
)
from agentloop.remote import ConversationMessage


def _record(**overrides) -> WorkflowRecord:
    fields = dict(
        channel_id="chan",
        launching_user_id="alice",
        repository="acme/api",
        original_prompt="Add retries to the client",
    )
    fields.update(overrides)
    return WorkflowRecord(**fields)


def test_planner_prompt_first_pass():
    prompt = build_planner_prompt(_record())
    assert DEFAULT_PLANNER_SYSTEM_PROMPT in prompt
    assert "<task>\nAdd retries to the client\n</task>" in prompt
    assert "<previous-plan>" not in prompt
    assert "<user-feedback>" not in prompt


def test_planner_prompt_revision_carries_previous_plan_and_feedback():
    record = _record(
        approved_context="Add retries with backoff",
        iteration_count=1,
        previous_plan="1. edit client.py",
        plan_feedback="also cover the CLI",
    )
    prompt = build_planner_prompt(record, system_prompt="Only plan.")
    assert prompt.startswith("<system-instructions>\nOnly plan.\n")
    assert "Add retries with backoff" in prompt
    assert "<previous-plan>\n1. edit client.py\n</previous-plan>" in prompt
    assert "<user-feedback>\nalso cover the CLI\n</user-feedback>" in prompt


def test_implementer_prompt_includes_approved_plan():
    prompt = build_implementer_prompt(_record(approved_plan="1. edit client.py"))
    assert "<approved-plan>\n1. edit client.py\n</approved-plan>" in prompt
    assert "Add retries to the client" in prompt

    assert "<approved-plan>" not in build_implementer_prompt(_record())


def test_extract_plan_returns_last_assistant_message():
    messages = [
        ConversationMessage(type="user_message", text="plan this"),
        ConversationMessage(type="assistant_message", text="Looking around..."),
        ConversationMessage(type="assistant_message", text="  ### Summary\nDo X  "),
        ConversationMessage(type="user_message", text="thanks"),
    ]
    assert extract_plan(messages) == "### Summary\nDo X"
    assert extract_plan([]) == ""
