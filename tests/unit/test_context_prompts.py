from __future__ import annotations

import copy

from cra.context import ensure_string_list, find_boolean, get_nested, merge_agent_context
from cra.prompts import (
    EXECUTOR_SYSTEM_PROMPT,
    PromptSegment,
    build_composite_prompt,
    build_prompt,
    build_prompt_from_content,
    estimate_tokens,
    summarize_text,
    summarize_to_budget,
)
from cra.schema import ContentBlock, Session, SessionOptions


def test_merge_agent_context_merges_automation_key_by_key() -> None:
    existing = {"repository": "acme/old", "automation": {"mode": "full", "labels": ["bug"]}}
    incoming = {"repository": "acme/widgets", "automation": {"mode": "commit-only"}}
    existing_before = copy.deepcopy(existing)
    incoming_before = copy.deepcopy(incoming)

    merged = merge_agent_context(existing, incoming)

    assert merged == {"repository": "acme/widgets", "automation": {"mode": "commit-only", "labels": ["bug"]}}
    assert existing == existing_before
    assert incoming == incoming_before


def test_merge_agent_context_handles_empty_inputs() -> None:
    assert merge_agent_context(None, None) is None
    assert merge_agent_context({}, {}) is None
    assert merge_agent_context(None, {"a": 1}) == {"a": 1}
    assert merge_agent_context({"a": 1}, None) == {"a": 1}


def test_merge_agent_context_replaces_non_mapping_automation() -> None:
    merged = merge_agent_context({"automation": {"mode": "full"}}, {"automation": "off"})

    assert merged == {"automation": "off"}


def test_merge_result_does_not_alias_inputs() -> None:
    existing = {"automation": {"labels": ["bug"]}}
    merged = merge_agent_context(existing, None)
    assert merged is not None

    merged["automation"]["labels"].append("extra")

    assert existing["automation"]["labels"] == ["bug"]


def test_nested_helpers_tolerate_missing_segments() -> None:
    source = {"automation": {"dryRun": "yes", "labels": "bug, ui ,"}}

    assert get_nested(source, "automation.missing.deeper") is None
    assert find_boolean(source, ["automation.absent", "automation.dryRun"]) is True
    assert ensure_string_list(source["automation"]["labels"]) == ["bug", "ui"]
    assert ensure_string_list(42) is None


def test_build_prompt_includes_context_sections_in_order() -> None:
    session = Session(
        session_id="s1",
        workspace_uri="file:///tmp/work%20space",
        mode="review",
        session_options=SessionOptions(),
    )
    content = [
        ContentBlock(type="text", text="Fix the typo in the header."),
        ContentBlock(type="file", content="print('hi')", metadata={"filename": "app.py"}),
        ContentBlock(type="diff", content="-a\n+b"),
        ContentBlock(type="image", metadata={"filename": "shot.png"}),
    ]
    agent_context = {"agentRole": "executor", "userRequest": "Polish the header", "subTask": "Edit header.html"}

    prompt = build_prompt_from_content(content, ["header.html"], agent_context, session)

    assert prompt.startswith(EXECUTOR_SYSTEM_PROMPT.strip())
    assert "User Request: Polish the header" in prompt
    assert "Assigned Sub-Task: Edit header.html" in prompt
    assert "Working in: /tmp/work space" in prompt
    assert "Session Mode: review" in prompt
    assert "Context Files:\n- header.html" in prompt
    assert "File: app.py\nprint('hi')" in prompt
    assert "Diff:\n-a\n+b" in prompt
    assert "[Image: shot.png]" in prompt
    assert prompt.index("User Request") < prompt.index("Working in") < prompt.index("Fix the typo")


def test_build_prompt_without_context_is_just_the_content() -> None:
    package = build_prompt([ContentBlock(type="text", text="fix typo")])

    assert package.text == "fix typo"
    assert package.estimated_tokens == 2


def test_estimate_tokens_rounds_up_and_applies_overhead() -> None:
    assert estimate_tokens("").estimated_tokens == 0
    assert estimate_tokens("abcde").estimated_tokens == 2
    assert estimate_tokens("a" * 40, overhead_ratio=1.5).estimated_tokens == 15


def test_summarize_to_budget_truncates_proportionally() -> None:
    text = "word " * 100

    summary = summarize_to_budget(text, 10)

    assert summary.truncated is True
    assert summary.summary.endswith("...")
    assert len(summary.summary) <= 40
    assert summarize_to_budget("short", 10).truncated is False


def test_build_composite_prompt_stops_at_budget() -> None:
    segments = [
        PromptSegment(content="a" * 40, label="First"),
        PromptSegment(content="b" * 400, label="Second"),
        PromptSegment(content="c" * 40, label="Third"),
    ]

    composite = build_composite_prompt(segments, max_total_tokens=30)

    assert composite.prompt.startswith("### First\n")
    assert "### Second\n" in composite.prompt
    assert "Third" not in composite.prompt
    assert composite.truncated_segments == 1


def test_summary_helper_marks_truncation() -> None:
    assert summarize_text("x" * 201) == "x" * 200 + "..."
    assert summarize_text("short") == "short"
