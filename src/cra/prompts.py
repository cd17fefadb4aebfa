"""Prompt templates, token estimation and prompt assembly helpers."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

from .schema import ContentBlock, Session
from .tools.workspace import path_from_uri

EXECUTOR_SYSTEM_PROMPT = """<system_role>
You are the **Executor Agent**, a specialized assistant focused on precise code execution.
Complete the specific sub-task assigned to you efficiently and accurately.

**Directives:**
1. **Execute, Don't Plan**: The high-level plan has already been made. Focus on the immediate sub-task.
2. **Minimal Chatter**: Report actions and results; skip lengthy explanations.
3. **Tool Usage**: Use file editing, git and shell tools proactively to reach the goal.
4. **Context**: You are working within an existing codebase. Respect its patterns and types.
</system_role>
"""

COMMIT_MESSAGE_SYSTEM_PROMPT = (
    "You write git commit subjects. Reply with a single imperative line of at most 72 characters "
    "describing the change. No quotes, no trailing period, no narration."
)

CHARS_PER_TOKEN = 4


@dataclass(slots=True, frozen=True)
class TokenEstimate:
    estimated_tokens: int
    char_count: int
    overhead_applied: float


@dataclass(slots=True, frozen=True)
class BudgetSummary:
    summary: str
    original_tokens: int
    truncated: bool


@dataclass(slots=True, frozen=True)
class PromptSegment:
    content: str
    label: Optional[str] = None
    role: str = "context"


@dataclass(slots=True, frozen=True)
class CompositePrompt:
    prompt: str
    total_estimated_tokens: int
    truncated_segments: int


@dataclass(slots=True, frozen=True)
class PromptPackage:
    """Prompt text handed to the model plus its input-token estimate."""

    text: str
    estimated_tokens: int


def estimate_tokens(text: str, *, overhead_ratio: float = 1.0) -> TokenEstimate:
    """Approximate the token count of ``text`` as ``ceil(chars / 4)`` scaled by overhead."""
    char_count = len(text)
    base = math.ceil(char_count / CHARS_PER_TOKEN)
    estimated = max(0, math.ceil(base * overhead_ratio))
    return TokenEstimate(estimated_tokens=estimated, char_count=char_count, overhead_applied=overhead_ratio)


def summarize_to_budget(text: str, max_tokens: int) -> BudgetSummary:
    """Proportionally truncate ``text`` so its estimate fits ``max_tokens``."""
    original = estimate_tokens(text).estimated_tokens
    if original <= max_tokens:
        return BudgetSummary(summary=text, original_tokens=original, truncated=False)
    ratio = max_tokens / max(1, original)
    target_chars = math.floor(len(text) * ratio)
    summary = text[: max(0, target_chars - 3)].strip() + "..."
    return BudgetSummary(summary=summary, original_tokens=original, truncated=True)


def build_composite_prompt(
    segments: Sequence[PromptSegment],
    *,
    max_total_tokens: Optional[int] = None,
) -> CompositePrompt:
    """Join labelled segments until ``max_total_tokens`` is exhausted."""
    budget = math.inf if max_total_tokens is None else max_total_tokens
    total = 0
    truncated = 0
    parts: list[str] = []
    for segment in segments:
        header = f"### {segment.label}\n" if segment.label else ""
        block = header + (segment.content or "")
        tokens = estimate_tokens(block).estimated_tokens
        if total + tokens > budget:
            remaining = max(0, int(budget - total))
            truncated += 1
            if remaining > 0:
                parts.append(header + summarize_to_budget(segment.content or "", remaining).summary)
                total += remaining
            break
        parts.append(block)
        total += tokens
    return CompositePrompt(prompt="\n\n".join(parts), total_estimated_tokens=total, truncated_segments=truncated)


def render_content_block(block: ContentBlock) -> str:
    """Render a single content block by type."""
    filename = block.metadata.get("filename") if block.metadata else None
    if block.type == "text":
        return block.body
    if block.type == "file":
        return f"File: {filename or 'unknown'}\n{block.content or ''}"
    if block.type == "diff":
        return f"Diff:\n{block.content or ''}"
    if block.type == "image":
        return f"[Image: {filename or 'image'}]"
    if block.type == "thought":
        return f"Thought: {block.content or ''}"
    if block.type == "error":
        return f"Error: {block.content or ''}"
    return block.content or block.text or ""


def build_prompt_from_content(
    content: Sequence[ContentBlock],
    context_files: Sequence[str] | None = None,
    agent_context: Mapping[str, Any] | None = None,
    session: Session | None = None,
) -> str:
    """Assemble the model prompt from content blocks and session context."""
    prompt = ""

    if agent_context:
        if agent_context.get("agentRole") == "executor":
            prompt += EXECUTOR_SYSTEM_PROMPT + "\n\n"
        for key, label in (
            ("userRequest", "User Request"),
            ("requestingAgent", "Requesting Agent"),
            ("subTask", "Assigned Sub-Task"),
        ):
            if agent_context.get(key):
                prompt += f"{label}: {agent_context[key]}\n\n"

    if session is not None:
        workspace = path_from_uri(session.workspace_uri)
        if workspace is not None:
            prompt += f"Working in: {workspace.as_posix()}\n"
        if session.mode:
            prompt += f"Session Mode: {session.mode}\n\n"

    if context_files:
        listing = "\n".join(f"- {name}" for name in context_files)
        prompt += f"Context Files:\n{listing}\n\n"

    for block in content:
        prompt += render_content_block(block) + "\n\n"

    return prompt.strip()


def build_prompt(
    content: Sequence[ContentBlock],
    context_files: Sequence[str] | None = None,
    agent_context: Mapping[str, Any] | None = None,
    session: Session | None = None,
) -> PromptPackage:
    text = build_prompt_from_content(content, context_files, agent_context, session)
    return PromptPackage(text=text, estimated_tokens=estimate_tokens(text).estimated_tokens)


def summarize_text(text: str, *, limit: int = 200) -> str:
    """Return the first ``limit`` characters of ``text`` with ``...`` when cut."""
    return text if len(text) <= limit else text[:limit] + "..."


def render_commit_message_request(
    *,
    prompt: str,
    summary: str,
    changed_files: Sequence[str],
    diff: str,
) -> str:
    """Render the user message for the commit-subject model call."""
    files = "\n".join(f"- {name}" for name in changed_files) or "- (none reported)"
    return (
        "## Request\n"
        f"{prompt}\n\n"
        "## Assistant summary\n"
        f"{summary or '(none)'}\n\n"
        "## Changed files\n"
        f"{files}\n\n"
        "## Diff\n"
        f"{diff or '(unavailable)'}\n\n"
        'Return JSON: {"subject": "<commit subject>"}'
    )


__all__ = [
    "COMMIT_MESSAGE_SYSTEM_PROMPT",
    "EXECUTOR_SYSTEM_PROMPT",
    "BudgetSummary",
    "CompositePrompt",
    "PromptPackage",
    "PromptSegment",
    "TokenEstimate",
    "build_composite_prompt",
    "build_prompt",
    "build_prompt_from_content",
    "estimate_tokens",
    "render_commit_message_request",
    "render_content_block",
    "summarize_text",
    "summarize_to_budget",
]
