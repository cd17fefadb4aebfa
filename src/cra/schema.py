"""Typed records exchanged by the prompt pipeline."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)

    def to_payload(self) -> Dict[str, Any]:
        """Return a JSON-friendly mapping without unset optional fields."""
        return self.model_dump(mode="json", exclude_none=True)


class StopReason(str, Enum):
    """Terminal outcome of a prompt invocation."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


class AutomationStatus(str, Enum):
    """Outcome of an automation attempt."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"


class TurnRole(str, Enum):
    """Author of a conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"


class ContentBlock(RecordModel):
    """Single piece of prompt content supplied by a caller."""

    model_config = ConfigDict(extra="allow")

    type: str = "text"
    text: Optional[str] = None
    content: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def body(self) -> str:
        return self.text or self.content or ""


class ConversationTurn(RecordModel):
    """One entry of the append-only message history."""

    role: TurnRole
    content: List[ContentBlock] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)
    tool_use: List[Dict[str, Any]] = Field(default_factory=list)


class SessionOptions(RecordModel):
    """Per-session switches controlling persistence and automation."""

    persist_history: bool = True
    enable_git_ops: Optional[bool] = None
    context_files: List[str] = Field(default_factory=list)


class Session(RecordModel):
    """Conversation context scoped to one working codebase."""

    session_id: str
    workspace_uri: Optional[str] = None
    mode: str = "development"
    state: str = "active"
    created_at: datetime = Field(default_factory=utc_now)
    last_active_at: datetime = Field(default_factory=utc_now)
    message_history: List[ConversationTurn] = Field(default_factory=list)
    session_options: SessionOptions = Field(default_factory=SessionOptions)
    agent_context: Optional[Dict[str, Any]] = None

    def append_turns(self, turns: List[ConversationTurn], *, timestamp: datetime) -> None:
        """Append ``turns`` to the history and bump the activity timestamp."""
        self.message_history.extend(turns)
        self.last_active_at = timestamp


class GitInfo(RecordModel):
    """Lightweight git snapshot taken when a workspace is prepared."""

    current_branch: Optional[str] = None
    remote_url: Optional[str] = None
    has_uncommitted_changes: Optional[bool] = None
    last_commit: Optional[str] = None


class WorkspaceDescriptor(RecordModel):
    """Directory holding the git working copy for a session."""

    session_id: str
    path: str
    is_ephemeral: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    git_info: Optional[GitInfo] = None


class IssueReference(RecordModel):
    id: int
    number: int
    url: str
    title: str


class PullRequestReference(RecordModel):
    number: int
    url: str
    branch: str
    draft: bool = False


class CommitReference(RecordModel):
    sha: str
    message: str


class GitIdentity(RecordModel):
    name: Optional[str] = None
    email: Optional[str] = None


class RepositoryDescriptor(RecordModel):
    """Target repository plus per-call publishing overrides."""

    owner: str
    name: str
    default_branch: str = "main"
    clone_url: Optional[str] = None
    issue_title: Optional[str] = None
    labels: Optional[List[str]] = None
    issue: Optional[IssueReference] = None
    branch_name_override: Optional[str] = None
    base_branch_override: Optional[str] = None
    git_identity: Optional[GitIdentity] = None
    dry_run: Optional[bool] = None
    allow_empty_commit: Optional[bool] = None
    source: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class AutomationIntent(RecordModel):
    """Caller hints describing whether and how automation should run."""

    mode: Optional[str] = None
    disabled: Optional[bool] = None
    repository_blocked: Optional[bool] = None
    reason: Optional[str] = None
    explicit: Optional[bool] = None
    force: Optional[bool] = None
    agent_context: Optional[Dict[str, Any]] = None


class TokenUsage(RecordModel):
    input_tokens: int = 0
    output_tokens: int = 0


class RunResult(RecordModel):
    """Final payload reported by a model runner."""

    full_text: str = ""
    tokens: Optional[TokenUsage] = None
    stop_reason: Optional[str] = None
    tool_use: List[Dict[str, Any]] = Field(default_factory=list)
    cost_tracking: Optional[Dict[str, Any]] = None


class AutomationDiagnostics(RecordModel):
    duration_ms: int = Field(default=0, ge=0)
    attempts: int = 1
    logs: List[str] = Field(default_factory=list)
    error_code: Optional[str] = None
    start_timestamp: Optional[str] = None
    end_timestamp: Optional[str] = None


class AutomationErrorDetail(RecordModel):
    code: str
    message: str
    retryable: Optional[bool] = None
    details: Optional[Dict[str, Any]] = None


class AutomationResult(RecordModel):
    """Ephemeral outcome of one automation attempt."""

    status: AutomationStatus
    branch: Optional[str] = None
    commit: Optional[CommitReference] = None
    issue: Optional[IssueReference] = None
    pull_request: Optional[PullRequestReference] = None
    skipped_reason: Optional[str] = None
    error: Optional[AutomationErrorDetail] = None
    diagnostics: AutomationDiagnostics = Field(default_factory=AutomationDiagnostics)
    metadata: Optional[Dict[str, Any]] = None


class RepositoryTarget(RecordModel):
    owner: str
    name: str
    default_branch: str = "main"
    clone_url: Optional[str] = None


class AutomationContext(RecordModel):
    """Everything an automation provider needs to publish a change."""

    session_id: str
    workspace_path: str
    repository: RepositoryTarget
    token: str = Field(repr=False)
    prompt_title: Optional[str] = None
    prompt_body: str = ""
    summary_markdown: Optional[str] = None
    intent: Optional[AutomationIntent] = None
    existing_issue: Optional[IssueReference] = None
    labels: Optional[List[str]] = None
    branch_name_override: Optional[str] = None
    base_branch_override: Optional[str] = None
    git_identity: Optional[GitIdentity] = None
    metadata: Optional[Dict[str, Any]] = None
    dry_run: Optional[bool] = None
    allow_empty_commit: Optional[bool] = None
    commit_message: Optional[str] = None
    workspace_already_prepared: bool = False


class PullRequestSummary(RecordModel):
    url: str
    number: int
    title: str


class GitOperations(RecordModel):
    """Legacy-compatible summary of repository side effects."""

    branch_created: Optional[str] = None
    pull_request_created: Optional[PullRequestSummary] = None
    files_modified: Optional[List[str]] = None


class PromptResult(RecordModel):
    """Composed response returned by ``PromptProcessor.process_prompt``."""

    stop_reason: StopReason
    usage: TokenUsage
    summary: str = ""
    error_code: Optional[str] = None
    github_operations: Optional[GitOperations] = None
    github_automation: Optional[AutomationResult] = None
    diagnostics: Optional[Dict[str, Any]] = None
    meta: Optional[Dict[str, Any]] = None
    turns: Optional[List[ConversationTurn]] = None


__all__ = [
    "AutomationContext",
    "AutomationDiagnostics",
    "AutomationErrorDetail",
    "AutomationIntent",
    "AutomationResult",
    "AutomationStatus",
    "CommitReference",
    "ContentBlock",
    "ConversationTurn",
    "GitIdentity",
    "GitInfo",
    "GitOperations",
    "IssueReference",
    "PromptResult",
    "PullRequestReference",
    "PullRequestSummary",
    "RepositoryDescriptor",
    "RepositoryTarget",
    "RunResult",
    "Session",
    "SessionOptions",
    "StopReason",
    "TokenUsage",
    "TurnRole",
    "WorkspaceDescriptor",
    "utc_now",
]
