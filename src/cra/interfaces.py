"""Collaborator protocols consumed by the prompt pipeline."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from .schema import (
    AutomationContext,
    AutomationResult,
    IssueReference,
    PullRequestReference,
    RunResult,
    Session,
    SessionOptions,
    WorkspaceDescriptor,
)

NotificationSink = Callable[[str, Mapping[str, Any]], None]


@dataclass(slots=True)
class GitCommandResult:
    """Captured output of a single git invocation."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(slots=True)
class WorkspaceRequest:
    session_id: str
    reuse: bool = True
    workspace_uri: Optional[str] = None
    session_options: Optional[SessionOptions] = None


@dataclass(slots=True)
class RunOptions:
    """Per-invocation options forwarded to a model runner."""

    session_id: str
    operation_id: str
    workspace_path: Optional[str] = None
    credential: Optional[str] = None
    abort_signal: Optional[asyncio.Event] = None
    prior_messages: List[Dict[str, Any]] = field(default_factory=list)
    model: Optional[str] = None
    repository: Optional[str] = None


@dataclass(slots=True)
class RunCallbacks:
    """Streaming hooks a runner fires while it produces output."""

    on_start: Optional[Callable[[], None]] = None
    on_delta: Optional[Callable[[str, int], None]] = None
    on_complete: Optional[Callable[[str], None]] = None
    on_error: Optional[Callable[[BaseException], None]] = None


class SessionStore(Protocol):
    async def load(self, session_id: str) -> Optional[Session]:
        ...

    async def save(self, session: Session) -> None:
        ...


class WorkspaceService(Protocol):
    async def prepare(self, request: WorkspaceRequest) -> WorkspaceDescriptor:
        ...


class GitService(Protocol):
    async def ensure_repo(
        self,
        path: str,
        *,
        default_branch: Optional[str] = None,
        clone_url: Optional[str] = None,
    ) -> None:
        ...

    async def run_git(self, path: str, args: Sequence[str]) -> GitCommandResult:
        ...

    async def list_changed_files(self, path: str) -> List[str]:
        ...

    async def has_uncommitted_changes(self, path: str) -> bool:
        ...

    async def apply_patch(self, path: str, patch: str) -> None:
        ...

    async def get_status(self, path: str) -> str:
        ...


class ModelRunner(Protocol):
    async def run_prompt(
        self, prompt: str, options: RunOptions, callbacks: RunCallbacks
    ) -> RunResult:
        ...


class AutomationProvider(Protocol):
    async def execute(self, context: AutomationContext) -> AutomationResult:
        ...


class DiagnosticsService(Protocol):
    async def run(self, workspace_path: str) -> Mapping[str, Any]:
        ...


class HostingClient(Protocol):
    """Repository-hosting REST operations used by the git automation provider."""

    async def create_issue(
        self,
        *,
        owner: str,
        repo: str,
        title: str,
        body: str,
        labels: Sequence[str],
        token: str,
    ) -> IssueReference:
        ...

    async def create_pull_request(
        self,
        *,
        owner: str,
        repo: str,
        title: str,
        body: str,
        head: str,
        base: str,
        token: str,
    ) -> PullRequestReference:
        ...

    async def comment_on_issue(
        self, *, owner: str, repo: str, number: int, body: str, token: str
    ) -> None:
        ...


__all__ = [
    "AutomationProvider",
    "DiagnosticsService",
    "GitCommandResult",
    "GitService",
    "HostingClient",
    "ModelRunner",
    "NotificationSink",
    "RunCallbacks",
    "RunOptions",
    "SessionStore",
    "WorkspaceRequest",
    "WorkspaceService",
]
