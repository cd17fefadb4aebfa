"""Git-driven automation provider: issue, branch, commit, push and pull request."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from ..interfaces import GitCommandResult, GitService, HostingClient
from ..resolvers import build_authenticated_url, parse_repository_url, redact_secrets
from ..schema import (
    AutomationContext,
    AutomationDiagnostics,
    AutomationErrorDetail,
    AutomationIntent,
    AutomationResult,
    AutomationStatus,
    CommitReference,
    GitIdentity,
    IssueReference,
    PullRequestReference,
    utc_now,
)
from ..utils.slug import branch_timestamp

LOGGER = logging.getLogger(__name__)

DEFAULT_BRANCH_PREFIX = "cra"
DEFAULT_LABELS = ("automated",)
DEFAULT_IDENTITY = GitIdentity(name="Change Request Automation", email="automation@users.noreply.github.com")
TITLE_LIMIT = 120
FETCH_DEPTH = 50

_NON_FAST_FORWARD = re.compile(r"non-fast-forward|tip of your current branch is behind|fetch first", re.IGNORECASE)
_SESSION_UNSAFE = re.compile(r"[^a-z0-9]+")
_METADATA_PREFIXES = ("Session Mode:", "Working in:", "Context Files:", "Requesting Agent:", "Assigned Sub-Task:", "-")
_ACTION_RE = re.compile(
    r"(?:I(?:'ve| have))?\s*(changed|updated|modified|added|removed|fixed|implemented|created|refactored|improved)\s+([^.]+)",
    re.IGNORECASE,
)


class AutomationMode(str, Enum):
    NONE = "none"
    COMMIT_ONLY = "commit-only"
    FULL = "full"


class AutomationError(RuntimeError):
    """Failure raised inside the provider and normalised into an error result."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        retryable: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable
        self.details = details

    def to_detail(self) -> AutomationErrorDetail:
        return AutomationErrorDetail(code=self.code, message=self.message, retryable=self.retryable, details=self.details)


@dataclass(slots=True, frozen=True)
class AutomationDecision:
    run: bool
    mode: AutomationMode
    reason: Optional[str] = None
    explicit: Optional[bool] = None


@dataclass(slots=True)
class PreparedBranch:
    path: str
    base_branch: str
    branch_name: str
    has_changes: bool
    changed_files: List[str] = field(default_factory=list)


def _mode_from_agent_context(agent_context: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not agent_context:
        return None
    automation = agent_context.get("automation")
    if isinstance(automation, Mapping) and isinstance(automation.get("mode"), str):
        return automation["mode"]
    mode = agent_context.get("automationMode")
    return mode if isinstance(mode, str) else None


def detect_intent(intent: Optional[AutomationIntent]) -> AutomationDecision:
    """Decide whether the provider should run and in which mode."""
    signals = intent or AutomationIntent()
    if signals.disabled:
        return AutomationDecision(False, AutomationMode.NONE, signals.reason or "Automation disabled by configuration", signals.explicit)
    if signals.repository_blocked:
        return AutomationDecision(False, AutomationMode.NONE, signals.reason or "Repository not eligible for automation", signals.explicit)

    mode = (_mode_from_agent_context(signals.agent_context) or signals.mode or "full").strip().lower()
    if mode in {"none", "skip"}:
        return AutomationDecision(
            False, AutomationMode.NONE, signals.reason or "Automation explicitly skipped by agent context", signals.explicit
        )
    if mode == "commit-only":
        return AutomationDecision(True, AutomationMode.COMMIT_ONLY, explicit=signals.explicit)
    return AutomationDecision(True, AutomationMode.FULL, explicit=signals.explicit)


def _clip(text: str, limit: int = TITLE_LIMIT) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def build_branch_name(prefix: str, issue: Optional[IssueReference], session_id: str, moment: datetime) -> str:
    """Return a fresh timestamped branch name; prior branches are never reused."""
    timestamp = branch_timestamp(moment)
    if issue is not None and issue.number > 0:
        return f"{prefix}/issue-{issue.number}-{timestamp}".lower()
    session_slug = _SESSION_UNSAFE.sub("-", session_id.lower()).strip("-")[:32]
    return f"{prefix}/session-{session_slug or 'unknown'}-{timestamp}"


def build_commit_message(issue: Optional[IssueReference], title: Optional[str]) -> str:
    if issue is not None:
        suffix = f": {title}" if title else ""
        return f"Fix issue #{issue.number}{suffix}"
    return f"Apply automation: {title}" if title else "Apply automated changes"


def derive_issue_title(prompt: str) -> str:
    """First line of ``prompt`` that is not prompt-builder metadata."""
    lines = [line.strip() for line in prompt.strip().splitlines()]
    for line in lines:
        if line and not line.startswith(_METADATA_PREFIXES):
            return _clip(line)
    first = next((line for line in lines if line), "")
    return _clip(first) if first else "Automated change request"


def derive_pull_request_title(issue: IssueReference, prompt_title: Optional[str], summary: Optional[str]) -> str:
    if summary:
        match = _ACTION_RE.search(summary)
        if match:
            return _clip(f"{match.group(1).capitalize()} {match.group(2).strip()}")
        sentences = [part.strip() for part in re.split(r"[.!?]+", summary) if len(part.strip()) > 10]
        if sentences:
            cleaned = re.sub(r"^(?:I(?:'ll| will))?\s*help\s+you\s+", "", sentences[0], flags=re.IGNORECASE)
            cleaned = re.sub(r"^(?:Let me|I will|I'll)\s+", "", cleaned, flags=re.IGNORECASE).strip()
            if cleaned:
                return _clip(cleaned)
    if prompt_title:
        return _clip(prompt_title)
    return f"Fix issue #{issue.number}"


def build_issue_body(prompt: str, summary: Optional[str]) -> str:
    sections: List[str] = []
    if summary:
        sections.extend(["### Summary\n", summary.strip(), "\n"])
    sections.extend(["### Original Request\n", prompt.strip(), "\n\n_Opened by change request automation._"])
    return "\n".join(sections)


def build_pull_request_body(issue: IssueReference, summary: str) -> str:
    text = summary.strip() or "Automated change generated from a prompt."
    return f"{text}\n\n---\nFixes #{issue.number}\n\nThis pull request was opened automatically."


def push_remote_url(context: AutomationContext, default_host: str = "github.com") -> str:
    """Clone URL normalised to https where it names a hosted repository."""
    clone_url = context.repository.clone_url
    if not clone_url:
        return f"https://{default_host}/{context.repository.owner}/{context.repository.name}.git"
    parsed = parse_repository_url(clone_url)
    if parsed is not None and parsed.clone_url and not clone_url.startswith(("http://", "https://")):
        return parsed.clone_url
    return clone_url.rstrip("/")


def _parse_file_list(output: str) -> List[str]:
    return [line.strip().removeprefix("./") for line in output.splitlines() if line.strip()]


class GitAutomationProvider:
    """``AutomationProvider`` that publishes workspace changes through git.

    REST calls (issues, pull requests, comments) go through a ``HostingClient``.
    Without one, full mode fails with ``hosting-client-unavailable`` at its
    first REST call; commit-only mode and dry runs never need it.
    """

    def __init__(
        self,
        git_service: GitService,
        hosting_client: Optional[HostingClient] = None,
        *,
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
        default_labels: Sequence[str] = DEFAULT_LABELS,
        identity: Optional[GitIdentity] = None,
        default_host: str = "github.com",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.git = git_service
        self.hosting_client = hosting_client
        self.branch_prefix = branch_prefix
        self.default_labels = list(default_labels)
        self.identity = identity or DEFAULT_IDENTITY
        self.default_host = default_host
        self._clock = clock

    async def execute(self, context: AutomationContext) -> AutomationResult:
        start = self._clock()
        logs: List[str] = []
        secrets = [context.token]
        decision = detect_intent(context.intent)
        if not decision.run:
            return self._skipped(decision.reason or "Automation disabled", start, logs, context)

        if not context.repository.owner or not context.repository.name:
            error = AutomationError("missing-repository", "Repository owner/name are required")
            return self._errored(error, start, logs, context)

        issue = context.existing_issue
        prepared: Optional[PreparedBranch] = None
        try:
            self._log(
                logs,
                secrets,
                "automation.start",
                {
                    "sessionId": context.session_id,
                    "repository": f"{context.repository.owner}/{context.repository.name}",
                    "mode": decision.mode.value,
                },
            )
            if decision.mode is AutomationMode.FULL and issue is None:
                issue = await self._create_issue(context, logs)

            prepared = await self._prepare_branch(context, issue, logs)
            if not prepared.has_changes and not context.allow_empty_commit:
                return self._skipped("No workspace changes detected", start, logs, context, issue=issue)

            commit, files_changed = await self._commit(context, prepared, issue, logs)
            if commit is None:
                return self._skipped("Nothing to commit after staging", start, logs, context, issue=issue)

            pull_request: Optional[PullRequestReference] = None
            if context.dry_run:
                self._log(logs, secrets, "automation.dryRun", {"branch": prepared.branch_name})
            else:
                await self._push(context, prepared, logs)
                if decision.mode is AutomationMode.FULL:
                    assert issue is not None
                    pull_request = await self._open_pull_request(context, prepared, issue, logs)
                    await self._comment_on_issue(context, issue, pull_request, logs)
                else:
                    self._log(logs, secrets, "automation.commitOnly", {"branch": prepared.branch_name})

            self._log(
                logs,
                secrets,
                "automation.success",
                {
                    "branch": prepared.branch_name,
                    "issueNumber": issue.number if issue else None,
                    "pullRequestNumber": pull_request.number if pull_request else None,
                },
            )
            metadata = dict(context.metadata or {})
            metadata["filesChanged"] = files_changed
            return AutomationResult(
                status=AutomationStatus.SUCCESS,
                branch=prepared.branch_name,
                issue=issue,
                commit=commit,
                pull_request=pull_request,
                diagnostics=self._diagnostics(start, logs),
                metadata=metadata,
            )
        except Exception as error:
            automation_error = self._normalise(error, secrets)
            self._log(logs, secrets, "automation.error", {"code": automation_error.code, "message": automation_error.message})
            LOGGER.warning("Automation failed for session %s: %s", context.session_id, automation_error.message)
            return self._errored(
                automation_error,
                start,
                logs,
                context,
                issue=issue,
                branch=prepared.branch_name if prepared else None,
            )

    async def _git_checked(self, path: str, args: Sequence[str], code: str, secrets: Sequence[str]) -> GitCommandResult:
        result = await self.git.run_git(path, list(args))
        if not result.ok:
            raise AutomationError(
                code,
                "Git command failed",
                details={
                    "args": [redact_secrets(arg, secrets) for arg in args],
                    "code": result.exit_code,
                    "stderr": redact_secrets(result.stderr, secrets),
                },
            )
        return result

    async def _create_issue(self, context: AutomationContext, logs: List[str]) -> IssueReference:
        if context.dry_run:
            self._log(logs, [context.token], "hosting.issueSkipped", {"reason": "dry-run"})
            return IssueReference(id=0, number=0, url="", title=context.prompt_title or "Automation Preview Issue")
        client = self._require_client()
        title = (context.prompt_title or "").strip() or derive_issue_title(context.prompt_body)
        issue = await client.create_issue(
            owner=context.repository.owner,
            repo=context.repository.name,
            title=title,
            body=build_issue_body(context.prompt_body, context.summary_markdown),
            labels=list(context.labels or self.default_labels),
            token=context.token,
        )
        self._log(logs, [context.token], "hosting.issueCreated", {"number": issue.number, "url": issue.url})
        return issue

    async def _prepare_branch(
        self,
        context: AutomationContext,
        issue: Optional[IssueReference],
        logs: List[str],
    ) -> PreparedBranch:
        path = context.workspace_path
        secrets = [context.token]
        base_branch = context.base_branch_override or context.repository.default_branch

        if context.repository.clone_url and not context.workspace_already_prepared:
            self._log(logs, secrets, "git.ensureRepo", {"path": path, "cloneUrl": context.repository.clone_url})
            await self.git.ensure_repo(
                path,
                default_branch=base_branch,
                clone_url=build_authenticated_url(context.repository.clone_url, context.token),
            )

        await self._git_checked(path, ["fetch", "origin", base_branch], "git-fetch-base-failed", secrets)
        if context.branch_name_override and context.workspace_already_prepared:
            # The coordinator already checked out the override with the model's edits on it.
            self._log(logs, secrets, "git.baseCheckoutSkipped", {"branch": context.branch_name_override})
        else:
            await self._git_checked(path, ["checkout", base_branch], "git-checkout-base-failed", secrets)
            await self._git_checked(path, ["pull", "--ff-only", "origin", base_branch], "git-pull-base-failed", secrets)

        override = context.branch_name_override
        branch_name = override or build_branch_name(self.branch_prefix, issue, context.session_id, self._clock())
        remote_exists = False
        if override:
            # Only an explicit override may continue an existing remote branch.
            remote_ref = f"refs/remotes/origin/{branch_name}"
            await self.git.run_git(path, ["fetch", "--depth", str(FETCH_DEPTH), "origin", f"+refs/heads/{branch_name}:{remote_ref}"])
            remote_exists = (await self.git.run_git(path, ["rev-parse", "--verify", remote_ref])).ok

        if remote_exists:
            self._log(logs, secrets, "git.branchRemoteExists", {"branch": branch_name})
            await self._git_checked(
                path, ["checkout", "-B", branch_name, f"origin/{branch_name}"], "git-checkout-remote-branch-failed", secrets
            )
            await self._git_checked(
                path, ["pull", "--rebase", "--autostash", "origin", branch_name], "git-pull-rebase-branch-failed", secrets
            )
        else:
            self._log(logs, secrets, "git.branchCreated", {"branch": branch_name, "override": bool(override)})
            await self._git_checked(path, ["checkout", "-B", branch_name], "git-create-branch-failed", secrets)

        has_changes = await self.git.has_uncommitted_changes(path)
        changed_files = await self.git.list_changed_files(path)
        return PreparedBranch(
            path=path,
            base_branch=base_branch,
            branch_name=branch_name,
            has_changes=has_changes,
            changed_files=changed_files,
        )

    async def _commit(
        self,
        context: AutomationContext,
        prepared: PreparedBranch,
        issue: Optional[IssueReference],
        logs: List[str],
    ) -> tuple[Optional[CommitReference], List[str]]:
        secrets = [context.token]
        name = (context.git_identity.name if context.git_identity else None) or self.identity.name
        email = (context.git_identity.email if context.git_identity else None) or self.identity.email
        await self._git_checked(prepared.path, ["config", "user.name", name or ""], "git-config-user-name-failed", secrets)
        await self._git_checked(prepared.path, ["config", "user.email", email or ""], "git-config-user-email-failed", secrets)
        await self._git_checked(prepared.path, ["add", "--all"], "git-add-failed", secrets)

        staged = await self.git.run_git(prepared.path, ["diff", "--cached", "--name-only"])
        files_changed = _parse_file_list(staged.stdout)
        if not files_changed and not context.allow_empty_commit:
            self._log(logs, secrets, "git.noChangesAfterAdd")
            return None, []

        message = context.commit_message or build_commit_message(issue, context.prompt_title)
        args = ["commit", "-m", message]
        if context.allow_empty_commit:
            args.append("--allow-empty")
        await self._git_checked(prepared.path, args, "git-commit-failed", secrets)
        head = await self._git_checked(prepared.path, ["rev-parse", "HEAD"], "git-rev-parse-head-failed", secrets)
        sha = head.stdout.strip()
        self._log(logs, secrets, "git.commit", {"message": message, "sha": sha, "filesChanged": files_changed})
        return CommitReference(sha=sha, message=message), files_changed

    async def _push(self, context: AutomationContext, prepared: PreparedBranch, logs: List[str]) -> None:
        secrets = [context.token]
        remote = push_remote_url(context, self.default_host)
        authed_remote = build_authenticated_url(remote, context.token)

        current = await self.git.run_git(prepared.path, ["remote", "get-url", "--push", "origin"])
        previous_push_url = current.stdout.strip() or None
        await self._git_checked(
            prepared.path, ["remote", "set-url", "--push", "origin", authed_remote], "git-remote-set-url-failed", secrets
        )
        push_args = ["push", "--set-upstream", "origin", prepared.branch_name]
        try:
            result = await self.git.run_git(prepared.path, push_args)
            if not result.ok:
                if not _NON_FAST_FORWARD.search(result.stderr or ""):
                    raise AutomationError(
                        "git-push-failed",
                        "Git command failed",
                        details={"code": result.exit_code, "stderr": redact_secrets(result.stderr, secrets)},
                    )
                self._log(logs, secrets, "git.pushRetry", {"branch": prepared.branch_name, "reason": "non-fast-forward"})
                await self._git_checked(
                    prepared.path,
                    ["pull", "--rebase", "origin", prepared.branch_name],
                    "git-pull-rebase-before-retry-failed",
                    secrets,
                )
                await self._git_checked(prepared.path, push_args, "git-push-failed", secrets)

            head = await self._git_checked(prepared.path, ["rev-parse", "HEAD"], "git-rev-parse-head-failed", secrets)
            local_sha = head.stdout.strip()
            listing = await self._git_checked(
                prepared.path,
                ["ls-remote", authed_remote, f"refs/heads/{prepared.branch_name}"],
                "git-ls-remote-failed",
                secrets,
            )
            fields = listing.stdout.split()
            remote_sha = fields[0] if fields else None
            if remote_sha != local_sha:
                raise AutomationError(
                    "git-push-verify-failed",
                    "Push completed but remote branch did not match local HEAD",
                    details={"branch": prepared.branch_name, "localSha": local_sha, "remoteSha": remote_sha},
                )
            self._log(logs, secrets, "git.push", {"branch": prepared.branch_name})
        finally:
            restore = previous_push_url if previous_push_url and previous_push_url != authed_remote else remote
            await self.git.run_git(prepared.path, ["remote", "set-url", "--push", "origin", restore])

    async def _open_pull_request(
        self,
        context: AutomationContext,
        prepared: PreparedBranch,
        issue: IssueReference,
        logs: List[str],
    ) -> PullRequestReference:
        client = self._require_client()
        pull_request = await client.create_pull_request(
            owner=context.repository.owner,
            repo=context.repository.name,
            title=derive_pull_request_title(issue, context.prompt_title, context.summary_markdown),
            body=build_pull_request_body(issue, context.summary_markdown or context.prompt_body),
            head=prepared.branch_name,
            base=prepared.base_branch,
            token=context.token,
        )
        self._log(logs, [context.token], "hosting.pullRequestCreated", {"number": pull_request.number, "url": pull_request.url})
        return pull_request

    async def _comment_on_issue(
        self,
        context: AutomationContext,
        issue: IssueReference,
        pull_request: PullRequestReference,
        logs: List[str],
    ) -> None:
        if issue.number <= 0:
            return
        client = self._require_client()
        await client.comment_on_issue(
            owner=context.repository.owner,
            repo=context.repository.name,
            number=issue.number,
            body=f"Created PR: {pull_request.url}",
            token=context.token,
        )
        self._log(logs, [context.token], "hosting.issueComment", {"issueNumber": issue.number, "pullRequestUrl": pull_request.url})

    def _require_client(self) -> HostingClient:
        if self.hosting_client is None:
            raise AutomationError(
                "hosting-client-unavailable",
                "No hosting client configured for issue and pull request operations",
            )
        return self.hosting_client

    def _log(self, logs: List[str], secrets: Sequence[str], event: str, details: Optional[Mapping[str, Any]] = None) -> None:
        entry = event if details is None else f"{event}: {json.dumps(dict(details), default=str)}"
        entry = redact_secrets(entry, secrets)
        logs.append(entry)
        LOGGER.debug(entry)

    def _diagnostics(self, start: datetime, logs: List[str], error_code: Optional[str] = None) -> AutomationDiagnostics:
        end = self._clock()
        return AutomationDiagnostics(
            duration_ms=max(0, int((end - start).total_seconds() * 1000)),
            attempts=1,
            logs=list(logs) or ["automation: no steps recorded"],
            error_code=error_code,
            start_timestamp=start.isoformat(),
            end_timestamp=end.isoformat(),
        )

    def _skipped(
        self,
        reason: str,
        start: datetime,
        logs: List[str],
        context: AutomationContext,
        *,
        issue: Optional[IssueReference] = None,
    ) -> AutomationResult:
        logs.append(f"skipped: {reason}")
        return AutomationResult(
            status=AutomationStatus.SKIPPED,
            issue=issue,
            skipped_reason=reason,
            diagnostics=self._diagnostics(start, logs),
            metadata=context.metadata,
        )

    def _errored(
        self,
        error: AutomationError,
        start: datetime,
        logs: List[str],
        context: AutomationContext,
        *,
        issue: Optional[IssueReference] = None,
        branch: Optional[str] = None,
    ) -> AutomationResult:
        if not logs:
            logs.append(f"error: {error.message}")
        return AutomationResult(
            status=AutomationStatus.ERROR,
            issue=issue,
            branch=branch,
            error=error.to_detail(),
            diagnostics=self._diagnostics(start, logs, error.code),
            metadata=context.metadata,
        )

    @staticmethod
    def _normalise(error: BaseException, secrets: Sequence[str]) -> AutomationError:
        if isinstance(error, AutomationError):
            return error
        message = redact_secrets(str(error) or "Unexpected error", secrets)
        return AutomationError("unexpected-error", message, details={"name": type(error).__name__})


__all__ = [
    "AutomationDecision",
    "AutomationError",
    "AutomationMode",
    "GitAutomationProvider",
    "PreparedBranch",
    "build_branch_name",
    "build_commit_message",
    "derive_issue_title",
    "derive_pull_request_title",
    "detect_intent",
    "push_remote_url",
]
