"""Resolve credentials, repository coordinates and automation intent from caller context.

Each resolver walks an ordered list of named candidate locations and stops
at the first usable value, so precedence is data rather than control flow.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence
from urllib.parse import urlparse, urlunparse

from .context import as_mapping, ensure_string_list, find_boolean, find_string, get_nested, to_boolean
from .schema import AutomationIntent, GitIdentity, IssueReference, RepositoryDescriptor, WorkspaceDescriptor

LOGGER = logging.getLogger(__name__)

DEFAULT_HOST = "github.com"

_SHORT_FORM_RE = re.compile(r"^([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)$")
_SCP_FORM_RE = re.compile(r"^(?:[\w.-]+@)?(?P<host>[\w.-]+):(?P<owner>[^/\s]+)/(?P<name>[^/\s]+?)(?:\.git)?/?$")
_TOKEN_IN_URL_RE = re.compile(r"(https?://)([^/@\s]+)@")


@dataclass(slots=True, frozen=True)
class ParsedRepository:
    owner: str
    name: str
    default_branch: Optional[str] = None
    clone_url: Optional[str] = None


@dataclass(slots=True, frozen=True)
class ResolvedCredential:
    value: str
    source: str


@dataclass(slots=True, frozen=True)
class Candidate:
    """A named location to look up: ``(root, dotted path)``."""

    source: str
    root: str
    path: str


def _strip_git_suffix(value: str) -> str:
    return value[:-4] if value.endswith(".git") else value


def normalized_clone_url(owner: str, name: str, host: str = DEFAULT_HOST) -> str:
    return f"https://{host}/{owner}/{_strip_git_suffix(name)}.git"


def parse_repository_url(url: str) -> Optional[ParsedRepository]:
    """Parse ``https://host/owner/name(.git)`` or ``git@host:owner/name(.git)``."""
    cleaned = url.strip()
    scp = _SCP_FORM_RE.match(cleaned)
    if scp and "://" not in cleaned:
        owner, name = scp.group("owner"), scp.group("name")
        return ParsedRepository(owner=owner, name=name, clone_url=normalized_clone_url(owner, name, scp.group("host")))

    parsed = urlparse(cleaned)
    if parsed.scheme not in {"http", "https", "ssh", "git"} or not parsed.hostname:
        return None
    segments = [segment for segment in parsed.path.split("/") if segment]
    if len(segments) != 2:
        return None
    owner, name = segments[0], _strip_git_suffix(segments[1])
    if not owner or not name:
        return None
    return ParsedRepository(owner=owner, name=name, clone_url=normalized_clone_url(owner, name, parsed.hostname))


def parse_repository(value: Any) -> Optional[ParsedRepository]:
    """Interpret ``value`` as repository coordinates.

    Accepts ``"owner/name"``, https and scp-style git URLs, and mappings with
    ``owner`` plus ``name``/``repo`` (optionally ``defaultBranch``/``branch``
    and ``cloneUrl``/``url``).
    """

    if not value:
        return None
    if isinstance(value, str):
        cleaned = value.strip()
        short = _SHORT_FORM_RE.match(cleaned)
        if short:
            name = _strip_git_suffix(short.group(2))
            return ParsedRepository(owner=short.group(1), name=name) if name else None
        return parse_repository_url(cleaned)
    mapping = as_mapping(value)
    if mapping is None:
        return None
    owner = find_string(mapping, ["owner"])
    name = find_string(mapping, ["name", "repo"])
    if not owner or not name:
        return None
    return ParsedRepository(
        owner=owner,
        name=name,
        default_branch=find_string(mapping, ["defaultBranch", "branch"]),
        clone_url=find_string(mapping, ["cloneUrl", "url"]),
    )


def build_authenticated_url(clone_url: str, token: str | None) -> str:
    """Embed ``token`` as ``x-access-token`` credentials in an https clone URL."""
    if not token:
        return clone_url
    parsed = urlparse(clone_url)
    if parsed.scheme != "https" or not parsed.hostname:
        return clone_url
    netloc = f"x-access-token:{token}@{parsed.hostname}"
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))


def redact_secrets(text: str, secrets: Sequence[str | None] = ()) -> str:
    """Mask URL credentials and any literal ``secrets`` occurring in ``text``."""
    redacted = _TOKEN_IN_URL_RE.sub(lambda match: f"{match.group(1)}x-access-token:***@", text)
    for secret in secrets:
        if secret:
            redacted = redacted.replace(secret, "***")
    return redacted


class ContextResolver:
    """Resolve values from the merged agent context and the raw request parameters."""

    def __init__(
        self,
        agent_context: Mapping[str, Any] | None,
        raw_params: Mapping[str, Any] | None = None,
        *,
        session_meta: Mapping[str, Any] | None = None,
        default_host: str = DEFAULT_HOST,
    ) -> None:
        self.roots: dict[str, Any] = {
            "agentContext": agent_context or {},
            "params": raw_params or {},
            "sessionMeta": session_meta or {},
        }
        self.default_host = default_host

    def _value(self, candidate: Candidate) -> Any:
        return get_nested(self.roots.get(candidate.root), candidate.path)

    def _first(self, candidates: Sequence[Candidate], predicate: Callable[[Any], Any]) -> tuple[Any, Optional[str]]:
        for candidate in candidates:
            result = predicate(self._value(candidate))
            if result is not None:
                return result, candidate.source
        return None, None

    def _string(self, *candidates: Candidate) -> Optional[str]:
        value, _ = self._first(candidates, lambda raw: find_string({"v": raw}, ["v"]))
        return value

    def _boolean(self, *candidates: Candidate) -> Optional[bool]:
        value, _ = self._first(candidates, to_boolean)
        return value

    # ----------------------------------------------------------- credentials
    def resolve_credential(
        self,
        explicit_token: str | None = None,
        *,
        ambient_token: str | None = None,
    ) -> Optional[ResolvedCredential]:
        """Return the first credential found, most specific source first."""
        if explicit_token and explicit_token.strip():
            return ResolvedCredential(explicit_token.strip(), "options.githubToken")
        candidates = (
            Candidate("agentContext.githubToken", "agentContext", "githubToken"),
            Candidate("agentContext.token", "agentContext", "token"),
            Candidate("agentContext.github.token", "agentContext", "github.token"),
            Candidate("params.githubToken", "params", "githubToken"),
            Candidate("params.context.githubToken", "params", "context.githubToken"),
            Candidate("params.context.github.token", "params", "context.github.token"),
        )
        value, source = self._first(candidates, lambda raw: find_string({"v": raw}, ["v"]))
        if value:
            return ResolvedCredential(value, source or "context")
        if ambient_token and ambient_token.strip():
            return ResolvedCredential(ambient_token.strip(), "ambient")

        installation_id = self._string(
            Candidate("agentContext.installationId", "agentContext", "installationId"),
            Candidate("agentContext.github.installationId", "agentContext", "github.installationId"),
            Candidate("params.installationId", "params", "installationId"),
            Candidate("sessionMeta.installationId", "sessionMeta", "installationId"),
        )
        if installation_id:
            LOGGER.warning(
                "Installation id %s supplied without a repository token; pass a token explicitly, "
                "in the context, or through GITHUB_TOKEN",
                installation_id,
            )
        return None

    # ------------------------------------------------------------ repository
    REPOSITORY_CANDIDATES: tuple[Candidate, ...] = (
        Candidate("agentContext.repository", "agentContext", "repository"),
        Candidate("agentContext.repo", "agentContext", "repo"),
        Candidate("agentContext.automation.repository", "agentContext", "automation.repository"),
        Candidate("agentContext.github.repository", "agentContext", "github.repository"),
        Candidate("params.repository", "params", "repository"),
        Candidate("params.context.repository", "params", "context.repository"),
        Candidate("params.context.github.repository", "params", "context.github.repository"),
    )

    def resolve_repository(self, workspace: WorkspaceDescriptor | None = None) -> Optional[RepositoryDescriptor]:
        """Resolve the target repository plus per-call publishing overrides."""
        parsed, source = self._first(self.REPOSITORY_CANDIDATES, parse_repository)
        git_info = workspace.git_info if workspace is not None else None
        if parsed is None and git_info is not None and git_info.remote_url:
            parsed = parse_repository(git_info.remote_url)
            source = "workspace.remote" if parsed else None
        if parsed is None:
            return None

        default_branch = (
            parsed.default_branch
            or self._string(
                Candidate("agentContext.branch", "agentContext", "branch"),
                Candidate("agentContext.automation.baseBranch", "agentContext", "automation.baseBranch"),
                Candidate("agentContext.automation.defaultBranch", "agentContext", "automation.defaultBranch"),
                Candidate("params.branch", "params", "branch"),
                Candidate("params.context.branch", "params", "context.branch"),
            )
            or (git_info.current_branch if git_info is not None else None)
            or "main"
        )
        clone_url = parsed.clone_url or self._string(
            Candidate("agentContext.cloneUrl", "agentContext", "cloneUrl"),
            Candidate("agentContext.automation.cloneUrl", "agentContext", "automation.cloneUrl"),
            Candidate("agentContext.github.cloneUrl", "agentContext", "github.cloneUrl"),
            Candidate("params.cloneUrl", "params", "cloneUrl"),
            Candidate("params.context.cloneUrl", "params", "context.cloneUrl"),
        )
        if not clone_url and git_info is not None and git_info.remote_url:
            remote = parse_repository_url(git_info.remote_url)
            if remote is not None and (remote.owner, remote.name) == (parsed.owner, parsed.name):
                clone_url = git_info.remote_url
        if not clone_url:
            clone_url = normalized_clone_url(parsed.owner, parsed.name, self.default_host)

        labels_value, _ = self._first(
            (
                Candidate("agentContext.automation.labels", "agentContext", "automation.labels"),
                Candidate("params.context.automation.labels", "params", "context.automation.labels"),
                Candidate("params.labels", "params", "labels"),
            ),
            ensure_string_list,
        )
        issue, _ = self._first(
            (
                Candidate("agentContext.automation.issue", "agentContext", "automation.issue"),
                Candidate("params.context.automation.issue", "params", "context.automation.issue"),
                Candidate("params.issue", "params", "issue"),
            ),
            normalize_issue_reference,
        )
        identity, _ = self._first(
            (
                Candidate("agentContext.automation.git", "agentContext", "automation.git"),
                Candidate("params.context.automation.git", "params", "context.automation.git"),
            ),
            normalize_git_identity,
        )

        return RepositoryDescriptor(
            owner=parsed.owner,
            name=parsed.name,
            default_branch=default_branch,
            clone_url=clone_url,
            issue_title=self._string(
                Candidate("agentContext.automation.issueTitle", "agentContext", "automation.issueTitle"),
                Candidate("params.context.automation.issueTitle", "params", "context.automation.issueTitle"),
                Candidate("params.issueTitle", "params", "issueTitle"),
            ),
            labels=labels_value,
            issue=issue,
            branch_name_override=self._string(
                Candidate("agentContext.automation.branchName", "agentContext", "automation.branchName"),
                Candidate("params.context.automation.branchName", "params", "context.automation.branchName"),
            ),
            base_branch_override=self._string(
                Candidate("agentContext.automation.baseBranch", "agentContext", "automation.baseBranch"),
                Candidate("params.context.automation.baseBranch", "params", "context.automation.baseBranch"),
                Candidate("params.baseBranch", "params", "baseBranch"),
            ),
            git_identity=identity,
            dry_run=self._boolean(
                Candidate("agentContext.automation.dryRun", "agentContext", "automation.dryRun"),
                Candidate("params.context.automation.dryRun", "params", "context.automation.dryRun"),
                Candidate("params.dryRun", "params", "dryRun"),
            ),
            allow_empty_commit=self._boolean(
                Candidate("agentContext.automation.allowEmptyCommit", "agentContext", "automation.allowEmptyCommit"),
                Candidate(
                    "params.context.automation.allowEmptyCommit", "params", "context.automation.allowEmptyCommit"
                ),
            ),
            source=source,
        )

    # ---------------------------------------------------------------- intent
    def resolve_intent(self) -> Optional[AutomationIntent]:
        """Collect automation hints; ``None`` when the caller supplied no context."""
        agent_context = self.roots["agentContext"] or None
        node = as_mapping(get_nested(agent_context, "automation")) or as_mapping(
            get_nested(self.roots["params"], "context.automation")
        )
        if node is None:
            return AutomationIntent(agent_context=dict(agent_context)) if agent_context else None

        mode = find_string(node, ["mode"]) or self._string(
            Candidate("agentContext.automationMode", "agentContext", "automationMode"),
            Candidate("params.automationMode", "params", "automationMode"),
        )
        return AutomationIntent(
            mode=mode.lower() if mode else None,
            disabled=find_boolean(node, ["disabled"]),
            repository_blocked=find_boolean(node, ["repositoryBlocked"]),
            reason=find_string(node, ["reason"]),
            explicit=find_boolean(node, ["explicit"]),
            force=find_boolean(node, ["force"]),
            agent_context=dict(agent_context) if agent_context else None,
        )


def normalize_issue_reference(value: Any) -> Optional[IssueReference]:
    mapping = as_mapping(value)
    if mapping is None:
        return None
    url = find_string(mapping, ["url", "html_url"])
    title = find_string(mapping, ["title"])
    try:
        issue_id = int(mapping.get("id"))  # type: ignore[arg-type]
        number = int(mapping.get("number"))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not url or not title:
        return None
    return IssueReference(id=issue_id, number=number, url=url, title=title)


def normalize_git_identity(value: Any) -> Optional[GitIdentity]:
    mapping = as_mapping(value)
    if mapping is None:
        return None
    name = find_string(mapping, ["name"])
    email = find_string(mapping, ["email"])
    if not name and not email:
        return None
    return GitIdentity(name=name, email=email)


__all__ = [
    "DEFAULT_HOST",
    "ContextResolver",
    "ParsedRepository",
    "ResolvedCredential",
    "build_authenticated_url",
    "normalize_git_identity",
    "normalize_issue_reference",
    "normalized_clone_url",
    "parse_repository",
    "parse_repository_url",
    "redact_secrets",
]
