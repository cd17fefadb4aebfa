"""Automation Orchestrator: decide whether to publish a change and delegate the work."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..config import PipelineSettings
from ..interfaces import AutomationProvider
from ..resolvers import ContextResolver, normalized_clone_url, redact_secrets
from ..schema import (
    AutomationContext,
    AutomationDiagnostics,
    AutomationErrorDetail,
    AutomationResult,
    AutomationStatus,
    GitOperations,
    PullRequestSummary,
    RepositoryDescriptor,
    RepositoryTarget,
    Session,
    WorkspaceDescriptor,
    utc_now,
)

LOGGER = logging.getLogger(__name__)

SUMMARY_LIMIT = 4000
LOG_ENTRY_LIMIT = 300
FILES_MODIFIED_LIMIT = 50
EXECUTION_FAILED = "automation-execution-failed"

SKIP_KILL_SWITCH = "Automation disabled via configuration flag"
SKIP_SESSION_DISABLED = "Automation disabled for session"
SKIP_INTENT_DISABLED = "Automation disabled by intent"
SKIP_MISSING_CREDENTIAL = "Missing repository credential"
SKIP_MISSING_REPOSITORY = "Missing repository metadata"


class AutomationPhase(str, Enum):
    NOT_ATTEMPTED = "not-attempted"
    RESOLVING = "resolving"
    SKIPPED = "skipped"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(slots=True)
class AutomationRequest:
    """Inputs gathered by the pipeline for one automation attempt."""

    session: Session
    workspace: WorkspaceDescriptor
    resolver: ContextResolver
    prompt_text: str
    summary_text: str
    repository: Optional[RepositoryDescriptor] = None
    explicit_token: Optional[str] = None
    session_meta: Mapping[str, Any] = field(default_factory=dict)
    operation_id: Optional[str] = None
    commit_message: Optional[str] = None
    workspace_already_prepared: bool = True


class AutomationOrchestrator:
    """Walk the guard chain, assemble an ``AutomationContext`` and run the provider.

    ``run`` returns ``None`` only when no provider is configured. Every other
    outcome is an ``AutomationResult``; provider exceptions never escape.
    """

    def __init__(
        self,
        provider: Optional[AutomationProvider],
        *,
        settings: Optional[PipelineSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.provider = provider
        self.settings = settings or PipelineSettings()
        self._clock = clock
        self.phase = AutomationPhase.NOT_ATTEMPTED

    def _enter(self, phase: AutomationPhase, session_id: str) -> None:
        LOGGER.debug("Automation for session %s: %s -> %s", session_id, self.phase.value, phase.value)
        self.phase = phase

    async def run(self, request: AutomationRequest) -> Optional[AutomationResult]:
        self.phase = AutomationPhase.NOT_ATTEMPTED
        session = request.session
        if self.provider is None:
            return None

        self._enter(AutomationPhase.RESOLVING, session.session_id)
        if self.settings.automation_disabled:
            return self._skipped(SKIP_KILL_SWITCH, session.session_id)
        if session.session_options.enable_git_ops is False:
            return self._skipped(SKIP_SESSION_DISABLED, session.session_id)

        intent = request.resolver.resolve_intent()
        if intent is not None and intent.disabled:
            return self._skipped(intent.reason or SKIP_INTENT_DISABLED, session.session_id)

        credential = request.resolver.resolve_credential(
            request.explicit_token, ambient_token=self.settings.ambient_token
        )
        if credential is None:
            return self._skipped(SKIP_MISSING_CREDENTIAL, session.session_id)

        repository = request.repository or request.resolver.resolve_repository(request.workspace)
        if repository is None:
            return self._skipped(SKIP_MISSING_REPOSITORY, session.session_id)

        context = AutomationContext(
            session_id=session.session_id,
            workspace_path=request.workspace.path,
            repository=RepositoryTarget(
                owner=repository.owner,
                name=repository.name,
                default_branch=repository.default_branch,
                clone_url=repository.clone_url
                or normalized_clone_url(repository.owner, repository.name, self.settings.default_host),
            ),
            token=credential.value,
            prompt_title=repository.issue_title,
            prompt_body=request.prompt_text,
            summary_markdown=request.summary_text.strip()[:SUMMARY_LIMIT] or None,
            intent=intent,
            existing_issue=repository.issue,
            labels=repository.labels,
            branch_name_override=repository.branch_name_override,
            base_branch_override=repository.base_branch_override,
            git_identity=repository.git_identity,
            metadata=self._metadata(session, request, repository.source),
            dry_run=repository.dry_run,
            allow_empty_commit=repository.allow_empty_commit,
            commit_message=request.commit_message,
            workspace_already_prepared=request.workspace_already_prepared,
        )

        self._enter(AutomationPhase.EXECUTING, session.session_id)
        LOGGER.info(
            "Automation start session=%s operation=%s repository=%s credential=%s dry_run=%s",
            session.session_id,
            request.operation_id,
            repository.full_name,
            credential.source,
            bool(repository.dry_run),
        )
        started = self._clock()
        try:
            result = await self.provider.execute(context)
        except Exception as error:
            finished = self._clock()
            message = redact_secrets(str(error) or type(error).__name__, [credential.value])
            LOGGER.warning("Automation error session=%s: %s", session.session_id, message)
            self._enter(AutomationPhase.ERROR, session.session_id)
            return AutomationResult(
                status=AutomationStatus.ERROR,
                error=AutomationErrorDetail(code=EXECUTION_FAILED, message=message),
                diagnostics=AutomationDiagnostics(
                    duration_ms=_elapsed_ms(started, finished),
                    attempts=1,
                    logs=[f"error: {message}"[:LOG_ENTRY_LIMIT]],
                    error_code=EXECUTION_FAILED,
                    start_timestamp=started.isoformat(),
                    end_timestamp=finished.isoformat(),
                ),
            )
        _complete_diagnostics(result, started, self._clock())

        final = AutomationPhase.SUCCESS if result.status is AutomationStatus.SUCCESS else AutomationPhase.ERROR
        if result.status is AutomationStatus.SKIPPED:
            final = AutomationPhase.SKIPPED
        self._enter(final, session.session_id)
        LOGGER.info(
            "Automation %s session=%s branch=%s pull_request=%s reason=%s",
            result.status.value,
            session.session_id,
            result.branch,
            result.pull_request.number if result.pull_request else None,
            result.skipped_reason or (result.error.code if result.error else None),
        )
        return result

    def _metadata(
        self,
        session: Session,
        request: AutomationRequest,
        repository_source: Optional[str],
    ) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"sessionMode": session.mode}
        for key in ("userId", "installationId"):
            value = request.session_meta.get(key)
            if value:
                metadata[key] = value
        if request.operation_id:
            metadata["operationId"] = request.operation_id
        if repository_source:
            metadata["repositorySource"] = repository_source
        return metadata

    def _skipped(self, reason: str, session_id: str) -> AutomationResult:
        self._enter(AutomationPhase.SKIPPED, session_id)
        LOGGER.info("Automation skipped for session %s: %s", session_id, reason)
        now = self._clock().isoformat()
        return AutomationResult(
            status=AutomationStatus.SKIPPED,
            skipped_reason=reason,
            diagnostics=AutomationDiagnostics(
                duration_ms=0,
                attempts=1,
                logs=[f"skipped: {reason}"[:LOG_ENTRY_LIMIT]],
                start_timestamp=now,
                end_timestamp=now,
            ),
        )


def _elapsed_ms(started: datetime, finished: datetime) -> int:
    return max(0, int((finished - started).total_seconds() * 1000))


def _complete_diagnostics(result: AutomationResult, started: datetime, finished: datetime) -> None:
    """Guarantee a log line and timing on whatever the provider returned."""
    diagnostics = result.diagnostics
    if not diagnostics.logs:
        diagnostics.logs.append(f"{result.status.value}: provider returned no logs")
    if diagnostics.start_timestamp is None:
        diagnostics.start_timestamp = started.isoformat()
        diagnostics.end_timestamp = finished.isoformat()
        diagnostics.duration_ms = _elapsed_ms(started, finished)


def merge_legacy_operations(
    existing: Optional[GitOperations],
    automation: AutomationResult,
) -> GitOperations:
    """Fold a successful automation result into the legacy operations summary."""
    merged = existing.model_copy(deep=True) if existing is not None else GitOperations()
    if automation.branch:
        merged.branch_created = automation.branch
    if automation.pull_request is not None:
        merged.pull_request_created = PullRequestSummary(
            url=automation.pull_request.url,
            number=automation.pull_request.number,
            title=automation.pull_request.branch,
        )
    files: List[str] = []
    if automation.metadata and isinstance(automation.metadata.get("filesChanged"), list):
        files = [str(item) for item in automation.metadata["filesChanged"]]
    if not merged.files_modified and files:
        merged.files_modified = files[:FILES_MODIFIED_LIMIT]
    return merged


__all__ = [
    "AutomationOrchestrator",
    "AutomationPhase",
    "AutomationRequest",
    "EXECUTION_FAILED",
    "SKIP_INTENT_DISABLED",
    "SKIP_KILL_SWITCH",
    "SKIP_MISSING_CREDENTIAL",
    "SKIP_MISSING_REPOSITORY",
    "SKIP_SESSION_DISABLED",
    "merge_legacy_operations",
]
