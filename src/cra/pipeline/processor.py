"""Prompt pipeline: validate, prepare, run, classify, patch, snapshot, automate, compose."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from uuid import uuid4

from pydantic import ValidationError

from ..config import PipelineSettings
from ..context import merge_agent_context
from ..errors import DEFAULT_CLASSIFIER, ErrorClassifier, ErrorCode, PromptValidationError, SessionNotFoundError
from ..interfaces import (
    AutomationProvider,
    DiagnosticsService,
    GitService,
    ModelRunner,
    NotificationSink,
    RunOptions,
    SessionStore,
    WorkspaceService,
)
from ..prompts import build_prompt, summarize_text
from ..resolvers import ContextResolver
from ..schema import (
    AutomationStatus,
    ContentBlock,
    ConversationTurn,
    GitOperations,
    PromptResult,
    Session,
    StopReason,
    TurnRole,
    utc_now,
)
from ..tools.patch import apply_patches, extract_file_write_candidate, extract_patches_from_text
from ..tools.workspace_state import ChangeSnapshot, capture_change_snapshot, diagnose_workspace
from .automation import AutomationOrchestrator, AutomationRequest, merge_legacy_operations
from .commit_message import CommitMessageSynthesizer
from .executor import SESSION_UPDATE, ExecutionOutcome, ModelRunExecutor
from .workspace import WorkspaceCoordinator

LOGGER = logging.getLogger(__name__)

STDERR_LIMIT = 4000
FILES_MODIFIED_LIMIT = 50


@dataclass(slots=True)
class ProcessPromptOptions:
    """One ``process_prompt`` request."""

    session_id: str
    content: Sequence[ContentBlock | Mapping[str, Any]]
    context_files: Optional[List[str]] = None
    agent_context: Optional[Dict[str, Any]] = None
    api_key: Optional[str] = None
    reuse_workspace: bool = True
    notification_sink: Optional[NotificationSink] = None
    abort_signal: Optional[asyncio.Event] = None
    history_already_appended: bool = False
    operation_id: Optional[str] = None
    session_meta: Dict[str, Any] = field(default_factory=dict)
    github_token: Optional[str] = field(default=None, repr=False)
    raw_params: Dict[str, Any] = field(default_factory=dict)
    model: Optional[str] = None


def _coerce_content(content: Any) -> List[ContentBlock]:
    if not isinstance(content, Sequence) or isinstance(content, (str, bytes)) or not content:
        raise PromptValidationError("content must be a non-empty list of content blocks")
    blocks: List[ContentBlock] = []
    for index, item in enumerate(content):
        if isinstance(item, ContentBlock):
            blocks.append(item)
            continue
        try:
            blocks.append(ContentBlock.model_validate(item))
        except ValidationError as error:
            raise PromptValidationError(f"content[{index}] is not a valid content block: {error}") from error
    return blocks


def _prior_messages(session: Session) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = []
    for turn in session.message_history:
        text = "\n\n".join(block.body for block in turn.content if block.body)
        if text:
            messages.append({"role": turn.role.value, "content": text})
    return messages


def _notify(sink: Optional[NotificationSink], session_id: str, params: Mapping[str, Any]) -> None:
    if sink is None:
        return
    try:
        sink(SESSION_UPDATE, {"sessionId": session_id, **params})
    except Exception as error:
        LOGGER.warning("Notification sink failed for session %s: %s", session_id, error)


class PromptProcessor:
    """Run one prompt through the change-automation pipeline.

    Only request validation and a missing session raise.  Every later failure
    (model run, patch, snapshot, automation) is folded into the ``PromptResult``.
    Calls for the same session must be serialised by the caller.
    """

    def __init__(
        self,
        session_store: SessionStore,
        workspace_service: WorkspaceService,
        model_runner: ModelRunner,
        *,
        git_service: Optional[GitService] = None,
        diagnostics_service: Optional[DiagnosticsService] = None,
        automation_provider: Optional[AutomationProvider] = None,
        commit_synthesizer: Optional[CommitMessageSynthesizer] = None,
        settings: Optional[PipelineSettings] = None,
        classifier: ErrorClassifier = DEFAULT_CLASSIFIER,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: uuid4().hex,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_store = session_store
        self.git_service = git_service
        self.diagnostics_service = diagnostics_service
        self.commit_synthesizer = commit_synthesizer
        self.settings = settings or PipelineSettings()
        self.classifier = classifier
        self._clock = clock
        self._id_factory = id_factory
        self._monotonic = monotonic
        self.coordinator = WorkspaceCoordinator(workspace_service, git_service)
        self.executor = ModelRunExecutor(
            model_runner, log_full_content=self.settings.log_full_content, monotonic=monotonic
        )
        self.orchestrator = AutomationOrchestrator(automation_provider, settings=self.settings, clock=clock)

    async def process_prompt(self, options: ProcessPromptOptions) -> PromptResult:
        if not isinstance(options.session_id, str) or not options.session_id.strip():
            raise PromptValidationError("session_id is required")
        content = _coerce_content(options.content)
        session_id = options.session_id
        operation_id = options.operation_id or self._id_factory()
        started = self._monotonic()

        session = await self.session_store.load(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        agent_context = merge_agent_context(session.agent_context, options.agent_context)
        if agent_context is not None:
            session.agent_context = agent_context
        context_files = options.context_files or session.session_options.context_files
        package = build_prompt(content, context_files, agent_context, session)
        LOGGER.debug(
            "Prompt built for session %s operation %s (%s estimated tokens)",
            session_id,
            operation_id,
            package.estimated_tokens,
        )

        resolver = ContextResolver(
            agent_context,
            options.raw_params,
            session_meta=options.session_meta,
            default_host=self.settings.default_host,
        )
        credential = resolver.resolve_credential(options.github_token, ambient_token=self.settings.ambient_token)
        preparation = await self.coordinator.prepare(
            session,
            resolver,
            token=credential.value if credential else None,
            reuse=options.reuse_workspace,
        )
        workspace = preparation.workspace
        pre_diagnostics = await self._pre_diagnostics(workspace.path, session_id)

        repository = preparation.repository
        run_options = RunOptions(
            session_id=session_id,
            operation_id=operation_id,
            workspace_path=workspace.path,
            credential=options.api_key,
            abort_signal=options.abort_signal,
            prior_messages=_prior_messages(session),
            model=options.model,
            repository=repository.full_name if repository is not None else None,
        )
        outcome = await self.executor.execute(
            package.text,
            run_options,
            estimated_input_tokens=package.estimated_tokens,
            notifier=options.notification_sink,
        )

        if outcome.failed:
            return self._failure_result(outcome, options, pre_diagnostics)

        turns = self._record_turns(session, content, outcome, options.history_already_appended)
        if session.session_options.persist_history:
            try:
                await self.session_store.save(session)
            except Exception as error:
                LOGGER.warning("Session persistence failed for %s: %s", session_id, error)

        meta: Dict[str, Any] = {
            "durationMs": outcome.duration_ms,
            "operationId": operation_id,
            "workspace": workspace.to_payload(),
        }
        if outcome.stop_reason:
            meta["runnerStopReason"] = outcome.stop_reason
        if outcome.cost_tracking:
            meta["costTracking"] = dict(outcome.cost_tracking)
        if pre_diagnostics is not None:
            meta["preDiagnostics"] = pre_diagnostics
        if preparation.logs:
            meta["workspacePreparation"] = {"repoEnsured": preparation.repo_ensured, "logs": list(preparation.logs)}

        diagnostics: Dict[str, Any] = {}
        patch_errors = await self._apply_model_patches(workspace.path, outcome.text, session_id)
        if patch_errors:
            diagnostics["patch_apply_errors"] = patch_errors
        await self._report_fallback_candidate(workspace.path, package.text, outcome.text, session_id)

        snapshot = await self._snapshot(workspace.path, session_id)
        github_operations: Optional[GitOperations] = None
        if snapshot is not None:
            meta["githubPreAuto"] = snapshot.to_dict()
            workspace_diagnostic = await self._workspace_diagnostic(workspace.path, session_id)
            if workspace_diagnostic is not None:
                meta["workspaceDiagnostic"] = workspace_diagnostic
            current_branch = workspace.git_info.current_branch if workspace.git_info else None
            if current_branch or snapshot.changed_files:
                github_operations = GitOperations(files_modified=snapshot.changed_files[:FILES_MODIFIED_LIMIT] or None)

        commit_message = await self._commit_message(package.text, outcome.text, snapshot)
        automation = await self.orchestrator.run(
            AutomationRequest(
                session=session,
                workspace=workspace,
                resolver=resolver,
                prompt_text=package.text,
                summary_text=outcome.text,
                repository=repository,
                explicit_token=options.github_token,
                session_meta=options.session_meta,
                operation_id=operation_id,
                commit_message=commit_message,
                workspace_already_prepared=preparation.repo_ensured,
            )
        )
        if automation is not None:
            meta["automationVersion"] = self.settings.automation_version
            if automation.status is AutomationStatus.SUCCESS:
                github_operations = merge_legacy_operations(github_operations, automation)

        meta["totalDurationMs"] = max(0, int((self._monotonic() - started) * 1000))
        summary = summarize_text(outcome.text, limit=self.settings.summary_chars)
        LOGGER.info("Prompt completed for session %s operation %s: %s", session_id, operation_id, summary)
        return PromptResult(
            stop_reason=StopReason.COMPLETED,
            usage=outcome.usage,
            summary=summary,
            github_operations=github_operations,
            github_automation=automation,
            diagnostics=diagnostics or None,
            meta=meta,
            turns=turns,
        )

    async def _pre_diagnostics(self, workspace_path: str, session_id: str) -> Optional[Dict[str, Any]]:
        if self.diagnostics_service is None:
            return None
        try:
            return dict(await self.diagnostics_service.run(workspace_path))
        except Exception as error:
            LOGGER.debug("Pre-run diagnostics failed for session %s: %s", session_id, error)
            return None

    async def _workspace_diagnostic(self, workspace_path: str, session_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(diagnose_workspace, workspace_path)
        except Exception as error:
            LOGGER.warning("Workspace diagnostic failed for session %s: %s", session_id, error)
            return None

    def _failure_result(
        self,
        outcome: ExecutionOutcome,
        options: ProcessPromptOptions,
        pre_diagnostics: Optional[Dict[str, Any]],
    ) -> PromptResult:
        classified = self.classifier.classify(outcome.error, abort_signal=options.abort_signal)
        cancelled = classified.code is ErrorCode.CANCELLED
        LOGGER.warning(
            "Model run failed for session %s: %s",
            options.session_id,
            classified.summary,
        )
        _notify(
            options.notification_sink,
            options.session_id,
            {"status": "completed" if cancelled else "error", "message": classified.message},
        )
        diagnostics: Dict[str, Any] = {
            "durationMs": outcome.duration_ms,
            "classification": classified.to_dict(),
        }
        if classified.stderr:
            diagnostics["stderr"] = classified.stderr[:STDERR_LIMIT]
        if classified.exit_code is not None:
            diagnostics["exitCode"] = classified.exit_code
        if pre_diagnostics is not None:
            diagnostics["preDiagnostics"] = pre_diagnostics
        if classified.diagnostics:
            diagnostics["runtimeDiagnostics"] = classified.diagnostics
        return PromptResult(
            stop_reason=StopReason.CANCELLED if cancelled else StopReason.ERROR,
            usage=outcome.usage,
            summary=classified.summary,
            error_code=classified.code.value,
            diagnostics=diagnostics,
        )

    def _record_turns(
        self,
        session: Session,
        content: List[ContentBlock],
        outcome: ExecutionOutcome,
        already_appended: bool,
    ) -> List[ConversationTurn]:
        now = self._clock()
        turns = [
            ConversationTurn(role=TurnRole.USER, content=[block.model_copy(deep=True) for block in content], timestamp=now),
            ConversationTurn(
                role=TurnRole.ASSISTANT,
                content=[ContentBlock(type="text", text=outcome.text)],
                timestamp=now,
                tool_use=list(outcome.tool_use),
            ),
        ]
        if already_appended:
            session.last_active_at = now
        else:
            session.append_turns([turn.model_copy(deep=True) for turn in turns], timestamp=now)
        return turns

    async def _apply_model_patches(self, workspace_path: str, text: str, session_id: str) -> List[Dict[str, Any]]:
        if not self.settings.apply_model_patches or self.git_service is None or not text:
            return []
        patches = extract_patches_from_text(text, max_bytes=self.settings.max_patch_bytes)
        if not patches:
            return []
        LOGGER.info("Applying %s model patch(es) for session %s", len(patches), session_id)
        failures = await apply_patches(self.git_service, workspace_path, patches, session_id=session_id)
        return [failure.to_dict() for failure in failures]

    async def _report_fallback_candidate(self, workspace_path: str, prompt: str, text: str, session_id: str) -> None:
        if not self.settings.enable_fallback_file_write:
            return
        LOGGER.warning(
            "Legacy fallback file write is enabled for session %s; it only reports candidates and never writes",
            session_id,
        )
        if self.git_service is not None:
            try:
                if await self.git_service.list_changed_files(workspace_path):
                    return
            except Exception as error:
                LOGGER.debug("Changed-file check failed for session %s: %s", session_id, error)
        candidate = extract_file_write_candidate(prompt, text)
        if candidate is None:
            LOGGER.warning("No file write candidate found for session %s; the model may not have edited files", session_id)
        else:
            LOGGER.warning("File write candidate %s detected for session %s but not written", candidate.filename, session_id)

    async def _snapshot(self, workspace_path: str, session_id: str) -> Optional[ChangeSnapshot]:
        if self.git_service is None:
            return None
        snapshot = await capture_change_snapshot(self.git_service, workspace_path)
        LOGGER.debug(
            "Pre-automation snapshot for session %s: uncommitted=%s files=%s",
            session_id,
            snapshot.has_uncommitted_changes,
            snapshot.changed_files,
        )
        return snapshot

    async def _commit_message(self, prompt: str, text: str, snapshot: Optional[ChangeSnapshot]) -> Optional[str]:
        if self.commit_synthesizer is None or self.orchestrator.provider is None:
            return None
        if snapshot is None or not snapshot.has_uncommitted_changes:
            return None
        return await self.commit_synthesizer.synthesize(
            prompt=prompt,
            summary=text,
            changed_files=snapshot.changed_files,
            diff=snapshot.diff,
            diff_stat=snapshot.diff_stat,
        )


async def process_prompt(processor: PromptProcessor, options: ProcessPromptOptions) -> PromptResult:
    """Module-level entry point mirroring ``PromptProcessor.process_prompt``."""
    return await processor.process_prompt(options)


__all__ = ["ProcessPromptOptions", "PromptProcessor", "process_prompt"]
