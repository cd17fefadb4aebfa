"""Prompt pipeline stages and the ``PromptProcessor`` that chains them."""

from .automation import AutomationOrchestrator, AutomationPhase, AutomationRequest, merge_legacy_operations
from .commit_message import CommitMessageSynthesizer, clean_commit_subject
from .executor import ExecutionOutcome, ModelRunExecutor, RunPhase, RunStateMachine
from .processor import ProcessPromptOptions, PromptProcessor, process_prompt
from .workspace import WorkspaceCoordinator, WorkspacePreparation

__all__ = [
    "AutomationOrchestrator",
    "AutomationPhase",
    "AutomationRequest",
    "CommitMessageSynthesizer",
    "ExecutionOutcome",
    "ModelRunExecutor",
    "ProcessPromptOptions",
    "PromptProcessor",
    "RunPhase",
    "RunStateMachine",
    "WorkspaceCoordinator",
    "WorkspacePreparation",
    "clean_commit_subject",
    "merge_legacy_operations",
    "process_prompt",
]
