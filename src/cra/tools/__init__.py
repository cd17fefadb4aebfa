"""Git, patch and workspace integrations used by the prompt pipeline."""

from .patch import (
    DEFAULT_MAX_PATCH_BYTES,
    FileWriteCandidate,
    PatchError,
    PatchFailure,
    apply_patches,
    extract_file_write_candidate,
    extract_patches_from_text,
)
from .vcs import GitError, GitRepository, SubprocessGitService
from .workspace import LocalWorkspaceService, path_from_uri, read_git_info
from .workspace_state import ChangeSnapshot, WorkspaceDiagnostics, capture_change_snapshot, diagnose_workspace

__all__ = [
    "ChangeSnapshot",
    "DEFAULT_MAX_PATCH_BYTES",
    "FileWriteCandidate",
    "GitError",
    "GitRepository",
    "LocalWorkspaceService",
    "PatchError",
    "PatchFailure",
    "SubprocessGitService",
    "WorkspaceDiagnostics",
    "apply_patches",
    "capture_change_snapshot",
    "diagnose_workspace",
    "extract_file_write_candidate",
    "extract_patches_from_text",
    "path_from_uri",
    "read_git_info",
]
