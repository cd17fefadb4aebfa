"""Capture lightweight snapshots of a session workspace's git state."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, List

from ..interfaces import GitService
from .vcs import GitError, GitRepository

__all__ = [
    "MAX_DIFF_BYTES",
    "ChangeSnapshot",
    "WorkspaceDiagnostics",
    "capture_change_snapshot",
    "diagnose_workspace",
]

LOGGER = logging.getLogger(__name__)

# Limit diff payloads recorded alongside prompt results.
MAX_DIFF_BYTES = 400_000


@dataclass(slots=True)
class ChangeSnapshot:
    """Git status and diff taken right before automation runs."""

    captured_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    git_status: str = ""
    changed_files: list[str] = field(default_factory=list)
    has_uncommitted_changes: bool = False
    diff: str = ""
    diff_stat: str = ""
    diff_truncated: bool = False
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return the compact pre-automation view attached to result metadata."""
        payload: dict[str, Any] = {
            "gitStatus": self.git_status,
            "changedFiles": list(self.changed_files),
            "hasUncommittedChanges": self.has_uncommitted_changes,
        }
        if self.errors:
            payload["errors"] = list(self.errors)
        return payload


def _truncate(payload: str, max_bytes: int) -> tuple[str, bool]:
    encoded = payload.encode("utf-8")
    if len(encoded) <= max_bytes:
        return payload, False
    return encoded[:max_bytes].decode("utf-8", errors="ignore"), True


async def capture_change_snapshot(
    git: GitService,
    workspace_path: str,
    *,
    max_diff_bytes: int = MAX_DIFF_BYTES,
) -> ChangeSnapshot:
    """Collect status, changed files and diff through ``git``; never raises."""

    snapshot = ChangeSnapshot()

    try:
        snapshot.git_status = await git.get_status(workspace_path)
    except Exception as error:
        snapshot.errors.append(f"status: {error}")
    try:
        snapshot.changed_files = list(await git.list_changed_files(workspace_path))
    except Exception as error:
        snapshot.errors.append(f"changed-files: {error}")
    try:
        snapshot.has_uncommitted_changes = bool(await git.has_uncommitted_changes(workspace_path))
    except Exception as error:
        snapshot.has_uncommitted_changes = bool(snapshot.changed_files)
        snapshot.errors.append(f"uncommitted: {error}")

    try:
        diff_result = await git.run_git(workspace_path, ["diff", "HEAD"])
        if diff_result.ok:
            snapshot.diff, snapshot.diff_truncated = _truncate(diff_result.stdout, max_diff_bytes)
        stat_result = await git.run_git(workspace_path, ["diff", "--stat", "HEAD"])
        if stat_result.ok:
            snapshot.diff_stat = stat_result.stdout
    except Exception as error:
        snapshot.errors.append(f"diff: {error}")

    if snapshot.errors:
        LOGGER.warning("Change snapshot for %s incomplete: %s", workspace_path, "; ".join(snapshot.errors))
    return snapshot


def diagnose_workspace(workspace_path: str | Path, target_files: Iterable[str] = ()) -> dict[str, Any]:
    """Describe why git may or may not see changes in ``workspace_path``."""

    root = Path(workspace_path)
    checks: dict[str, Any] = {
        "directoryExists": root.is_dir(),
        "isGitRepo": False,
        "gitConfigValid": False,
        "hasRemote": False,
        "currentBranch": None,
        "filesInWorkspace": [],
        "fileExists": [],
        "untrackedFiles": [],
        "modifiedFiles": [],
        "stagedFiles": [],
        "hasGitIgnore": (root / ".gitignore").is_file(),
    }
    errors: List[str] = []
    result = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "workspacePath": str(root),
        "checks": checks,
        "errors": errors,
    }

    if not checks["directoryExists"]:
        errors.append(f"Directory does not exist: {root}")
        return result
    checks["filesInWorkspace"] = sorted(os.listdir(root))

    try:
        repo = GitRepository(root)
    except GitError:
        errors.append("Not a git repository (.git directory not found)")
        return result
    checks["isGitRepo"] = True

    name = repo.git("config", "user.name", check=False)
    email = repo.git("config", "user.email", check=False)
    checks["gitConfigValid"] = name.returncode == 0 and email.returncode == 0
    if not checks["gitConfigValid"]:
        errors.append("Git user.name or user.email not configured")
    checks["hasRemote"] = bool(repo.git("remote", "-v", check=False).stdout.strip())
    checks["currentBranch"] = repo.current_branch()

    for relative in target_files:
        if (root / relative).exists():
            checks["fileExists"].append(relative)
        else:
            errors.append(f"Target file not found: {relative}")

    try:
        entries = repo.status_entries()
    except GitError as error:
        errors.append(f"git status failed: {error}")
        return result
    for status, path in entries:
        if status == "??":
            checks["untrackedFiles"].append(path.as_posix())
            continue
        checks["modifiedFiles"].append(path.as_posix())
    staged = repo.git("diff", "--cached", "--name-only", check=False)
    checks["stagedFiles"] = [line for line in staged.stdout.splitlines() if line.strip()]
    return result


class WorkspaceDiagnostics:
    """``DiagnosticsService`` reporting the git health of a workspace."""

    def __init__(self, target_files: Iterable[str] = ()) -> None:
        self.target_files = tuple(target_files)

    async def run(self, workspace_path: str) -> dict[str, Any]:
        return await asyncio.to_thread(diagnose_workspace, workspace_path, self.target_files)
