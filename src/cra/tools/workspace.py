"""Local-disk ``WorkspaceService`` implementation."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict
from urllib.parse import unquote, urlparse

from ..interfaces import WorkspaceRequest
from ..schema import GitInfo, WorkspaceDescriptor, utc_now
from ..utils.slug import slugify
from .vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)

WORKSPACE_PREFIX = "cra-workspace-"


def default_base_dir() -> Path:
    return Path(tempfile.gettempdir()) / "cra-workspaces"


def path_from_uri(uri: str | None) -> Path | None:
    """Translate a ``file://`` URI (or plain absolute path) into a ``Path``."""
    if not uri:
        return None
    parsed = urlparse(uri)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    if not parsed.scheme and os.path.isabs(uri):
        return Path(uri)
    return None


def read_git_info(path: Path, *, detailed: bool = True) -> GitInfo | None:
    """Return a git snapshot for ``path`` or ``None`` when it is not a repository."""
    try:
        repo = GitRepository(path)
        info = GitInfo(
            current_branch=repo.current_branch() or "main",
            has_uncommitted_changes=repo.has_changes(),
        )
    except GitError:
        return None
    if detailed:
        info.remote_url = repo.remote_url()
        info.last_commit = repo.last_commit()
    return info


class LocalWorkspaceService:
    """Resolve caller-supplied workspaces or create ephemeral ones under ``base_dir``."""

    def __init__(self, base_dir: Path | str | None = None) -> None:
        self.base_dir = Path(base_dir) if base_dir else default_base_dir()
        self._paths: Dict[str, tuple[Path, bool]] = {}

    def ephemeral_path(self, session_id: str) -> Path:
        return self.base_dir / f"{WORKSPACE_PREFIX}{slugify(session_id, fallback='session', max_length=64)}"

    async def prepare(self, request: WorkspaceRequest) -> WorkspaceDescriptor:
        return await asyncio.to_thread(self._prepare, request)

    def _prepare(self, request: WorkspaceRequest) -> WorkspaceDescriptor:
        cached = self._paths.get(request.session_id) if request.reuse else None
        if cached is not None and cached[0].is_dir():
            path, is_ephemeral = cached
        else:
            path, is_ephemeral = self._resolve(request)
            self._paths[request.session_id] = (path, is_ephemeral)

        detailed = bool(request.session_options and request.session_options.enable_git_ops)
        return WorkspaceDescriptor(
            session_id=request.session_id,
            path=str(path),
            is_ephemeral=is_ephemeral,
            created_at=utc_now(),
            git_info=read_git_info(path, detailed=detailed),
        )

    def _resolve(self, request: WorkspaceRequest) -> tuple[Path, bool]:
        supplied = path_from_uri(request.workspace_uri)
        if supplied is not None:
            if supplied.is_dir() and os.access(supplied, os.R_OK | os.W_OK):
                return supplied.resolve(), False
            LOGGER.warning("Workspace %s is not accessible; using an ephemeral workspace", supplied)

        path = self.ephemeral_path(request.session_id)
        if not request.reuse and path.exists():
            shutil.rmtree(path)
        path.mkdir(parents=True, exist_ok=True)
        return path.resolve(), True


__all__ = ["LocalWorkspaceService", "WORKSPACE_PREFIX", "default_base_dir", "path_from_uri", "read_git_info"]
