"""Workspace Coordinator: put a real checkout on the right branch before the model runs."""

from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass, field
from typing import List, Optional

from ..interfaces import GitService, WorkspaceRequest, WorkspaceService
from ..resolvers import ContextResolver, build_authenticated_url, redact_secrets
from ..schema import RepositoryDescriptor, Session, WorkspaceDescriptor, utc_now
from ..tools.vcs import DEFAULT_FETCH_DEPTH, GitError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkspacePreparation:
    workspace: WorkspaceDescriptor
    repository: Optional[RepositoryDescriptor] = None
    repo_ensured: bool = False
    target_branch: Optional[str] = None
    logs: List[str] = field(default_factory=list)


class WorkspaceCoordinator:
    """Prepare the session workspace; failures are logged and never raised."""

    def __init__(
        self,
        workspace_service: WorkspaceService,
        git_service: Optional[GitService] = None,
        *,
        fetch_depth: int = DEFAULT_FETCH_DEPTH,
    ) -> None:
        self.workspace_service = workspace_service
        self.git_service = git_service
        self.fetch_depth = fetch_depth

    async def prepare(
        self,
        session: Session,
        resolver: ContextResolver,
        *,
        token: Optional[str] = None,
        reuse: bool = True,
    ) -> WorkspacePreparation:
        workspace = await self._prepare_directory(session, reuse)
        preparation = WorkspacePreparation(workspace=workspace)

        try:
            preparation.repository = resolver.resolve_repository(workspace)
        except Exception as error:
            LOGGER.warning("Repository resolution failed for session %s: %s", session.session_id, error)
            preparation.logs.append(f"resolve failed: {error}")

        repository = preparation.repository
        if repository is None or not repository.clone_url or self.git_service is None:
            preparation.logs.append("repository checkout skipped")
        else:
            try:
                preparation.target_branch = await self._ensure_checkout(workspace.path, repository, token, preparation.logs)
                preparation.repo_ensured = True
            except Exception as error:
                message = redact_secrets(str(error), [token])
                LOGGER.warning("Workspace checkout failed for session %s: %s", session.session_id, message)
                preparation.logs.append(f"checkout failed: {message}")

        if not preparation.repo_ensured:
            LOGGER.warning(
                "Repository not prepared before the model run for session %s; file edits may not be detected",
                session.session_id,
            )
        return preparation

    async def _prepare_directory(self, session: Session, reuse: bool) -> WorkspaceDescriptor:
        request = WorkspaceRequest(
            session_id=session.session_id,
            reuse=reuse,
            workspace_uri=session.workspace_uri,
            session_options=session.session_options,
        )
        try:
            return await self.workspace_service.prepare(request)
        except Exception as error:
            LOGGER.warning("Workspace preparation failed for session %s: %s", session.session_id, error)
            scratch = tempfile.mkdtemp(prefix="cra-degraded-")
            return WorkspaceDescriptor(session_id=session.session_id, path=scratch, is_ephemeral=True, created_at=utc_now())

    async def _git(self, path: str, args: List[str], logs: List[str], *, check: bool = True):
        assert self.git_service is not None
        result = await self.git_service.run_git(path, args)
        logs.append(f"git {' '.join(args)} -> {result.exit_code}")
        if check and not result.ok:
            raise GitError(
                f"git {' '.join(args)} failed: {result.stderr.strip() or result.stdout.strip()}",
                stderr=result.stderr,
                exit_code=result.exit_code,
            )
        return result

    async def _ensure_checkout(
        self,
        path: str,
        repository: RepositoryDescriptor,
        token: Optional[str],
        logs: List[str],
    ) -> str:
        assert self.git_service is not None and repository.clone_url
        default_branch = repository.default_branch or "main"
        await self.git_service.ensure_repo(
            path,
            default_branch=default_branch,
            clone_url=build_authenticated_url(repository.clone_url, token),
        )
        # The descriptor only carries the unauthenticated URL; scrub credentials from the remote.
        await self._git(path, ["remote", "set-url", "origin", repository.clone_url], logs, check=False)

        target = repository.branch_name_override or repository.base_branch_override or default_branch
        remote_ref = f"refs/remotes/origin/{target}"
        await self._git(
            path,
            ["fetch", "--depth", str(self.fetch_depth), "origin", f"+refs/heads/{target}:{remote_ref}"],
            logs,
            check=False,
        )
        remote_exists = (await self._git(path, ["rev-parse", "--verify", "--quiet", remote_ref], logs, check=False)).ok
        local_exists = (
            await self._git(path, ["rev-parse", "--verify", "--quiet", f"refs/heads/{target}"], logs, check=False)
        ).ok

        if remote_exists:
            if local_exists:
                await self._git(path, ["checkout", target], logs)
                await self._git(path, ["rebase", f"origin/{target}"], logs)
            else:
                await self._git(path, ["checkout", "-b", target, f"origin/{target}"], logs)
        elif local_exists:
            await self._git(path, ["checkout", target], logs)
        else:
            start_point: List[str] = []
            for candidate in (f"refs/remotes/origin/{default_branch}", f"refs/heads/{default_branch}"):
                found = await self._git(path, ["rev-parse", "--verify", "--quiet", candidate], logs, check=False)
                if found.ok:
                    start_point = [candidate]
                    break
            # Without a start point the branch is created from HEAD (or left unborn).
            await self._git(path, ["checkout", "-B", target, *start_point], logs)
        LOGGER.debug("Workspace %s checked out on %s", path, target)
        return target


__all__ = ["WorkspaceCoordinator", "WorkspacePreparation"]
