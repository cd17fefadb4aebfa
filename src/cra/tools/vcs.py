"""Git helpers used to prepare, inspect and publish a session workspace.

``GitRepository`` is a thin synchronous wrapper around the ``git`` binary.
``SubprocessGitService`` exposes the same operations behind the async
``GitService`` protocol by running each command in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence, Set

from ..interfaces import GitCommandResult

LOGGER = logging.getLogger(__name__)

DEFAULT_FETCH_DEPTH = 50


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""

    def __init__(self, message: str, *, stderr: str = "", exit_code: int | None = None) -> None:
        super().__init__(message)
        self.stderr = stderr
        self.exit_code = exit_code


def _run_git(
    cwd: Path,
    args: Sequence[str],
    *,
    check: bool = True,
    input_text: str | None = None,
) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            input=input_text.encode("utf-8") if input_text is not None else None,
            capture_output=True,
            text=False,
            check=False,
        )
    except OSError as error:
        raise GitError(f"git {' '.join(args)} could not start: {error}", exit_code=127) from error
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(
            f"git {' '.join(args)} failed: {message}",
            stderr=result.stderr,
            exit_code=result.returncode,
        )
    return result


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def initialise(
        cls,
        root: Path | str,
        *,
        default_branch: str = "main",
        initial_commit: bool = True,
    ) -> "GitRepository":
        """Initialise a git repository at ``root`` on ``default_branch``."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        _run_git(path, ["init"])
        _run_git(path, ["symbolic-ref", "HEAD", f"refs/heads/{default_branch}"])

        for key, value in (("user.email", "automation@example.com"), ("user.name", "Change Automation")):
            existing = _run_git(path, ["config", "--get", key], check=False)
            if existing.returncode != 0 or not existing.stdout.strip():
                _run_git(path, ["config", key, value])

        if initial_commit:
            _run_git(path, ["add", "."])
            _run_git(path, ["commit", "--allow-empty", "-m", "Initial commit"])
        return cls(path)

    @classmethod
    def clone(
        cls,
        url: str,
        root: Path | str,
        *,
        branch: str | None = None,
        depth: int = DEFAULT_FETCH_DEPTH,
    ) -> "GitRepository":
        """Clone ``url`` into ``root``; ``root`` must be missing or empty."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        args: List[str] = ["clone", "--depth", str(depth), "--no-single-branch"]
        if branch:
            args.extend(["--branch", branch])
        args.extend([url, "."])
        try:
            _run_git(path, args)
        except GitError:
            if not branch:
                raise
            # The requested branch may not exist yet on the remote.
            LOGGER.debug("Clone of branch %s failed; retrying with the remote default", branch)
            _run_git(path, ["clone", "--depth", str(depth), "--no-single-branch", url, "."])
        return cls(path)

    # ------------------------------------------------------------------ git IO
    def git(self, *args: str, check: bool = True, input_text: str | None = None) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return _run_git(self.root, list(args), check=check, input_text=input_text)

    # -------------------------------------------------------------- branches
    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self.git("rev-parse", "--abbrev-ref", "HEAD", check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def last_commit(self) -> str | None:
        """Return ``"<sha> <subject>"`` for ``HEAD`` when a commit exists."""

        result = self.git("log", "-1", "--pretty=format:%h %s", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    # -------------------------------------------------------------- remotes
    def remote_url(self, remote: str = "origin") -> str | None:
        result = self.git("remote", "get-url", remote, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def set_remote_url(self, url: str, remote: str = "origin") -> None:
        if self.remote_url(remote) is None:
            self.git("remote", "add", remote, url)
        else:
            self.git("remote", "set-url", remote, url)

    # ------------------------------------------------------------- repo status
    def _status_entries(self) -> List[tuple[str, Path]]:
        result = self.git("status", "--porcelain")
        entries: List[tuple[str, Path]] = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            status_clean = status.strip() or status
            entries.append((status_clean, Path(raw_path.strip().strip('"'))))
        return entries

    def status_entries(self) -> List[tuple[str, Path]]:
        """Return raw porcelain status entries as ``(status, path)`` pairs."""

        return self._status_entries()

    def working_tree_changes(self, *, include_untracked: bool = True) -> List[Path]:
        """Return the set of paths with pending modifications."""

        paths: Set[Path] = set()
        for status, path in self._status_entries():
            if status == "??" and not include_untracked:
                continue
            paths.add(path)
        return sorted(paths, key=lambda item: item.as_posix())

    def has_changes(self, *, include_untracked: bool = True) -> bool:
        """Return ``True`` when there are working tree changes."""

        return bool(self.working_tree_changes(include_untracked=include_untracked))

    def status_summary(self) -> str:
        """Return ``git status --short --branch`` output."""

        return self.git("status", "--short", "--branch").stdout

    # -------------------------------------------------------------- patches
    def apply_patch(self, patch: str) -> None:
        """Apply a unified diff to the working tree, validating it first."""

        text = patch if patch.endswith("\n") else f"{patch}\n"
        self.git("apply", "--check", "--whitespace=nowarn", "-", input_text=text)
        self.git("apply", "--whitespace=nowarn", "-", input_text=text)


class SubprocessGitService:
    """``GitService`` implementation that shells out to the local ``git`` binary."""

    def __init__(self, *, fetch_depth: int = DEFAULT_FETCH_DEPTH) -> None:
        self.fetch_depth = fetch_depth

    async def ensure_repo(
        self,
        path: str,
        *,
        default_branch: Optional[str] = None,
        clone_url: Optional[str] = None,
    ) -> None:
        await asyncio.to_thread(self._ensure_repo, Path(path), default_branch, clone_url)

    def _ensure_repo(self, root: Path, default_branch: Optional[str], clone_url: Optional[str]) -> None:
        if (root / ".git").exists():
            if clone_url:
                GitRepository(root).set_remote_url(clone_url)
            return

        if clone_url and (not root.exists() or not any(root.iterdir())):
            LOGGER.debug("Cloning repository into %s", root)
            GitRepository.clone(clone_url, root, branch=default_branch, depth=self.fetch_depth)
            return

        LOGGER.debug("Initialising repository in %s", root)
        repo = GitRepository.initialise(root, default_branch=default_branch or "main", initial_commit=False)
        if clone_url:
            repo.set_remote_url(clone_url)
            repo.git("fetch", "--depth", str(self.fetch_depth), "origin")

    async def run_git(self, path: str, args: Sequence[str]) -> GitCommandResult:
        def _invoke() -> GitCommandResult:
            try:
                result = _run_git(Path(path), list(args), check=False)
            except GitError as error:
                return GitCommandResult(stdout="", stderr=str(error), exit_code=error.exit_code or 127)
            return GitCommandResult(stdout=result.stdout, stderr=result.stderr, exit_code=result.returncode)

        return await asyncio.to_thread(_invoke)

    async def list_changed_files(self, path: str) -> List[str]:
        paths = await asyncio.to_thread(lambda: GitRepository(path).working_tree_changes())
        return [item.as_posix() for item in paths]

    async def has_uncommitted_changes(self, path: str) -> bool:
        return await asyncio.to_thread(lambda: GitRepository(path).has_changes())

    async def apply_patch(self, path: str, patch: str) -> None:
        await asyncio.to_thread(lambda: GitRepository(path).apply_patch(patch))

    async def get_status(self, path: str) -> str:
        return await asyncio.to_thread(lambda: GitRepository(path).status_summary())


__all__ = ["DEFAULT_FETCH_DEPTH", "GitError", "GitRepository", "SubprocessGitService"]
