from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from cra.errors import ModelRunError  # noqa: E402
from cra.interfaces import RunCallbacks, RunOptions  # noqa: E402
from cra.schema import IssueReference, PullRequestReference, RunResult, Session, TokenUsage  # noqa: E402
from cra.tools.vcs import GitRepository  # noqa: E402


def run_git(cwd: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)


@dataclass(slots=True)
class GitRemote:
    """Bare repository standing in for the hosted remote, seeded with one commit on ``main``."""

    bare: Path
    seed: Path

    @property
    def url(self) -> str:
        return str(self.bare)

    def branches(self) -> List[str]:
        result = run_git(self.bare, "for-each-ref", "--format=%(refname:short)", "refs/heads")
        return result.stdout.split()

    def head(self, branch: str) -> str:
        return run_git(self.bare, "rev-parse", f"refs/heads/{branch}").stdout.strip()

    def clone(self, destination: Path) -> Path:
        run_git(destination.parent, "clone", self.url, destination.name)
        run_git(destination, "config", "user.email", "tests@example.com")
        run_git(destination, "config", "user.name", "Test Runner")
        return destination


@pytest.fixture()
def git_remote(tmp_path: Path) -> GitRemote:
    """Create ``remote.git`` with a README committed on ``main``."""

    seed = tmp_path / "seed"
    seed.mkdir()
    (seed / "README.md").write_text("# widgets\n", encoding="utf-8")
    GitRepository.initialise(seed)

    bare = tmp_path / "remote.git"
    run_git(tmp_path, "init", "--bare", str(bare))
    run_git(bare, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(seed, "remote", "add", "origin", str(bare))
    run_git(seed, "push", "origin", "main")
    return GitRemote(bare=bare, seed=seed)


class ScriptedRunner:
    """``ModelRunner`` double that can edit the workspace before it replies."""

    def __init__(
        self,
        text: str = "Updated the greeting.",
        *,
        files: Optional[Mapping[str, str]] = None,
        error: Optional[BaseException] = None,
        chunks: Optional[List[str]] = None,
        tokens: Optional[TokenUsage] = None,
        tool_use: Optional[List[Dict[str, Any]]] = None,
        cost_tracking: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.text = text
        self.files = dict(files or {})
        self.error = error
        self.chunks = chunks
        self.tokens = tokens
        self.tool_use = list(tool_use or [])
        self.cost_tracking = cost_tracking
        self.calls: List[Tuple[str, RunOptions]] = []

    async def run_prompt(self, prompt: str, options: RunOptions, callbacks: RunCallbacks) -> RunResult:
        self.calls.append((prompt, options))
        if options.abort_signal is not None and options.abort_signal.is_set():
            raise ModelRunError("Request aborted by caller")
        if callbacks.on_start:
            callbacks.on_start()
        if self.error is not None:
            raise self.error
        for name, body in self.files.items():
            target = Path(options.workspace_path or ".") / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(body, encoding="utf-8")
        for chunk in self.chunks if self.chunks is not None else [self.text]:
            if callbacks.on_delta:
                callbacks.on_delta(chunk, 60)
        if callbacks.on_complete:
            callbacks.on_complete(self.text)
        return RunResult(
            full_text=self.text,
            tokens=self.tokens,
            stop_reason="end_turn",
            tool_use=self.tool_use,
            cost_tracking=self.cost_tracking,
        )


class RecordingHostingClient:
    """``HostingClient`` double that records every REST call."""

    def __init__(self, *, issue_number: int = 7, pull_request_number: int = 11) -> None:
        self.issue_number = issue_number
        self.pull_request_number = pull_request_number
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self.calls]

    async def create_issue(self, **kwargs: Any) -> IssueReference:
        self.calls.append(("create_issue", kwargs))
        return IssueReference(
            id=1000 + self.issue_number,
            number=self.issue_number,
            url=f"https://github.com/{kwargs['owner']}/{kwargs['repo']}/issues/{self.issue_number}",
            title=kwargs["title"],
        )

    async def create_pull_request(self, **kwargs: Any) -> PullRequestReference:
        self.calls.append(("create_pull_request", kwargs))
        return PullRequestReference(
            number=self.pull_request_number,
            url=f"https://github.com/{kwargs['owner']}/{kwargs['repo']}/pull/{self.pull_request_number}",
            branch=kwargs["head"],
        )

    async def comment_on_issue(self, **kwargs: Any) -> None:
        self.calls.append(("comment_on_issue", kwargs))


class RecordingSink:
    """Notification sink collecting ``(method, params)`` pairs."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def __call__(self, method: str, params: Mapping[str, Any]) -> None:
        self.events.append((method, dict(params)))

    @property
    def statuses(self) -> List[Optional[str]]:
        return [params.get("status") for _, params in self.events]


@pytest.fixture()
def scripted_runner() -> Callable[..., ScriptedRunner]:
    return ScriptedRunner


@pytest.fixture()
def hosting_client() -> RecordingHostingClient:
    return RecordingHostingClient()


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def make_session() -> Callable[..., Session]:
    def _factory(session_id: str = "sess-1", **overrides: Any) -> Session:
        return Session(session_id=session_id, **overrides)

    return _factory
