from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import pytest

from cra.hosting import AutomationMode, GitAutomationProvider, detect_intent
from cra.hosting.provider import (
    build_branch_name,
    build_commit_message,
    derive_issue_title,
    derive_pull_request_title,
    push_remote_url,
)
from cra.schema import (
    AutomationContext,
    AutomationIntent,
    AutomationStatus,
    IssueReference,
    RepositoryTarget,
)
from cra.tools.vcs import GitRepository, SubprocessGitService

MOMENT = datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)
TOKEN = "tok-secret"


def _clock() -> datetime:
    return MOMENT


def _context(workspace: Path, clone_url: str, **overrides: Any) -> AutomationContext:
    fields: dict[str, Any] = {
        "session_id": "s1",
        "workspace_path": str(workspace),
        "repository": RepositoryTarget(owner="acme", name="widgets", default_branch="main", clone_url=clone_url),
        "token": TOKEN,
        "prompt_body": "Fix the header typo\n\nThe header says 'Welcom'.",
        "summary_markdown": "I've fixed the header typo in index.html.",
        "metadata": {"operationId": "op-1"},
        "workspace_already_prepared": True,
    }
    fields.update(overrides)
    return AutomationContext(**fields)


def _provider(hosting_client: Optional[Any] = None) -> GitAutomationProvider:
    return GitAutomationProvider(SubprocessGitService(), hosting_client, clock=_clock)


def _assert_clean_diagnostics(result) -> None:
    assert result.diagnostics.duration_ms >= 0
    assert result.diagnostics.logs
    assert all(TOKEN not in entry for entry in result.diagnostics.logs)


@pytest.mark.asyncio
async def test_commit_only_pushes_session_branch(tmp_path: Path, git_remote) -> None:
    clone = git_remote.clone(tmp_path / "clone")
    (clone / "index.html").write_text("<h1>Welcome</h1>\n", encoding="utf-8")

    result = await _provider().execute(
        _context(clone, git_remote.url, intent=AutomationIntent(mode="commit-only"))
    )

    assert result.status is AutomationStatus.SUCCESS
    assert result.branch == "cra/session-s1-2024-05-06-070809"
    assert result.pull_request is None
    assert result.issue is None
    assert result.commit is not None
    assert result.commit.message == "Apply automated changes"
    assert git_remote.head(result.branch) == result.commit.sha
    assert result.metadata == {"operationId": "op-1", "filesChanged": ["index.html"]}
    repo = GitRepository(clone)
    assert repo.git("remote", "get-url", "--push", "origin").stdout.strip() == git_remote.url
    _assert_clean_diagnostics(result)


def _publish_branch(git_remote, branch: str, filename: str) -> None:
    seed = GitRepository(git_remote.seed)
    seed.git("checkout", "-b", branch)
    (seed.root / filename).write_text("earlier attempt\n", encoding="utf-8")
    seed.git("add", filename)
    seed.git("commit", "-m", "Earlier attempt")
    seed.git("push", "origin", branch)
    seed.git("checkout", "main")


@pytest.mark.asyncio
async def test_generated_branch_never_continues_a_remote_branch(tmp_path: Path, git_remote) -> None:
    _publish_branch(git_remote, "cra/session-s1-2024-05-06-070809", "earlier.txt")
    clone = git_remote.clone(tmp_path / "clone")
    (clone / "index.html").write_text("<h1>Welcome</h1>\n", encoding="utf-8")

    result = await _provider().execute(
        _context(clone, git_remote.url, intent=AutomationIntent(mode="commit-only"))
    )

    logs = result.diagnostics.logs
    assert not any(entry.startswith("git.branchRemoteExists") for entry in logs)
    assert any(entry.startswith("git.branchCreated") and '"override": false' in entry for entry in logs)


@pytest.mark.asyncio
async def test_branch_override_continues_the_remote_branch(tmp_path: Path, git_remote) -> None:
    _publish_branch(git_remote, "feature/header", "earlier.txt")
    clone = git_remote.clone(tmp_path / "clone")
    (clone / "index.html").write_text("<h1>Welcome</h1>\n", encoding="utf-8")

    result = await _provider().execute(
        _context(
            clone,
            git_remote.url,
            intent=AutomationIntent(mode="commit-only"),
            branch_name_override="feature/header",
            workspace_already_prepared=False,
        )
    )

    assert result.status is AutomationStatus.SUCCESS
    assert result.branch == "feature/header"
    assert any(entry.startswith("git.branchRemoteExists") for entry in result.diagnostics.logs)
    assert (clone / "earlier.txt").exists()
    assert git_remote.head("feature/header") == result.commit.sha


@pytest.mark.asyncio
async def test_full_mode_opens_issue_pull_request_and_comment(tmp_path: Path, git_remote, hosting_client) -> None:
    clone = git_remote.clone(tmp_path / "clone")
    (clone / "index.html").write_text("<h1>Welcome</h1>\n", encoding="utf-8")

    result = await _provider(hosting_client).execute(_context(clone, git_remote.url))

    assert result.status is AutomationStatus.SUCCESS
    assert hosting_client.names == ["create_issue", "create_pull_request", "comment_on_issue"]
    issue_call = hosting_client.calls[0][1]
    assert issue_call["title"] == "Fix the header typo"
    assert issue_call["labels"] == ["automated"]
    assert issue_call["token"] == TOKEN
    assert result.issue is not None and result.issue.number == 7
    assert result.branch == "cra/issue-7-2024-05-06-070809"
    assert result.commit is not None and result.commit.message == "Fix issue #7"
    pr_call = hosting_client.calls[1][1]
    assert pr_call["head"] == result.branch
    assert pr_call["base"] == "main"
    assert pr_call["title"] == "Fixed the header typo in index"
    assert "Fixes #7" in pr_call["body"]
    assert result.pull_request is not None and result.pull_request.number == 11
    assert hosting_client.calls[2][1]["body"] == f"Created PR: {result.pull_request.url}"
    assert result.branch in git_remote.branches()
    _assert_clean_diagnostics(result)


@pytest.mark.asyncio
async def test_existing_issue_is_reused(tmp_path: Path, git_remote, hosting_client) -> None:
    clone = git_remote.clone(tmp_path / "clone")
    (clone / "fix.py").write_text("x = 1\n", encoding="utf-8")
    issue = IssueReference(id=1, number=42, url="https://github.com/acme/widgets/issues/42", title="Bug")

    result = await _provider(hosting_client).execute(
        _context(clone, git_remote.url, existing_issue=issue, commit_message="Fix crash on empty input")
    )

    assert result.status is AutomationStatus.SUCCESS
    assert hosting_client.names == ["create_pull_request", "comment_on_issue"]
    assert result.branch == "cra/issue-42-2024-05-06-070809"
    assert result.commit is not None and result.commit.message == "Fix crash on empty input"
    assert hosting_client.calls[1][1]["number"] == 42


@pytest.mark.asyncio
async def test_dry_run_commits_locally_without_rest_calls(tmp_path: Path, git_remote, hosting_client) -> None:
    clone = git_remote.clone(tmp_path / "clone")
    (clone / "index.html").write_text("<h1>Welcome</h1>\n", encoding="utf-8")

    result = await _provider(hosting_client).execute(_context(clone, git_remote.url, dry_run=True))

    assert result.status is AutomationStatus.SUCCESS
    assert hosting_client.calls == []
    assert result.issue is not None and result.issue.number == 0
    assert result.branch == "cra/session-s1-2024-05-06-070809"
    assert result.branch not in git_remote.branches()
    assert GitRepository(clone).current_branch() == result.branch
    assert result.pull_request is None


@pytest.mark.asyncio
async def test_clean_workspace_is_skipped(tmp_path: Path, git_remote, hosting_client) -> None:
    clone = git_remote.clone(tmp_path / "clone")

    result = await _provider(hosting_client).execute(
        _context(clone, git_remote.url, intent=AutomationIntent(mode="commit-only"))
    )

    assert result.status is AutomationStatus.SKIPPED
    assert result.skipped_reason == "No workspace changes detected"
    assert result.diagnostics.logs[-1] == "skipped: No workspace changes detected"
    assert result.branch is None
    assert git_remote.branches() == ["main"]


@pytest.mark.asyncio
async def test_allow_empty_commit_publishes_without_changes(tmp_path: Path, git_remote) -> None:
    clone = git_remote.clone(tmp_path / "clone")

    result = await _provider().execute(
        _context(clone, git_remote.url, intent=AutomationIntent(mode="commit-only"), allow_empty_commit=True)
    )

    assert result.status is AutomationStatus.SUCCESS
    assert result.metadata["filesChanged"] == []
    assert result.branch in git_remote.branches()


@pytest.mark.asyncio
async def test_full_mode_without_hosting_client_errors(tmp_path: Path, git_remote) -> None:
    clone = git_remote.clone(tmp_path / "clone")
    (clone / "index.html").write_text("<h1>Welcome</h1>\n", encoding="utf-8")

    result = await _provider().execute(_context(clone, git_remote.url))

    assert result.status is AutomationStatus.ERROR
    assert result.error is not None and result.error.code == "hosting-client-unavailable"
    assert result.diagnostics.error_code == "hosting-client-unavailable"
    assert git_remote.branches() == ["main"]
    _assert_clean_diagnostics(result)


@pytest.mark.asyncio
async def test_git_failures_become_error_results(tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()

    result = await _provider().execute(
        _context(plain, "https://github.com/acme/widgets.git", intent=AutomationIntent(mode="commit-only"))
    )

    assert result.status is AutomationStatus.ERROR
    assert result.error is not None and result.error.code == "git-fetch-base-failed"
    assert result.error.details is not None and result.error.details["args"] == ["fetch", "origin", "main"]
    _assert_clean_diagnostics(result)


@pytest.mark.asyncio
async def test_skip_and_missing_repository(tmp_path: Path) -> None:
    skipped = await _provider().execute(
        _context(tmp_path, "unused", intent=AutomationIntent(agent_context={"automation": {"mode": "none"}}))
    )
    assert skipped.status is AutomationStatus.SKIPPED
    assert skipped.skipped_reason == "Automation explicitly skipped by agent context"
    _assert_clean_diagnostics(skipped)

    missing = await _provider().execute(
        _context(tmp_path, "unused", repository=RepositoryTarget(owner="", name="widgets"))
    )
    assert missing.status is AutomationStatus.ERROR
    assert missing.error is not None and missing.error.code == "missing-repository"
    _assert_clean_diagnostics(missing)


@pytest.mark.parametrize(
    ("intent", "run", "mode"),
    [
        (None, True, AutomationMode.FULL),
        (AutomationIntent(mode="commit-only"), True, AutomationMode.COMMIT_ONLY),
        (AutomationIntent(mode="whatever"), True, AutomationMode.FULL),
        (AutomationIntent(mode="skip"), False, AutomationMode.NONE),
        (AutomationIntent(disabled=True), False, AutomationMode.NONE),
        (AutomationIntent(repository_blocked=True), False, AutomationMode.NONE),
        (AutomationIntent(mode="full", agent_context={"automationMode": "commit-only"}), True, AutomationMode.COMMIT_ONLY),
    ],
)
def test_detect_intent(intent: Optional[AutomationIntent], run: bool, mode: AutomationMode) -> None:
    decision = detect_intent(intent)

    assert decision.run is run
    assert decision.mode is mode


def test_detect_intent_reasons() -> None:
    assert detect_intent(AutomationIntent(disabled=True)).reason == "Automation disabled by configuration"
    assert detect_intent(AutomationIntent(repository_blocked=True)).reason == "Repository not eligible for automation"


def test_branch_names_embed_issue_or_session_and_timestamp() -> None:
    issue = IssueReference(id=1, number=12, url="u", title="t")

    assert build_branch_name("CRA", issue, "s", MOMENT) == "cra/issue-12-2024-05-06-070809"
    assert build_branch_name("cra", None, "Chat Session #9", MOMENT) == "cra/session-chat-session-9-2024-05-06-070809"
    assert build_branch_name("cra", None, "!!!", MOMENT) == "cra/session-unknown-2024-05-06-070809"
    assert re.fullmatch(r"cra/session-[a-z0-9-]{1,32}-\d{4}-\d{2}-\d{2}-\d{6}", build_branch_name("cra", None, "x" * 80, MOMENT))


def test_message_and_title_templates() -> None:
    issue = IssueReference(id=1, number=5, url="u", title="t")

    assert build_commit_message(issue, "Header typo") == "Fix issue #5: Header typo"
    assert build_commit_message(None, "Header typo") == "Apply automation: Header typo"
    assert build_commit_message(None, None) == "Apply automated changes"
    assert derive_issue_title("Working in: /tmp/x\nSession Mode: dev\n\nAdd dark mode") == "Add dark mode"
    assert derive_issue_title("") == "Automated change request"
    assert derive_pull_request_title(issue, "Fallback", "I updated the README wording.") == "Updated the README wording"
    assert derive_pull_request_title(issue, "Fallback", None) == "Fallback"
    assert derive_pull_request_title(issue, None, None) == "Fix issue #5"


def test_push_remote_url_normalises_scp_urls(tmp_path: Path) -> None:
    scp = _context(tmp_path, "git@github.com:acme/widgets.git")
    https = _context(tmp_path, "https://github.com/acme/widgets.git/")

    assert push_remote_url(scp) == "https://github.com/acme/widgets.git"
    assert push_remote_url(https) == "https://github.com/acme/widgets.git"
