from __future__ import annotations

from pathlib import Path

import pytest

from cra.interfaces import WorkspaceRequest
from cra.schema import SessionOptions
from cra.tools.vcs import GitRepository, SubprocessGitService
from cra.tools.workspace import LocalWorkspaceService, path_from_uri
from cra.tools.workspace_state import WorkspaceDiagnostics, capture_change_snapshot, diagnose_workspace


@pytest.mark.asyncio
async def test_capture_change_snapshot_reports_diff_and_files(tmp_path: Path) -> None:
    repo_root = tmp_path / "repo"
    repo_root.mkdir()
    (repo_root / "module.py").write_text("def value() -> int:\n    return 1\n", encoding="utf-8")
    repo = GitRepository.initialise(repo_root)

    (repo.root / "module.py").write_text("def value() -> int:\n    return 2\n", encoding="utf-8")
    (repo.root / "notes.txt").write_text("pending work", encoding="utf-8")

    snapshot = await capture_change_snapshot(SubprocessGitService(), str(repo.root))

    assert snapshot.changed_files == ["module.py", "notes.txt"]
    assert snapshot.has_uncommitted_changes is True
    assert "return 2" in snapshot.diff
    assert "module.py" in snapshot.diff_stat
    assert snapshot.errors == []
    payload = snapshot.to_dict()
    assert payload["changedFiles"] == ["module.py", "notes.txt"]
    assert payload["hasUncommittedChanges"] is True
    assert "errors" not in payload


@pytest.mark.asyncio
async def test_capture_change_snapshot_truncates_large_diffs(tmp_path: Path) -> None:
    repo_root = tmp_path / "repo"
    repo_root.mkdir()
    (repo_root / "data.txt").write_text("a\n", encoding="utf-8")
    repo = GitRepository.initialise(repo_root)
    (repo.root / "data.txt").write_text("b\n" * 500, encoding="utf-8")

    snapshot = await capture_change_snapshot(SubprocessGitService(), str(repo.root), max_diff_bytes=100)

    assert snapshot.diff_truncated is True
    assert len(snapshot.diff.encode("utf-8")) <= 100


@pytest.mark.asyncio
async def test_capture_change_snapshot_outside_a_repository_collects_errors(tmp_path: Path) -> None:
    snapshot = await capture_change_snapshot(SubprocessGitService(), str(tmp_path))

    assert snapshot.errors
    assert snapshot.has_uncommitted_changes is False
    assert snapshot.diff == ""


def test_diagnose_workspace_reports_git_health(tmp_path: Path) -> None:
    repo_root = tmp_path / "repo"
    repo_root.mkdir()
    (repo_root / "tracked.txt").write_text("one\n", encoding="utf-8")
    repo = GitRepository.initialise(repo_root)
    (repo.root / "tracked.txt").write_text("two\n", encoding="utf-8")
    (repo.root / "fresh.txt").write_text("new\n", encoding="utf-8")
    repo.git("add", "fresh.txt")
    (repo.root / "loose.txt").write_text("loose\n", encoding="utf-8")

    report = diagnose_workspace(repo.root, ["tracked.txt", "absent.txt"])
    checks = report["checks"]

    assert checks["isGitRepo"] is True
    assert checks["gitConfigValid"] is True
    assert checks["hasRemote"] is False
    assert checks["currentBranch"] == "main"
    assert checks["fileExists"] == ["tracked.txt"]
    assert checks["untrackedFiles"] == ["loose.txt"]
    assert set(checks["modifiedFiles"]) == {"fresh.txt", "tracked.txt"}
    assert checks["stagedFiles"] == ["fresh.txt"]
    assert "Target file not found: absent.txt" in report["errors"]


def test_diagnose_workspace_handles_missing_and_plain_directories(tmp_path: Path) -> None:
    missing = diagnose_workspace(tmp_path / "nope")
    assert missing["checks"]["directoryExists"] is False
    assert missing["errors"]

    (tmp_path / "plain").mkdir()
    plain = diagnose_workspace(tmp_path / "plain")
    assert plain["checks"]["directoryExists"] is True
    assert plain["checks"]["isGitRepo"] is False


@pytest.mark.asyncio
async def test_workspace_diagnostics_service_runs_in_thread(tmp_path: Path) -> None:
    report = await WorkspaceDiagnostics().run(str(tmp_path))

    assert report["workspacePath"] == str(tmp_path)


def test_path_from_uri() -> None:
    assert path_from_uri("file:///srv/work%20tree") == Path("/srv/work tree")
    assert path_from_uri("/srv/work") == Path("/srv/work")
    assert path_from_uri("relative/path") is None
    assert path_from_uri("https://example.com/x") is None
    assert path_from_uri(None) is None


@pytest.mark.asyncio
async def test_local_workspace_service_uses_supplied_directory(tmp_path: Path) -> None:
    supplied = tmp_path / "mine"
    supplied.mkdir()
    service = LocalWorkspaceService(tmp_path / "base")

    descriptor = await service.prepare(WorkspaceRequest(session_id="s1", workspace_uri=supplied.as_uri()))

    assert descriptor.path == str(supplied.resolve())
    assert descriptor.is_ephemeral is False
    assert descriptor.git_info is None


@pytest.mark.asyncio
async def test_local_workspace_service_creates_and_reuses_ephemeral_directory(tmp_path: Path) -> None:
    service = LocalWorkspaceService(tmp_path / "base")
    request = WorkspaceRequest(session_id="Session 42", workspace_uri=str(tmp_path / "does-not-exist"))

    first = await service.prepare(request)
    (Path(first.path) / "scratch.txt").write_text("x", encoding="utf-8")
    second = await service.prepare(request)

    assert first.is_ephemeral is True
    assert Path(first.path).name == "cra-workspace-session-42"
    assert second.path == first.path
    assert (Path(second.path) / "scratch.txt").exists()

    fresh = await service.prepare(WorkspaceRequest(session_id="Session 42", reuse=False))
    assert fresh.path == first.path
    assert not (Path(fresh.path) / "scratch.txt").exists()


@pytest.mark.asyncio
async def test_local_workspace_service_reads_git_info(tmp_path: Path, git_remote) -> None:
    clone = git_remote.clone(tmp_path / "clone")
    service = LocalWorkspaceService(tmp_path / "base")

    brief = await service.prepare(WorkspaceRequest(session_id="a", workspace_uri=str(clone)))
    detailed = await service.prepare(
        WorkspaceRequest(session_id="b", workspace_uri=str(clone), session_options=SessionOptions(enable_git_ops=True))
    )

    assert brief.git_info is not None
    assert brief.git_info.current_branch == "main"
    assert brief.git_info.remote_url is None
    assert detailed.git_info is not None
    assert detailed.git_info.remote_url == git_remote.url
    assert detailed.git_info.last_commit is not None
