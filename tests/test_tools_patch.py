from __future__ import annotations

import logging
from pathlib import Path

import pytest

from cra.tools.patch import (
    PatchFailure,
    apply_patches,
    extract_file_write_candidate,
    extract_patches_from_text,
)
from cra.tools.vcs import GitRepository, SubprocessGitService


def _prepare_repo(repo_root: Path) -> GitRepository:
    repo_root.mkdir()
    for name, body in (("a.txt", "alpha\n"), ("b.txt", "bravo\n"), ("c.txt", "charlie\n")):
        (repo_root / name).write_text(body, encoding="utf-8")
    return GitRepository.initialise(repo_root)


def _diff_for(repo: GitRepository, name: str, new_body: str) -> str:
    target = repo.root / name
    original = target.read_text(encoding="utf-8")
    target.write_text(new_body, encoding="utf-8")
    diff = repo.git("diff", "HEAD", "--", name).stdout
    target.write_text(original, encoding="utf-8")
    return diff.strip()


FENCED = """```diff
diff --git a/a.txt b/a.txt
--- a/a.txt
+++ b/a.txt
@@ -1 +1,2 @@
 alpha
+beta
```"""

RAW = """diff --git a/c.txt b/c.txt
--- a/c.txt
+++ b/c.txt
@@ -1 +1,2 @@
 charlie
+delta"""


def test_extracts_fenced_then_raw_patches() -> None:
    text = f"Here is the fix:\n\n{FENCED}\n\nAnd the second file:\n\n{RAW}\n\nDone."

    patches = extract_patches_from_text(text)

    assert len(patches) == 2
    assert patches[0].startswith("diff --git a/a.txt")
    assert patches[1].startswith("diff --git a/c.txt")


def test_raw_scan_ignores_other_fences_and_duplicates() -> None:
    text = f"{FENCED}\n\n{FENCED}\n\n```python\n{RAW}\n```\n"

    patches = extract_patches_from_text(text)

    assert len(patches) == 1
    assert "a.txt" in patches[0]


def test_non_patch_fences_and_oversized_patches_are_dropped() -> None:
    assert extract_patches_from_text("```diff\njust words\n```") == []
    assert extract_patches_from_text(FENCED, max_bytes=10) == []
    assert extract_patches_from_text(None) == []


def test_file_write_candidate_requires_a_fence() -> None:
    candidate = extract_file_write_candidate("Create index.html please", "Sure:\n```html\n<h1>Hi</h1>\n```")

    assert candidate is not None
    assert candidate.filename == "index.html"
    assert candidate.content == "<h1>Hi</h1>"
    assert extract_file_write_candidate("Create index.html", "I created the file for you.") is None


@pytest.mark.asyncio
async def test_failed_patch_does_not_stop_later_patches(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    repo = _prepare_repo(tmp_path / "repo")
    first = _diff_for(repo, "a.txt", "alpha\nbeta\n")
    third = _diff_for(repo, "c.txt", "charlie\ndelta\n")
    broken = first.replace("a.txt", "b.txt")

    with caplog.at_level(logging.INFO, logger="cra.telemetry"):
        failures = await apply_patches(SubprocessGitService(), str(repo.root), [first, broken, third], session_id="s1")

    assert [failure.index for failure in failures] == [2]
    assert isinstance(failures[0], PatchFailure)
    assert failures[0].to_dict()["index"] == 2
    assert (repo.root / "a.txt").read_text(encoding="utf-8") == "alpha\nbeta\n"
    assert (repo.root / "b.txt").read_text(encoding="utf-8") == "bravo\n"
    assert (repo.root / "c.txt").read_text(encoding="utf-8") == "charlie\ndelta\n"
    assert "patch.apply.failed" in caplog.text
    assert '"path":"b.txt"' in caplog.text
    assert caplog.text.count("patch.apply.succeeded") == 2


@pytest.mark.asyncio
async def test_all_patches_failing_are_each_recorded(tmp_path: Path) -> None:
    repo = _prepare_repo(tmp_path / "repo")
    bogus = RAW.replace("charlie", "nobody")

    failures = await apply_patches(SubprocessGitService(), str(repo.root), [bogus, bogus])

    assert [failure.index for failure in failures] == [1, 2]
    assert all(failure.error for failure in failures)


@pytest.mark.asyncio
async def test_non_diff_text_is_recorded_without_touching_git(tmp_path: Path) -> None:
    repo = _prepare_repo(tmp_path / "repo")
    valid = _diff_for(repo, "a.txt", "alpha\nbeta\n")

    failures = await apply_patches(SubprocessGitService(), str(repo.root), ["just some prose", valid])

    assert failures == [PatchFailure(index=1, error="Patch is not a unified diff")]
    assert (repo.root / "a.txt").read_text(encoding="utf-8") == "alpha\nbeta\n"
