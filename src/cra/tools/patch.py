"""Extract unified diffs from model output and apply them to a workspace."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Mapping, Sequence, Tuple

from ..interfaces import GitService

LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("cra.telemetry")

DEFAULT_MAX_PATCH_BYTES = 200 * 1024

_FENCED_PATCH_RE = re.compile(r"```(?:diff|patch)[ \t]*\n(.*?)```", re.IGNORECASE | re.DOTALL)
_RAW_DIFF_RE = re.compile(r"(diff --git.*?)(?:\n\n|\Z)", re.IGNORECASE | re.DOTALL)
_ANY_FENCE_RE = re.compile(r"```[^\n]*\n(.*?)```", re.DOTALL)
_FILENAME_HINT_RE = re.compile(r"([\w\-./]+\.(?:js|ts|css|scss|md|html|json|yml|yaml|txt|py))", re.IGNORECASE)
_HUNK_HEADER_RE = re.compile(r"^@@ ", re.MULTILINE)
_NEW_FILE_HEADER_RE = re.compile(r"^\+{3} ", re.MULTILINE)
_OLD_FILE_HEADER_RE = re.compile(r"^--- ", re.MULTILINE)
_MARKER_RUN_RE = re.compile(r"[+-]{3,}")
_CHANGE_LINE_RE = re.compile(r"\n[+-]")
_PATCH_FAILED_RE = re.compile(r"error: patch failed: (?P<path>.+?)(?::(?P<line>\d+))?$")
_PATCH_DOES_NOT_APPLY_RE = re.compile(r"error: (?P<path>.+?): patch does not apply")


class PatchError(RuntimeError):
    """Raised when a patch fails validation or application."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


@dataclass(slots=True, frozen=True)
class PatchFailure:
    """A patch that could not be applied; ``index`` is 1-based."""

    index: int
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "error": self.error}


@dataclass(slots=True, frozen=True)
class FileWriteCandidate:
    filename: str
    content: str


def _serialise_event_value(value: Any) -> Any:
    """Convert telemetry payload values into JSON-friendly representations."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


def _emit_patch_event(event: str, **fields: Any) -> None:
    """Log structured telemetry events when applying patches."""
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


def _is_likely_patch(candidate: str) -> bool:
    if not candidate:
        return False
    if "diff --git" in candidate:
        return True
    if _HUNK_HEADER_RE.search(candidate):
        return True
    if _NEW_FILE_HEADER_RE.search(candidate) and _OLD_FILE_HEADER_RE.search(candidate):
        return True
    return bool(_MARKER_RUN_RE.search(candidate) and _CHANGE_LINE_RE.search(candidate))


def extract_patches_from_text(text: str | None, *, max_bytes: int = DEFAULT_MAX_PATCH_BYTES) -> List[str]:
    """Return unified diffs embedded in ``text`` in order of appearance.

    Fenced ```diff``/```patch`` blocks are collected first, then raw
    ``diff --git`` sections found outside of any fence.  Oversized and
    duplicate candidates are dropped.
    """

    if not text:
        return []

    candidates: List[str] = []
    for match in _FENCED_PATCH_RE.finditer(text):
        candidate = match.group(1).strip()
        if _is_likely_patch(candidate):
            candidates.append(candidate)

    unfenced = _ANY_FENCE_RE.sub("", text)
    for match in _RAW_DIFF_RE.finditer(unfenced):
        candidate = (match.group(1) or "").strip()
        if candidate and _is_likely_patch(candidate):
            candidates.append(candidate)

    patches: List[str] = []
    for candidate in candidates:
        if len(candidate.encode("utf-8")) > max_bytes:
            LOGGER.debug("Dropping patch candidate larger than %s bytes", max_bytes)
            continue
        if candidate not in patches:
            patches.append(candidate)
    return patches


def extract_file_write_candidate(prompt_text: str | None, full_text: str | None) -> FileWriteCandidate | None:
    """Infer a whole-file write from the prompt and the first fenced block.

    Conversational replies without a fenced block never yield a candidate.
    """

    if not full_text:
        return None

    filename = None
    for source in (prompt_text or "", full_text):
        hint = _FILENAME_HINT_RE.search(source)
        if hint:
            filename = hint.group(1)
            break

    fence = _ANY_FENCE_RE.search(full_text)
    if fence is None:
        return None
    content = fence.group(1).strip()
    if filename and content:
        return FileWriteCandidate(filename=filename, content=content)
    return None


def _parse_git_apply_failures(output: str) -> Tuple[Mapping[str, Any], ...]:
    """Parse git apply stderr for the files that rejected a patch."""
    entries: list[dict[str, Any]] = []
    for raw_line in (output or "").splitlines():
        line = raw_line.strip()
        match = _PATCH_FAILED_RE.match(line)
        if match:
            line_text = match.group("line")
            entries.append(
                {
                    "path": match.group("path"),
                    "line": int(line_text) if line_text is not None else None,
                    "reason": "patch_failed",
                }
            )
            continue
        match = _PATCH_DOES_NOT_APPLY_RE.match(line)
        if match:
            entries.append({"path": match.group("path"), "reason": "does_not_apply"})
    return tuple(entries)


async def apply_patches(
    git: GitService,
    workspace_path: str,
    patches: Sequence[str],
    *,
    session_id: str | None = None,
) -> List[PatchFailure]:
    """Apply ``patches`` in order; a failing patch never stops the ones after it."""

    failures: List[PatchFailure] = []
    for index, patch in enumerate(patches, start=1):
        size = len(patch.encode("utf-8"))
        LOGGER.debug("Applying patch #%s (%s bytes) for session %s", index, size, session_id)
        try:
            if not _is_likely_patch(patch):
                raise PatchError("Patch is not a unified diff", details={"index": index})
            await git.apply_patch(workspace_path, patch)
        except Exception as error:
            message = str(error) or error.__class__.__name__
            LOGGER.warning("Failed to apply patch #%s for session %s: %s", index, session_id, message)
            stderr = getattr(error, "stderr", "") or message
            _emit_patch_event(
                "patch.apply.failed",
                session_id=session_id,
                index=index,
                patch_bytes=size,
                failing_files=_parse_git_apply_failures(stderr),
            )
            failures.append(PatchFailure(index=index, error=message))
            continue
        _emit_patch_event("patch.apply.succeeded", session_id=session_id, index=index, patch_bytes=size)
    return failures


__all__ = [
    "DEFAULT_MAX_PATCH_BYTES",
    "FileWriteCandidate",
    "PatchError",
    "PatchFailure",
    "apply_patches",
    "extract_file_write_candidate",
    "extract_patches_from_text",
]
