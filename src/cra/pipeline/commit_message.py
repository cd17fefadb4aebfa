"""Commit Message Synthesizer: a one-line subject from a secondary model call."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict

from ..models.llm_client import LLMClient, LLMRequest
from ..prompts import COMMIT_MESSAGE_SYSTEM_PROMPT, render_commit_message_request

LOGGER = logging.getLogger(__name__)

PROMPT_CHAR_LIMIT = 2000
SUMMARY_CHAR_LIMIT = 1500
FILE_LIMIT = 50
DIFF_CHAR_LIMIT = 6000
SOFT_LIMIT = 72
HARD_LIMIT = 120

_NARRATIVE_PREFIX = re.compile(
    r"^(?:now\s+i'll|let\s+me|first(?:[,:]|\s)|i'll|i\s+will|i\s+have|i've|okay,|sure,)\s*",
    re.IGNORECASE,
)
_WRAPPING = "\"'`"


class CommitSubject(BaseModel):
    """Structured response expected from the commit-subject model."""

    model_config = ConfigDict(extra="forbid")

    subject: str


def clean_commit_subject(raw: Optional[str], *, hard_limit: int = HARD_LIMIT) -> Optional[str]:
    """Normalise model output into a single commit subject line, or ``None``."""
    if not raw:
        return None
    line = next((candidate.strip() for candidate in raw.splitlines() if candidate.strip()), "")
    line = line.strip(_WRAPPING).strip()
    line = re.sub(r"\s+", " ", line)

    previous = None
    while previous != line:
        previous = line
        line = _NARRATIVE_PREFIX.sub("", line).strip()

    line = line.rstrip(".").strip().strip(_WRAPPING).strip()
    if not line:
        return None
    line = line[0].upper() + line[1:]
    if len(line) > hard_limit:
        line = line[: hard_limit - 3].rstrip() + "..."
    return line


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "\n...[truncated]"


class CommitMessageSynthesizer:
    """Ask a small model for a commit subject; every failure yields ``None``."""

    def __init__(self, client: Optional[LLMClient], *, model: Optional[str] = None) -> None:
        self.client = client
        self.model = model

    def build_request(
        self,
        *,
        prompt: str,
        summary: str,
        changed_files: Sequence[str],
        diff: str = "",
        diff_stat: str = "",
    ) -> LLMRequest[CommitSubject]:
        body = render_commit_message_request(
            prompt=_truncate(prompt, PROMPT_CHAR_LIMIT),
            summary=_truncate(summary, SUMMARY_CHAR_LIMIT),
            changed_files=list(changed_files)[:FILE_LIMIT],
            diff=_truncate(diff or diff_stat, DIFF_CHAR_LIMIT),
        )
        return LLMRequest(
            prompt=body,
            response_model=CommitSubject,
            model=self.model,
            system_prompt=COMMIT_MESSAGE_SYSTEM_PROMPT,
            metadata={"purpose": "commit-subject", "soft_limit": SOFT_LIMIT},
            max_attempts=1,
        )

    async def synthesize(
        self,
        *,
        prompt: str,
        summary: str,
        changed_files: Sequence[str],
        diff: str = "",
        diff_stat: str = "",
    ) -> Optional[str]:
        if self.client is None:
            return None
        request = self.build_request(
            prompt=prompt, summary=summary, changed_files=changed_files, diff=diff, diff_stat=diff_stat
        )
        try:
            response = await asyncio.to_thread(self.client.invoke, request)
        except Exception as error:
            LOGGER.warning("Commit message synthesis failed: %s", error)
            return None
        subject = clean_commit_subject(response.subject)
        if subject and len(subject) > SOFT_LIMIT:
            LOGGER.debug("Commit subject exceeds %s characters: %s", SOFT_LIMIT, subject)
        return subject


__all__ = ["CommitMessageSynthesizer", "CommitSubject", "clean_commit_subject"]
