"""Slug and branch-name helpers."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime
from typing import Pattern

_UNSAFE_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_HYPHEN_RUN = re.compile(r"-{2,}")

BRANCH_TIMESTAMP_FORMAT = "%Y-%m-%d-%H%M%S"


def slugify(value: str | None, *, fallback: str = "item", max_length: int = 80) -> str:
    """Lowercase ``value`` into a git-ref and filesystem friendly slug."""
    slug = _collapse(_UNSAFE_PATTERN.sub("-", (value or "").strip().lower()))
    if not slug:
        slug = _collapse(_UNSAFE_PATTERN.sub("-", fallback.lower())) or "item"
    if len(slug) > max_length:
        slug = abbreviate_slug(slug, max_length=max_length)
    return slug


def abbreviate_slug(segment: str, *, max_length: int = 80) -> str:
    """Trim ``segment`` to ``max_length`` keeping it unique with a short digest."""
    slug = segment.strip("-") or "item"
    if len(slug) <= max_length:
        return slug
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix = slug[: max(max_length - len(digest) - 1, 1)].rstrip("-")
    return f"{prefix}-{digest}"


def branch_timestamp(moment: datetime) -> str:
    """Return the ``YYYY-MM-DD-HHMMSS`` token embedded in generated branches."""
    return moment.strftime(BRANCH_TIMESTAMP_FORMAT)


def _collapse(value: str) -> str:
    return _HYPHEN_RUN.sub("-", value).strip("-")


__all__ = ["BRANCH_TIMESTAMP_FORMAT", "abbreviate_slug", "branch_timestamp", "slugify"]
