"""Pipeline error types and the model-failure classifier."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Pattern, Sequence


class PipelineError(RuntimeError):
    """Base class for errors raised by the prompt pipeline."""


class PromptValidationError(PipelineError, ValueError):
    """Raised before any side effect when a prompt request is malformed."""


class SessionNotFoundError(PipelineError):
    """Raised when the session store has no record for the requested id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class ModelRunError(RuntimeError):
    """Failure reported by a model runner, carrying stderr and runtime details."""

    def __init__(
        self,
        message: str,
        *,
        stderr: str = "",
        exit_code: int | None = None,
        diagnostics: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.stderr = stderr
        self.exit_code = exit_code
        self.diagnostics: dict[str, Any] = dict(diagnostics or {})


class ErrorCode(str, Enum):
    AUTH = "auth-error"
    CANCELLED = "cancelled"
    TRANSIENT = "transient"
    FATAL = "fatal"
    UNKNOWN = "unknown"


@dataclass(slots=True, frozen=True)
class ErrorRule:
    name: str
    pattern: Pattern[str]
    code: ErrorCode
    retryable: bool = False


@dataclass(slots=True)
class ClassifiedError:
    """Normalised view of a model-run failure."""

    code: ErrorCode
    message: str
    retryable: bool = False
    matched: Optional[str] = None
    stderr: str = ""
    exit_code: Optional[int] = None
    diagnostics: dict[str, Any] = field(default_factory=dict)
    original: Optional[BaseException] = field(default=None, repr=False)

    @property
    def summary(self) -> str:
        return f"({self.code.value}) {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "matched": self.matched,
        }


def _rule(name: str, expression: str, code: ErrorCode, retryable: bool = False) -> ErrorRule:
    return ErrorRule(name=name, pattern=re.compile(expression, re.IGNORECASE), code=code, retryable=retryable)


DEFAULT_RULES: tuple[ErrorRule, ...] = (
    _rule(
        "auth",
        r"api key|unauthori[sz]ed|authentication|invalid x-api-key|\b401\b|\b403\b.*forbidden",
        ErrorCode.AUTH,
    ),
    _rule("cancelled", r"cancell?ed|aborted|\babort\b", ErrorCode.CANCELLED),
    _rule(
        "transient",
        r"timeout|timed out|rate limit|\b429\b|overloaded|econnreset|\b503\b|\b502\b|temporarily unavailable",
        ErrorCode.TRANSIENT,
        retryable=True,
    ),
    _rule(
        "fatal",
        r"not a git repository|permission denied|eacces|command not found|no such file|invalid request|\b400\b",
        ErrorCode.FATAL,
    ),
)


class ErrorClassifier:
    """Map raw failures onto a stable code using an ordered rule table.

    The first matching rule wins.  An already-set abort signal or an
    ``asyncio.CancelledError`` classifies as cancelled regardless of message.
    """

    def __init__(self, rules: Sequence[ErrorRule] | None = None) -> None:
        self.rules = tuple(rules if rules is not None else DEFAULT_RULES)

    def classify(
        self,
        error: BaseException | str | None,
        *,
        abort_signal: asyncio.Event | None = None,
    ) -> ClassifiedError:
        message = self._message(error)
        stderr = str(getattr(error, "stderr", "") or getattr(error, "stderr_tail", "") or "")
        exit_code = getattr(error, "exit_code", None)
        diagnostics = dict(getattr(error, "diagnostics", None) or {})
        original = error if isinstance(error, BaseException) else None

        def build(code: ErrorCode, matched: str | None, retryable: bool = False) -> ClassifiedError:
            return ClassifiedError(
                code=code,
                message=message,
                retryable=retryable,
                matched=matched,
                stderr=stderr,
                exit_code=exit_code if isinstance(exit_code, int) else None,
                diagnostics=diagnostics,
                original=original,
            )

        if isinstance(error, asyncio.CancelledError) or (abort_signal is not None and abort_signal.is_set()):
            return build(ErrorCode.CANCELLED, "abort-signal")

        haystack = f"{message}\n{stderr}"
        for rule in self.rules:
            if rule.pattern.search(haystack):
                return build(rule.code, rule.name, rule.retryable)
        return build(ErrorCode.UNKNOWN, None)

    @staticmethod
    def _message(error: BaseException | str | None) -> str:
        if error is None:
            return "Unknown error"
        if isinstance(error, str):
            return error or "Unknown error"
        return str(error) or error.__class__.__name__


DEFAULT_CLASSIFIER = ErrorClassifier()


__all__ = [
    "DEFAULT_CLASSIFIER",
    "DEFAULT_RULES",
    "ClassifiedError",
    "ErrorClassifier",
    "ErrorCode",
    "ErrorRule",
    "ModelRunError",
    "PipelineError",
    "PromptValidationError",
    "SessionNotFoundError",
]
