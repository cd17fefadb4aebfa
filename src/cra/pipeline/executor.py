"""Model Run Executor: drive a model runner and track its streaming lifecycle."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..interfaces import ModelRunner, NotificationSink, RunCallbacks, RunOptions
from ..schema import RunResult, TokenUsage

LOGGER = logging.getLogger(__name__)

SESSION_UPDATE = "session/update"
PROGRESS_TOTAL = 3
TOKENS_PER_PROGRESS_STEP = 50


class RunPhase(str, Enum):
    QUEUED = "queued"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"


_TRANSITIONS: Dict[RunPhase, frozenset[RunPhase]] = {
    RunPhase.QUEUED: frozenset({RunPhase.STREAMING, RunPhase.COMPLETED, RunPhase.ERRORED}),
    RunPhase.STREAMING: frozenset({RunPhase.STREAMING, RunPhase.COMPLETED, RunPhase.ERRORED}),
    RunPhase.COMPLETED: frozenset(),
    RunPhase.ERRORED: frozenset(),
}


@dataclass(slots=True)
class RunStateMachine:
    """Accumulates streamed output; terminal phases ignore further callbacks."""

    phase: RunPhase = RunPhase.QUEUED
    started: bool = False
    text_parts: List[str] = field(default_factory=list)
    output_tokens: int = 0
    error: Optional[BaseException] = None

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    def _advance(self, target: RunPhase) -> bool:
        if target not in _TRANSITIONS[self.phase]:
            LOGGER.debug("Ignoring %s callback in phase %s", target.value, self.phase.value)
            return False
        self.phase = target
        return True

    def start(self) -> bool:
        if self.started or self.phase is not RunPhase.QUEUED:
            return False
        self.started = True
        return True

    def delta(self, text: str, tokens: int) -> bool:
        if not self._advance(RunPhase.STREAMING):
            return False
        if text:
            self.text_parts.append(text)
        if tokens:
            self.output_tokens += tokens
        return True

    def complete(self) -> bool:
        return self._advance(RunPhase.COMPLETED)

    def fail(self, error: BaseException) -> bool:
        if self.error is not None or not self._advance(RunPhase.ERRORED):
            return False
        self.error = error
        return True


@dataclass(slots=True)
class ExecutionOutcome:
    text: str
    usage: TokenUsage
    duration_ms: int
    phase: RunPhase
    stop_reason: Optional[str] = None
    tool_use: List[Dict[str, Any]] = field(default_factory=list)
    cost_tracking: Optional[Dict[str, Any]] = None
    error: Optional[BaseException] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def progress_step(output_tokens: int) -> int:
    return max(1, output_tokens // TOKENS_PER_PROGRESS_STEP)


class ModelRunExecutor:
    """Invoke a ``ModelRunner`` with callbacks that feed a notification sink.

    Runner exceptions and ``on_error`` reports are captured on the outcome;
    ``execute`` itself only raises for task cancellation.
    """

    def __init__(
        self,
        runner: ModelRunner,
        *,
        log_full_content: bool = False,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.runner = runner
        self.log_full_content = log_full_content
        self._monotonic = monotonic

    async def execute(
        self,
        prompt: str,
        options: RunOptions,
        *,
        estimated_input_tokens: int,
        notifier: Optional[NotificationSink] = None,
    ) -> ExecutionOutcome:
        state = RunStateMachine()
        session_id = options.session_id

        def notify(params: Mapping[str, Any]) -> None:
            if notifier is None:
                return
            try:
                notifier(SESSION_UPDATE, {"sessionId": session_id, **params})
            except Exception as error:
                LOGGER.warning("Notification sink failed for session %s: %s", session_id, error)

        def on_start() -> None:
            if not state.start():
                return
            self._trace(options, "run_start estimated_input_tokens=%s", estimated_input_tokens)
            notify(
                {
                    "status": "working",
                    "message": "Processing prompt...",
                    "progress": {"current": 0, "total": PROGRESS_TOTAL, "message": "Queued"},
                }
            )

        def on_delta(text: str, tokens: int = 0) -> None:
            if not state.delta(text, tokens):
                return
            if text:
                self._trace(options, "delta %s", text)
            notify(
                {
                    "status": "working",
                    "message": "Streaming...",
                    "text": state.text,
                    "progress": {
                        "current": progress_step(state.output_tokens),
                        "total": PROGRESS_TOTAL,
                        "message": "Streaming",
                    },
                }
            )

        def on_complete(_full_text: str = "") -> None:
            if not state.complete():
                return
            self._trace(options, "run_complete output_tokens=%s", state.output_tokens)
            notify({"status": "completed", "message": "Completed"})

        def on_error(error: BaseException) -> None:
            if state.fail(error):
                self._trace(options, "run_error %s", error)

        callbacks = RunCallbacks(on_start=on_start, on_delta=on_delta, on_complete=on_complete, on_error=on_error)
        started = self._monotonic()
        result: Optional[RunResult] = None
        try:
            result = await self.runner.run_prompt(prompt, options, callbacks)
        except Exception as error:
            if state.error is None:
                state.error = error
                state.phase = RunPhase.ERRORED
        duration_ms = max(0, int((self._monotonic() - started) * 1000))

        if state.error is not None:
            LOGGER.info("Model run for session %s failed after %sms: %s", session_id, duration_ms, state.error)
            return ExecutionOutcome(
                text=state.text,
                usage=TokenUsage(input_tokens=estimated_input_tokens, output_tokens=state.output_tokens),
                duration_ms=duration_ms,
                phase=RunPhase.ERRORED,
                error=state.error,
            )

        if state.phase is not RunPhase.COMPLETED:
            state.complete()
        text = (result.full_text if result is not None and result.full_text else "") or state.text
        tokens = result.tokens if result is not None else None
        usage = TokenUsage(
            input_tokens=tokens.input_tokens if tokens is not None else estimated_input_tokens,
            output_tokens=tokens.output_tokens if tokens is not None else state.output_tokens,
        )
        return ExecutionOutcome(
            text=text,
            usage=usage,
            duration_ms=duration_ms,
            phase=RunPhase.COMPLETED,
            stop_reason=result.stop_reason if result is not None else None,
            tool_use=list(result.tool_use) if result is not None else [],
            cost_tracking=result.cost_tracking if result is not None else None,
        )

    def _trace(self, options: RunOptions, message: str, *args: Any) -> None:
        if self.log_full_content:
            LOGGER.info("[%s:%s] " + message, options.session_id, options.operation_id, *args)


__all__ = [
    "ExecutionOutcome",
    "ModelRunExecutor",
    "PROGRESS_TOTAL",
    "RunPhase",
    "RunStateMachine",
    "SESSION_UPDATE",
    "progress_step",
]
