from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

import pytest

from cra.errors import ModelRunError
from cra.interfaces import RunCallbacks, RunOptions
from cra.models import LLMRequest, LLMTransportError, ResponsesClient, ResponsesModelRunner
from cra.pipeline.commit_message import CommitSubject


def _response(text: str, usage: Dict[str, int] | None = None) -> str:
    body: Dict[str, Any] = {
        "id": "resp_mock",
        "object": "response",
        "status": "completed",
        "output": [
            {
                "id": "msg_mock",
                "type": "message",
                "role": "assistant",
                "content": [{"type": "output_text", "text": text}],
            }
        ],
    }
    if usage is not None:
        body["usage"] = usage
    return json.dumps(body)


class RecordingTransport:
    def __init__(self, body: str) -> None:
        self.body = body
        self.payloads: List[Dict[str, Any]] = []

    def __call__(self, payload: Dict[str, Any]) -> str:
        self.payloads.append(payload)
        return self.body


def _options(**overrides: Any) -> RunOptions:
    return RunOptions(session_id="s1", operation_id="op-1", **overrides)


def test_client_extracts_structured_json() -> None:
    transport = RecordingTransport(_response(json.dumps({"subject": "Fix header typo"})))
    client = ResponsesClient(model="gpt-5-mini", transport=transport)

    result = client.invoke(LLMRequest(prompt="diff", response_model=CommitSubject, system_prompt="Write a subject"))

    assert result.subject == "Fix header typo"
    payload = transport.payloads[0]
    assert payload["model"] == "gpt-5-mini"
    assert [message["role"] for message in payload["input"]] == ["system", "user"]
    assert payload["text"]["format"]["type"] == "json_schema"


def test_client_requires_key_without_transport(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CRA_MODEL_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(ValueError):
        ResponsesClient()


@pytest.mark.asyncio
async def test_runner_reports_text_and_usage() -> None:
    transport = RecordingTransport(_response("All done.", {"input_tokens": 40, "output_tokens": 9}))
    runner = ResponsesModelRunner(model="gpt-5", transport=transport, system_prompt="Edit files.")
    events: List[Any] = []
    callbacks = RunCallbacks(
        on_start=lambda: events.append("start"),
        on_delta=lambda text, tokens: events.append(("delta", text, tokens)),
        on_complete=lambda text: events.append(("complete", text)),
    )

    result = await runner.run_prompt(
        "Fix the header",
        _options(
            prior_messages=[
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": "hello"},
                {"role": "tool", "content": "ignored"},
            ],
            repository="acme/widgets",
        ),
        callbacks,
    )

    assert result.full_text == "All done."
    assert result.tokens is not None and result.tokens.input_tokens == 40
    assert events == ["start", ("delta", "All done.", 9), ("complete", "All done.")]
    payload = transport.payloads[0]
    assert payload["input"] == [
        {"role": "system", "content": "Edit files."},
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
        {"role": "user", "content": "Fix the header"},
    ]
    assert payload["metadata"] == {"session_id": "s1", "operation_id": "op-1", "repository": "acme/widgets"}


@pytest.mark.asyncio
async def test_runner_estimates_usage_when_missing() -> None:
    runner = ResponsesModelRunner(transport=RecordingTransport("plain text reply"))

    result = await runner.run_prompt("abcdefgh", _options(model="gpt-5-mini"), RunCallbacks())

    assert result.full_text == "plain text reply"
    assert result.tokens is not None
    assert result.tokens.input_tokens > 0
    assert result.tokens.output_tokens > 0


@pytest.mark.asyncio
async def test_runner_refuses_when_already_aborted() -> None:
    transport = RecordingTransport(_response("never"))
    abort = asyncio.Event()
    abort.set()

    with pytest.raises(ModelRunError):
        await ResponsesModelRunner(transport=transport).run_prompt("p", _options(abort_signal=abort), RunCallbacks())

    assert transport.payloads == []


@pytest.mark.asyncio
async def test_transport_errors_become_model_run_errors() -> None:
    def failing(payload: Dict[str, Any]) -> str:
        raise LLMTransportError("HTTP 429: rate limit exceeded")

    with pytest.raises(ModelRunError) as excinfo:
        await ResponsesModelRunner(transport=failing).run_prompt("p", _options(), RunCallbacks())

    assert "rate limit" in str(excinfo.value)
    assert excinfo.value.stderr == "HTTP 429: rate limit exceeded"
