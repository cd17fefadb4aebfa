"""HTTP adapters for the JSON Responses API.

``ResponsesClient`` backs structured calls such as commit-subject synthesis;
``ResponsesModelRunner`` implements the ``ModelRunner`` protocol used for the
main prompt run.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Optional

from ..errors import ModelRunError
from ..interfaces import RunCallbacks, RunOptions
from ..prompts import estimate_tokens
from ..schema import RunResult, TokenUsage
from .llm_client import LLMClient, LLMResponseFormatError, LLMTransportError

__all__ = [
    "DEFAULT_RESPONSES_URL",
    "HTTPTransport",
    "ResponsesClient",
    "ResponsesModelRunner",
    "extract_output_text",
    "extract_usage",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_RESPONSES_URL = "https://api.openai.com/v1/responses"

Transport = Callable[[Dict[str, Any]], str]


def _resolve_api_key(api_key: Optional[str]) -> Optional[str]:
    return api_key or os.getenv("CRA_MODEL_API_KEY") or os.getenv("OPENAI_API_KEY")


class HTTPTransport:
    """POST a payload to the Responses endpoint and return the raw body."""

    def __init__(self, *, api_key: Optional[str], base_url: str = DEFAULT_RESPONSES_URL, timeout: float = 250.0) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout

    def __call__(self, payload: Dict[str, Any]) -> str:
        if not self._api_key:
            raise LLMTransportError("No model API key configured (invalid x-api-key)")
        request = urllib.request.Request(
            self._base_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
                "X-Client": "change-request-automation/0.1",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Model response timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach model endpoint: {error.reason}") from error

        if status >= 400:
            raise LLMTransportError(f"Unexpected HTTP status {status}")
        return raw.decode("utf-8")


def _first_text_content(container: Any) -> Optional[str]:
    """Return the first text field found within a responses container."""
    if not container:
        return None
    if isinstance(container, dict):
        container = [container]
    for item in container:
        if not isinstance(item, dict):
            continue
        contents = item.get("content")
        if isinstance(contents, list):
            for content_item in contents:
                if not isinstance(content_item, dict):
                    continue
                if isinstance(content_item.get("json"), (dict, list)):
                    return json.dumps(content_item["json"])
                text = content_item.get("text")
                if isinstance(text, str) and text.strip():
                    return text
        text_value = item.get("text")
        if isinstance(text_value, str) and text_value.strip():
            return text_value
        message = item.get("message")
        if isinstance(message, dict):
            text = message.get("content") or message.get("text")
            if isinstance(text, str) and text.strip():
                return text
    return None


def extract_output_text(raw_response: str) -> Optional[str]:
    """Extract the output text from a Responses API body; non-JSON bodies pass through."""
    if not raw_response:
        return None
    try:
        data = json.loads(raw_response)
    except json.JSONDecodeError:
        return raw_response
    if not isinstance(data, dict):
        return raw_response
    if isinstance(data.get("output_text"), str) and data["output_text"].strip():
        return data["output_text"]
    for container in (
        data.get("output") or data.get("outputs"),
        (data.get("response") or {}).get("output") if isinstance(data.get("response"), dict) else None,
        data.get("content") or data.get("choices"),
    ):
        text = _first_text_content(container)
        if text:
            return text
    return raw_response


def extract_usage(raw_response: str) -> Optional[TokenUsage]:
    try:
        data = json.loads(raw_response)
    except (json.JSONDecodeError, TypeError):
        return None
    usage = data.get("usage") if isinstance(data, dict) else None
    if not isinstance(usage, dict):
        return None
    return TokenUsage(
        input_tokens=int(usage.get("input_tokens") or usage.get("prompt_tokens") or 0),
        output_tokens=int(usage.get("output_tokens") or usage.get("completion_tokens") or 0),
    )


class ResponsesClient(LLMClient):
    """Structured ``LLMClient`` speaking the JSON Responses API."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_RESPONSES_URL,
        model: str = "gpt-5-mini",
        transport: Optional[Transport] = None,
        timeout: float = 60.0,
        max_attempts: int = 2,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        resolved_key = _resolve_api_key(api_key)
        if transport is None and not resolved_key:
            raise ValueError("An API key is required when using the default transport.")
        self._transport = transport or HTTPTransport(api_key=resolved_key, base_url=base_url, timeout=timeout)

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except Exception as error:  # pragma: no cover - transport plug-ins may raise anything
            raise LLMTransportError(f"Transport rejected the request: {error}") from error
        text = extract_output_text(raw_response)
        if text is None:
            raise LLMResponseFormatError("Response did not contain output text.")
        return text


class ResponsesModelRunner:
    """``ModelRunner`` that performs one non-streaming Responses call per prompt.

    Output arrives in a single delta once the call returns.  The abort signal
    is checked before the call and after it; an observed abort raises
    ``ModelRunError`` so the executor classifies the run as cancelled.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_RESPONSES_URL,
        model: str = "gpt-5",
        transport: Optional[Transport] = None,
        timeout: float = 250.0,
        system_prompt: Optional[str] = None,
    ) -> None:
        self._api_key = _resolve_api_key(api_key)
        self._base_url = base_url
        self._model = model
        self._transport = transport
        self._timeout = timeout
        self._system_prompt = system_prompt

    def build_payload(self, prompt: str, options: RunOptions) -> Dict[str, Any]:
        messages: list[Dict[str, Any]] = []
        if self._system_prompt:
            messages.append({"role": "system", "content": self._system_prompt})
        for message in options.prior_messages:
            role = message.get("role")
            content = message.get("content")
            if role in {"user", "assistant"} and isinstance(content, str) and content:
                messages.append({"role": role, "content": content})
        messages.append({"role": "user", "content": prompt})
        payload: Dict[str, Any] = {"model": options.model or self._model, "input": messages}
        metadata = {"session_id": options.session_id, "operation_id": options.operation_id}
        if options.repository:
            metadata["repository"] = options.repository
        payload["metadata"] = metadata
        return payload

    def _transport_for(self, options: RunOptions) -> Transport:
        if self._transport is not None:
            return self._transport
        return HTTPTransport(
            api_key=options.credential or self._api_key,
            base_url=self._base_url,
            timeout=self._timeout,
        )

    async def run_prompt(self, prompt: str, options: RunOptions, callbacks: RunCallbacks) -> RunResult:
        signal = options.abort_signal
        if signal is not None and signal.is_set():
            raise ModelRunError("Request aborted before the model call started")

        payload = self.build_payload(prompt, options)
        transport = self._transport_for(options)
        if callbacks.on_start:
            callbacks.on_start()

        try:
            raw = await asyncio.to_thread(transport, payload)
        except LLMTransportError as error:
            raise ModelRunError(str(error), stderr=str(error)) from error

        if signal is not None and signal.is_set():
            raise ModelRunError("Request aborted by caller after the model responded")

        text = extract_output_text(raw) or ""
        usage = extract_usage(raw) or TokenUsage(
            input_tokens=estimate_tokens(prompt).estimated_tokens,
            output_tokens=estimate_tokens(text).estimated_tokens,
        )
        LOGGER.debug("Model run %s returned %s characters", options.operation_id, len(text))
        if text and callbacks.on_delta:
            callbacks.on_delta(text, usage.output_tokens)
        if callbacks.on_complete:
            callbacks.on_complete(text)
        return RunResult(full_text=text, tokens=usage, stop_reason="completed")
