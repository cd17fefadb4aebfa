"""Typed client base class for structured language-model calls."""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, Type, TypeVar

from pydantic import ValidationError
from pydantic.type_adapter import TypeAdapter

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
]


T = TypeVar("T")
LOGGER = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*\n(.*?)\n?```\s*$", re.IGNORECASE | re.DOTALL)
_SMART_QUOTES = str.maketrans({0x201C: '"', 0x201D: '"', 0x2018: "'", 0x2019: "'", 0x00A0: " ", 0xFEFF: ""})


def _close_schema(value: Any) -> Any:
    """Recursively mark JSON Schema objects as closed with every property required."""
    if isinstance(value, dict):
        if value.get("type") == "object":
            value["additionalProperties"] = False
            properties = value.get("properties")
            if isinstance(properties, dict):
                value["required"] = list(properties.keys())
        for key, child in list(value.items()):
            value[key] = _close_schema(child)
    elif isinstance(value, list):
        return [_close_schema(item) for item in value]
    return value


class LLMClientError(RuntimeError):
    """Base class for failures of a structured model call."""


class LLMTransportError(LLMClientError):
    """The HTTP call to the model endpoint failed."""


class LLMResponseFormatError(LLMClientError):
    """The reply could not be decoded as JSON."""


class LLMRetryError(LLMClientError):
    """Every attempt produced output that failed decoding or validation."""


@dataclass(slots=True)
class LLMRequest(Generic[T]):
    """A structured request: prompt, reply type and optional overrides."""

    prompt: str
    response_model: Type[T]
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    temperature: float = 0.0
    max_attempts: Optional[int] = None

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render a transport-ready payload for the JSON responses API."""
        messages: list[Dict[str, Any]] = []
        if self.system_prompt:
            messages.append(_input_message("system", self.system_prompt))
        messages.append(_input_message("user", self.prompt))

        schema = _close_schema(TypeAdapter(self.response_model).json_schema())
        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "input": messages,
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": getattr(self.response_model, "__name__", "cra_response"),
                    "schema": schema,
                    "strict": True,
                }
            },
        }
        if self.temperature not in (None, 0.0):
            payload["temperature"] = self.temperature
        if self.metadata:
            payload["metadata"] = {
                key: (value if isinstance(value, str) else json.dumps(value, sort_keys=True))[:512]
                for key, value in self.metadata.items()
            }
        return payload


def _input_message(role: str, text: str) -> Dict[str, Any]:
    return {"role": role, "content": [{"type": "input_text", "text": text}]}


class LLMClient:
    """Validate structured model replies against a pydantic type, retrying on bad output.

    Subclasses supply the transport through ``_raw_invoke``.
    """

    def __init__(self, model: str, *, max_attempts: int = 3, retry_delay: float = 0.5) -> None:
        self._model = model
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay

    @property
    def model(self) -> str:
        return self._model

    def invoke(self, request: LLMRequest[T]) -> T:
        """Return the validated reply for ``request``."""
        reply, _ = self.invoke_structured(request)
        return reply

    def invoke_structured(self, request: LLMRequest[T]) -> tuple[T, Any]:
        """Return the validated reply together with the decoded JSON it came from."""
        budget = max(1, request.max_attempts or self._max_attempts)
        model_name = request.model or self._model
        adapter = TypeAdapter(request.response_model)
        payload = request.to_payload(self._model)
        failure: Optional[Exception] = None

        attempt = 0
        while attempt < budget:
            attempt += 1
            try:
                decoded = self._parse_json(self._raw_invoke(payload))
                return adapter.validate_python(decoded), decoded
            except (LLMResponseFormatError, ValidationError, LLMTransportError) as error:
                failure = error
                LOGGER.debug(
                    "Structured call to %s failed on attempt %s/%s: %s",
                    model_name,
                    attempt,
                    budget,
                    error,
                )
            if attempt < budget and self._retry_delay > 0:
                time.sleep(self._retry_delay)

        raise LLMRetryError(
            f"{model_name} gave no schema-valid reply in {budget} attempt(s)"
        ) from failure

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    @staticmethod
    def _parse_json(raw_response: str) -> Any:
        """Decode a JSON reply, tolerating a code fence and chatter around the object."""
        text = (raw_response or "").strip().translate(_SMART_QUOTES)
        if not text:
            raise LLMResponseFormatError("Model returned an empty response.")

        fenced = _FENCE_RE.match(text)
        candidates = [fenced.group(1).strip() if fenced else text]
        start, end = text.find("{"), text.rfind("}")
        if 0 <= start < end:
            candidates.append(text[start : end + 1])
        for candidate in candidates:
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                continue
        raise LLMResponseFormatError(f"Model returned invalid JSON: {text[:200]}")
