"""Convenience exports for language-model clients and runners."""

from .llm_client import (
    LLMClient,
    LLMClientError,
    LLMRequest,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
)
from .responses import HTTPTransport, ResponsesClient, ResponsesModelRunner

__all__ = [
    "HTTPTransport",
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "ResponsesClient",
    "ResponsesModelRunner",
]
