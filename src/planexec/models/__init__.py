"""Convenience exports for the model client implementations."""

from .gpt5 import GPT5Client
from .llm_client import (
    CallableLLMClient,
    LLMClient,
    LLMClientError,
    LLMRequest,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
)

__all__ = [
    "CallableLLMClient",
    "GPT5Client",
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
]
