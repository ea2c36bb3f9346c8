"""Convenience exports for VibeCI language-model clients."""

from .gemini import GeminiClient
from .llm_client import (
    LLMClient,
    LLMClientError,
    LLMRateLimitError,
    LLMRequest,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
    RateLimitTable,
)

__all__ = [
    "GeminiClient",
    "LLMClient",
    "LLMClientError",
    "LLMRateLimitError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "RateLimitTable",
]
