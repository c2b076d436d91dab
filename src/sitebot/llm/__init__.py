"""LLM clients for the chat turn."""

from sitebot.llm.base import BaseLLM, EchoLLM
from sitebot.llm.exceptions import (
    LLMAuthenticationError,
    LLMConnectionError,
    LLMError,
    LLMProviderNotConfiguredError,
    LLMRateLimitError,
)
from sitebot.llm.factory import get_available_providers, get_llm, get_provider

__all__ = [
    "BaseLLM",
    "EchoLLM",
    "LLMAuthenticationError",
    "LLMConnectionError",
    "LLMError",
    "LLMProviderNotConfiguredError",
    "LLMRateLimitError",
    "get_available_providers",
    "get_llm",
    "get_provider",
]
