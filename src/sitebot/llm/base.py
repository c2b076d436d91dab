"""LLM client interface."""

from abc import ABC, abstractmethod
from typing import Any


class BaseLLM(ABC):
    """Base class for chat completion providers."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name (e.g., 'claude')."""
        pass

    @abstractmethod
    async def generate(
        self,
        system_prompt: str,
        messages: list[dict[str, str]],
        **kwargs: Any,
    ) -> str:
        """Generate the assistant's next message.

        Args:
            system_prompt: Assembled system prompt
            messages: Conversation as ``{"role", "content"}`` dicts, oldest first
        """
        pass

    @abstractmethod
    async def check_health(self) -> bool:
        """Check if the LLM service is accessible and healthy."""
        pass

    async def is_available(self) -> bool:
        """Lightweight configuration check, no network calls."""
        return True


class EchoLLM(BaseLLM):
    """Offline provider for local development and sandbox demos."""

    @property
    def provider_name(self) -> str:
        return "echo"

    async def generate(
        self,
        system_prompt: str,
        messages: list[dict[str, str]],
        **kwargs: Any,
    ) -> str:
        last = messages[-1]["content"] if messages else ""
        return f"You asked: {last}"

    async def check_health(self) -> bool:
        return True
