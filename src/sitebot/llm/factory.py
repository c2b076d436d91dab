"""LLM provider factory with registry pattern."""

import logging
from collections.abc import Callable

from sitebot.config import settings
from sitebot.llm.base import BaseLLM, EchoLLM
from sitebot.llm.exceptions import LLMProviderNotConfiguredError

logger = logging.getLogger(__name__)

_PROVIDER_REGISTRY: dict[str, Callable[[], BaseLLM]] = {}


def register_provider(name: str) -> Callable[[Callable[[], BaseLLM]], Callable[[], BaseLLM]]:
    """Decorator to register an LLM provider factory."""

    def decorator(factory: Callable[[], BaseLLM]) -> Callable[[], BaseLLM]:
        _PROVIDER_REGISTRY[name.lower()] = factory
        logger.debug(f"Registered LLM provider: {name}")
        return factory

    return decorator


def get_available_providers() -> list[str]:
    return list(_PROVIDER_REGISTRY.keys())


def get_provider(name: str) -> BaseLLM:
    """Get an LLM provider instance by name.

    Raises:
        LLMProviderNotConfiguredError: If provider is not registered
    """
    name_lower = name.lower()
    if name_lower not in _PROVIDER_REGISTRY:
        available = ", ".join(get_available_providers())
        raise LLMProviderNotConfiguredError(
            f"Unknown provider '{name}'. Available: {available}",
            provider=name,
        )
    return _PROVIDER_REGISTRY[name_lower]()


async def get_llm(provider: str | None = None) -> BaseLLM:
    """Get a configured LLM instance.

    Raises:
        LLMProviderNotConfiguredError: If the provider is unknown or unconfigured
    """
    provider_name = provider or settings.LLM_PROVIDER
    llm = get_provider(provider_name)
    if not await llm.is_available():
        raise LLMProviderNotConfiguredError(
            f"Provider '{provider_name}' is not configured", provider=provider_name
        )
    logger.info(f"Using LLM provider: {llm.provider_name}")
    return llm


@register_provider("claude")
def _create_claude() -> BaseLLM:
    from sitebot.llm.claude import ClaudeLLM

    return ClaudeLLM()


@register_provider("echo")
def _create_echo() -> BaseLLM:
    return EchoLLM()
