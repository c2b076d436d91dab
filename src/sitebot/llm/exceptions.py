"""Errors raised by chat model clients.

Each error carries the provider name so logs and the readiness check can
say which backend failed. ``ClaudeLLM`` retries connection and rate-limit
errors; everything else reaches the chat turn on the first failure.
"""


class LLMError(Exception):
    """A chat model call failed."""

    def __init__(self, message: str, provider: str = "unknown"):
        self.provider = provider
        super().__init__(f"[{provider}] {message}")


class LLMConnectionError(LLMError):
    """Network failure or timeout reaching the provider. Retried."""


class LLMRateLimitError(LLMError):
    """The provider answered 429. Retried.

    ``retry_after`` is the provider's hint in seconds, when it sent one.
    """

    def __init__(self, message: str, provider: str, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message, provider)


class LLMAuthenticationError(LLMError):
    """API key missing or rejected. Never retried."""


class LLMProviderNotConfiguredError(LLMError):
    """``LLM_PROVIDER`` names no registered provider, or it has no credentials.

    Chat answers 503; onboarding keeps working.
    """
