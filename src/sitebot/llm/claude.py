"""Claude (Anthropic) chat client using raw httpx."""

import logging
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sitebot.config import settings
from sitebot.llm.base import BaseLLM
from sitebot.llm.exceptions import (
    LLMAuthenticationError,
    LLMConnectionError,
    LLMError,
    LLMRateLimitError,
)

logger = logging.getLogger(__name__)

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"


class ClaudeLLM(BaseLLM):
    """Claude client using the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float = 60.0,
        max_tokens: int | None = None,
    ):
        self.api_key = api_key or settings.ANTHROPIC_API_KEY
        self.model = model or settings.ANTHROPIC_MODEL
        self.timeout = timeout
        self.max_tokens = max_tokens or settings.LLM_MAX_TOKENS

        if not self.api_key:
            logger.warning("Claude API key not configured")

    @property
    def provider_name(self) -> str:
        return "claude"

    async def is_available(self) -> bool:
        return bool(self.api_key)

    def _get_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type((LLMConnectionError, LLMRateLimitError)),
    )
    async def generate(
        self,
        system_prompt: str,
        messages: list[dict[str, str]],
        **kwargs: Any,
    ) -> str:
        """Generate a reply with Claude.

        Raises:
            LLMAuthenticationError: If API key is invalid
            LLMRateLimitError: If rate limit is exceeded
            LLMConnectionError: If connection fails
        """
        if not self.api_key:
            raise LLMAuthenticationError(
                "API key not configured", provider=self.provider_name
            )

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(
                    ANTHROPIC_API_URL,
                    headers=self._get_headers(),
                    json={
                        "model": self.model,
                        "max_tokens": kwargs.get("max_tokens", self.max_tokens),
                        "temperature": kwargs.get("temperature", settings.LLM_TEMPERATURE),
                        "system": system_prompt,
                        "messages": messages,
                    },
                )

                if response.status_code == 401:
                    raise LLMAuthenticationError(
                        "Invalid API key", provider=self.provider_name
                    )
                elif response.status_code == 429:
                    retry_after = response.headers.get("retry-after")
                    raise LLMRateLimitError(
                        "Rate limit exceeded",
                        provider=self.provider_name,
                        retry_after=float(retry_after) if retry_after else None,
                    )

                response.raise_for_status()
                data = response.json()

                return "".join(
                    block.get("text", "")
                    for block in data.get("content", [])
                    if block.get("type") == "text"
                )

            except httpx.ConnectError as e:
                raise LLMConnectionError(
                    f"Failed to connect: {e}", provider=self.provider_name
                ) from e
            except httpx.TimeoutException as e:
                raise LLMConnectionError(
                    f"Request timed out: {e}", provider=self.provider_name
                ) from e
            except httpx.HTTPStatusError as e:
                raise LLMError(
                    f"API error {e.response.status_code}", provider=self.provider_name
                ) from e

    async def check_health(self) -> bool:
        """Verify the API key is set and the API answers a minimal request."""
        if not self.api_key:
            logger.warning("Claude health check: No API key configured")
            return False

        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(
                    ANTHROPIC_API_URL,
                    headers=self._get_headers(),
                    json={
                        "model": self.model,
                        "max_tokens": 1,
                        "messages": [{"role": "user", "content": "Hi"}],
                    },
                )
                logger.info(f"Claude health check status: {response.status_code}")
                return response.status_code in (200, 400)
        except httpx.HTTPError as e:
            logger.error(f"Claude health check failed: {type(e).__name__}: {e}")
            return False
