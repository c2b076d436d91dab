"""Configuration management using pydantic-settings."""

import logging

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    APP_NAME: str = "Sitebot"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./sitebot.db"
    DB_BUSY_TIMEOUT_MS: int = 30000  # How long a SQLite writer waits on a locked database

    # Onboarding
    STALE_LOCK_MINUTES: int = 15  # Job leases older than this may be taken over
    ONBOARDING_MAX_EVENTS: int = 200  # Ring buffer size for onboardingMeta.events
    LAUNCH_MIN_HEALTH_SCORE: int = 80  # Health score required for READY -> LAUNCHED
    DROPOFF_STALE_DAYS: int = 3  # Inactivity before a tenant counts as dropped off
    SLOW_TRANSITION_MS: float = 500.0  # Transitions slower than this are logged

    # Retrieval
    RETRIEVAL_TOP_K: int = 5
    RETRIEVAL_MIN_TOKEN_LENGTH: int = 3  # Tokens of this length or shorter are dropped
    CONTEXT_CHUNK_CHARS: int = 1500  # Per-chunk cap when rendering context

    # Prompt assembly
    MAX_CONTEXT_CHARS: int = 4000
    MAX_PROMPT_CHARS: int = 8000

    # Confidence policy defaults
    DEFAULT_MIN_ANSWER_CONFIDENCE: float = 0.65
    DEFAULT_MIN_SOURCE_COUNT: int = 1
    DEFAULT_LOW_CONFIDENCE_ACTION: str = "SOFT_ANSWER"

    # Feedback impact on chunk confidence (penalty is applied as a decrease)
    FEEDBACK_CONFIDENCE_BOOST: float = 0.05
    FEEDBACK_CONFIDENCE_PENALTY: float = 0.15

    # LLM Provider Selection
    LLM_PROVIDER: str = "claude"

    # Anthropic (Claude)
    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_MODEL: str = "claude-sonnet-4-20250514"
    LLM_MAX_TOKENS: int = 500
    LLM_TEMPERATURE: float = 0.7
    CHAT_MAX_HISTORY_MESSAGES: int = 15

    # Admin API
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD: str = "changeme"  # MUST be changed in production

    @model_validator(mode="after")
    def check_security_settings(self) -> "Settings":
        """Validate security settings."""
        if not self.DEBUG and self.ADMIN_PASSWORD == "changeme":
            logging.warning(
                "SECURITY WARNING: ADMIN_PASSWORD is set to default 'changeme' in non-debug mode!"
            )
        return self


settings = Settings()
