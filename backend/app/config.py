"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    APP_NAME: str = "Workflow Execution Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production, testing

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./workflows.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Retry Settings (step retries: 1s, 2s, 4s ... capped at 30s)
    RETRY_BASE_DELAY: float = 1.0
    RETRY_MULTIPLIER: float = 2.0
    RETRY_MAX_DELAY: float = 30.0
    RETRY_JITTER: float = 0.5
    # Applied when a step with on_failure=retry runs out of attempts
    RETRY_EXHAUSTED_POLICY: str = "abort"  # skip, abort, dead_letter

    # Outbound webhook delivery retries: 10s, 30s, 90s ...
    WEBHOOK_RETRY_BASE_DELAY: float = 10.0
    WEBHOOK_RETRY_MULTIPLIER: float = 3.0
    WEBHOOK_RETRY_MAX_DELAY: float = 3600.0
    WEBHOOK_RETRY_JITTER: float = 5.0

    # Step Execution
    DEFAULT_STEP_TIMEOUT_SECONDS: float = 30.0
    MAX_DELAY_SECONDS: float = 300.0
    HTTP_TIMEOUT_SECONDS: float = 30.0
    ALLOW_PRIVATE_NETWORK_TARGETS: bool = False

    # Email (Resend-compatible API)
    RESEND_API_KEY: str = ""
    EMAIL_API_URL: str = "https://api.resend.com/emails"
    EMAIL_FROM: str = "noreply@example.com"

    # Claude AI Settings
    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_API_URL: str = "https://api.anthropic.com/v1/messages"
    ANTHROPIC_VERSION: str = "2023-06-01"
    CLAUDE_MODEL: str = "claude-sonnet-4-20250514"
    CLAUDE_MAX_TOKENS: int = 1024

    # Recovery
    RECOVERY_STALE_SECONDS: int = 300

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    def validate_secrets(self) -> None:
        """Validate that provider credentials are present in production.

        Raises:
            RuntimeError: If production environment is missing provider API keys
        """
        if self.is_production:
            if not self.RESEND_API_KEY:
                raise RuntimeError(
                    "CRITICAL: RESEND_API_KEY environment variable must be set in production."
                )
            if not self.ANTHROPIC_API_KEY:
                raise RuntimeError(
                    "CRITICAL: ANTHROPIC_API_KEY environment variable must be set in production."
                )

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
