"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Workflow Orchestrator"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"  # development, testing, staging, production

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    # Workflow queue
    WORKFLOW_MAX_CONCURRENT: int = 10
    WORKFLOW_MAX_RETRIES: int = 3
    WORKFLOW_RETRY_DELAY: float = 1.0  # seconds
    WORKFLOW_MAX_RETRY_DELAY: float = 60.0  # seconds
    WORKFLOW_BACKOFF: str = "exponential"  # exponential, linear, fixed
    WORKFLOW_MAX_CASCADE_DEPTH: int = 5

    # Outbound HTTP (webhook steps)
    HTTP_TIMEOUT: float = 30.0  # seconds, per attempt
    HTTP_MAX_PAYLOAD_SIZE: int = 10 * 1024 * 1024  # bytes
    HTTP_RETRIES: int = 3
    HTTP_RETRY_DELAY: float = 1.0
    HTTP_MAX_RETRY_DELAY: float = 10.0
    HTTP_CIRCUIT_BREAKER_THRESHOLD: int = 5
    HTTP_CIRCUIT_BREAKER_RESET_TIMEOUT: float = 60.0
    HTTP_USER_AGENT: str = ""

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def user_agent(self) -> str:
        """User-Agent header sent with outbound webhook requests."""
        return self.HTTP_USER_AGENT or f"workflow-orchestrator/{self.APP_VERSION}"

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
