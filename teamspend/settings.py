# ==== APPLICATION SETTINGS CONFIGURATION ==== #

"""
Application settings configuration for TeamSpend.

This module provides centralized configuration management using Pydantic Settings
with environment variable loading for the ledger, the advisory provider,
notification delivery and observability.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


# ==== MAIN SETTINGS CLASS ==== #


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Every external collaborator is optional: without an AI key the advisory
    adapter answers "no suggestion", without an email key notifications are
    logged instead of sent, and without a Redis URL advisory results are not cached.
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        extra='ignore'
    )

    # --► CORE APPLICATION SETTINGS
    APP_ENV: str = "dev"
    SERVICE_NAME: str = "teamspend"
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str | None = None

    # --► DATABASE CONFIGURATION
    DATABASE_URL: str = "sqlite+aiosqlite:///./teamspend.db"
    DATABASE_ECHO: bool = False

    # --► REDIS CONFIGURATION (ADVISORY CACHE)
    REDIS_URL: str | None = None
    ADVISORY_CACHE_TTL_SECONDS: int = 300

    # --► BUDGET LEDGER
    LEDGER_MAX_RETRIES: int = 5
    LEDGER_RETRY_BASE_DELAY: float = 0.05
    LEDGER_RETRY_MAX_DELAY: float = 1.0
    BUDGET_WARN_PERCENT: float = 80.0
    BUDGET_LIMIT_PERCENT: float = 100.0

    # --► AI SERVICE CONFIGURATION
    AI_PROVIDER_BASE_URL: str = "https://openrouter.ai/api/v1"
    AI_MODEL: str = "google/gemini-2.0-flash-exp:free"
    AI_API_KEY: str | None = None
    AI_TIMEOUT_SECONDS: float = 10.0
    AI_RETRY_MAX_ATTEMPTS: int = 3
    AI_RETRY_BASE_DELAY: float = 1.0
    AI_RETRY_MAX_DELAY: float = 10.0
    AI_MIN_REQUEST_INTERVAL_SECONDS: float = 2.0
    AI_RATE_LIMIT_COOLDOWN_SECONDS: float = 60.0
    AI_CIRCUIT_FAILURE_THRESHOLD: int = 5
    AI_CIRCUIT_RECOVERY_SECONDS: float = 60.0
    AI_PROMPTS_DIR: str | None = None
    DUPLICATE_LOOKBACK_DAYS: int = 30
    DUPLICATE_CANDIDATE_LIMIT: int = 10

    # --► EMAIL NOTIFICATIONS
    EMAIL_API_BASE_URL: str = "https://api.resend.com"
    EMAIL_API_KEY: str | None = None
    EMAIL_FROM: str = "TeamSpend <noreply@teamspend.local>"
    EMAIL_TIMEOUT_SECONDS: float = 10.0
    EMAIL_MIN_REQUEST_INTERVAL_SECONDS: float = 0.1
    SYSTEM_APPROVER_NAME: str = "System"
    SYSTEM_APPROVER_EMAIL: str = "system@expensemanagement.com"

    # --► OBSERVABILITY CONFIGURATION
    OTEL_EXPORTER_OTLP_ENDPOINT: str | None = None
    OTEL_EXPORTER_OTLP_HEADERS: str | None = None
    OTEL_SERVICE_NAME: str | None = None
    OTEL_RESOURCE_ATTRIBUTES: str | None = None

    # --► PREFECT WORKFLOW ORCHESTRATION
    PREFECT_FLOW_NAME: str = "reconcile-team-spending"
    PREFECT_SCHEDULE_CRON: str = "0 2 * * *"


# ==== GLOBAL SETTINGS INSTANCE ==== #


# Global settings instance for application-wide access
settings = Settings()


def get_settings() -> Settings:
    """
    Get global settings instance.

    Returns:
        Settings: Global application settings instance
    """
    return settings
