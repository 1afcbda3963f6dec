import logging
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Redis — monitor checkpoints, signal mailboxes, per-instance locks
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    MONITOR_RECORD_TTL_SECONDS: int = 86400
    MONITOR_LOCK_TIMEOUT_SECONDS: int = 300

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"
    CELERY_TASK_QUEUE: str = "deliveries"

    # Monitoring policy
    MONITOR_POLL_INTERVAL_SECONDS: int = 1800
    DELAY_THRESHOLD_MINUTES: int = 30
    NOTIFY_DELTA_MINUTES: int = 10

    # Traffic — Google Routes API (default) or legacy Distance Matrix
    GOOGLE_MAPS_API_KEY: str = ""
    TRAFFIC_PROVIDER: str = "google_routes"
    USE_MOCK_TRAFFIC: bool = False
    TRAFFIC_MAX_ATTEMPTS: int = 2

    # Message text — OpenAI
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"
    USE_MOCK_AI: bool = False

    # Email — SendGrid
    SENDGRID_API_KEY: str = ""
    SENDGRID_FROM_EMAIL: str = "no-reply@freightapp.local"
    SENDGRID_FROM_NAME: str = ""
    SENDGRID_SANDBOX: bool = False
    COMPANY_NAME: str = "MyFreightApp"
    USE_MOCK_EMAIL: bool = False

    # Per request; all provider calls of one cycle must fit the task soft time limit
    HTTP_TIMEOUT_SECONDS: int = 10

    # App
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "*"


settings = Settings()


def configure_logging() -> None:
    """Configure root logger level and format from settings."""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
