from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False
    APP_DATABASE_DSN: str = "sqlite:////tmp/database.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Scheduler
    SCHEDULER_INTERVAL_SECONDS: float = 300.0
    SCHEDULER_PASS_TIMEOUT_SECONDS: float = 300.0

    # Dunning payment retries
    DUNNING_RETRY_BATCH_SIZE: int = 100

    # Delegation server
    DELEGATION_SERVER_URL: str = "http://localhost:8080"
    DELEGATION_SERVER_API_KEY: str = ""
    DELEGATION_REDEEM_TIMEOUT_SECONDS: float = 30.0

    # SMTP (empty host disables sending)
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = "billing@example.com"
    SMTP_FROM_NAME: str = "Billing"
    SMTP_USE_TLS: bool = True

    @field_validator(
        "SCHEDULER_INTERVAL_SECONDS",
        "SCHEDULER_PASS_TIMEOUT_SECONDS",
        "DELEGATION_REDEEM_TIMEOUT_SECONDS",
    )
    @classmethod
    def _must_be_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @property
    def smtp_enabled(self) -> bool:
        return bool(self.SMTP_HOST)


settings = Settings()
