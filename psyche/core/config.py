from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "psyche"
    postgres_password: str = "changeme"
    postgres_db: str = "psyche"

    @property
    def postgres_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def postgres_url_sync(self) -> str:
        """For Alembic migrations (sync driver)."""
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Redis (Celery broker)
    redis_url: str = "redis://localhost:6379/0"

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable

    # LLM provider (OpenAI-compatible chat completions)
    llm_api_url: str = "https://api.openai.com/v1/chat/completions"
    llm_api_key: str = ""
    llm_model: str = "gpt-4o-mini"
    llm_timeout_seconds: float = 10.0
    llm_max_attempts: int = 3  # total attempts per invoke, first try included
    llm_base_retry_delay: float = 1.0
    llm_max_retry_delay: float = 30.0
    llm_credit_cost: int = 2  # credits per psychographic analysis

    # Circuit breaker
    breaker_failure_threshold: int = 5
    breaker_recovery_timeout: float = 60.0
    breaker_monitoring_window: float = 300.0

    # Token bucket (per principal + operation)
    bucket_capacity: float = 60.0
    bucket_refill_per_minute: float = 1.0

    # Credit ledger
    credit_default_allotment: int = 1000
    credit_auto_provision: bool = True

    # Prompt guard
    prompt_min_length: int = 50
    prompt_max_length: int = 10_000

    # Inference
    event_window_size: int = 50

    # Audit retention
    audit_retention_days: int = 365


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.breaker_failure_threshold < 1:
        errors.append("BREAKER_FAILURE_THRESHOLD must be at least 1")

    if settings.llm_max_attempts < 1:
        errors.append("LLM_MAX_ATTEMPTS must be at least 1")

    if settings.bucket_capacity <= 0 or settings.bucket_refill_per_minute <= 0:
        errors.append("BUCKET_CAPACITY and BUCKET_REFILL_PER_MINUTE must be positive")

    if settings.prompt_min_length > settings.prompt_max_length:
        errors.append("PROMPT_MIN_LENGTH must not exceed PROMPT_MAX_LENGTH")

    if settings.app_env == "production":
        if not settings.llm_api_key:
            errors.append("LLM_API_KEY must be set in production")
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
