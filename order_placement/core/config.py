from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str

    REDIS_URL: str

    SECRET_KEY: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440  # 24 hours

    RATE_LIMIT: int = 100
    RATE_LIMIT_WINDOW: int = 600  # 10 minutes

    IDEMPOTENCY_TTL: int = 300  # 5 minutes

    NOTIFICATION_WEBHOOK_URL: str
    WEBHOOK_TIMEOUT: int = 10
    WEBHOOK_RETRIES: int = 3

    CELERY_BROKER_URL: str
    CELERY_BACKEND: str

    # Price checks
    PRICE_CHANGE_THRESHOLD: float = 0.05  # 5% tolerance band
    PRICE_FRESHNESS_MINUTES: int = 60

    # Delivery schedules
    CUTOFF_WARNING_MINUTES: int = 60
    DELIVERY_TIMEZONE: str = "UTC"

    # Two-factor challenges
    TWO_FACTOR_MAX_ATTEMPTS: int = 3
    TWO_FACTOR_TIMEOUT_MINUTES: int = 5

    # Live adapter round-trips
    ADAPTER_CALL_TIMEOUT: float = 30.0
    ADAPTER_TIMEOUT_RETRIES: int = 2

    # Fan-out budgets for batch verification / quick refresh
    VERIFICATION_BRANCH_TIMEOUT: float = 120.0
    VERIFICATION_TOTAL_BUDGET: float = 300.0

    # Per-credential serialization
    CREDENTIAL_LOCK_TIMEOUT: int = 900
    CREDENTIAL_LOCK_RETRY_DELAY: int = 15

    PLACEMENT_MAX_RETRIES: int = 3
    VERIFICATION_MAX_RETRIES: int = 2

    API_TITLE: str = "Supplier Order Placement Service"
    API_DESCRIPTION: str = "Validates, verifies and places purchase orders on supplier sites"
    API_VERSION: str = "1.0.0"

    LOG_LEVEL: str = "INFO"
    DEBUG: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
