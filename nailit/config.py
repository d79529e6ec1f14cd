from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"

DEFAULT_CONTRACTOR_KEYWORDS = (
    "cost,schedule,material,invoice,urgent,update,renovation,quote,estimate,permit"
)
DEFAULT_HOMEOWNER_KEYWORDS = "thanks,question,approve,concern,check,when,can you"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Postgres settings
    DATABASE_URL: str | None = None

    # Redis settings (history cursors for push notifications)
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20
    REDIS_SOCKET_TIMEOUT: float = 10.0

    # Gmail settings
    GMAIL_API_BASE_URL: str = "https://gmail.googleapis.com/gmail/v1"
    GMAIL_PUBSUB_TOPIC: str | None = None
    GMAIL_WEBHOOK_TOKEN: str | None = None
    GMAIL_WATCH_RENEWAL_HOURS: float = 24.0

    # Operational endpoints
    OPERATIONS_API_KEY: str | None = None

    # Raw content storage
    S3_BUCKET: str = "nailit-email-storage"
    AWS_REGION: str = "us-east-1"

    # =================================================================
    # INGESTION SETTINGS
    # =================================================================
    INGESTION_BATCH_SIZE: int = 10
    INGESTION_BATCH_DELAY_SECONDS: float = 2.0
    INGESTION_MAX_CONCURRENCY: int = 1
    INGESTION_MAX_RETRIES: int = 3
    DISCOVERY_MAX_RESULTS: int = 1000
    DISCOVERY_PAGE_SIZE: int = 500
    REALTIME_LATENCY_CEILING_SECONDS: float = 30.0
    MEMBERSHIP_MATCH_RECIPIENTS: bool = False
    INLINE_BODY_MAX_BYTES: int = 64000

    # Thread validation heuristics
    THREAD_MAX_GAP_HOURS: float = 72.0
    THREAD_MIN_REPLY_GAP_MINUTES: float = 30.0
    CONTRACTOR_KEYWORDS: str = DEFAULT_CONTRACTOR_KEYWORDS
    HOMEOWNER_KEYWORDS: str = DEFAULT_HOMEOWNER_KEYWORDS

    # Postgres pool sizing; development shrinks it in get_db_pool_config
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0
    DB_POOL_MAX_LIFETIME: float = 3600.0
    DB_STATEMENT_TIMEOUT_SECONDS: int = 60

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def contractor_keywords(self) -> frozenset[str]:
        return _split_keywords(self.CONTRACTOR_KEYWORDS)

    def homeowner_keywords(self) -> frozenset[str]:
        return _split_keywords(self.HOMEOWNER_KEYWORDS)

    def get_db_pool_config(self) -> dict:
        """Keyword arguments for AsyncConnectionPool."""
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update({"min_size": 1, "max_size": 5, "timeout": 15.0})

        return config


def _split_keywords(raw: str) -> frozenset[str]:
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


settings = Settings()
