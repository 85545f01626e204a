from pydantic_settings import BaseSettings
from functools import lru_cache
from decimal import Decimal


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Bank Reconciliation Engine"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://bankrec_user:change_me@db:5432/bankrec_db"
    DATABASE_URL_SYNC: str = "postgresql+psycopg://bankrec_user:change_me@db:5432/bankrec_db"

    # Money handling
    DEFAULT_CURRENCY: str = "EUR"
    BALANCE_TOLERANCE: Decimal = Decimal("0.01")  # statement completeness / continuity
    RESIDUAL_TOLERANCE: Decimal = Decimal("0.01")  # residual considered settled below this

    # Import
    IMPORT_CHUNK_SIZE: int = 500  # lines flushed per batch while importing
    MAX_IMPORT_ERRORS_REPORTED: int = 10
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10MB

    # Matching
    DEFAULT_MATCHING_ORDER: str = "old_first"
    DEFAULT_PAST_MONTHS_LIMIT: int = 18
    DEFAULT_PAYMENT_TOLERANCE: Decimal = Decimal("0")
    DEFAULT_PAYMENT_TOLERANCE_TYPE: str = "percentage"
    MAX_SUGGESTIONS: int = 10

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
