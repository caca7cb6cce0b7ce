from pydantic_settings import BaseSettings
from pydantic import field_validator
from decimal import Decimal
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "ITC Reconciliation Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # GSTR-2B Import
    IMPORT_MAX_MALFORMED_FRACTION: float = 0.05  # Skipped records allowed before the import fails

    # Matching
    MATCH_DATE_WINDOW_DAYS: int = 45  # Books invoices within +/- N days of the 2B invoice date
    MATCH_FULL_THRESHOLD: int = 85
    MATCH_PARTIAL_THRESHOLD: int = 50
    MATCH_WEIGHT_INVOICE_NUMBER: int = 50
    MATCH_WEIGHT_DATE: int = 20
    MATCH_WEIGHT_TAXABLE_VALUE: int = 20
    MATCH_WEIGHT_TAX_AMOUNT: int = 10
    MATCH_AMOUNT_TOLERANCE_PERCENT: Decimal = Decimal("1")
    MATCH_TAXABLE_ZERO_CREDIT_PERCENT: Decimal = Decimal("10")  # Taxable value deviation that earns no points
    MATCH_AMOUNT_ABS_TOLERANCE: Decimal = Decimal("1.00")  # Rupee rounding tolerance

    # Reconciliation passes
    RECONCILE_MAX_WORKERS: int = 4  # Invoices matched concurrently within one pass
    RECONCILE_STALE_LOCK_MINUTES: int = 30  # PROCESSING older than this is treated as abandoned

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @field_validator('IMPORT_MAX_MALFORMED_FRACTION')
    @classmethod
    def check_fraction(cls, v):
        if not 0 <= v <= 1:
            raise ValueError("IMPORT_MAX_MALFORMED_FRACTION must be between 0 and 1")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
