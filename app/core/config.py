from pydantic_settings import BaseSettings
from typing import List, Literal, Optional
import secrets

class Settings(BaseSettings):
    PROJECT_NAME: str = "Uplift IELTS Billing API"
    VERSION: str = "1.0.0"

    # DB URL
    DATABASE_URL: str

    # Security
    SECRET_KEY: str = secrets.token_urlsafe(32)
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Rate Limiting
    RATE_LIMIT_PER_MINUTE: int = 10

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # Payme Merchant API
    PAYME_MERCHANT_ID: str
    PAYME_MERCHANT_KEY: str
    PAYME_API_URL: str
    PAYME_CALLBACK_URL: str
    PAYME_AUTH_HEADER: Literal["authorization", "x-auth"] = "authorization"
    PAYME_SIGNATURE_MODE: Literal["hmac", "key"] = "key"
    PAYME_TEST_MODE: bool = True
    PAYME_TRANSACTION_TIMEOUT_MS: int = 43_200_000  # 12 hours
    PAYME_MIN_AMOUNT: int = 1_000  # tiyin
    PAYME_MAX_AMOUNT: int = 100_000_000  # tiyin
    PAYME_INVALID_TEST_ORDER_IDS: List[str] = ["teststs", "invalid_order", "test_invalid_order"]
    PAYME_IKPU_CODE: str = "10899002001000000"
    PAYME_PACKAGE_CODE: str = "1545643"
    PAYME_VAT_PERCENT: int = 0

    # Frontend
    CLIENT_URL: Optional[str] = None

    # Free plan seeded on startup
    FREE_PLAN_TITLE: str = "Free"
    FREE_PLAN_DURATION_DAYS: int = 30
    FREE_PLAN_MAX_SUBMISSIONS: int = 3

    class Config:
        case_sensitive = True
        env_file = ".env"

settings = Settings()
