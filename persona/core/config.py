import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    ENVIRONMENT: str = "dev"  # "dev" | "test" | "prod"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Optional[str] = None  # "json" | "pretty"; default follows ENV

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Identity (tokens are minted by the auth service, we only verify them)
    JWT_SECRET: Optional[str] = None
    JWT_ALGORITHM: str = "HS256"
    AUTH_ALLOW_USER_HEADER: bool = True  # X-User-Id fallback, never honoured in prod

    # Razorpay
    RAZORPAY_KEY_ID: Optional[str] = None
    RAZORPAY_KEY_SECRET: Optional[str] = None
    RAZORPAY_API_BASE: str = "https://api.razorpay.com/v1"
    RAZORPAY_TIMEOUT_SECONDS: float = 10.0

    # Engagement
    COMMENT_MAX_CHARS: int = 0  # 0 = disabled
    REVIEW_BODY_MIN_CHARS: int = 20
    REVIEW_BODY_MAX_CHARS: int = 2000
    REVIEW_TITLE_MAX_CHARS: int = 200

    # API quota metering
    DEFAULT_FREE_QUOTA: int = 100
    API_KEY_BCRYPT_ROUNDS: int = 12
    USAGE_DAILY_WINDOW_DAYS: int = 7
    USAGE_MONTHLY_WINDOW: int = 6
    USAGE_MAX_ENDPOINTS: int = 50
    QUOTA_WARNING_PERCENT: int = 70
    QUOTA_CRITICAL_PERCENT: int = 90

    # HTTP
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("persona")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "JWT_SECRET",
        "RAZORPAY_KEY_ID",
        "RAZORPAY_KEY_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
