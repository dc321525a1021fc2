import logging

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Paystack (hosted gateway)
    PAYSTACK_SECRET_KEY: Optional[str] = None
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"

    # Stripe (card processor)
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Checkout redirects
    FRONTEND_BASE_URL: str = "http://localhost:3000"

    # Orchestration policy
    DEFAULT_PROVIDER: str = "paystack"  # paystack | stripe
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    MANUAL_SUBSCRIPTION_DAYS: int = 30
    EXPIRY_MAX_CLOCK_SKEW_SECONDS: int = 300

    # Admin access for the transaction query surface
    ADMIN_KEY: Optional[str] = None

    model_config = SettingsConfigDict(
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
    log = logger or logging.getLogger("tierpay")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "ADMIN_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if not getattr(cfg, "PAYSTACK_SECRET_KEY", None) and not getattr(cfg, "STRIPE_SECRET_KEY", None):
        missing.append("PAYSTACK_SECRET_KEY or STRIPE_SECRET_KEY")
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
