import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe (payment processor)
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    CURRENCY: str = "usd"

    # Checkout redirects
    CHECKOUT_SUCCESS_URL: str = "http://localhost:3000/subscription/success"
    CHECKOUT_CANCEL_URL: str = "http://localhost:3000/subscription/cancel"

    # Processor calls must finish within this budget or surface as ExternalServiceError
    PROCESSOR_TIMEOUT_SECONDS: float = 10.0

    # Admin overrides
    DOWNGRADE_CREDIT_POLICY: str = "none"  # none | prorated_credit
    REVOKE_IMMEDIATE_DEFAULT: bool = False
    ADMIN_KEY: Optional[str] = None
    ENVIRONMENT: str = "dev"  # "dev" | "test" | "prod"

    # Reconciliation job
    RECONCILE_BATCH_LIMIT: int = 500

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


DOWNGRADE_CREDIT_POLICIES = {"none", "prorated_credit"}


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("tierflow")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "ADMIN_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    policy = getattr(cfg, "DOWNGRADE_CREDIT_POLICY", "none")
    if policy not in DOWNGRADE_CREDIT_POLICIES:
        message = f"DOWNGRADE_CREDIT_POLICY must be one of {sorted(DOWNGRADE_CREDIT_POLICIES)}, got {policy!r}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
