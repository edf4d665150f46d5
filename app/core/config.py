from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

# .env at project root: app/core/config.py -> app/core -> app -> root
_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _ROOT / ".env"


class Settings(BaseSettings):
    secret_key: str = "change-me-in-production"
    database_url: str = "sqlite:///./coursepay.db"
    # Comma separated origin list; "*" in development
    cors_origins: str = "*"
    environment: str = "development"
    log_level: str = "INFO"
    # Admin endpoints (coupons, reconciliation queue): X-Admin-Secret header
    admin_secret: str = ""
    # Per-IP requests per minute
    rate_limit_per_minute: int = 60
    # Payment initiation (order creation, payment retry); kept low against card testing
    rate_limit_orders_per_minute: int = 10
    # Single settlement currency, amounts in minor units
    currency: str = "VND"
    # Order code: <prefix><8 digit timestamp fragment><6 random chars>
    order_code_prefix: str = "ORD"
    order_code_max_attempts: int = 5
    # Card rail (Stripe)
    stripe_secret_key: str = ""
    stripe_publishable_key: str = ""
    stripe_webhook_secret: str = ""
    # Bank-transfer rail: shared HMAC secret + instructions shown to the payer
    bank_transfer_secret: str = ""
    bank_transfer_bank_name: str = ""
    bank_transfer_account_number: str = ""
    bank_transfer_account_name: str = ""
    # Transient gateway errors: bounded exponential backoff
    gateway_max_retries: int = 3
    gateway_retry_base_delay: float = 0.5
    # Dedup records must outlive the gateways' retry window
    settlement_event_retention_days: int = 30

    model_config = {
        "env_file": _ENV_FILE if _ENV_FILE.is_file() else ".env",
        "extra": "ignore",
    }

    @field_validator(
        "stripe_secret_key",
        "stripe_publishable_key",
        "stripe_webhook_secret",
        "bank_transfer_secret",
        "admin_secret",
        mode="before",
    )
    @classmethod
    def strip_secret(cls, v: str | None) -> str:
        """Trailing whitespace from copy/paste breaks signature checks."""
        return (v or "").strip()

    @field_validator("currency", "order_code_prefix", mode="before")
    @classmethod
    def upper(cls, v: str | None) -> str:
        return (v or "").strip().upper()


settings = Settings()


def is_card_configured() -> bool:
    return bool(settings.stripe_secret_key and settings.stripe_webhook_secret)


def is_bank_transfer_configured() -> bool:
    return bool(settings.bank_transfer_secret and settings.bank_transfer_account_number)
