import os
from dataclasses import dataclass

DB = {
    "host": os.getenv("SCRIPTURE_DB_HOST", "localhost"),
    "port": int(os.getenv("SCRIPTURE_DB_PORT", "5432")),
    "dbname": os.getenv("SCRIPTURE_DB_NAME", "scripture_chat"),
    "user": os.getenv("SCRIPTURE_DB_USER", "scripture"),
    "password": os.getenv("SCRIPTURE_DB_PASSWORD", "scripturepassword"),
}

API_TITLE = "ScriptureChat API"
API_VERSION = "0.1.0"


def _env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AppConfig:
    """Business settings handed to the reconciliation engine and quota gate."""

    daily_free_allowance: int = 5
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_price_id: str = ""
    frontend_url: str = "http://localhost:5173"
    premium_monthly_amount: int = 499
    development: bool = False


def load_config() -> AppConfig:
    return AppConfig(
        daily_free_allowance=int(os.getenv("FREE_TIER_DAILY_LIMIT", "5")),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
        stripe_price_id=os.getenv("STRIPE_PRICE_ID", ""),
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173").rstrip("/"),
        premium_monthly_amount=int(os.getenv("PREMIUM_MONTHLY_AMOUNT", "499")),
        development=os.getenv("APP_ENV", "production").lower() == "development"
        or _env_bool("APP_DEBUG"),
    )
