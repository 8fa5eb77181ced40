import os
from decimal import Decimal
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseModel):
    """Process-wide configuration, built once at startup and passed around explicitly."""

    model_config = ConfigDict(frozen=True)

    database_url: str
    stripe_secret_key: str
    stripe_publishable_key: str
    stripe_webhook_secret: str
    jwt_secret: str
    platform_fee_rate: Decimal = Decimal("0.10")
    currency: str = "usd"
    gateway_timeout: float = 10.0
    gateway_response_max_length: int = 4990
    log_level: str = "INFO"


def _require(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"{name} is not set. Check your .env file.")
    return value


def load_settings(env_path: Optional[Path] = None) -> Settings:
    # Force-load .env (Windows-safe, reload-safe)
    load_dotenv(dotenv_path=env_path or BASE_DIR / ".env")

    return Settings(
        database_url=_require("DATABASE_URL"),
        stripe_secret_key=_require("STRIPE_SECRET_KEY"),
        stripe_publishable_key=_require("STRIPE_PUBLISHABLE_KEY"),
        stripe_webhook_secret=_require("STRIPE_WEBHOOK_SECRET"),
        jwt_secret=_require("JWT_SECRET"),
        platform_fee_rate=Decimal(os.getenv("PLATFORM_FEE_RATE", "0.10")),
        currency=os.getenv("PAYMENT_CURRENCY", "usd").lower(),
        gateway_timeout=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
