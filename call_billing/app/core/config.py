from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class Settings(BaseSettings):
    app_name: str = "Call Billing API"
    database_url: str = "sqlite:///call_billing.db"
    log_level: str = "INFO"

    # Telephony provider webhook signing secret
    twilio_auth_token: str = ""
    public_base_url: Optional[str] = None

    # Auth provider bearer tokens
    auth_jwt_secret: str = ""
    auth_jwt_algorithm: str = "HS256"
    auth_jwt_audience: Optional[str] = None

    # Payment provider
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    app_url: str = "http://localhost:3000"

    pricing_webhook_secret: str = ""

    markup_cache_ttl_seconds: float = 30.0
    transaction_max_attempts: int = 3
    pricing_batch_size: int = 10

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CALLBILL_",
        extra="ignore",
    )

    @property
    def payments_enabled(self) -> bool:
        return bool(self.stripe_secret_key and self.stripe_webhook_secret)

    def validate_required_secrets(self) -> None:
        missing = [
            name
            for name in ("twilio_auth_token", "auth_jwt_secret")
            if not getattr(self, name)
        ]
        if missing:
            names = ", ".join(f"CALLBILL_{name.upper()}" for name in missing)
            raise ConfigurationError(f"Missing required configuration: {names}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
