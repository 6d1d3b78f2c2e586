from __future__ import annotations

from functools import lru_cache

from pydantic import ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEV_MASTER_KEY = "dev-master-key-32-bytes-please-change!!!"


class Settings(BaseSettings):
    """Application configuration loaded from environment variables.

    Credentials (bot token, master key, database URL) should be provided via
    environment in production; the built-in master key is accepted only when
    ``environment`` is ``development``.
    """

    app_name: str = "Telegram Zoho CRM Bot"
    environment: str = "development"
    log_level: str = "INFO"

    # Telegram
    telegram_token: str = ""
    telegram_api_url: str = "https://api.telegram.org"
    webhook_url: str | None = None  # public base URL; /telegram-webhook is appended

    # Database
    database_url: str = "sqlite:///./data/crmbot.sqlite3"

    # Zoho
    zoho_accounts_url: str = "https://accounts.zoho.com"
    zoho_api_url: str = "https://www.zohoapis.com"
    zoho_redirect_uri: str = "https://www.zoho.com/crm"
    http_timeout_seconds: float = 15.0

    # Token lifecycle
    token_expiry_margin_seconds: int = 5 * 60
    background_refresh_enabled: bool = True
    refresh_interval_seconds: float = 10 * 60
    refresh_startup_delay_seconds: float = 5
    refresh_delay_seconds: float = 1

    # Conversation
    conversation_timeout_seconds: int = 10 * 60

    # Crypto
    enc_master_key: str = DEV_MASTER_KEY

    model_config = SettingsConfigDict(env_prefix="APP_", env_file=".env", extra="ignore", validate_default=True)

    @field_validator("enc_master_key")
    @classmethod
    def require_real_master_key(cls, v: str, info: ValidationInfo) -> str:
        if not v:
            raise ValueError("APP_ENC_MASTER_KEY must not be empty")
        if v == DEV_MASTER_KEY and info.data.get("environment", "development") != "development":
            raise ValueError("APP_ENC_MASTER_KEY must be set outside development")
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
