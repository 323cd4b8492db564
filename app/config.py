"""Application configuration from environment."""
from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings
from functools import lru_cache

# Load .env from project root (parent of app/) so env vars are available everywhere
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=_env_path)


class Settings(BaseSettings):
    app_name: str = "Waitlist"
    app_env: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Base URL used for links inside emails (verify / unsubscribe / privacy policy)
    public_url: str = "http://localhost:3000"

    database_url: str = "sqlite+aiosqlite:///./waitlist.db"

    # Server-held secret for email encryption at rest. Required outside development.
    encryption_key: str = ""
    encryption_salt: str = "waitlist-email-encryption"
    verification_token_ttl_hours: int = 24

    # Operator credential for privileged routes (resend, stats, email status)
    admin_api_key: str = ""
    # X-Debug-Bypass: true is honoured only when this is enabled
    allow_debug_bypass: bool = False
    # Use the ASGI peer address as the client identity (set when running behind a trusted proxy)
    trust_client_host: bool = False
    # Silently drop signups from scripted clients (user agent or missing browser headers)
    bot_detection: bool = True

    redis_url: str = ""
    rate_limit_signup: int = 3
    rate_limit_signup_window_seconds: int = 15 * 60
    rate_limit_verification: int = 10
    rate_limit_verification_window_seconds: int = 60 * 60
    rate_limit_general: int = 30
    rate_limit_general_window_seconds: int = 60
    rate_limit_admin: int = 100
    rate_limit_admin_window_seconds: int = 60

    # auto | mailgun | sendgrid | resend | smtp
    email_provider: str = "auto"
    from_email: str = "hello@waitlist.local"
    from_name: str = "Waitlist"

    mailgun_api_key: str = ""
    mailgun_domain: str = ""
    mailgun_base_url: str = "https://api.mailgun.net"

    @field_validator("mailgun_api_key", "mailgun_domain", "mailgun_base_url", "from_email", mode="before")
    @classmethod
    def strip_mailgun(cls, v: str) -> str:
        return (v or "").strip()

    sendgrid_api_key: str = ""
    resend_api_key: str = ""

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = False

    cors_allow_origins: list[str] = ["*"]

    @field_validator("encryption_key", "admin_api_key", mode="before")
    @classmethod
    def strip_secret(cls, v: str) -> str:
        return (v or "").strip()

    @model_validator(mode="after")
    def require_encryption_key(self):
        if not self.encryption_key and not self.is_development:
            raise ValueError("ENCRYPTION_KEY environment variable is required outside development")
        return self

    @property
    def is_development(self) -> bool:
        return self.app_env.strip().lower() in ("development", "dev", "local")

    class Config:
        env_file = str(_env_path)
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()
