"""
Application settings

All environment-driven switches are read once into an immutable Settings
object. Workflows receive it explicitly instead of consulting os.environ.
"""
import logging
import os
import sys
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

load_dotenv()

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    environment: str = "development"
    send_emails: bool = False
    log_level: str = "INFO"

    jwt_secret: str = "dev-secret-change-me"
    jwt_expires_min: int = 7 * 24 * 60

    admin_email: Optional[str] = None
    admin_password: Optional[str] = None
    admin_name: str = "Admin"
    admin_bypass_token: Optional[str] = None
    auto_create_admin: bool = False

    cors_origins: List[str] = ["*"]
    order_webhook_secret: Optional[str] = None

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    currency: str = "pkr"
    frontend_url: str = "http://localhost:5173"

    resend_api_key: Optional[str] = None
    mail_from: str = "Shop <noreply@example.com>"
    store_name: str = "Shop"

    strict_stock_reservation: bool = True
    otp_ttl_minutes: int = 10
    reset_ttl_minutes: int = 30
    low_stock_level: int = 5

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def expose_dev_codes(self) -> bool:
        """Echo one-time codes in responses when nothing is mailed outside production."""
        return not self.send_emails and not self.is_production

    @property
    def admin_configured(self) -> bool:
        return bool(self.admin_email and self.admin_password)

    @classmethod
    def from_env(cls) -> "Settings":
        origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
        admin_email = os.getenv("ADMIN_EMAIL")
        return cls(
            environment=os.getenv("APP_ENV", "development"),
            send_emails=_flag("SEND_EMAILS"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            jwt_secret=os.getenv("JWT_SECRET", "dev-secret-change-me"),
            jwt_expires_min=int(os.getenv("JWT_EXPIRES_MIN", str(7 * 24 * 60))),
            admin_email=admin_email.strip().lower() if admin_email else None,
            admin_password=os.getenv("ADMIN_PASS"),
            admin_name=os.getenv("ADMIN_NAME", "Admin"),
            admin_bypass_token=os.getenv("ADMIN_BYPASS_TOKEN") or None,
            auto_create_admin=_flag("AUTO_CREATE_ADMIN"),
            cors_origins=origins or ["*"],
            order_webhook_secret=os.getenv("ORDER_WEBHOOK_SECRET") or None,
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
            currency=os.getenv("CURRENCY", "pkr").lower(),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173").rstrip("/"),
            resend_api_key=os.getenv("RESEND_API_KEY") or None,
            mail_from=os.getenv("MAIL_FROM", "Shop <noreply@example.com>"),
            store_name=os.getenv("STORE_NAME", "Shop"),
            strict_stock_reservation=_flag("STRICT_STOCK_RESERVATION", "true"),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger with a single stdout handler."""
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stdout)
    logging.getLogger().setLevel(level)
