import logging
import os
import sys
from typing import List, Optional

from pydantic import BaseModel

LOG_HANDLER_NAME = "jewelhaven"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Runtime configuration, built once at startup and handed to every service."""

    database_url: Optional[str] = None
    database_name: str = "jewelhaven"
    jwt_secret: str = "dev-secret-change-me"
    jwt_alg: str = "HS256"
    token_expire_days: int = 7
    mpesa_api_url: str = ""
    email_api_url: str = ""
    sms_api_url: str = ""
    sms_api_token: Optional[str] = None
    sms_sender_id: str = ""
    allowed_origin: str = "https://jwl.giftedtech.co.ke"
    app_env: str = "development"
    http_timeout: float = 30.0
    mongo_transactions: bool = False
    otp_ttl_minutes: int = 10
    max_image_bytes: int = 10 * 1024 * 1024
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME", "jewelhaven"),
            jwt_secret=os.getenv("JWT_SECRET") or os.getenv("SESSION_SECRET") or "dev-secret-change-me",
            mpesa_api_url=os.getenv("MPESA_API_URL", ""),
            email_api_url=os.getenv("EMAIL_API_URL", ""),
            sms_api_url=os.getenv("SMS_API_URL", ""),
            sms_api_token=os.getenv("SMS_API_TOKEN"),
            sms_sender_id=os.getenv("SMS_SENDER_ID", ""),
            allowed_origin=os.getenv("ALLOWED_ORIGIN", "https://jwl.giftedtech.co.ke"),
            app_env=os.getenv("APP_ENV", "development"),
            http_timeout=float(os.getenv("HTTP_TIMEOUT", "30")),
            mongo_transactions=_env_bool("MONGO_TRANSACTIONS"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            port=int(os.getenv("PORT", 8000)),
        )

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def cors_origins(self) -> List[str]:
        if self.is_production:
            return [self.allowed_origin]
        return ["*"]


def setup_logging(settings: Settings) -> None:
    """Configures the root logger with a timestamped stream handler."""
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    if any(h.get_name() == LOG_HANDLER_NAME for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    handler.set_name(LOG_HANDLER_NAME)
    root.addHandler(handler)
