# settings.py
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from errors import ConfigMissing


load_dotenv()

REQUIRED_KEYS = ["TELEGRAM_BOT_TOKEN", "GUARDED_CHAT_ID", "SPREADSHEET_ID"]


class Settings(BaseModel):
    telegram_bot_token: str
    guarded_chat_id: int
    spreadsheet_id: str
    registry_range: str = "Sheet1!A2:C"
    google_credentials_file: Optional[str] = None
    admin_chat_id: Optional[int] = None
    telegram_webhook_secret: Optional[str] = None
    cancel_webhook_secret: Optional[str] = None
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    sendgrid_api_key: Optional[str] = None
    mail_from: str = "noreply@example.com"
    lapse_sweep_seconds: int = 0
    telegram_api_base: str = "https://api.telegram.org"
    sheets_api_base: str = "https://sheets.googleapis.com/v4"
    http_timeout: float = 10.0

    @property
    def stripe_enabled(self) -> bool:
        return bool(self.stripe_secret_key and self.stripe_webhook_secret)

    @property
    def mail_enabled(self) -> bool:
        return bool(self.sendgrid_api_key)


def _optional(environ, key):
    value = environ.get(key, "").strip()
    return value or None


def load_settings(environ=None) -> Settings:
    """Build Settings from the environment, raising ConfigMissing for every absent or bad key."""
    environ = os.environ if environ is None else environ
    missing = [key for key in REQUIRED_KEYS if not _optional(environ, key)]

    def parse(key, cast, default=None):
        raw = _optional(environ, key)
        if raw is None:
            return default
        try:
            return cast(raw)
        except ValueError:
            missing.append(key)
            return default

    guarded_chat_id = parse("GUARDED_CHAT_ID", int)
    admin_chat_id = parse("ADMIN_CHAT_ID", int)
    lapse_sweep_seconds = parse("LAPSE_SWEEP_SECONDS", int, 0)
    http_timeout = parse("HTTP_TIMEOUT", float, 10.0)

    if missing:
        raise ConfigMissing(missing)

    return Settings(
        telegram_bot_token=environ["TELEGRAM_BOT_TOKEN"].strip(),
        guarded_chat_id=guarded_chat_id,
        spreadsheet_id=environ["SPREADSHEET_ID"].strip(),
        registry_range=_optional(environ, "REGISTRY_RANGE") or "Sheet1!A2:C",
        google_credentials_file=_optional(environ, "GOOGLE_APPLICATION_CREDENTIALS"),
        admin_chat_id=admin_chat_id,
        telegram_webhook_secret=_optional(environ, "TELEGRAM_WEBHOOK_SECRET"),
        cancel_webhook_secret=_optional(environ, "CANCEL_WEBHOOK_SECRET"),
        stripe_secret_key=_optional(environ, "STRIPE_SECRET_KEY"),
        stripe_webhook_secret=_optional(environ, "STRIPE_WEBHOOK_SECRET"),
        sendgrid_api_key=_optional(environ, "SENDGRID_API_KEY"),
        mail_from=_optional(environ, "MAIL_FROM") or "noreply@example.com",
        lapse_sweep_seconds=max(lapse_sweep_seconds, 0),
        telegram_api_base=(_optional(environ, "TELEGRAM_API_BASE") or "https://api.telegram.org").rstrip("/"),
        sheets_api_base=(_optional(environ, "SHEETS_API_BASE") or "https://sheets.googleapis.com/v4").rstrip("/"),
        http_timeout=http_timeout,
    )
