import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _float_env(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _flag_env(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./storefront.db"

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_connect_country: str = "FR"
    app_url: str = ""

    uber_client_id: Optional[str] = None
    uber_client_secret: Optional[str] = None
    uber_api_base: str = "https://api.uber.com"
    uber_auth_base: str = "https://login.uber.com"
    uber_store_id: Optional[str] = None
    uber_webhook_secret: Optional[str] = None

    delivery_hours: str = ""
    business_timezone: str = "Europe/Paris"
    delivery_postal_codes: tuple = field(default_factory=tuple)
    delivery_origin_lat: Optional[float] = None
    delivery_origin_lng: Optional[float] = None
    delivery_max_distance_km: Optional[float] = None

    resend_api_key: Optional[str] = None
    notify_email_from: str = "no-reply@example.com"
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_from: Optional[str] = None
    twilio_whatsapp_from: Optional[str] = None

    webhook_latency_warning_seconds: int = 300
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        postal_codes = tuple(
            code.strip().lower()
            for code in os.getenv("DELIVERY_ALLOWED_POSTAL_CODES", "").split(",")
            if code.strip()
        )
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            stripe_webhook_secret=(os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip() or None,
            stripe_connect_country=os.getenv("STRIPE_CONNECT_COUNTRY", cls.stripe_connect_country),
            app_url=os.getenv("APP_URL", "").rstrip("/"),
            uber_client_id=os.getenv("UBER_CLIENT_ID") or None,
            uber_client_secret=os.getenv("UBER_CLIENT_SECRET") or None,
            uber_api_base=os.getenv("UBER_API_BASE", cls.uber_api_base).rstrip("/"),
            uber_auth_base=os.getenv("UBER_AUTH_BASE", cls.uber_auth_base).rstrip("/"),
            uber_store_id=os.getenv("UBER_STORE_ID") or None,
            uber_webhook_secret=os.getenv("UBER_WEBHOOK_SECRET") or None,
            delivery_hours=os.getenv("DELIVERY_ALLOWED_HOURS") or os.getenv("BUSINESS_OPENING_HOURS", ""),
            business_timezone=os.getenv("BUSINESS_TIMEZONE", cls.business_timezone),
            delivery_postal_codes=postal_codes,
            delivery_origin_lat=_float_env("DELIVERY_ORIGIN_LAT"),
            delivery_origin_lng=_float_env("DELIVERY_ORIGIN_LNG"),
            delivery_max_distance_km=_float_env("DELIVERY_MAX_DISTANCE_KM"),
            resend_api_key=os.getenv("RESEND_API_KEY") or None,
            notify_email_from=os.getenv("NOTIFY_EMAIL_FROM", cls.notify_email_from),
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID") or None,
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN") or None,
            twilio_from=os.getenv("TWILIO_FROM") or None,
            twilio_whatsapp_from=os.getenv("TWILIO_WHATSAPP_FROM") or None,
            webhook_latency_warning_seconds=_int_env("WEBHOOK_LATENCY_WARNING_SECONDS", cls.webhook_latency_warning_seconds),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            log_json=_flag_env("LOG_JSON"),
        )

    @property
    def has_uber_credentials(self) -> bool:
        return bool(self.uber_client_id and self.uber_client_secret)

    def require_uber_store_id(self) -> str:
        if self.uber_store_id:
            return self.uber_store_id
        if not self.has_uber_credentials:
            return "mock-store"
        raise RuntimeError("UBER_STORE_ID is not configured")


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
