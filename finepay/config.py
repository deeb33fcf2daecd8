"""Runtime configuration.

Everything comes from the environment (optionally a `.env` file at the
repository root). Online payment settings are kept per source ILS in a JSON
file named by PAYMENT_CONFIG_FILE::

    {
        "default": {
            "enabled": true,
            "handler": "paytrail",
            "merchantId": "375917",
            "secret": "...",
            "currency": "EUR",
            "productCodeMappings": "Overdue=ODUE:Lost=LOST"
        }
    }
"""

import json
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

DEFAULT_AUDIT_EVENT_TYPES = "payment"


def get_database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")
    return url


def get_enabled_audit_event_types() -> list[str]:
    raw = os.getenv("AUDIT_EVENT_TYPES", DEFAULT_AUDIT_EVENT_TYPES)
    return [item.strip() for item in raw.split(",") if item.strip()]


def get_http_timeout() -> float:
    return float(os.getenv("HTTP_TIMEOUT", "30"))


def devtools_enabled() -> bool:
    return os.getenv("DEVTOOLS_ENABLED", "").lower() in ("1", "true", "yes")


def load_payment_config() -> dict[str, dict]:
    """Return the online payment configuration keyed by source ILS."""
    path = os.getenv("PAYMENT_CONFIG_FILE")
    if not path:
        return {}
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise RuntimeError(f"Payment configuration in {path} must be an object")
    return data


def get_jwt_secret() -> str | None:
    return os.getenv("JWT_SECRET")


def get_devtools_secret() -> str:
    """Shared secret of the development echo payment service."""
    return os.getenv("DEVTOOLS_PAYMENT_SECRET", "secret")


def get_smtp_settings() -> dict:
    return {
        "host": os.getenv("SMTP_HOST"),
        "port": int(os.getenv("SMTP_PORT", "25")),
        "sender": os.getenv("REPORT_FROM_EMAIL", "noreply@localhost"),
        "admin_url": os.getenv("ADMIN_PAYMENTS_URL", ""),
    }
