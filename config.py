"""
Runtime configuration

Values come from the process environment (a local .env file is loaded first).
"""

import os
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


def _origins(raw: str) -> List[str]:
    return [o.strip() for o in raw.split(",") if o.strip()]


ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
IS_PRODUCTION = ENVIRONMENT == "production"
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = _origins(os.getenv("CORS_ORIGINS", "*"))

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# Orders
CURRENCY = os.getenv("CURRENCY", "NGN").upper()
SHIPPING_FLAT_RATE = _float("SHIPPING_FLAT_RATE", 1500.0)
FREE_SHIPPING_THRESHOLD = _float("FREE_SHIPPING_THRESHOLD", None)
TAX_RATE = _float("TAX_RATE", 0.0)  # percent of subtotal
STOCK_UPDATE_ATTEMPTS = int(os.getenv("STOCK_UPDATE_ATTEMPTS", 5))

# Pagination
DEFAULT_PAGE_SIZE = int(os.getenv("DEFAULT_PAGE_SIZE", 20))
MAX_PAGE_SIZE = int(os.getenv("MAX_PAGE_SIZE", 100))

# Paystack
PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY", "")
PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
PAYMENT_TIMEOUT = _float("PAYMENT_TIMEOUT", 10.0)
CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3000")

# Email
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", 587))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
EMAIL_FROM = os.getenv("EMAIL_FROM", "noreply@folastore.com")

# Bootstrap admin, created at startup when no admin exists yet
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
