"""
Application settings

Everything is read from the environment once at import time.
"""

import logging
import os
from typing import Dict, List

logger = logging.getLogger(__name__)


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


APP_URL = os.getenv("APP_URL", "http://localhost:3000")
SITE_NAME = os.getenv("SITE_NAME", "Tire Shop")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
UPLOAD_BASE_URL = os.getenv("UPLOAD_BASE_URL", "https://uploads.example.com")

TAX_RATE = float(os.getenv("TAX_RATE", "0.0825"))

# Session cookie
SESSION_COOKIE_NAME = "session_token"
SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS", "72"))

# Shipping
DEFAULT_SHIPPING_PROVIDER = os.getenv("DEFAULT_SHIPPING_PROVIDER", "dhl").lower()
USE_FALLBACK_RATES = _flag("USE_FALLBACK_RATES")
SHIPPING_RATE_CACHE_TTL = int(os.getenv("SHIPPING_RATE_CACHE_TTL", str(60 * 60)))
CARRIER_TIMEOUT = float(os.getenv("CARRIER_TIMEOUT", "10"))

SHIPPER_ADDRESS: Dict[str, str] = {
    "contactName": os.getenv("SHIPPER_CONTACT_NAME", ""),
    "companyName": os.getenv("SHIPPER_COMPANY_NAME", ""),
    "phone": os.getenv("SHIPPER_PHONE", ""),
    "email": os.getenv("SHIPPER_EMAIL", ""),
    "addressLine1": os.getenv("SHIPPER_ADDRESS_LINE1", ""),
    "addressLine2": os.getenv("SHIPPER_ADDRESS_LINE2", ""),
    "city": os.getenv("SHIPPER_CITY", ""),
    "state": os.getenv("SHIPPER_STATE", ""),
    "postalCode": os.getenv("SHIPPER_POSTAL_CODE", ""),
    "countryCode": os.getenv("SHIPPER_COUNTRY_CODE", "US"),
}

CARRIERS: Dict[str, Dict[str, str]] = {
    "dhl": {
        "api_key": os.getenv("DHL_API_KEY", ""),
        "api_secret": os.getenv("DHL_API_SECRET", ""),
        "account": os.getenv("DHL_ACCOUNT_NUMBER", ""),
        "api_url": os.getenv("DHL_API_URL", "https://express.api.dhl.com/mydhlapi"),
    },
    "fedex": {
        "api_key": os.getenv("FEDEX_API_KEY", ""),
        "api_secret": os.getenv("FEDEX_SECRET_KEY", ""),
        "account": os.getenv("FEDEX_ACCOUNT_NUMBER", ""),
        "api_url": os.getenv("FEDEX_API_URL", "https://apis.fedex.com"),
    },
    "gls": {
        "api_key": os.getenv("GLS_API_KEY", ""),
        "api_secret": os.getenv("GLS_API_SECRET", ""),
        "account": os.getenv("GLS_CUSTOMER_ID", ""),
        "api_url": os.getenv("GLS_API_URL", "https://api.gls-group.eu"),
    },
}

# Newsletters: 5 sign-ups per IP every 10 minutes
NEWSLETTER_RATE_LIMIT = int(os.getenv("NEWSLETTER_RATE_LIMIT", "5"))
NEWSLETTER_RATE_WINDOW = int(os.getenv("NEWSLETTER_RATE_WINDOW", str(10 * 60)))
VERIFICATION_TOKEN_HOURS = 24
# Shared secret for the scheduled-newsletter cron trigger
CRON_SECRET = os.getenv("CRON_SECRET")

EMAIL_FROM = os.getenv("SES_FROM_EMAIL", "no-reply@example.com")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")

# (name, required)
ENV_VARIABLES: List[tuple] = [
    ("DATABASE_URL", True),
    ("DATABASE_NAME", True),
    ("APP_URL", False),
    ("SES_FROM_EMAIL", False),
    ("ADMIN_EMAIL", False),
    ("DEFAULT_SHIPPING_PROVIDER", False),
]


def validate_environment() -> dict:
    missing = [key for key, required in ENV_VARIABLES if required and not os.getenv(key)]
    return {"is_valid": not missing, "missing_variables": missing}


def log_environment_validation() -> None:
    result = validate_environment()
    if result["is_valid"]:
        logger.info("Environment validation passed.")
        return
    logger.error("Environment validation failed. Missing variables:")
    for variable in result["missing_variables"]:
        logger.error("  - %s", variable)
