"""
Configuration for the Kirda tournament service

Loads settings from environment variables using python-dotenv
"""

import os
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv

env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Application
APP_BASE_URL: str = os.getenv("APP_BASE_URL", "http://localhost:5000").rstrip("/")
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

# Direct wallet credits bypass the payment gateway, keep off outside development
DIRECT_DEPOSITS_ENABLED: bool = _env_flag("DIRECT_DEPOSITS_ENABLED")

# Admin panel credentials (password stored as a werkzeug hash)
ADMIN_USERNAME: str = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD_HASH: str = os.getenv("ADMIN_PASSWORD_HASH", "")

# Cashfree payment gateway
CASHFREE_APP_ID: str = os.getenv("CASHFREE_APP_ID", "")
CASHFREE_SECRET_KEY: str = os.getenv("CASHFREE_SECRET_KEY", "")
CASHFREE_ENV: str = os.getenv("CASHFREE_ENV", "sandbox").lower()
CASHFREE_API_VERSION: str = os.getenv("CASHFREE_API_VERSION", "2023-08-01")
CASHFREE_PAYOUT_CLIENT_ID: str = os.getenv("CASHFREE_PAYOUT_CLIENT_ID", "")
CASHFREE_PAYOUT_CLIENT_SECRET: str = os.getenv("CASHFREE_PAYOUT_CLIENT_SECRET", "")
CASHFREE_TIMEOUT: float = float(os.getenv("CASHFREE_TIMEOUT", "15"))

if CASHFREE_ENV == "production":
    CASHFREE_PG_URL = "https://api.cashfree.com/pg"
    CASHFREE_PAYOUT_URL = "https://payout-api.cashfree.com"
else:
    CASHFREE_PG_URL = "https://sandbox.cashfree.com/pg"
    CASHFREE_PAYOUT_URL = "https://payout-gamma.cashfree.com"

# Ledger policy
CURRENCY = "INR"
MIN_DEPOSIT = Decimal("20.00")
MIN_WITHDRAWAL = Decimal("100.00")
REFERRAL_COMMISSION_RATE = Decimal("0.07")
REFERRAL_CODE_PREFIX = "KIRDA"
REFERRAL_CODE_LENGTH = 5
REFERRAL_CODE_ATTEMPTS = 10
ORDER_ID_PREFIX = "KIRDA"

# Reject webhooks without a valid x-webhook-signature
CASHFREE_VERIFY_WEBHOOKS: bool = _env_flag("CASHFREE_VERIFY_WEBHOOKS", "true")
