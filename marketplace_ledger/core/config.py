import os
from dataclasses import dataclass
from decimal import Decimal

from dotenv import load_dotenv

# Load .env from the project root
load_dotenv()


def _flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./marketplace_ledger.db")
ENV = os.getenv("ENV", "dev")
ENV_NORMALIZED = ENV.lower()
IS_DEV = ENV_NORMALIZED in {"dev", "development", "local"}
IS_PROD = ENV_NORMALIZED in {"prod", "production"}
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Fee split
PLATFORM_FEE_RATE = Decimal(os.getenv("PLATFORM_FEE_RATE", "0.065"))
PROCESSING_FEE_RATE = Decimal(os.getenv("PROCESSING_FEE_RATE", "0.029"))
PROCESSING_FEE_FIXED = Decimal(os.getenv("PROCESSING_FEE_FIXED", "0.30"))

# 1099-K thresholds
TAX_REPORTING_GROSS_THRESHOLD = Decimal(os.getenv("TAX_REPORTING_GROSS_THRESHOLD", "20000"))
TAX_REPORTING_TRANSACTION_THRESHOLD = int(os.getenv("TAX_REPORTING_TRANSACTION_THRESHOLD", "200"))

# Payout rail
ENABLE_AUTO_TRANSFERS = _flag("ENABLE_AUTO_TRANSFERS")
PAYMENT_RAIL_PROVIDER = os.getenv("PAYMENT_RAIL_PROVIDER", "").strip().lower()
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "").strip()
STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com").rstrip("/")
PAYOUT_RAIL_TIMEOUT_SECONDS = float(os.getenv("PAYOUT_RAIL_TIMEOUT_SECONDS", "10"))
CURRENCY = os.getenv("CURRENCY", "usd").strip().lower()

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "").split(",") if origin.strip()]

NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL", "").strip()
PAYOUT_WEBHOOK_SECRET = os.getenv("PAYOUT_WEBHOOK_SECRET", "").strip()

if not PAYMENT_RAIL_PROVIDER:
    PAYMENT_RAIL_PROVIDER = "stripe" if STRIPE_SECRET_KEY else "mock"


@dataclass(frozen=True)
class LedgerSettings:
    platform_fee_rate: Decimal = Decimal("0.065")
    processing_fee_rate: Decimal = Decimal("0.029")
    processing_fee_fixed: Decimal = Decimal("0.30")
    tax_reporting_gross_threshold: Decimal = Decimal("20000")
    tax_reporting_transaction_threshold: int = 200
    auto_transfers_enabled: bool = False
    payout_rail_timeout_seconds: float = 10.0
    currency: str = "usd"


def get_ledger_settings() -> LedgerSettings:
    return LedgerSettings(
        platform_fee_rate=PLATFORM_FEE_RATE,
        processing_fee_rate=PROCESSING_FEE_RATE,
        processing_fee_fixed=PROCESSING_FEE_FIXED,
        tax_reporting_gross_threshold=TAX_REPORTING_GROSS_THRESHOLD,
        tax_reporting_transaction_threshold=TAX_REPORTING_TRANSACTION_THRESHOLD,
        auto_transfers_enabled=ENABLE_AUTO_TRANSFERS,
        payout_rail_timeout_seconds=PAYOUT_RAIL_TIMEOUT_SECONDS,
        currency=CURRENCY,
    )
