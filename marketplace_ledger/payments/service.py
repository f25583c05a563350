from __future__ import annotations

import logging

from marketplace_ledger.core.config import (
    PAYMENT_RAIL_PROVIDER,
    STRIPE_SECRET_KEY,
    LedgerSettings,
    get_ledger_settings,
)
from marketplace_ledger.payments.base import PaymentRail
from marketplace_ledger.payments.mock_provider import MockPaymentRail
from marketplace_ledger.payments.stripe_provider import StripeConnectRail

logger = logging.getLogger(__name__)

_rail: PaymentRail | None = None


def _select_provider(settings: LedgerSettings | None = None) -> PaymentRail:
    settings = settings or get_ledger_settings()
    if PAYMENT_RAIL_PROVIDER == "stripe" and STRIPE_SECRET_KEY:
        return StripeConnectRail(
            STRIPE_SECRET_KEY,
            timeout_seconds=settings.payout_rail_timeout_seconds,
            currency=settings.currency,
        )
    if PAYMENT_RAIL_PROVIDER == "stripe":
        logger.warning("Stripe selected but STRIPE_SECRET_KEY is empty; using mock payment rail")
    return MockPaymentRail()


def get_payment_rail() -> PaymentRail:
    global _rail
    if _rail is None:
        _rail = _select_provider()
    return _rail
