from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace_ledger.core.config import LedgerSettings
from marketplace_ledger.models.finance import Seller1099Data, SellerBalance
from marketplace_ledger.services.errors import Conflict
from marketplace_ledger.services.fees import to_decimal

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
BALANCE_TOLERANCE = Decimal("0.01")


def _insert_if_missing(db: Session, model, values: dict[str, Any], conflict_columns: Sequence[str]) -> None:
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
    else:
        try:
            with db.begin_nested():
                db.add(model(**values))
        except IntegrityError:
            logger.debug("row already created concurrently table=%s", model.__tablename__)
        return
    db.execute(stmt)


def lock_seller_balance(db: Session, shop_id: int) -> SellerBalance:
    """Return the shop's balance row locked for update, creating it at zero."""
    db.flush()
    _insert_if_missing(
        db,
        SellerBalance,
        {
            "shop_id": shop_id,
            "available_balance": ZERO,
            "pending_balance": ZERO,
            "total_earned": ZERO,
            "total_paid_out": ZERO,
        },
        ("shop_id",),
    )
    return (
        db.query(SellerBalance)
        .filter(SellerBalance.shop_id == shop_id)
        .with_for_update()
        .populate_existing()
        .one()
    )


def credit_seller_balance(db: Session, shop_id: int, amount) -> SellerBalance:
    amount = to_decimal(amount)
    balance = lock_seller_balance(db, shop_id)
    balance.available_balance = to_decimal(balance.available_balance) + amount
    balance.total_earned = to_decimal(balance.total_earned) + amount
    return balance


def debit_paid_out(db: Session, shop_id: int, amount) -> SellerBalance:
    """Move ``amount`` out of the available balance into total paid out."""
    amount = to_decimal(amount)
    balance = lock_seller_balance(db, shop_id)
    available = to_decimal(balance.available_balance)
    if amount - available > BALANCE_TOLERANCE:
        raise Conflict(
            f"Payout of {amount} exceeds available balance {available} for shop {shop_id}"
        )
    balance.available_balance = available - amount
    balance.total_paid_out = to_decimal(balance.total_paid_out) + amount
    return balance


def balance_is_consistent(balance: SellerBalance) -> bool:
    earned_minus_paid = to_decimal(balance.total_earned) - to_decimal(balance.total_paid_out)
    held = to_decimal(balance.available_balance) + to_decimal(balance.pending_balance)
    return abs(earned_minus_paid - held) <= BALANCE_TOLERANCE


def reporting_required(gross_payments, transaction_count: int, settings: LedgerSettings) -> bool:
    return (
        to_decimal(gross_payments) >= settings.tax_reporting_gross_threshold
        or int(transaction_count) >= settings.tax_reporting_transaction_threshold
    )


def record_tax_year_payment(
    db: Session,
    shop_id: int,
    gross_amount,
    tax_year: int,
    settings: LedgerSettings,
) -> Seller1099Data:
    db.flush()
    _insert_if_missing(
        db,
        Seller1099Data,
        {
            "shop_id": shop_id,
            "tax_year": tax_year,
            "gross_payments": ZERO,
            "transaction_count": 0,
            "reporting_required": False,
        },
        ("shop_id", "tax_year"),
    )
    row = (
        db.query(Seller1099Data)
        .filter(Seller1099Data.shop_id == shop_id, Seller1099Data.tax_year == tax_year)
        .with_for_update()
        .populate_existing()
        .one()
    )
    row.gross_payments = to_decimal(row.gross_payments) + to_decimal(gross_amount)
    row.transaction_count = int(row.transaction_count or 0) + 1
    # Once a shop crosses a threshold it stays reportable for the year.
    row.reporting_required = bool(row.reporting_required) or reporting_required(
        row.gross_payments, row.transaction_count, settings
    )
    return row
