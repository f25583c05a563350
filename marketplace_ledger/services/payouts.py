from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace_ledger.core.metrics import ledger_counters
from marketplace_ledger.models.columns import utcnow
from marketplace_ledger.models.finance import Donation, NonprofitPayout, Payment, SellerPayout
from marketplace_ledger.models.nonprofit import Nonprofit
from marketplace_ledger.models.shop import SellerConnectedAccount, Shop
from marketplace_ledger.models.transfer import PayoutTransfer
from marketplace_ledger.payments.base import PaymentRail
from marketplace_ledger.services.errors import (
    InvalidOrAlreadyPaid,
    NotAuthorized,
    NotFound,
    PayoutAlreadyReconciled,
    PayoutNotFound,
    ShopNotFound,
    ValidationFailed,
    guarded,
)
from marketplace_ledger.services.fees import format_money, money, to_cents, to_decimal
from marketplace_ledger.services.seller_ledger import debit_paid_out

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
TERMINAL_STATUSES = {"paid", "failed"}
DONOR_TYPES = ("SELLER_CONTRIBUTION", "BUYER_DIRECT", "PLATFORM_REVENUE")

# Payout states reported by the rail mapped onto batch transitions
RAIL_PAYOUT_STATUS = {
    "paid": "paid",
    "failed": "failed",
    "canceled": "failed",
}


def _unique_ids(ids: Iterable[int] | None) -> list[int]:
    return sorted({int(value) for value in ids or []})


def _validate_period(period_start: datetime, period_end: datetime) -> None:
    if period_start is None or period_end is None:
        raise ValidationFailed("Payout period is required")
    if period_start > period_end:
        raise ValidationFailed("Payout period start must be before its end")


def _load_shop(db: Session, shop_id: int, owner_user_id: str | None) -> Shop:
    shop = db.query(Shop).filter(Shop.id == shop_id).first()
    if not shop:
        raise ShopNotFound(shop_id)
    if owner_user_id is not None and shop.user_id != str(owner_user_id):
        raise NotAuthorized()
    return shop


def _in_flight_payment_ids():
    return select(PayoutTransfer.payment_id).where(
        PayoutTransfer.payment_id.isnot(None),
        PayoutTransfer.status.in_(("submitting", "accepted")),
    )


def _eligible_payments(db: Session, shop_id: int, period_start: datetime, period_end: datetime):
    """Paid payments of the shop in range that are neither batched nor transferred."""
    return db.query(Payment).filter(
        Payment.shop_id == shop_id,
        Payment.status == "PAID",
        Payment.payout_id.is_(None),
        Payment.transfer_reference.is_(None),
        Payment.created_at >= period_start,
        Payment.created_at <= period_end,
        Payment.id.notin_(_in_flight_payment_ids()),
    )


def payout_to_dict(payout: SellerPayout) -> dict:
    return {
        "id": payout.id,
        "shop_id": payout.shop_id,
        "amount": money(payout.amount),
        "status": payout.status,
        "transaction_count": payout.transaction_count,
        "period_start": payout.period_start,
        "period_end": payout.period_end,
        "external_payout_id": payout.external_payout_id,
        "failure_reason": payout.failure_reason,
        "paid_at": payout.paid_at,
        "created_at": payout.created_at,
    }


@guarded("create payout")
def create_payout_batch(
    db: Session,
    shop_id: int,
    period_start: datetime,
    period_end: datetime,
    *,
    payment_ids: Iterable[int] | None = None,
    owner_user_id: str | None = None,
) -> dict:
    """Group a shop's unpaid payments into one pending SellerPayout.

    With explicit ``payment_ids`` every id must still be eligible, otherwise
    nothing is written. Without them all eligible payments in the period are
    taken.
    """
    _validate_period(period_start, period_end)
    _load_shop(db, shop_id, owner_user_id)

    requested = _unique_ids(payment_ids)
    query = _eligible_payments(db, shop_id, period_start, period_end)
    if payment_ids is not None:
        if not requested:
            raise ValidationFailed("No payments selected for payout")
        query = query.filter(Payment.id.in_(requested))

    payments = query.order_by(Payment.id.asc()).with_for_update().all()
    if payment_ids is not None and len(payments) != len(requested):
        raise InvalidOrAlreadyPaid()
    if not payments:
        raise ValidationFailed("No unpaid payments found for this period")

    amount = sum((to_decimal(payment.seller_payout) for payment in payments), ZERO)
    payout = SellerPayout(
        shop_id=shop_id,
        amount=amount,
        status="pending",
        transaction_count=len(payments),
        period_start=period_start,
        period_end=period_end,
        created_at=utcnow(),
    )
    db.add(payout)
    db.flush()

    ids = [payment.id for payment in payments]
    linked = db.execute(
        update(Payment)
        .where(
            Payment.id.in_(ids),
            Payment.payout_id.is_(None),
            Payment.transfer_reference.is_(None),
            Payment.id.notin_(_in_flight_payment_ids()),
        )
        .values(payout_id=payout.id)
        .execution_options(synchronize_session=False)
    ).rowcount
    if linked != len(ids):
        raise InvalidOrAlreadyPaid()

    db.commit()
    ledger_counters.incr("payouts.created")
    logger.info(
        "payout batch created shop=%s payments=%s amount=%s",
        shop_id,
        len(ids),
        format_money(amount),
        extra={"payout_id": payout.id},
    )
    return {
        "payout_id": payout.id,
        "amount": money(amount),
        "transaction_count": len(ids),
        "status": payout.status,
    }


@guarded("submit payout")
def submit_payout(
    db: Session,
    payout_id: int,
    *,
    rail: PaymentRail,
    owner_user_id: str | None = None,
) -> dict:
    """Ask the rail to pay a pending batch out of the shop's connected account.

    The resulting reference is stored; the batch stays pending until the rail
    reports the final state through :func:`apply_rail_payout_event`.
    """
    payout = db.query(SellerPayout).filter(SellerPayout.id == payout_id).first()
    if not payout:
        raise PayoutNotFound(payout_id)
    _load_shop(db, payout.shop_id, owner_user_id)
    if payout.status != "pending":
        raise PayoutAlreadyReconciled(payout.id, payout.status)
    if payout.external_payout_id:
        return {"payout_id": payout.id, "external_payout_id": payout.external_payout_id, "status": payout.status}

    account = (
        db.query(SellerConnectedAccount)
        .filter(SellerConnectedAccount.shop_id == payout.shop_id)
        .first()
    )
    if not account:
        raise ValidationFailed("Shop has no connected payout account")

    account_id = account.external_account_id
    amount_cents = to_cents(payout.amount)
    shop_id = payout.shop_id
    db.commit()

    receipt = rail.create_payout(
        account_id=account_id,
        amount_cents=amount_cents,
        idempotency_key=f"payout-{payout_id}",
        metadata={"payoutId": payout_id, "shopId": shop_id},
    )

    claimed = db.execute(
        update(SellerPayout)
        .where(SellerPayout.id == payout_id, SellerPayout.external_payout_id.is_(None))
        .values(external_payout_id=receipt.id)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    if claimed != 1:
        logger.warning("payout %s already had an external reference; rail returned %s", payout_id, receipt.id)
    logger.info(
        "payout submitted shop=%s cents=%s external=%s",
        shop_id,
        amount_cents,
        receipt.id,
        extra={"payout_id": payout_id},
    )
    return {"payout_id": payout_id, "external_payout_id": receipt.id, "status": "pending"}


def _reconcile(db: Session, payout: SellerPayout, status: str, failure_reason: str | None) -> dict:
    if payout.status == status:
        return {**payout_to_dict(payout), "changed": False}
    if payout.status != "pending":
        raise PayoutAlreadyReconciled(payout.id, payout.status)

    if status == "paid":
        payout.status = "paid"
        payout.paid_at = utcnow()
        payout.failure_reason = None
        debit_paid_out(db, payout.shop_id, payout.amount)
    else:
        payout.status = "failed"
        payout.failure_reason = failure_reason or "Payout failed"
        # Released payments stay in the available balance for the next batch.
        db.execute(
            update(Payment)
            .where(Payment.payout_id == payout.id)
            .values(payout_id=None)
            .execution_options(synchronize_session=False)
        )

    db.commit()
    ledger_counters.incr(f"payouts.{payout.status}")
    logger.info(
        "payout reconciled shop=%s status=%s amount=%s",
        payout.shop_id,
        payout.status,
        format_money(payout.amount),
        extra={"payout_id": payout.id},
    )
    return {**payout_to_dict(payout), "changed": True}


def _lock_payout(db: Session, **criteria) -> SellerPayout | None:
    query = db.query(SellerPayout)
    for column, value in criteria.items():
        query = query.filter(getattr(SellerPayout, column) == value)
    return query.with_for_update().populate_existing().first()


@guarded("reconcile payout")
def reconcile_payout(
    db: Session,
    payout_id: int,
    status: str,
    failure_reason: str | None = None,
) -> dict:
    """Move a pending batch to paid or failed.

    Repeating the same terminal status is a no-op, so the balance is only
    debited once however often the rail notifies.
    """
    status = (status or "").strip().lower()
    if status not in TERMINAL_STATUSES:
        raise ValidationFailed("Payout status must be 'paid' or 'failed'")
    payout = _lock_payout(db, id=payout_id)
    if not payout:
        raise PayoutNotFound(payout_id)
    return _reconcile(db, payout, status, failure_reason)


@guarded("apply rail payout event")
def apply_rail_payout_event(
    db: Session,
    external_payout_id: str,
    rail_status: str,
    failure_message: str | None = None,
) -> dict:
    status = RAIL_PAYOUT_STATUS.get((rail_status or "").strip().lower())
    if status is None:
        return {"external_payout_id": external_payout_id, "ignored": True, "rail_status": rail_status}
    payout = _lock_payout(db, external_payout_id=external_payout_id)
    if not payout:
        raise NotFound(f"No payout with external reference {external_payout_id}")
    return _reconcile(db, payout, status, failure_message)


def _donation_entry(donation: Donation) -> dict:
    return {
        "id": donation.id,
        "amount": money(donation.amount),
        "created_at": donation.created_at,
        "donor_type": donation.donor_type,
        "shop_name": donation.shop.name if donation.shop else None,
        "order_number": donation.order.order_number if donation.order else None,
    }


@guarded("get pending donations")
def get_pending_donations(db: Session) -> list[dict]:
    """Unpaid donations grouped per nonprofit, split by donor type."""
    donations = (
        db.query(Donation)
        .filter(Donation.status == "PENDING", Donation.nonprofit_payout_id.is_(None))
        .order_by(Donation.created_at.asc(), Donation.id.asc())
        .all()
    )

    grouped: dict[int, dict] = {}
    for donation in donations:
        nonprofit = donation.nonprofit
        entry = grouped.get(donation.nonprofit_id)
        if entry is None:
            entry = {
                "nonprofit": {
                    "id": donation.nonprofit_id,
                    "name": nonprofit.name if nonprofit else None,
                    "ein": nonprofit.ein if nonprofit else None,
                },
                "total_amount": ZERO,
                "donation_count": 0,
                "oldest_donation": donation.created_at,
                "donations": [],
            }
            for donor_type in DONOR_TYPES:
                key = donor_type.lower()
                entry[f"{key}_amount"] = ZERO
                entry[f"{key}_count"] = 0
            grouped[donation.nonprofit_id] = entry

        amount = to_decimal(donation.amount)
        entry["total_amount"] += amount
        entry["donation_count"] += 1
        key = (donation.donor_type or "SELLER_CONTRIBUTION").lower()
        if f"{key}_amount" in entry:
            entry[f"{key}_amount"] += amount
            entry[f"{key}_count"] += 1
        entry["donations"].append(_donation_entry(donation))

    result = []
    for entry in grouped.values():
        entry["total_amount"] = money(entry["total_amount"])
        for donor_type in DONOR_TYPES:
            key = f"{donor_type.lower()}_amount"
            entry[key] = money(entry[key])
        result.append(entry)
    result.sort(key=lambda item: item["total_amount"], reverse=True)
    return result


@guarded("create nonprofit payout")
def create_nonprofit_payout(
    db: Session,
    nonprofit_id: int,
    donation_ids: Iterable[int],
    period_start: datetime,
    period_end: datetime,
    method: str = "check",
    notes: str | None = None,
) -> dict:
    _validate_period(period_start, period_end)
    requested = _unique_ids(donation_ids)
    if not requested:
        raise ValidationFailed("No donations selected for payout")

    nonprofit = db.query(Nonprofit).filter(Nonprofit.id == nonprofit_id).first()
    if not nonprofit:
        raise NotFound("Nonprofit not found")

    donations = (
        db.query(Donation)
        .filter(
            Donation.id.in_(requested),
            Donation.nonprofit_id == nonprofit_id,
            Donation.status == "PENDING",
            Donation.nonprofit_payout_id.is_(None),
        )
        .with_for_update()
        .all()
    )
    if len(donations) != len(requested):
        raise InvalidOrAlreadyPaid("donations")

    amount = sum((to_decimal(donation.amount) for donation in donations), ZERO)
    now = utcnow()
    payout = NonprofitPayout(
        nonprofit_id=nonprofit_id,
        amount=amount,
        status="paid",
        donation_count=len(donations),
        period_start=period_start,
        period_end=period_end,
        method=(method or "check").strip().lower(),
        notes=notes,
        paid_at=now,
        created_at=now,
    )
    db.add(payout)
    db.flush()

    marked = db.execute(
        update(Donation)
        .where(Donation.id.in_(requested), Donation.status == "PENDING", Donation.nonprofit_payout_id.is_(None))
        .values(status="PAID", nonprofit_payout_id=payout.id)
        .execution_options(synchronize_session=False)
    ).rowcount
    if marked != len(requested):
        raise InvalidOrAlreadyPaid("donations")

    db.commit()
    logger.info("nonprofit payout created nonprofit=%s donations=%s amount=%s", nonprofit_id, marked, format_money(amount))
    return {
        "payout_id": payout.id,
        "amount": money(amount),
        "donation_count": marked,
        "message": f"Payout of ${format_money(amount)} recorded for {nonprofit.name}",
    }


@guarded("get nonprofit payouts")
def get_nonprofit_payouts(db: Session, limit: int = 50) -> list[dict]:
    payouts = (
        db.query(NonprofitPayout)
        .order_by(NonprofitPayout.created_at.desc(), NonprofitPayout.id.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "id": payout.id,
            "nonprofit": {"id": payout.nonprofit_id, "name": payout.nonprofit.name if payout.nonprofit else None},
            "amount": money(payout.amount),
            "status": payout.status,
            "donation_count": payout.donation_count,
            "period_start": payout.period_start,
            "period_end": payout.period_end,
            "method": payout.method,
            "created_at": payout.created_at,
            "paid_at": payout.paid_at,
        }
        for payout in payouts
    ]

