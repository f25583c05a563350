from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import exists, or_, update
from sqlalchemy.orm import Session

from marketplace_ledger.core.config import LedgerSettings
from marketplace_ledger.core.metrics import ledger_counters
from marketplace_ledger.models.columns import utcnow
from marketplace_ledger.models.finance import Payment
from marketplace_ledger.models.order import Order
from marketplace_ledger.models.shop import SellerConnectedAccount
from marketplace_ledger.models.transfer import PayoutTransfer
from marketplace_ledger.payments.base import ConnectedAccountStatus, PaymentRail, PayoutRailError
from marketplace_ledger.services.errors import NotFound, guarded
from marketplace_ledger.services.fees import format_money, to_cents, to_decimal
from marketplace_ledger.services.seller_ledger import debit_paid_out

logger = logging.getLogger(__name__)

CLAIMABLE_STATUSES = ("queued", "failed", "skipped")
RETRY_STATUSES = ("queued", "failed")
STALE_SUBMISSION_AFTER = timedelta(minutes=15)


@dataclass
class TransferResult:
    status: str  # accepted / skipped / failed
    transfer_id: int | None = None
    external_transfer_id: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "transfer_id": self.transfer_id,
            "external_transfer_id": self.external_transfer_id,
            "reason": self.reason,
        }


def transfer_idempotency_key(order_reference: int | str, shop_id: int) -> str:
    return f"transfer-{order_reference}-{shop_id}"


def enqueue_transfer(
    db: Session,
    *,
    order_id: int,
    shop_id: int,
    amount,
    payment_id: int | None = None,
) -> PayoutTransfer:
    """Record a pending transfer in the caller's transaction, or return the existing one."""
    existing = (
        db.query(PayoutTransfer)
        .filter(PayoutTransfer.order_id == order_id, PayoutTransfer.shop_id == shop_id)
        .first()
    )
    if existing:
        return existing
    transfer = PayoutTransfer(
        order_id=order_id,
        shop_id=shop_id,
        payment_id=payment_id,
        amount=to_decimal(amount),
        idempotency_key=transfer_idempotency_key(order_id, shop_id),
        status="queued",
        attempts=0,
    )
    db.add(transfer)
    return transfer


def apply_account_status(account: SellerConnectedAccount, status: ConnectedAccountStatus) -> None:
    account.charges_enabled = bool(status.charges_enabled)
    account.payouts_enabled = bool(status.payouts_enabled)
    account.onboarding_completed = bool(status.details_submitted)
    account.status = "active" if status.details_submitted else "pending"


def _finish(db: Session, transfer: PayoutTransfer, status: str, reason: str | None = None) -> TransferResult:
    transfer.status = status
    transfer.last_error = reason if status in {"failed", "skipped"} else None
    db.commit()
    ledger_counters.incr(f"transfers.{status}")
    log = logger.warning if status == "failed" else logger.info
    log(
        "transfer %s shop=%s order=%s amount=%s reason=%s",
        status,
        transfer.shop_id,
        transfer.order_id,
        format_money(transfer.amount),
        reason,
        extra={"order_id": transfer.order_id, "transfer_id": transfer.id},
    )
    return TransferResult(
        status=status,
        transfer_id=transfer.id,
        external_transfer_id=transfer.external_transfer_id,
        reason=reason,
    )


def dispatch_transfer(
    db: Session,
    transfer_id: int,
    *,
    rail: PaymentRail,
    settings: LedgerSettings,
) -> TransferResult:
    """Push one queued transfer to the payout rail.

    The row is claimed and the claim committed before the network call, so no
    database lock is held while the rail responds. Ledger state never depends
    on the outcome except when the rail accepts the transfer: only then is the
    amount moved from the available balance to total paid out.
    """
    transfer = db.query(PayoutTransfer).filter(PayoutTransfer.id == transfer_id).first()
    if not transfer:
        raise NotFound(f"Transfer {transfer_id} not found")

    if transfer.status == "accepted":
        return TransferResult(
            status="accepted",
            transfer_id=transfer.id,
            external_transfer_id=transfer.external_transfer_id,
        )

    if not settings.auto_transfers_enabled:
        return _finish(db, transfer, "skipped", "Automatic transfers are disabled; manual payout required")

    account = (
        db.query(SellerConnectedAccount)
        .filter(SellerConnectedAccount.shop_id == transfer.shop_id)
        .first()
    )
    if not account:
        return _finish(db, transfer, "skipped", "No connected payout account for shop")

    # Batching locks the same payment row, so only one of the two can take it.
    payment_id = transfer.payment_id
    if payment_id:
        payment = (
            db.query(Payment)
            .filter(Payment.id == payment_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if payment is not None and payment.payout_id is not None:
            return _finish(db, transfer, "skipped", f"Payment already batched in payout {payment.payout_id}")

    claim = update(PayoutTransfer).where(
        PayoutTransfer.id == transfer.id,
        PayoutTransfer.status.in_(CLAIMABLE_STATUSES),
    )
    if payment_id:
        claim = claim.where(
            ~exists().where(Payment.id == payment_id, Payment.payout_id.isnot(None))
        )
    claimed = db.execute(
        claim.values(status="submitting", attempts=PayoutTransfer.attempts + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount
    if claimed != 1:
        db.rollback()
        batched_in = (
            db.query(Payment.payout_id).filter(Payment.id == payment_id).scalar()
            if payment_id
            else None
        )
        transfer = db.query(PayoutTransfer).filter(PayoutTransfer.id == transfer_id).one()
        if batched_in is not None and transfer.status in CLAIMABLE_STATUSES:
            return _finish(db, transfer, "skipped", f"Payment already batched in payout {batched_in}")
        return TransferResult(status="skipped", transfer_id=transfer_id, reason="Transfer already in progress")
    db.commit()

    transfer = db.query(PayoutTransfer).filter(PayoutTransfer.id == transfer_id).one()
    account_id = account.external_account_id
    order_number = db.query(Order.order_number).filter(Order.id == transfer.order_id).scalar()
    amount_cents = to_cents(transfer.amount)
    # End the read transaction; nothing is locked during the rail calls.
    db.commit()

    account_status: ConnectedAccountStatus | None = None
    receipt = None
    error: str | None = None
    try:
        account_status = rail.retrieve_account(account_id)
        if account_status.payouts_enabled:
            receipt = rail.create_transfer(
                amount_cents=amount_cents,
                destination=account_id,
                idempotency_key=transfer.idempotency_key,
                description=f"Payout for order {order_number}",
                metadata={
                    "orderId": transfer.order_id,
                    "orderNumber": order_number,
                    "shopId": transfer.shop_id,
                },
            )
    except PayoutRailError as exc:
        error = exc.message
    except Exception as exc:
        logger.exception("unexpected payout rail failure transfer=%s", transfer_id)
        error = str(exc) or exc.__class__.__name__

    transfer = db.query(PayoutTransfer).filter(PayoutTransfer.id == transfer_id).one()
    if account_status is not None:
        account = (
            db.query(SellerConnectedAccount)
            .filter(SellerConnectedAccount.shop_id == transfer.shop_id)
            .one()
        )
        apply_account_status(account, account_status)

    if error is not None:
        return _finish(db, transfer, "failed", error)
    if receipt is None:
        return _finish(db, transfer, "skipped", "Payout account not ready for payouts yet")

    transfer.external_transfer_id = receipt.id
    if transfer.payment_id:
        db.query(Payment).filter(Payment.id == transfer.payment_id).update(
            {Payment.transfer_reference: receipt.id}, synchronize_session=False
        )
    debit_paid_out(db, transfer.shop_id, transfer.amount)
    return _finish(db, transfer, "accepted")


@guarded("submit transfer")
def submit_transfer(
    db: Session,
    shop_id: int,
    amount,
    order_reference: int,
    *,
    rail: PaymentRail,
    settings: LedgerSettings,
) -> dict:
    """Submit (or resubmit) the transfer of one shop's share of an order.

    Repeated calls for the same order and shop reuse the same outbox row and
    idempotency key, so a shop is never paid twice for one order.
    """
    payment = (
        db.query(Payment)
        .filter(Payment.order_id == order_reference, Payment.shop_id == shop_id)
        .first()
    )
    if not payment:
        raise NotFound(f"No payment for order {order_reference} and shop {shop_id}")
    transfer = enqueue_transfer(
        db,
        order_id=order_reference,
        shop_id=shop_id,
        amount=amount if amount is not None else payment.seller_payout,
        payment_id=payment.id,
    )
    db.commit()
    return dispatch_transfer(db, transfer.id, rail=rail, settings=settings).to_dict()


def dispatch_order_transfers(db: Session, order_id: int, *, rail: PaymentRail, settings: LedgerSettings) -> list[TransferResult]:
    """Best-effort dispatch of every queued transfer of a freshly settled order."""
    transfer_ids = [
        row.id
        for row in db.query(PayoutTransfer.id)
        .filter(PayoutTransfer.order_id == order_id, PayoutTransfer.status == "queued")
        .order_by(PayoutTransfer.id.asc())
        .all()
    ]
    results: list[TransferResult] = []
    for transfer_id in transfer_ids:
        try:
            results.append(dispatch_transfer(db, transfer_id, rail=rail, settings=settings))
        except Exception:
            db.rollback()
            logger.exception("transfer dispatch crashed transfer=%s order=%s", transfer_id, order_id)
            results.append(TransferResult(status="failed", transfer_id=transfer_id, reason="dispatch error"))
    return results


@guarded("dispatch pending transfers")
def dispatch_pending_transfers(
    db: Session,
    *,
    rail: PaymentRail,
    settings: LedgerSettings,
    limit: int = 50,
) -> dict:
    stale_before = utcnow() - STALE_SUBMISSION_AFTER
    candidates = (
        db.query(PayoutTransfer.id)
        .filter(
            or_(
                PayoutTransfer.status.in_(RETRY_STATUSES),
                (PayoutTransfer.status == "submitting") & (PayoutTransfer.updated_at < stale_before),
            )
        )
        .order_by(PayoutTransfer.id.asc())
        .limit(limit)
        .all()
    )
    if candidates:
        # Stale submissions are retried under the same idempotency key.
        db.execute(
            update(PayoutTransfer)
            .where(PayoutTransfer.status == "submitting", PayoutTransfer.updated_at < stale_before)
            .values(status="failed", last_error="submission interrupted")
            .execution_options(synchronize_session=False)
        )
        db.commit()

    summary = {"accepted": 0, "skipped": 0, "failed": 0}
    for row in candidates:
        result = dispatch_transfer(db, row.id, rail=rail, settings=settings)
        summary[result.status] = summary.get(result.status, 0) + 1
    summary["processed"] = len(candidates)
    return summary


@guarded("sync connected account")
def sync_connected_account(db: Session, shop_id: int, *, rail: PaymentRail) -> dict:
    account = (
        db.query(SellerConnectedAccount)
        .filter(SellerConnectedAccount.shop_id == shop_id)
        .first()
    )
    if not account:
        raise NotFound(f"No connected account found for shop {shop_id}")
    account_id = account.external_account_id
    db.commit()

    status = rail.retrieve_account(account_id)
    account = (
        db.query(SellerConnectedAccount)
        .filter(SellerConnectedAccount.shop_id == shop_id)
        .one()
    )
    apply_account_status(account, status)
    db.commit()
    return {
        "account_id": account_id,
        "charges_enabled": account.charges_enabled,
        "payouts_enabled": account.payouts_enabled,
        "onboarding_completed": account.onboarding_completed,
    }


def pending_transfer_total(db: Session, shop_id: int) -> Decimal:
    rows = (
        db.query(PayoutTransfer.amount)
        .filter(PayoutTransfer.shop_id == shop_id, PayoutTransfer.status.in_(("queued", "submitting", "failed")))
        .all()
    )
    return sum((to_decimal(row.amount) for row in rows), Decimal("0"))


def run_order_transfers(session_factory, order_id: int, *, rail: PaymentRail, settings: LedgerSettings) -> list[TransferResult]:
    """Background entry point: dispatch an order's transfers on a fresh session."""
    db = session_factory()
    try:
        return dispatch_order_transfers(db, order_id, rail=rail, settings=settings)
    finally:
        db.close()
