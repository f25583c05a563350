from __future__ import annotations

import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace_ledger.core.config import LedgerSettings
from marketplace_ledger.core.metrics import ledger_counters
from marketplace_ledger.models.columns import utcnow
from marketplace_ledger.models.finance import Donation, Payment
from marketplace_ledger.models.order import Order
from marketplace_ledger.models.order_item import OrderItem
from marketplace_ledger.models.shop import Shop
from marketplace_ledger.payments.base import PaymentRail
from marketplace_ledger.services.errors import PaymentNotCompleted, ShopNotFound, guarded
from marketplace_ledger.services.fees import FeeSplit, format_money, split_shop_subtotal, to_cents, to_decimal
from marketplace_ledger.services.inventory import LineItem, ResolvedLine, check_availability, decrement_inventory
from marketplace_ledger.services.order_events import emit_order_settled
from marketplace_ledger.services.seller_ledger import credit_seller_balance, record_tax_year_payment
from marketplace_ledger.services.transfers import enqueue_transfer

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


@dataclass
class ShopSettlement:
    """Running totals for one shop's slice of an order."""

    shop_id: int
    donation_percentage: Decimal = ZERO
    nonprofit_id: int | None = None
    lines: list[ResolvedLine] = field(default_factory=list)
    subtotal: Decimal = ZERO
    split: FeeSplit | None = None

    def add(self, line: ResolvedLine) -> None:
        self.lines.append(line)
        self.subtotal += line.subtotal


def group_lines_by_shop(lines: Iterable[ResolvedLine]) -> dict[int, ShopSettlement]:
    groups: dict[int, ShopSettlement] = {}
    for line in lines:
        groups.setdefault(line.shop_id, ShopSettlement(shop_id=line.shop_id)).add(line)
    return groups


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(6))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def compute_processing_fee(subtotal: Decimal, shipping_cost: Decimal, settings: LedgerSettings) -> Decimal:
    return (subtotal + shipping_cost) * settings.processing_fee_rate + settings.processing_fee_fixed


def _coerce_items(items: Iterable[Any]) -> list[LineItem]:
    coerced: list[LineItem] = []
    for item in items:
        if isinstance(item, LineItem):
            coerced.append(item)
        elif isinstance(item, dict):
            coerced.append(
                LineItem(
                    product_id=item["product_id"],
                    quantity=item["quantity"],
                    variant_id=item.get("variant_id"),
                )
            )
        else:
            coerced.append(LineItem(product_id=item.product_id, quantity=item.quantity, variant_id=item.variant_id))
    return coerced


def _settled_response(order: Order, *, already_settled: bool = False) -> dict:
    return {
        "order_id": order.id,
        "order_ids": [order.id],
        "order_number": order.order_number,
        "total": format_money(order.total),
        "already_settled": already_settled,
    }


def _existing_order(db: Session, payment_reference: str) -> Order | None:
    return db.query(Order).filter(Order.payment_intent_id == payment_reference).first()


def _load_shops(db: Session, groups: dict[int, ShopSettlement]) -> None:
    shops = db.query(Shop).filter(Shop.id.in_(list(groups))).all()
    by_id = {shop.id: shop for shop in shops}
    for shop_id, group in groups.items():
        shop = by_id.get(shop_id)
        if not shop:
            raise ShopNotFound(shop_id)
        group.donation_percentage = to_decimal(shop.donation_percentage or 0)
        group.nonprofit_id = shop.nonprofit_id


def _settle_shop(
    db: Session,
    order: Order,
    group: ShopSettlement,
    payment_reference: str,
    settled_at: datetime,
    settings: LedgerSettings,
) -> Payment:
    group.split = split_shop_subtotal(group.subtotal, group.donation_percentage, settings.platform_fee_rate)
    split = group.split

    payment = Payment(
        order_id=order.id,
        shop_id=group.shop_id,
        payment_intent_id=payment_reference,
        amount=group.subtotal,
        platform_fee=split.platform_fee,
        seller_payout=split.seller_payout,
        nonprofit_donation=split.donation,
        status="PAID",
        created_at=settled_at,
    )
    db.add(payment)

    if group.nonprofit_id and split.donation > 0:
        db.add(
            Donation(
                order_id=order.id,
                nonprofit_id=group.nonprofit_id,
                shop_id=group.shop_id,
                amount=split.donation,
                donor_type="SELLER_CONTRIBUTION",
                status="PENDING",
                created_at=settled_at,
            )
        )

    credit_seller_balance(db, group.shop_id, split.seller_payout)
    record_tax_year_payment(db, group.shop_id, group.subtotal, settled_at.year, settings)
    db.flush()

    enqueue_transfer(
        db,
        order_id=order.id,
        shop_id=group.shop_id,
        payment_id=payment.id,
        amount=split.seller_payout,
    )
    return payment


@guarded("settle order")
def settle_order(
    db: Session,
    buyer_id: str,
    items: Iterable[Any],
    shipping_address: dict | None,
    payment_reference: str,
    *,
    rail: PaymentRail,
    settings: LedgerSettings,
    shipping_cost=ZERO,
    schedule_event: Callable[..., Any] | None = None,
) -> dict:
    """Turn one captured buyer payment into per-shop ledger state.

    Everything from the Order row to the last inventory decrement happens in a
    single transaction: any failure rolls back every shop. Transfers to sellers
    are only queued here and are dispatched once the commit is done.

    With ``schedule_event`` (for example ``BackgroundTasks.add_task``) the
    ``order.settled`` event is handed to the scheduler instead of being
    delivered inline.
    """
    payment = rail.retrieve_payment(payment_reference)
    if not payment.succeeded:
        logger.info("settlement refused: payment %s is %s", payment_reference, payment.status)
        raise PaymentNotCompleted()

    existing = _existing_order(db, payment_reference)
    if existing:
        logger.info("payment %s already settled as order %s", payment_reference, existing.order_number)
        return _settled_response(existing, already_settled=True)

    lines = check_availability(db, _coerce_items(items))
    groups = group_lines_by_shop(lines)
    _load_shops(db, groups)

    subtotal = sum((line.subtotal for line in lines), ZERO)
    shipping = to_decimal(shipping_cost)
    processing_fee = compute_processing_fee(subtotal, shipping, settings)
    total = subtotal + shipping + processing_fee

    if payment.amount_received and abs(to_cents(payment.amount_received) - to_cents(total)) > 1:
        logger.warning(
            "captured amount %s differs from order total %s for payment %s",
            format_money(payment.amount_received),
            format_money(total),
            payment_reference,
        )

    settled_at = utcnow()
    order = Order(
        order_number=generate_order_number(),
        buyer_id=str(buyer_id),
        status="PROCESSING",
        payment_status="PAID",
        payment_intent_id=payment_reference,
        subtotal=subtotal,
        shipping_cost=shipping,
        processing_fee=processing_fee,
        tax=ZERO,
        total=total,
        nonprofit_donation=ZERO,
        shipping_address_json=shipping_address,
        created_at=settled_at,
    )
    db.add(order)
    try:
        db.flush()
    except IntegrityError:
        # A concurrent request settled the same payment first.
        db.rollback()
        existing = _existing_order(db, payment_reference)
        if existing is None:
            raise
        return _settled_response(existing, already_settled=True)

    # Shops are processed in id order so concurrent settlements lock balances consistently.
    for shop_id in sorted(groups):
        _settle_shop(db, order, groups[shop_id], payment_reference, settled_at, settings)

    for line in sorted(lines, key=lambda entry: entry.stock_key):
        group = groups[line.shop_id]
        db.add(
            OrderItem(
                order_id=order.id,
                product_id=line.product_id,
                variant_id=line.variant_id,
                shop_id=line.shop_id,
                quantity=line.quantity,
                price_at_purchase=line.unit_price,
                subtotal=line.subtotal,
                donation_amount=line.subtotal * group.donation_percentage / HUNDRED,
                created_at=settled_at,
            )
        )
        decrement_inventory(db, line)

    order.nonprofit_donation = sum((group.split.donation for group in groups.values()), ZERO)
    db.commit()
    db.refresh(order)

    ledger_counters.incr("settlements.succeeded")
    logger.info(
        "order settled order=%s shops=%s subtotal=%s donation=%s",
        order.order_number,
        len(groups),
        format_money(subtotal),
        format_money(order.nonprofit_donation),
        extra={"order_id": order.id},
    )
    emit_order_settled(order, list(groups), schedule=schedule_event)
    return _settled_response(order)
