from __future__ import annotations

import csv
import io
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from marketplace_ledger.core.request_context import set_request_context
from marketplace_ledger.models.columns import utcnow
from marketplace_ledger.models.finance import Donation, Payment, Seller1099Data, SellerBalance, SellerPayout
from marketplace_ledger.models.nonprofit import Nonprofit
from marketplace_ledger.models.order import Order
from marketplace_ledger.models.order_item import OrderItem
from marketplace_ledger.models.shop import Shop
from marketplace_ledger.services.errors import PayoutNotFound, ShopNotFound, guarded
from marketplace_ledger.services.fees import format_money, money, to_decimal
from marketplace_ledger.services.payouts import payout_to_dict
from marketplace_ledger.services.seller_ledger import lock_seller_balance

CSV_HEADERS = [
    "Order Number",
    "Date",
    "Gross Amount",
    "Platform Fee",
    "Nonprofit Donation",
    "Net Payout",
    "Status",
    "Payout ID",
]
CSV_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_seller_shop(db: Session, user_id: str) -> Shop:
    shop = db.query(Shop).filter(Shop.user_id == str(user_id)).first()
    if not shop:
        raise ShopNotFound()
    set_request_context(shop_id=str(shop.id))
    return shop


def start_of_week(now: datetime) -> datetime:
    """Sunday 00:00 of the week containing ``now``."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight - timedelta(days=(midnight.weekday() + 1) % 7)


def next_payout_date(now: datetime) -> datetime:
    """Monday of the following week; payouts run weekly on Mondays."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight - timedelta(days=midnight.weekday()) + timedelta(days=7)


def start_of_month(now: datetime, months_back: int = 0) -> datetime:
    year, month = now.year, now.month - months_back
    while month < 1:
        month += 12
        year -= 1
    return datetime(year, month, 1)


def _display_date(value: datetime) -> str:
    return f"{value:%b} {value.day}, {value:%Y}"


def growth_percentage(current, previous) -> float:
    current, previous = to_decimal(current), to_decimal(previous)
    if previous <= 0:
        return 0.0
    growth = (current - previous) / previous * 100
    return float(growth.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _sum(db: Session, column, *criteria) -> Decimal:
    value = db.query(func.coalesce(func.sum(column), 0)).filter(*criteria).scalar()
    return to_decimal(value)


def _balance_dict(balance: SellerBalance | None) -> dict:
    if balance is None:
        return {
            "available_balance": money(0),
            "pending_balance": money(0),
            "total_earned": money(0),
            "total_paid_out": money(0),
        }
    return {
        "available_balance": money(balance.available_balance),
        "pending_balance": money(balance.pending_balance),
        "total_earned": money(balance.total_earned),
        "total_paid_out": money(balance.total_paid_out),
    }


@guarded("get seller balance")
def get_seller_balance(db: Session, user_id: str) -> dict:
    shop = get_seller_shop(db, user_id)
    balance = db.query(SellerBalance).filter(SellerBalance.shop_id == shop.id).first()
    if balance is None:
        balance = lock_seller_balance(db, shop.id)
        db.commit()
    return {"shop_id": shop.id, **_balance_dict(balance)}


@guarded("get payout history")
def get_payout_history(db: Session, user_id: str, limit: int = 50) -> list[dict]:
    shop = get_seller_shop(db, user_id)
    payouts = (
        db.query(SellerPayout)
        .filter(SellerPayout.shop_id == shop.id)
        .order_by(SellerPayout.created_at.desc(), SellerPayout.id.desc())
        .limit(limit)
        .all()
    )
    return [payout_to_dict(payout) for payout in payouts]


def _payment_row(payment: Payment) -> dict:
    order = payment.order
    return {
        "id": payment.id,
        "order_id": payment.order_id,
        "order_number": order.order_number if order else None,
        "order_date": order.created_at if order else None,
        "amount": money(payment.amount),
        "platform_fee": money(payment.platform_fee),
        "nonprofit_donation": money(payment.nonprofit_donation),
        "seller_payout": money(payment.seller_payout),
        "status": payment.status,
        "payout_id": payment.payout_id,
        "transfer_reference": payment.transfer_reference,
        "created_at": payment.created_at,
    }


def _shop_payments(db: Session, shop_id: int):
    return (
        db.query(Payment)
        .options(joinedload(Payment.order))
        .filter(Payment.shop_id == shop_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
    )


@guarded("get payout details")
def get_payout_details(db: Session, user_id: str, payout_id: int) -> dict:
    shop = get_seller_shop(db, user_id)
    # Scoped to the caller's shop; another seller's payout reads as missing.
    payout = (
        db.query(SellerPayout)
        .filter(SellerPayout.id == payout_id, SellerPayout.shop_id == shop.id)
        .first()
    )
    if not payout:
        raise PayoutNotFound(payout_id)
    payments = _shop_payments(db, shop.id).filter(Payment.payout_id == payout.id).all()
    return {**payout_to_dict(payout), "payments": [_payment_row(payment) for payment in payments]}


@guarded("get seller transactions")
def get_seller_transactions(db: Session, user_id: str, limit: int = 100) -> list[dict]:
    shop = get_seller_shop(db, user_id)
    return [_payment_row(payment) for payment in _shop_payments(db, shop.id).limit(limit).all()]


@guarded("get seller financial overview")
def get_seller_financial_overview(db: Session, user_id: str, now: datetime | None = None) -> dict:
    now = now or utcnow()
    shop = get_seller_shop(db, user_id)
    balance = db.query(SellerBalance).filter(SellerBalance.shop_id == shop.id).first()
    paid = (Payment.shop_id == shop.id, Payment.status == "PAID")
    week_start = start_of_week(now)

    this_week_orders = (
        db.query(func.count(Payment.id)).filter(*paid, Payment.created_at >= week_start).scalar() or 0
    )
    total_orders = db.query(func.count(Payment.id)).filter(*paid).scalar() or 0
    total_payouts = db.query(func.count(SellerPayout.id)).filter(SellerPayout.shop_id == shop.id).scalar() or 0
    balance_values = _balance_dict(balance)

    return {
        **balance_values,
        "this_week_earnings": money(_sum(db, Payment.seller_payout, *paid, Payment.created_at >= week_start)),
        "this_week_orders": int(this_week_orders),
        "all_time_gross": money(_sum(db, Payment.amount, *paid)),
        "all_time_fees": money(_sum(db, Payment.platform_fee, *paid)),
        "all_time_donations": money(_sum(db, Payment.nonprofit_donation, *paid)),
        "all_time_net": money(_sum(db, Payment.seller_payout, *paid)),
        "total_orders": int(total_orders),
        "total_payouts": int(total_payouts),
        "next_payout_date": _display_date(next_payout_date(now)),
        "estimated_next_payout": balance_values["available_balance"],
    }


@guarded("get 1099 data")
def get_seller_1099_data(db: Session, user_id: str, tax_year: int | None = None) -> dict:
    shop = get_seller_shop(db, user_id)
    tax_year = tax_year or utcnow().year
    row = (
        db.query(Seller1099Data)
        .filter(Seller1099Data.shop_id == shop.id, Seller1099Data.tax_year == tax_year)
        .first()
    )
    if row is None:
        return {"tax_year": tax_year, "gross_payments": money(0), "transaction_count": 0, "reporting_required": False}
    return {
        "tax_year": row.tax_year,
        "gross_payments": money(row.gross_payments),
        "transaction_count": int(row.transaction_count or 0),
        "reporting_required": bool(row.reporting_required),
    }


def render_transactions_csv(payments) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for payment in payments:
        order = payment.order
        writer.writerow(
            [
                order.order_number if order else "",
                order.created_at.strftime(CSV_DATE_FORMAT) if order and order.created_at else "",
                format_money(payment.amount),
                format_money(payment.platform_fee),
                format_money(payment.nonprofit_donation),
                format_money(payment.seller_payout),
                payment.status,
                payment.payout_id if payment.payout_id is not None else "Pending",
            ]
        )
    return buffer.getvalue().rstrip("\n")


@guarded("export transactions")
def export_transactions_csv(db: Session, user_id: str) -> str:
    shop = get_seller_shop(db, user_id)
    return render_transactions_csv(_shop_payments(db, shop.id).all())


@guarded("get platform financial overview")
def get_platform_financial_overview(db: Session, now: datetime | None = None) -> dict:
    now = now or utcnow()
    this_month = start_of_month(now)
    last_month = start_of_month(now, months_back=1)
    paid_orders = Order.payment_status == "PAID"

    revenue_this_month = _sum(db, Order.total, paid_orders, Order.created_at >= this_month)
    revenue_last_month = _sum(
        db, Order.total, paid_orders, Order.created_at >= last_month, Order.created_at < this_month
    )
    return {
        "total_revenue": money(_sum(db, Order.total, paid_orders)),
        "total_platform_fees": money(_sum(db, Payment.platform_fee, Payment.status == "PAID")),
        "total_seller_payouts": money(_sum(db, Payment.seller_payout, Payment.status == "PAID")),
        "total_donations": money(_sum(db, OrderItem.donation_amount)),
        "revenue_this_month": money(revenue_this_month),
        "revenue_last_month": money(revenue_last_month),
        "month_over_month_growth": growth_percentage(revenue_this_month, revenue_last_month),
    }


@guarded("get revenue trends")
def get_revenue_trends(db: Session, months: int = 12, now: datetime | None = None) -> list[dict]:
    """Monthly paid revenue, oldest month first, including months without orders."""
    now = now or utcnow()
    months = max(int(months), 1)
    month_starts = [start_of_month(now, months_back=back) for back in range(months - 1, -1, -1)]
    rows = (
        db.query(Order.created_at, Order.total)
        .filter(Order.payment_status == "PAID", Order.created_at >= month_starts[0], Order.created_at <= now)
        .all()
    )
    buckets = {(start.year, start.month): [] for start in month_starts}
    for row in rows:
        bucket = buckets.get((row.created_at.year, row.created_at.month))
        if bucket is not None:
            bucket.append(to_decimal(row.total))

    trends = []
    for start in month_starts:
        totals = buckets[(start.year, start.month)]
        revenue = sum(totals, Decimal("0"))
        trends.append(
            {
                "month": f"{start:%b %Y}",
                "month_key": f"{start:%Y-%m}",
                "revenue": money(revenue),
                "order_count": len(totals),
                "average_order_value": money(revenue / len(totals)) if totals else money(0),
            }
        )
    return trends


@guarded("get top sellers")
def get_top_sellers_by_revenue(db: Session, limit: int = 10) -> list[dict]:
    revenue = func.coalesce(func.sum(OrderItem.subtotal), 0)
    rows = (
        db.query(
            Shop.id.label("shop_id"),
            Shop.name.label("shop_name"),
            Shop.user_id.label("owner_user_id"),
            revenue.label("revenue"),
            func.count(func.distinct(OrderItem.order_id)).label("orders"),
            func.coalesce(func.sum(OrderItem.donation_amount), 0).label("donations"),
        )
        .join(OrderItem, OrderItem.shop_id == Shop.id)
        .join(Order, Order.id == OrderItem.order_id)
        .filter(Order.payment_status == "PAID")
        .group_by(Shop.id, Shop.name, Shop.user_id)
        .order_by(revenue.desc(), Shop.id.asc())
        .limit(limit)
        .all()
    )
    return [
        {
            "shop_id": row.shop_id,
            "shop_name": row.shop_name,
            "owner_user_id": row.owner_user_id,
            "total_revenue": money(to_decimal(row.revenue)),
            "total_orders": int(row.orders or 0),
            "total_donations": money(to_decimal(row.donations)),
        }
        for row in rows
    ]


@guarded("get nonprofit donation breakdown")
def get_nonprofit_donation_breakdown(db: Session, limit: int = 10) -> list[dict]:
    total = func.coalesce(func.sum(Donation.amount), 0)
    rows = (
        db.query(
            Nonprofit.id.label("nonprofit_id"),
            Nonprofit.name.label("nonprofit_name"),
            total.label("total"),
            func.count(Donation.id).label("donation_count"),
        )
        .join(Donation, Donation.nonprofit_id == Nonprofit.id)
        .join(Order, Order.id == Donation.order_id)
        .filter(Order.payment_status == "PAID", Donation.amount > 0)
        .group_by(Nonprofit.id, Nonprofit.name)
        .order_by(total.desc(), Nonprofit.id.asc())
        .limit(limit)
        .all()
    )
    return [
        {
            "nonprofit_id": row.nonprofit_id,
            "nonprofit_name": row.nonprofit_name,
            "total_donations": money(to_decimal(row.total)),
            "donation_count": int(row.donation_count or 0),
        }
        for row in rows
    ]


@guarded("get recent transactions")
def get_recent_transactions(db: Session, limit: int = 20) -> list[dict]:
    payments = (
        db.query(Payment)
        .options(joinedload(Payment.order))
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            **_payment_row(payment),
            "shop_id": payment.shop_id,
            "buyer_id": payment.order.buyer_id if payment.order else None,
        }
        for payment in payments
    ]
