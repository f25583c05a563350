from decimal import Decimal
from unittest.mock import patch

from fastapi import BackgroundTasks

from marketplace_ledger.models.finance import Donation, Payment, Seller1099Data, SellerBalance
from marketplace_ledger.models.order import Order
from marketplace_ledger.models.order_item import OrderItem
from marketplace_ledger.models.product import Product
from marketplace_ledger.models.transfer import PayoutTransfer
from marketplace_ledger.payments.mock_provider import MockPaymentRail
from marketplace_ledger.services.event_bus import event_bus
from marketplace_ledger.services.fees import money
from marketplace_ledger.services.inventory import LineItem, check_availability
from marketplace_ledger.services.order_events import ORDER_SETTLED
from marketplace_ledger.services.settlement import (
    compute_processing_fee,
    generate_order_number,
    group_lines_by_shop,
    settle_order,
)
from tests.fixtures_data import SHIPPING_ADDRESS, TWO_SHOP_CART, build_session, ledger_settings, seed_marketplace


def _settle(db, rail=None, items=TWO_SHOP_CART, reference="pi_1", settings=None, **kwargs):
    return settle_order(
        db,
        "buyer-1",
        items,
        SHIPPING_ADDRESS,
        reference,
        rail=rail or MockPaymentRail(),
        settings=settings or ledger_settings(),
        **kwargs,
    )


def _stock(db, product_id):
    return db.query(Product.inventory_quantity).filter(Product.id == product_id).scalar()


def test_order_number_format():
    number = generate_order_number()

    prefix, millis, suffix = number.split("-")
    assert prefix == "ORD"
    assert millis.isdigit()
    assert len(suffix) == 6
    assert suffix.isalnum() and suffix.upper() == suffix


def test_processing_fee_applies_to_subtotal_and_shipping():
    fee = compute_processing_fee(Decimal("140"), Decimal("10"), ledger_settings())

    assert fee == Decimal("4.650")


def test_group_lines_by_shop_accumulates_subtotals():
    db, _ = build_session()
    seed_marketplace(db)
    lines = check_availability(
        db,
        [LineItem(product_id=10, quantity=2), LineItem(product_id=20, quantity=1), LineItem(product_id=30, quantity=1)],
    )

    groups = group_lines_by_shop(lines)

    assert sorted(groups) == [1, 2]
    assert groups[1].subtotal == Decimal("200.00")
    assert groups[2].subtotal == Decimal("52.00")
    assert len(groups[2].lines) == 2


def test_multi_shop_settlement_writes_per_shop_ledger():
    db, _ = build_session()
    seed_marketplace(db)

    result = _settle(db)

    assert result.success is True
    order = db.query(Order).one()
    assert result.data["order_id"] == order.id
    assert result.data["order_ids"] == [order.id]
    assert result.data["already_settled"] is False
    assert money(order.subtotal) == Decimal("140.00")
    assert money(order.processing_fee) == Decimal("4.36")
    assert result.data["total"] == "144.36"
    assert money(order.nonprofit_donation) == Decimal("5.00")
    assert order.shipping_address_json["city"] == "Springfield"

    payments = {payment.shop_id: payment for payment in db.query(Payment).all()}
    assert money(payments[1].platform_fee) == Decimal("6.50")
    assert money(payments[1].nonprofit_donation) == Decimal("5.00")
    assert money(payments[1].seller_payout) == Decimal("88.50")
    assert money(payments[2].seller_payout) == Decimal("37.40")
    assert sum(money(payment.amount) for payment in payments.values()) == Decimal("140.00")
    split_total = sum(
        payment.platform_fee + payment.nonprofit_donation + payment.seller_payout
        for payment in payments.values()
    )
    assert abs(split_total - order.subtotal) <= Decimal("0.01") * len(payments)

    balances = {balance.shop_id: balance for balance in db.query(SellerBalance).all()}
    assert money(balances[1].available_balance) == Decimal("88.50")
    assert money(balances[1].total_earned) == Decimal("88.50")
    assert money(balances[2].available_balance) == Decimal("37.40")

    donation = db.query(Donation).one()
    assert donation.nonprofit_id == 1
    assert donation.donor_type == "SELLER_CONTRIBUTION"
    assert donation.status == "PENDING"
    assert money(donation.amount) == Decimal("5.00")

    items = db.query(OrderItem).order_by(OrderItem.product_id).all()
    assert [money(item.donation_amount) for item in items] == [Decimal("5.00"), Decimal("0.00")]

    transfers = db.query(PayoutTransfer).order_by(PayoutTransfer.shop_id).all()
    assert [(transfer.status, transfer.idempotency_key) for transfer in transfers] == [
        ("queued", f"transfer-{order.id}-1"),
        ("queued", f"transfer-{order.id}-2"),
    ]
    assert _stock(db, 10) == 4
    assert _stock(db, 20) == 0


def test_uncompleted_payment_writes_nothing():
    db, _ = build_session()
    seed_marketplace(db)
    rail = MockPaymentRail()
    rail.set_payment("pi_pending", "requires_payment_method")

    result = _settle(db, rail=rail, reference="pi_pending")

    assert result.success is False
    assert result.error == "Payment not completed"
    assert result.to_dict() == {"success": False, "error": "Payment not completed"}
    assert db.query(Order).count() == 0
    assert db.query(Payment).count() == 0
    assert db.query(SellerBalance).count() == 0
    assert _stock(db, 10) == 5


def test_same_payment_reference_settles_once():
    db, _ = build_session()
    seed_marketplace(db)
    rail = MockPaymentRail()

    first = _settle(db, rail=rail, items=[{"product_id": 10, "quantity": 1}])
    second = _settle(db, rail=rail, items=[{"product_id": 10, "quantity": 1}])

    assert second.success is True
    assert second.data["already_settled"] is True
    assert second.data["order_id"] == first.data["order_id"]
    assert db.query(Order).count() == 1
    assert _stock(db, 10) == 4
    balance = db.query(SellerBalance).filter(SellerBalance.shop_id == 1).one()
    assert money(balance.available_balance) == Decimal("88.50")


def test_insufficient_inventory_fails_whole_order():
    db, _ = build_session()
    seed_marketplace(db)

    result = _settle(db, items=[{"product_id": 10, "quantity": 1}, {"product_id": 20, "quantity": 2}])

    assert result.success is False
    assert result.error_kind == "conflict"
    assert result.error.startswith("Insufficient inventory for Rope Basket")
    assert db.query(Order).count() == 0
    assert _stock(db, 10) == 5


def test_losing_the_last_unit_mid_settlement_rolls_back_every_shop():
    db, _ = build_session()
    seed_marketplace(db)
    stale_lines = check_availability(db, [LineItem(product_id=10, quantity=1), LineItem(product_id=20, quantity=1)])
    # Another checkout takes the last basket after this one checked stock.
    db.query(Product).filter(Product.id == 20).update({Product.inventory_quantity: 0})
    db.commit()

    with patch("marketplace_ledger.services.settlement.check_availability", return_value=stale_lines):
        result = _settle(db)

    assert result.success is False
    assert result.error_kind == "conflict"
    assert db.query(Order).count() == 0
    assert db.query(Payment).count() == 0
    assert db.query(SellerBalance).count() == 0
    assert db.query(PayoutTransfer).count() == 0
    assert db.query(Donation).count() == 0
    assert _stock(db, 10) == 5
    assert _stock(db, 20) == 0


def test_unknown_product_is_not_found():
    db, _ = build_session()
    seed_marketplace(db)

    result = _settle(db, items=[{"product_id": 404, "quantity": 1}])

    assert result.success is False
    assert result.error_kind == "not_found"
    assert result.error == "Product 404 not found"


def test_tax_year_totals_flag_reporting_once_threshold_is_crossed():
    db, _ = build_session()
    seed_marketplace(db)
    settings = ledger_settings(tax_reporting_transaction_threshold=2)

    _settle(db, items=[{"product_id": 10, "quantity": 1}], reference="pi_a", settings=settings)
    row = db.query(Seller1099Data).filter(Seller1099Data.shop_id == 1).one()
    assert row.reporting_required is False

    _settle(db, items=[{"product_id": 10, "quantity": 1}], reference="pi_b", settings=settings)
    db.refresh(row)
    assert row.transaction_count == 2
    assert money(row.gross_payments) == Decimal("200.00")
    assert row.reporting_required is True


def test_gross_threshold_triggers_reporting():
    db, _ = build_session()
    seed_marketplace(db)

    _settle(
        db,
        items=[{"product_id": 10, "quantity": 2}],
        settings=ledger_settings(tax_reporting_gross_threshold=Decimal("200")),
    )

    row = db.query(Seller1099Data).filter(Seller1099Data.shop_id == 1).one()
    assert row.reporting_required is True


def test_settlement_emits_order_settled_event():
    db, _ = build_session()
    seed_marketplace(db)
    received = []
    event_bus.subscribe(ORDER_SETTLED, received.append)
    try:
        result = _settle(db)
    finally:
        event_bus.unsubscribe(ORDER_SETTLED, received.append)

    assert len(received) == 1
    assert received[0]["order_number"] == result.data["order_number"]
    assert received[0]["shop_ids"] == [1, 2]
    assert received[0]["nonprofit_donation"] == "5.00"


def test_settled_event_waits_for_the_scheduler():
    db, _ = build_session()
    seed_marketplace(db)
    tasks = BackgroundTasks()
    received = []
    event_bus.subscribe(ORDER_SETTLED, received.append)
    try:
        result = _settle(db, schedule_event=tasks.add_task)
        assert received == []
        db.close()
        for task in tasks.tasks:
            task.func(*task.args, **task.kwargs)
    finally:
        event_bus.unsubscribe(ORDER_SETTLED, received.append)

    assert len(tasks.tasks) == 1
    assert [payload["order_id"] for payload in received] == [result.data["order_id"]]
    assert received[0]["total"] == "144.36"
