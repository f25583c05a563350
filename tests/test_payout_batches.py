from datetime import datetime
from decimal import Decimal

from marketplace_ledger.models.finance import Donation, NonprofitPayout, Payment, SellerBalance, SellerPayout
from marketplace_ledger.payments.mock_provider import MockPaymentRail
from marketplace_ledger.services.fees import money
from marketplace_ledger.services.payouts import (
    apply_rail_payout_event,
    create_nonprofit_payout,
    create_payout_batch,
    get_nonprofit_payouts,
    get_pending_donations,
    reconcile_payout,
    submit_payout,
)
from marketplace_ledger.services.settlement import settle_order
from marketplace_ledger.services.transfers import dispatch_order_transfers
from tests.fixtures_data import SHIPPING_ADDRESS, build_session, ledger_settings, seed_marketplace

START = datetime(2000, 1, 1)
END = datetime(2100, 1, 1)


def _settled(references=("pi_1",), with_accounts=False):
    db, _ = build_session()
    seed_marketplace(db, with_accounts=with_accounts)
    rail = MockPaymentRail()
    for reference in references:
        settle_order(
            db,
            "buyer-1",
            [{"product_id": 10, "quantity": 1}],
            SHIPPING_ADDRESS,
            reference,
            rail=rail,
            settings=ledger_settings(),
        )
    return db, rail


def _balance(db):
    return db.query(SellerBalance).filter(SellerBalance.shop_id == 1).one()


def test_batch_groups_unpaid_payments_without_touching_balance():
    db, _ = _settled(references=("pi_1", "pi_2"))

    result = create_payout_batch(db, 1, START, END)

    assert result.success is True
    assert result.data["amount"] == Decimal("177.00")
    assert result.data["transaction_count"] == 2
    assert result.data["status"] == "pending"
    payout_id = result.data["payout_id"]
    assert {payment.payout_id for payment in db.query(Payment).all()} == {payout_id}
    assert money(_balance(db).available_balance) == Decimal("177.00")


def test_explicit_payment_ids_must_all_be_unpaid():
    db, _ = _settled()
    payment_id = db.query(Payment.id).scalar()
    assert create_payout_batch(db, 1, START, END, payment_ids=[payment_id]).success is True

    again = create_payout_batch(db, 1, START, END, payment_ids=[payment_id])

    assert again.success is False
    assert again.error == "Some donations are invalid or already paid"
    assert again.error_kind == "conflict"
    assert db.query(SellerPayout).count() == 1


def test_payment_of_another_shop_is_rejected():
    db, _ = _settled()
    payment_id = db.query(Payment.id).scalar()

    result = create_payout_batch(db, 2, START, END, payment_ids=[payment_id])

    assert result.success is False
    assert result.error == "Some donations are invalid or already paid"


def test_empty_period_is_a_validation_error():
    db, _ = _settled()

    result = create_payout_batch(db, 1, datetime(2001, 1, 1), datetime(2001, 2, 1))

    assert result.success is False
    assert result.error_kind == "validation"
    assert result.error == "No unpaid payments found for this period"


def test_inverted_period_is_rejected():
    db, _ = _settled()

    result = create_payout_batch(db, 1, END, START)

    assert result.success is False
    assert result.error_kind == "validation"


def test_only_the_shop_owner_can_batch():
    db, _ = _settled()

    result = create_payout_batch(db, 1, START, END, owner_user_id="seller-2")

    assert result.success is False
    assert result.error == "Unauthorized"
    assert result.error_kind == "authorization"


def test_transferred_payments_are_not_batched_again():
    db, rail = _settled(with_accounts=True)
    rail.set_account("acct_shop_1")
    order_id = db.query(Payment.order_id).scalar()
    dispatch_order_transfers(db, order_id, rail=rail, settings=ledger_settings(auto_transfers_enabled=True))

    result = create_payout_batch(db, 1, START, END)

    assert result.success is False
    assert result.error == "No unpaid payments found for this period"


def test_reconcile_paid_debits_balance_once():
    db, _ = _settled()
    payout_id = create_payout_batch(db, 1, START, END).data["payout_id"]

    first = reconcile_payout(db, payout_id, "paid")
    second = reconcile_payout(db, payout_id, "paid")

    assert first.data["changed"] is True
    assert first.data["paid_at"] is not None
    assert second.success is True
    assert second.data["changed"] is False
    balance = _balance(db)
    assert money(balance.available_balance) == Decimal("0.00")
    assert money(balance.total_paid_out) == Decimal("88.50")
    assert money(balance.total_earned) == Decimal("88.50")


def test_reconcile_to_a_different_terminal_state_conflicts():
    db, _ = _settled()
    payout_id = create_payout_batch(db, 1, START, END).data["payout_id"]
    reconcile_payout(db, payout_id, "paid")

    result = reconcile_payout(db, payout_id, "failed", "bank rejected")

    assert result.success is False
    assert result.error == f"Payout {payout_id} already reconciled as paid"


def test_failed_payout_releases_payments_for_the_next_batch():
    db, _ = _settled()
    payout_id = create_payout_batch(db, 1, START, END).data["payout_id"]

    result = reconcile_payout(db, payout_id, "failed", "Account closed")

    assert result.data["status"] == "failed"
    assert result.data["failure_reason"] == "Account closed"
    assert db.query(Payment.payout_id).scalar() is None
    assert money(_balance(db).available_balance) == Decimal("88.50")
    assert create_payout_batch(db, 1, START, END).success is True


def test_reconcile_validates_status_and_payout():
    db, _ = _settled()

    assert reconcile_payout(db, 1, "pending").error_kind == "validation"
    missing = reconcile_payout(db, 999, "paid")
    assert missing.error_kind == "not_found"
    assert missing.error == "Payout 999 not found"


def test_submitted_payout_is_reconciled_by_rail_event():
    db, rail = _settled(with_accounts=True)
    payout_id = create_payout_batch(db, 1, START, END).data["payout_id"]

    submitted = submit_payout(db, payout_id, rail=rail, owner_user_id="seller-1")
    external_id = submitted.data["external_payout_id"]
    assert rail.payouts[f"payout-{payout_id}"].amount_cents == 8850

    ignored = apply_rail_payout_event(db, external_id, "in_transit")
    assert ignored.data["ignored"] is True

    paid = apply_rail_payout_event(db, external_id, "paid")
    assert paid.data["status"] == "paid"
    assert money(_balance(db).total_paid_out) == Decimal("88.50")


def test_canceled_rail_payout_counts_as_failed():
    db, rail = _settled(with_accounts=True)
    payout_id = create_payout_batch(db, 1, START, END).data["payout_id"]
    external_id = submit_payout(db, payout_id, rail=rail).data["external_payout_id"]

    result = apply_rail_payout_event(db, external_id, "canceled", "Canceled by platform")

    assert result.data["status"] == "failed"
    assert result.data["failure_reason"] == "Canceled by platform"


def test_submit_requires_connected_account():
    db, rail = _settled()
    payout_id = create_payout_batch(db, 1, START, END).data["payout_id"]

    result = submit_payout(db, payout_id, rail=rail)

    assert result.success is False
    assert result.error == "Shop has no connected payout account"


def _seed_donations(db):
    db.add(Donation(id=501, nonprofit_id=1, shop_id=1, amount=Decimal("100.00"), donor_type="SELLER_CONTRIBUTION"))
    db.add(Donation(id=502, nonprofit_id=1, amount=Decimal("50.00"), donor_type="PLATFORM_REVENUE"))
    db.commit()


def test_pending_donations_grouped_per_nonprofit():
    db, _ = build_session()
    seed_marketplace(db)
    _seed_donations(db)

    result = get_pending_donations(db)

    assert result.success is True
    [entry] = result.data
    assert entry["nonprofit"] == {"id": 1, "name": "River Cleanup Fund", "ein": "12-3456789"}
    assert entry["total_amount"] == Decimal("150.00")
    assert entry["donation_count"] == 2
    assert entry["seller_contribution_amount"] == Decimal("100.00")
    assert entry["platform_revenue_count"] == 1
    assert entry["buyer_direct_count"] == 0
    assert [donation["id"] for donation in entry["donations"]] == [501, 502]


def test_nonprofit_payout_marks_donations_paid():
    db, _ = build_session()
    seed_marketplace(db)
    _seed_donations(db)

    result = create_nonprofit_payout(db, 1, [501, 502], START, END, method="ACH", notes="Q3")

    assert result.success is True
    assert "$150.00" in result.data["message"]
    assert result.data["donation_count"] == 2
    assert {donation.status for donation in db.query(Donation).all()} == {"PAID"}
    payout = db.query(NonprofitPayout).one()
    assert payout.method == "ach"
    assert get_pending_donations(db).data == []
    history = get_nonprofit_payouts(db).data
    assert history[0]["nonprofit"]["name"] == "River Cleanup Fund"
    assert history[0]["amount"] == Decimal("150.00")


def test_nonprofit_payout_rejects_already_paid_donations():
    db, _ = build_session()
    seed_marketplace(db)
    _seed_donations(db)
    create_nonprofit_payout(db, 1, [501], START, END)

    result = create_nonprofit_payout(db, 1, [501, 502], START, END)

    assert result.success is False
    assert result.error == "Some donations are invalid or already paid"
    assert db.query(Donation).filter(Donation.id == 502).one().status == "PENDING"
