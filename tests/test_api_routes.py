import hashlib
import hmac
import json
import time
from unittest.mock import patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from marketplace_ledger.core.config import get_ledger_settings
from marketplace_ledger.core.database import get_db
from marketplace_ledger.deps import get_session_factory
from marketplace_ledger.middleware.observability import ObservabilityMiddleware
from marketplace_ledger.models.finance import SellerPayout
from marketplace_ledger.models.order import Order
from marketplace_ledger.models.transfer import PayoutTransfer
from marketplace_ledger.payments.mock_provider import MockPaymentRail
from marketplace_ledger.payments.service import get_payment_rail
from marketplace_ledger.routers import webhooks
from marketplace_ledger.routers.admin_financial import router as admin_financial_router
from marketplace_ledger.routers.checkout import router as checkout_router
from marketplace_ledger.routers.internal_metrics import router as internal_metrics_router
from marketplace_ledger.routers.payouts import router as payouts_router
from marketplace_ledger.routers.seller_finance import router as seller_finance_router
from marketplace_ledger.routers.transfers import router as transfers_router
from marketplace_ledger.routers.webhooks import router as webhooks_router, verify_signature
from marketplace_ledger.services.event_bus import event_bus
from marketplace_ledger.services.order_events import ORDER_SETTLED
from tests.fixtures_data import CHECKOUT_PAYLOAD, WIDE_PERIOD, build_session, ledger_settings, seed_marketplace

BUYER = {"X-User-ID": "buyer-1"}
SELLER = {"X-User-ID": "seller-1"}
ADMIN = {"X-User-ID": "ops-1", "X-Admin": "true"}


def _build_client(settings=None) -> tuple[TestClient, object, MockPaymentRail]:
    db, session_factory = build_session()
    seed_marketplace(db, with_accounts=True)
    rail = MockPaymentRail()
    rail.set_account("acct_shop_1")

    app = FastAPI()
    for router in (
        checkout_router,
        seller_finance_router,
        payouts_router,
        transfers_router,
        admin_financial_router,
        webhooks_router,
        internal_metrics_router,
    ):
        app.include_router(router)
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_payment_rail] = lambda: rail
    app.dependency_overrides[get_ledger_settings] = lambda: settings or ledger_settings()
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    return TestClient(app), db, rail


def _checkout(client, **overrides):
    return client.post("/api/checkout/orders", json={**CHECKOUT_PAYLOAD, **overrides}, headers=BUYER)


def test_checkout_creates_order():
    client, db, _ = _build_client()

    response = _checkout(client)

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["data"]["order_number"].startswith("ORD-")
    assert body["data"]["already_settled"] is False
    assert db.query(Order).count() == 1


def test_checkout_dispatches_transfers_after_commit():
    client, db, rail = _build_client(settings=ledger_settings(auto_transfers_enabled=True))

    response = _checkout(client)

    assert response.status_code == 201
    db.expire_all()
    assert db.query(PayoutTransfer.status).scalar() == "accepted"
    assert rail.transfer_calls == 1


def test_checkout_hands_the_settled_event_to_background_tasks():
    client, _, _ = _build_client()
    received = []
    event_bus.subscribe(ORDER_SETTLED, received.append)
    try:
        response = _checkout(client)
    finally:
        event_bus.unsubscribe(ORDER_SETTLED, received.append)

    assert response.status_code == 201
    assert [payload["order_number"] for payload in received] == [response.json()["data"]["order_number"]]


def test_checkout_with_uncaptured_payment_is_rejected():
    client, db, rail = _build_client()
    rail.set_payment("pi_checkout_1", "processing")

    response = _checkout(client)

    assert response.status_code == 502
    assert response.json() == {"success": False, "error": "Payment not completed"}
    assert db.query(Order).count() == 0


def test_checkout_out_of_stock_is_a_conflict():
    client, _, _ = _build_client()

    response = _checkout(client, items=[{"product_id": 20, "quantity": 3}])

    assert response.status_code == 409
    assert response.json()["error"] == "Insufficient inventory for Rope Basket. Available: 1, Requested: 3"


def test_checkout_requires_identity_and_valid_quantities():
    client, _, _ = _build_client()

    anonymous = client.post("/api/checkout/orders", json=CHECKOUT_PAYLOAD)
    invalid = _checkout(client, items=[{"product_id": 10, "quantity": 0}])

    assert anonymous.status_code == 401
    assert invalid.status_code == 422


def test_seller_balance_and_csv_export():
    client, _, _ = _build_client()
    _checkout(client)

    balance = client.get("/api/seller/finance/balance", headers=SELLER)
    export = client.get("/api/seller/finance/transactions.csv", headers=SELLER)

    assert balance.json() == {
        "success": True,
        "data": {
            "shop_id": 1,
            "available_balance": "88.50",
            "pending_balance": "0.00",
            "total_earned": "88.50",
            "total_paid_out": "0.00",
        },
    }
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert "attachment" in export.headers["content-disposition"]
    assert export.text.splitlines()[1].endswith(",100.00,6.50,5.00,88.50,PAID,Pending")


def test_request_log_names_the_sellers_shop():
    client, _, _ = _build_client()
    client.app.add_middleware(ObservabilityMiddleware)

    with patch("marketplace_ledger.middleware.observability.logger") as log:
        balance = client.get("/api/seller/finance/balance", headers=SELLER)
        synced = client.post("/api/shops/2/connected-account/sync", headers={"X-User-ID": "seller-2"})

    assert balance.status_code == 200
    assert synced.status_code == 502
    logged = [call.kwargs["extra"] for call in log.info.call_args_list]
    assert [(extra["endpoint"], extra["shop_id"]) for extra in logged] == [
        ("/api/seller/finance/balance", "1"),
        ("/api/shops/2/connected-account/sync", "2"),
    ]


def test_seller_without_shop_gets_not_found():
    client, _, _ = _build_client()

    response = client.get("/api/seller/finance/overview", headers=BUYER)

    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "Shop not found"}


def test_payout_batch_flow_through_routes():
    client, db, _ = _build_client()
    _checkout(client)
    period = {"period_start": WIDE_PERIOD[0], "period_end": WIDE_PERIOD[1]}

    foreign = client.post("/api/shops/1/payouts", json=period, headers={"X-User-ID": "seller-2"})
    created = client.post("/api/shops/1/payouts", json=period, headers=SELLER)
    payout_id = created.json()["data"]["payout_id"]
    not_admin = client.post(f"/api/payouts/{payout_id}/reconcile", json={"status": "paid"}, headers=SELLER)
    reconciled = client.post(f"/api/payouts/{payout_id}/reconcile", json={"status": "paid"}, headers=ADMIN)
    repeated = client.post(f"/api/payouts/{payout_id}/reconcile", json={"status": "paid"}, headers=ADMIN)

    assert foreign.status_code == 403
    assert created.status_code == 201
    assert created.json()["data"]["amount"] == "88.50"
    assert not_admin.status_code == 403
    assert reconciled.status_code == 200
    assert reconciled.json()["data"]["changed"] is True
    assert repeated.json()["data"]["changed"] is False
    assert db.query(SellerPayout.status).scalar() == "paid"


def test_submit_payout_and_dispatch_transfers_routes():
    client, _, rail = _build_client()
    _checkout(client)
    period = {"period_start": WIDE_PERIOD[0], "period_end": WIDE_PERIOD[1]}
    payout_id = client.post("/api/shops/1/payouts", json=period, headers=SELLER).json()["data"]["payout_id"]

    submitted = client.post(f"/api/payouts/{payout_id}/submit", headers=SELLER)
    dispatched = client.post("/api/transfers/dispatch", headers=ADMIN)

    assert submitted.status_code == 200
    assert submitted.json()["data"]["external_payout_id"].startswith("po_mock_")
    assert dispatched.status_code == 200
    assert dispatched.json()["data"]["processed"] == 0
    assert rail.transfer_calls == 0


def test_connected_account_sync_is_owner_only():
    client, _, _ = _build_client()

    own = client.post("/api/shops/1/connected-account/sync", headers=SELLER)
    other = client.post("/api/shops/1/connected-account/sync", headers={"X-User-ID": "seller-2"})
    missing = client.post("/api/shops/99/connected-account/sync", headers=SELLER)

    assert own.json()["data"]["payouts_enabled"] is True
    assert other.status_code == 403
    assert missing.status_code == 404


def test_admin_donation_endpoints():
    client, _, _ = _build_client()
    _checkout(client)

    pending = client.get("/api/admin/donations/pending", headers=ADMIN)
    donation_ids = [donation["id"] for donation in pending.json()["data"][0]["donations"]]
    payout = client.post(
        "/api/admin/nonprofits/1/payouts",
        json={"donation_ids": donation_ids, "period_start": WIDE_PERIOD[0], "period_end": WIDE_PERIOD[1]},
        headers=ADMIN,
    )
    history = client.get("/api/admin/nonprofits/payouts", headers=ADMIN)
    overview = client.get("/api/admin/financial/overview", headers=ADMIN)
    forbidden = client.get("/api/admin/financial/overview", headers=SELLER)

    assert pending.json()["data"][0]["total_amount"] == "5.00"
    assert payout.status_code == 201
    assert payout.json()["data"]["message"] == "Payout of $5.00 recorded for River Cleanup Fund"
    assert len(history.json()["data"]) == 1
    assert overview.json()["data"]["month_over_month_growth"] == 0.0
    assert forbidden.status_code == 403


def test_admin_revenue_reports():
    client, _, _ = _build_client()
    _checkout(client)

    trends = client.get("/api/admin/financial/revenue-trends?months=2", headers=ADMIN)
    sellers = client.get("/api/admin/financial/top-sellers", headers=ADMIN)
    causes = client.get("/api/admin/financial/nonprofit-donations", headers=ADMIN)
    recent = client.get("/api/admin/financial/recent-transactions?limit=5", headers=ADMIN)
    forbidden = client.get("/api/admin/financial/top-sellers", headers=SELLER)
    out_of_range = client.get("/api/admin/financial/revenue-trends?months=0", headers=ADMIN)

    assert [trend["order_count"] for trend in trends.json()["data"]] == [0, 1]
    assert sellers.json()["data"][0]["shop_name"] == "Cedar Crafts"
    assert sellers.json()["data"][0]["total_revenue"] == "100.00"
    assert causes.json()["data"][0]["total_donations"] == "5.00"
    assert recent.json()["data"][0]["seller_payout"] == "88.50"
    assert forbidden.status_code == 403
    assert out_of_range.status_code == 422


def _signed(body: bytes, secret: str, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def test_signature_verification():
    body = b'{"type":"payout.paid"}'

    assert verify_signature(body, _signed(body, "whsec_1"), "whsec_1") is True
    assert verify_signature(body, _signed(body, "other"), "whsec_1") is False
    assert verify_signature(body, _signed(body, "whsec_1", timestamp=1000), "whsec_1") is False
    assert verify_signature(body, None, "whsec_1") is False
    assert verify_signature(body, "t=abc,v1=00", "whsec_1") is False


def test_payout_webhook_reconciles_submitted_payout(monkeypatch):
    monkeypatch.setattr(webhooks, "PAYOUT_WEBHOOK_SECRET", "whsec_test")
    client, db, _ = _build_client()
    _checkout(client)
    period = {"period_start": WIDE_PERIOD[0], "period_end": WIDE_PERIOD[1]}
    payout_id = client.post("/api/shops/1/payouts", json=period, headers=SELLER).json()["data"]["payout_id"]
    external_id = client.post(f"/api/payouts/{payout_id}/submit", headers=SELLER).json()["data"]["external_payout_id"]
    body = json.dumps({"type": "payout.paid", "data": {"object": {"id": external_id, "status": "paid"}}}).encode()

    rejected = client.post("/api/webhooks/payouts", content=body, headers={"Stripe-Signature": "t=1,v1=bad"})
    accepted = client.post(
        "/api/webhooks/payouts",
        content=body,
        headers={"Stripe-Signature": _signed(body, "whsec_test"), "Content-Type": "application/json"},
    )

    assert rejected.status_code == 400
    assert accepted.status_code == 200
    assert accepted.json()["data"]["status"] == "paid"
    db.expire_all()
    assert db.query(SellerPayout.status).scalar() == "paid"


def test_metrics_endpoint_is_admin_only():
    client, _, _ = _build_client()

    assert client.get("/internal/metrics", headers=SELLER).status_code == 403
    response = client.get("/internal/metrics", headers=ADMIN)

    assert response.status_code == 200
    assert set(response.json()) == {"requests", "ledger"}
