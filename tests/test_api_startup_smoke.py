from fastapi.testclient import TestClient


REQUIRED_ROUTES = {
    "/api/checkout/orders",
    "/api/seller/finance/balance",
    "/api/seller/finance/payouts/{payout_id}",
    "/api/seller/finance/transactions.csv",
    "/api/seller/finance/1099",
    "/api/shops/{shop_id}/payouts",
    "/api/payouts/{payout_id}/reconcile",
    "/api/transfers/dispatch",
    "/api/admin/donations/pending",
    "/api/admin/nonprofits/{nonprofit_id}/payouts",
    "/api/admin/financial/overview",
    "/api/webhooks/payouts",
    "/internal/metrics",
}


def test_api_startup_and_router_registration(monkeypatch):
    from marketplace_ledger import main

    monkeypatch.setattr(main, "_startup_tasks", lambda: None)

    with TestClient(main.app) as client:
        response = client.get("/", headers={"X-Request-ID": "req-1"})
        docs_response = client.get("/docs")
        openapi_response = client.get("/openapi.json")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"] == "req-1"
    assert docs_response.status_code == 200
    assert openapi_response.status_code == 200

    paths = {route.path for route in main.app.routes}
    assert REQUIRED_ROUTES.issubset(paths)
