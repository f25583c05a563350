from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Any

import httpx

from marketplace_ledger.core.config import STRIPE_API_BASE, STRIPE_SECRET_KEY
from marketplace_ledger.payments.base import (
    ConnectedAccountStatus,
    PaymentRail,
    PaymentStatus,
    PayoutRailError,
    PayoutReceipt,
    TransferReceipt,
)

logger = logging.getLogger(__name__)


def _form_fields(payload: dict[str, Any]) -> dict[str, str]:
    fields: dict[str, str] = {}
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, dict):
            for inner_key, inner_value in value.items():
                if inner_value is not None:
                    fields[f"{key}[{inner_key}]"] = str(inner_value)
        else:
            fields[key] = str(value)
    return fields


class StripeConnectRail(PaymentRail):
    """Stripe Connect over its REST API.

    Requests that carry an idempotency key are retried on transient failures;
    Stripe replays the original response for a repeated key, so a retry never
    moves money twice. Timeouts are reported as retryable failures.
    """

    MAX_RETRIES = 3
    INTEGRATION_NAME = "stripe_connect"

    def __init__(
        self,
        secret_key: str = STRIPE_SECRET_KEY,
        *,
        api_base: str = STRIPE_API_BASE,
        timeout_seconds: float = 10.0,
        currency: str = "usd",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not secret_key:
            raise ValueError("Stripe secret key is not configured")
        self._secret_key = secret_key
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout_seconds
        self._currency = currency
        self._transport = transport

    def retrieve_payment(self, reference: str) -> PaymentStatus:
        data = self._request("GET", f"/v1/payment_intents/{reference}")
        return PaymentStatus(
            reference=data.get("id") or reference,
            status=data.get("status") or "unknown",
            amount_received=Decimal(int(data.get("amount_received") or 0)) / 100,
            currency=data.get("currency") or self._currency,
        )

    def retrieve_account(self, account_id: str) -> ConnectedAccountStatus:
        data = self._request("GET", f"/v1/accounts/{account_id}")
        return ConnectedAccountStatus(
            account_id=data.get("id") or account_id,
            charges_enabled=bool(data.get("charges_enabled")),
            payouts_enabled=bool(data.get("payouts_enabled")),
            details_submitted=bool(data.get("details_submitted")),
        )

    def create_transfer(
        self,
        *,
        amount_cents: int,
        destination: str,
        idempotency_key: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransferReceipt:
        data = self._request(
            "POST",
            "/v1/transfers",
            form={
                "amount": amount_cents,
                "currency": self._currency,
                "destination": destination,
                "description": description,
                "metadata": metadata or {},
            },
            idempotency_key=idempotency_key,
        )
        return TransferReceipt(
            id=data["id"],
            amount_cents=int(data.get("amount") or amount_cents),
            destination=data.get("destination") or destination,
            metadata=dict(data.get("metadata") or {}),
        )

    def create_payout(
        self,
        *,
        account_id: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict[str, Any] | None = None,
    ) -> PayoutReceipt:
        data = self._request(
            "POST",
            "/v1/payouts",
            form={"amount": amount_cents, "currency": self._currency, "metadata": metadata or {}},
            idempotency_key=idempotency_key,
            connected_account=account_id,
        )
        return PayoutReceipt(
            id=data["id"],
            amount_cents=int(data.get("amount") or amount_cents),
            status=data.get("status") or "pending",
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        form: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        connected_account: str | None = None,
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        if connected_account:
            headers["Stripe-Account"] = connected_account

        # Writes without an idempotency key are never replayed.
        attempts = self.MAX_RETRIES if (method == "GET" or idempotency_key) else 1
        last_error: PayoutRailError | None = None

        for attempt in range(1, attempts + 1):
            try:
                with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                    response = client.request(
                        method,
                        f"{self._api_base}{path}",
                        headers=headers,
                        data=_form_fields(form) if form is not None else None,
                    )
            except httpx.TimeoutException as exc:
                last_error = PayoutRailError(f"Stripe request timed out: {exc}", retryable=True)
            except httpx.HTTPError as exc:
                last_error = PayoutRailError(f"Stripe request failed: {exc}", retryable=True)
            else:
                if 200 <= response.status_code < 300:
                    return response.json()
                last_error = self._error_from_response(response)
                if not last_error.retryable:
                    raise last_error

            logger.warning(
                "payout rail request failed integration=%s path=%s attempt=%s error=%s",
                self.INTEGRATION_NAME,
                path,
                attempt,
                last_error.message,
            )

        assert last_error is not None
        raise last_error

    @staticmethod
    def _error_from_response(response: httpx.Response) -> PayoutRailError:
        message = f"Stripe error {response.status_code}"
        try:
            body = response.json()
            message = ((body.get("error") or {}).get("message")) or message
        except json.JSONDecodeError:
            if response.text:
                message = f"{message}: {response.text}"
        retryable = response.status_code == 429 or response.status_code >= 500
        return PayoutRailError(message, retryable=retryable, status_code=response.status_code)
