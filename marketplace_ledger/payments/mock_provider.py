from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any

from marketplace_ledger.payments.base import (
    PAYMENT_SUCCEEDED,
    ConnectedAccountStatus,
    PaymentRail,
    PaymentStatus,
    PayoutRailError,
    PayoutReceipt,
    TransferReceipt,
)


class MockPaymentRail(PaymentRail):
    """In-memory rail used in development and tests.

    Unknown payment references report ``succeeded`` so local checkouts work
    without a processor. Repeated calls with the same idempotency key return
    the original receipt.
    """

    def __init__(self) -> None:
        self.payments: dict[str, PaymentStatus] = {}
        self.accounts: dict[str, ConnectedAccountStatus] = {}
        self.transfers: dict[str, TransferReceipt] = {}
        self.payouts: dict[str, PayoutReceipt] = {}
        self.transfer_calls = 0
        self.fail_transfers_with: PayoutRailError | None = None
        self.fail_payouts_with: PayoutRailError | None = None

    def set_payment(self, reference: str, status: str, amount: Decimal | str = "0") -> None:
        self.payments[reference] = PaymentStatus(reference=reference, status=status, amount_received=Decimal(amount))

    def set_account(self, account_id: str, *, payouts_enabled: bool = True, charges_enabled: bool = True) -> None:
        self.accounts[account_id] = ConnectedAccountStatus(
            account_id=account_id,
            charges_enabled=charges_enabled,
            payouts_enabled=payouts_enabled,
            details_submitted=payouts_enabled,
        )

    def retrieve_payment(self, reference: str) -> PaymentStatus:
        return self.payments.get(reference) or PaymentStatus(reference=reference, status=PAYMENT_SUCCEEDED)

    def retrieve_account(self, account_id: str) -> ConnectedAccountStatus:
        account = self.accounts.get(account_id)
        if account is None:
            raise PayoutRailError(f"No such account: {account_id}", retryable=False, status_code=404)
        return account

    def create_transfer(
        self,
        *,
        amount_cents: int,
        destination: str,
        idempotency_key: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransferReceipt:
        self.transfer_calls += 1
        if self.fail_transfers_with is not None:
            raise self.fail_transfers_with
        existing = self.transfers.get(idempotency_key)
        if existing is not None:
            return existing
        receipt = TransferReceipt(
            id=f"tr_mock_{uuid.uuid4().hex[:12]}",
            amount_cents=amount_cents,
            destination=destination,
            metadata=dict(metadata or {}),
        )
        self.transfers[idempotency_key] = receipt
        return receipt

    def create_payout(
        self,
        *,
        account_id: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict[str, Any] | None = None,
    ) -> PayoutReceipt:
        if self.fail_payouts_with is not None:
            raise self.fail_payouts_with
        existing = self.payouts.get(idempotency_key)
        if existing is not None:
            return existing
        receipt = PayoutReceipt(id=f"po_mock_{uuid.uuid4().hex[:12]}", amount_cents=amount_cents)
        self.payouts[idempotency_key] = receipt
        return receipt
