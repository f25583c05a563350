from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol

from marketplace_ledger.services.errors import ExternalDependencyFailure

PAYMENT_SUCCEEDED = "succeeded"


class PayoutRailError(ExternalDependencyFailure):
    def __init__(self, message: str, *, retryable: bool = True, status_code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


@dataclass
class PaymentStatus:
    reference: str
    status: str
    amount_received: Decimal = Decimal("0")
    currency: str = "usd"

    @property
    def succeeded(self) -> bool:
        return self.status == PAYMENT_SUCCEEDED


@dataclass
class ConnectedAccountStatus:
    account_id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False


@dataclass
class TransferReceipt:
    id: str
    amount_cents: int
    destination: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class PayoutReceipt:
    id: str
    amount_cents: int
    status: str = "pending"


class PaymentRail(Protocol):
    def retrieve_payment(self, reference: str) -> PaymentStatus:
        ...

    def retrieve_account(self, account_id: str) -> ConnectedAccountStatus:
        ...

    def create_transfer(
        self,
        *,
        amount_cents: int,
        destination: str,
        idempotency_key: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransferReceipt:
        ...

    def create_payout(
        self,
        *,
        account_id: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict[str, Any] | None = None,
    ) -> PayoutReceipt:
        ...
