from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    kind = "internal"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationFailed(LedgerError):
    kind = "validation"


class NotAuthorized(LedgerError):
    kind = "authorization"

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class NotFound(LedgerError):
    kind = "not_found"


class ProductNotFound(NotFound):
    def __init__(self, product_or_variant_id: int | str, *, variant: bool = False) -> None:
        label = "Product variant" if variant else "Product"
        super().__init__(f"{label} {product_or_variant_id} not found")
        self.product_or_variant_id = product_or_variant_id


class ShopNotFound(NotFound):
    def __init__(self, shop_id: int | str | None = None) -> None:
        super().__init__("Shop not found" if shop_id is None else f"Shop {shop_id} not found")


class PayoutNotFound(NotFound):
    def __init__(self, payout_id: int | str) -> None:
        super().__init__(f"Payout {payout_id} not found")


class OrderNotFound(NotFound):
    def __init__(self, order_id: int | str) -> None:
        super().__init__(f"Order {order_id} not found")


class Conflict(LedgerError):
    kind = "conflict"


class InsufficientInventory(Conflict):
    def __init__(self, product_title: str, available: int, requested: int) -> None:
        super().__init__(
            f"Insufficient inventory for {product_title}. "
            f"Available: {available}, Requested: {requested}"
        )
        self.product_title = product_title
        self.available = available
        self.requested = requested


class InvalidOrAlreadyPaid(Conflict):
    def __init__(self, entity: str = "donations") -> None:
        super().__init__(f"Some {entity} are invalid or already paid")


class PayoutAlreadyReconciled(Conflict):
    def __init__(self, payout_id: int, status: str) -> None:
        super().__init__(f"Payout {payout_id} already reconciled as {status}")
        self.status = status


class ExternalDependencyFailure(LedgerError):
    kind = "external"


class PaymentNotCompleted(ExternalDependencyFailure):
    def __init__(self) -> None:
        super().__init__("Payment not completed")


class PersistenceError(LedgerError):
    kind = "persistence"


@dataclass
class ServiceResult:
    success: bool
    data: Any = None
    error: str | None = None
    error_kind: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> "ServiceResult":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: LedgerError) -> "ServiceResult":
        return cls(success=False, error=error.message, error_kind=error.kind)

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "error": self.error}


def guarded(operation: str) -> Callable[[Callable[..., Any]], Callable[..., ServiceResult]]:
    """Run a service function and fold its outcome into a ServiceResult.

    The wrapped function receives the session as its first argument. Any
    failure rolls the session back, so nothing written before the error
    becomes visible.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., ServiceResult]:
        @wraps(func)
        def wrapper(db: Session, *args: Any, **kwargs: Any) -> ServiceResult:
            try:
                return ServiceResult.ok(func(db, *args, **kwargs))
            except LedgerError as exc:
                db.rollback()
                log = logger.error if exc.kind in {"persistence", "internal"} else logger.info
                log("%s failed kind=%s error=%s", operation, exc.kind, exc.message)
                return ServiceResult.failure(exc)
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception("%s failed in persistence layer", operation)
                return ServiceResult.failure(PersistenceError(str(exc)))
            except Exception as exc:
                db.rollback()
                logger.exception("%s failed unexpectedly", operation)
                return ServiceResult.failure(LedgerError(str(exc) or f"Failed to {operation}"))

        wrapper.unguarded = func
        return wrapper

    return decorator
