from __future__ import annotations

from typing import Any, Callable

from marketplace_ledger.models.order import Order
from marketplace_ledger.services.event_bus import event_bus
from marketplace_ledger.services.fees import format_money

ORDER_SETTLED = "order.settled"


def build_order_payload(order: Order, shop_ids: list[int] | None = None) -> dict:
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "buyer_id": order.buyer_id,
        "status": (order.status or "").strip().upper(),
        "total": format_money(order.total),
        "nonprofit_donation": format_money(order.nonprofit_donation),
        "shop_ids": sorted(shop_ids or []),
    }


def emit_order_settled(order: Order, shop_ids: list[int] | None = None, *, schedule: Callable[..., Any] | None = None) -> int:
    payload = build_order_payload(order, shop_ids)
    if schedule is not None:
        # Payload is built now; the session may be closed when the task runs.
        schedule(event_bus.emit, ORDER_SETTLED, payload)
        return 0
    return event_bus.emit(ORDER_SETTLED, payload)
