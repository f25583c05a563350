from __future__ import annotations

from marketplace_ledger.services.event_bus import event_bus
from marketplace_ledger.services.notifications import send_order_confirmation
from marketplace_ledger.services.order_events import ORDER_SETTLED


def handle_order_settled(payload: dict) -> None:
    send_order_confirmation(payload)


def register_event_handlers() -> None:
    event_bus.subscribe(ORDER_SETTLED, handle_order_settled)


register_event_handlers()
