from __future__ import annotations

import logging
from typing import Any

import httpx

from marketplace_ledger.core.config import NOTIFICATION_WEBHOOK_URL

logger = logging.getLogger(__name__)

NOTIFICATION_TIMEOUT_SECONDS = 5.0


def send_order_confirmation(
    payload: dict[str, Any],
    *,
    webhook_url: str | None = None,
    transport: httpx.BaseTransport | None = None,
) -> bool:
    """Post the order confirmation to the notification webhook.

    Returns False when no webhook is configured or delivery fails; the order is
    already committed at this point, so failures are only logged.
    """
    url = NOTIFICATION_WEBHOOK_URL if webhook_url is None else webhook_url
    if not url:
        logger.info(
            "order confirmation (no webhook configured) order=%s buyer=%s total=%s",
            payload.get("order_number"),
            payload.get("buyer_id"),
            payload.get("total"),
            extra={"order_id": payload.get("order_id")},
        )
        return False

    body = {"template": "order_confirmed", **payload}
    try:
        with httpx.Client(timeout=NOTIFICATION_TIMEOUT_SECONDS, transport=transport) as client:
            response = client.post(url, json=body)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning(
            "order confirmation delivery failed order=%s error=%s",
            payload.get("order_number"),
            exc,
            extra={"order_id": payload.get("order_id")},
        )
        return False
    return True
