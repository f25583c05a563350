import hashlib
import hmac
import json
import logging
import time

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from marketplace_ledger.core.config import IS_DEV, PAYOUT_WEBHOOK_SECRET
from marketplace_ledger.core.database import get_db
from marketplace_ledger.routers.responses import respond
from marketplace_ledger.services.payouts import apply_rail_payout_event

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


def verify_signature(payload: bytes, header: str | None, secret: str, now: float | None = None) -> bool:
    """Check a ``t=<ts>,v1=<hex>`` signature over ``<ts>.<body>``."""
    if not header:
        return False
    parts: dict[str, list[str]] = {}
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        parts.setdefault(key, []).append(value)
    timestamps = parts.get("t") or []
    signatures = parts.get("v1") or []
    if not timestamps or not signatures:
        return False
    try:
        timestamp = int(timestamps[0])
    except ValueError:
        return False
    if abs((now or time.time()) - timestamp) > SIGNATURE_TOLERANCE_SECONDS:
        return False
    signed = f"{timestamp}.".encode() + payload
    expected = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)


def _extract_payout_event(event: dict) -> tuple[str | None, str | None, str | None]:
    obj = ((event.get("data") or {}).get("object")) or {}
    external_id = obj.get("id") or event.get("payout_id")
    status = obj.get("status") or event.get("status")
    event_type = event.get("type") or ""
    if not status and event_type.startswith("payout."):
        status = event_type.split(".", 1)[1]
    failure = obj.get("failure_message") or event.get("failure_reason")
    return external_id, status, failure


@router.post("/payouts")
async def payout_webhook(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    if PAYOUT_WEBHOOK_SECRET:
        if not verify_signature(body, request.headers.get("Stripe-Signature"), PAYOUT_WEBHOOK_SECRET):
            raise HTTPException(status_code=400, detail="Invalid signature")
    elif not IS_DEV:
        logger.error("payout webhook rejected: PAYOUT_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=503, detail="Webhook not configured")

    try:
        event = json.loads(body or b"{}")
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON") from exc

    external_id, status, failure = _extract_payout_event(event)
    if not external_id or not status:
        raise HTTPException(status_code=400, detail="Payout id and status are required")

    logger.info("payout webhook received external=%s status=%s", external_id, status)
    return respond(apply_rail_payout_event(db, external_id, status, failure))
