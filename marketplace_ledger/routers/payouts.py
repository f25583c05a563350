from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from marketplace_ledger.core.database import get_db
from marketplace_ledger.deps import get_current_user_id, require_admin
from marketplace_ledger.models.columns import as_naive_utc
from marketplace_ledger.payments.base import PaymentRail
from marketplace_ledger.payments.service import get_payment_rail
from marketplace_ledger.routers.responses import respond
from marketplace_ledger.services.payouts import create_payout_batch, reconcile_payout, submit_payout

router = APIRouter(prefix="/api", tags=["payouts"])


class PayoutBatchCreate(BaseModel):
    period_start: datetime
    period_end: datetime
    payment_ids: Optional[List[int]] = None


class PayoutReconcile(BaseModel):
    status: Literal["paid", "failed"]
    failure_reason: Optional[str] = None


@router.post("/shops/{shop_id}/payouts")
def create_shop_payout(
    shop_id: int,
    payload: PayoutBatchCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    result = create_payout_batch(
        db,
        shop_id,
        as_naive_utc(payload.period_start),
        as_naive_utc(payload.period_end),
        payment_ids=payload.payment_ids,
        owner_user_id=user_id,
    )
    return respond(result, success_status=201)


@router.post("/payouts/{payout_id}/submit")
def submit_shop_payout(
    payout_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    rail: PaymentRail = Depends(get_payment_rail),
):
    return respond(submit_payout(db, payout_id, rail=rail, owner_user_id=user_id))


@router.post("/payouts/{payout_id}/reconcile")
def reconcile_shop_payout(
    payout_id: int,
    payload: PayoutReconcile,
    _admin: str = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return respond(reconcile_payout(db, payout_id, payload.status, payload.failure_reason))
