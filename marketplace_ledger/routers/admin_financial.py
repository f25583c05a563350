from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from marketplace_ledger.core.database import get_db
from marketplace_ledger.deps import require_admin
from marketplace_ledger.models.columns import as_naive_utc
from marketplace_ledger.routers.responses import respond
from marketplace_ledger.services.payouts import create_nonprofit_payout, get_nonprofit_payouts, get_pending_donations
from marketplace_ledger.services.reports import (
    get_nonprofit_donation_breakdown,
    get_platform_financial_overview,
    get_recent_transactions,
    get_revenue_trends,
    get_top_sellers_by_revenue,
)

router = APIRouter(prefix="/api/admin", tags=["admin-financial"])


class NonprofitPayoutCreate(BaseModel):
    donation_ids: List[int] = Field(..., min_length=1)
    period_start: datetime
    period_end: datetime
    method: str = "check"
    notes: Optional[str] = None


@router.get("/donations/pending")
def pending_donations(_admin: str = Depends(require_admin), db: Session = Depends(get_db)):
    return respond(get_pending_donations(db))


@router.post("/nonprofits/{nonprofit_id}/payouts")
def create_payout_for_nonprofit(
    nonprofit_id: int,
    payload: NonprofitPayoutCreate,
    _admin: str = Depends(require_admin),
    db: Session = Depends(get_db),
):
    result = create_nonprofit_payout(
        db,
        nonprofit_id,
        payload.donation_ids,
        as_naive_utc(payload.period_start),
        as_naive_utc(payload.period_end),
        method=payload.method,
        notes=payload.notes,
    )
    return respond(result, success_status=201)


@router.get("/nonprofits/payouts")
def nonprofit_payout_history(
    limit: int = Query(50, ge=1, le=200),
    _admin: str = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return respond(get_nonprofit_payouts(db, limit=limit))


@router.get("/financial/overview")
def financial_overview(_admin: str = Depends(require_admin), db: Session = Depends(get_db)):
    return respond(get_platform_financial_overview(db))


@router.get("/financial/revenue-trends")
def revenue_trends(
    months: int = Query(12, ge=1, le=36),
    _admin: str = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return respond(get_revenue_trends(db, months=months))


@router.get("/financial/top-sellers")
def top_sellers(
    limit: int = Query(10, ge=1, le=100),
    _admin: str = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return respond(get_top_sellers_by_revenue(db, limit=limit))


@router.get("/financial/nonprofit-donations")
def nonprofit_donations(
    limit: int = Query(10, ge=1, le=100),
    _admin: str = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return respond(get_nonprofit_donation_breakdown(db, limit=limit))


@router.get("/financial/recent-transactions")
def recent_transactions(
    limit: int = Query(20, ge=1, le=200),
    _admin: str = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return respond(get_recent_transactions(db, limit=limit))
