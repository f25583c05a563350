from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from marketplace_ledger.core.database import get_db
from marketplace_ledger.deps import bind_seller_shop, get_current_user_id
from marketplace_ledger.models.columns import utcnow
from marketplace_ledger.routers.responses import respond
from marketplace_ledger.services import reports

router = APIRouter(
    prefix="/api/seller/finance",
    tags=["seller-finance"],
    dependencies=[Depends(bind_seller_shop)],
)


@router.get("/balance")
def seller_balance(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return respond(reports.get_seller_balance(db, user_id))


@router.get("/payouts")
def seller_payouts(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return respond(reports.get_payout_history(db, user_id, limit=limit))


@router.get("/payouts/{payout_id}")
def seller_payout_details(
    payout_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return respond(reports.get_payout_details(db, user_id, payout_id))


@router.get("/transactions")
def seller_transactions(
    limit: int = Query(100, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return respond(reports.get_seller_transactions(db, user_id, limit=limit))


@router.get("/transactions.csv")
def seller_transactions_csv(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    result = reports.export_transactions_csv(db, user_id)
    if not result.success:
        return respond(result)
    filename = f"transactions-{utcnow():%Y-%m-%d}.csv"
    return StreamingResponse(
        iter([result.data]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/overview")
def seller_overview(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return respond(reports.get_seller_financial_overview(db, user_id))


@router.get("/1099")
def seller_1099(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return respond(reports.get_seller_1099_data(db, user_id, tax_year=year))
