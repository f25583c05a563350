from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from marketplace_ledger.core.config import LedgerSettings, get_ledger_settings
from marketplace_ledger.core.database import get_db
from marketplace_ledger.deps import require_admin, require_shop_owner
from marketplace_ledger.models.shop import Shop
from marketplace_ledger.payments.base import PaymentRail
from marketplace_ledger.payments.service import get_payment_rail
from marketplace_ledger.routers.responses import respond
from marketplace_ledger.services.transfers import dispatch_pending_transfers, sync_connected_account

router = APIRouter(prefix="/api", tags=["transfers"])


@router.post("/transfers/dispatch")
def dispatch_transfers(
    limit: int = Query(50, ge=1, le=500),
    _admin: str = Depends(require_admin),
    db: Session = Depends(get_db),
    rail: PaymentRail = Depends(get_payment_rail),
    settings: LedgerSettings = Depends(get_ledger_settings),
):
    return respond(dispatch_pending_transfers(db, rail=rail, settings=settings, limit=limit))


@router.post("/shops/{shop_id}/connected-account/sync")
def sync_shop_connected_account(
    shop: Shop = Depends(require_shop_owner),
    db: Session = Depends(get_db),
    rail: PaymentRail = Depends(get_payment_rail),
):
    return respond(sync_connected_account(db, shop.id, rail=rail))
