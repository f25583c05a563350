from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from marketplace_ledger.core.config import LedgerSettings, get_ledger_settings
from marketplace_ledger.core.database import get_db
from marketplace_ledger.deps import get_current_user_id, get_session_factory
from marketplace_ledger.payments.base import PaymentRail
from marketplace_ledger.payments.service import get_payment_rail
from marketplace_ledger.routers.responses import respond
from marketplace_ledger.services.inventory import LineItem
from marketplace_ledger.services.settlement import settle_order
from marketplace_ledger.services.transfers import run_order_transfers

router = APIRouter(prefix="/api/checkout", tags=["checkout"])


class CheckoutItem(BaseModel):
    product_id: int
    variant_id: Optional[int] = None
    quantity: int = Field(..., gt=0)


class ShippingAddress(BaseModel):
    name: Optional[str] = None
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str = "US"


class CheckoutOrderCreate(BaseModel):
    payment_reference: str = Field(..., min_length=1)
    items: List[CheckoutItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    shipping_cost: Decimal = Field(Decimal("0"), ge=0)


@router.post("/orders")
def create_checkout_order(
    payload: CheckoutOrderCreate,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    rail: PaymentRail = Depends(get_payment_rail),
    settings: LedgerSettings = Depends(get_ledger_settings),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    result = settle_order(
        db,
        user_id,
        [LineItem(product_id=item.product_id, quantity=item.quantity, variant_id=item.variant_id) for item in payload.items],
        payload.shipping_address.model_dump(),
        payload.payment_reference,
        rail=rail,
        settings=settings,
        shipping_cost=payload.shipping_cost,
        schedule_event=background_tasks.add_task,
    )
    if result.success and not result.data.get("already_settled"):
        background_tasks.add_task(
            run_order_transfers,
            session_factory,
            result.data["order_id"],
            rail=rail,
            settings=settings,
        )
    return respond(result, success_status=201)
