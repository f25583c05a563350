from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session, sessionmaker

from marketplace_ledger.core.database import SessionLocal, get_db
from marketplace_ledger.core.request_context import set_request_context
from marketplace_ledger.models.shop import Shop


def get_current_user_id(x_user_id: str | None = Header(default=None, alias="X-User-ID")) -> str:
    """Identity is resolved upstream; the gateway forwards a stable user id."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user_id


def require_admin(
    user_id: str = Depends(get_current_user_id),
    x_admin: str | None = Header(default=None, alias="X-Admin"),
) -> str:
    if (x_admin or "").strip().lower() not in {"1", "true", "yes"}:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")
    return user_id


def bind_shop(request: Request, shop_id: int) -> None:
    """Tag the rest of the request, and its completion log, with the shop it acts on."""
    request.state.shop_id = str(shop_id)
    set_request_context(shop_id=str(shop_id))


def bind_seller_shop(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> None:
    shop_id = db.query(Shop.id).filter(Shop.user_id == user_id).scalar()
    if shop_id is not None:
        bind_shop(request, shop_id)


def require_shop_owner(
    shop_id: int,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> Shop:
    shop = db.query(Shop).filter(Shop.id == shop_id).first()
    if not shop:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Shop not found")
    if shop.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")
    bind_shop(request, shop.id)
    return shop


def get_session_factory() -> sessionmaker:
    """Factory for work that outlives the request, such as background transfers."""
    return SessionLocal
