from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from marketplace_ledger.models.product import Product, ProductVariant
from marketplace_ledger.services.errors import InsufficientInventory, ProductNotFound, ValidationFailed


@dataclass(frozen=True)
class LineItem:
    product_id: int
    quantity: int
    variant_id: Optional[int] = None


@dataclass(frozen=True)
class ResolvedLine:
    product_id: int
    variant_id: Optional[int]
    shop_id: int
    title: str
    unit_price: Decimal
    quantity: int
    track_inventory: bool

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity

    @property
    def stock_key(self) -> tuple[str, int]:
        if self.variant_id is not None:
            return ("variant", self.variant_id)
        return ("product", self.product_id)


def _load_product(db: Session, product_id: int) -> Product:
    product = db.query(Product).filter(Product.id == product_id).first()
    if not product:
        raise ProductNotFound(product_id)
    return product


def _resolve_line(db: Session, item: LineItem) -> tuple[ResolvedLine, int]:
    if item.quantity is None or int(item.quantity) <= 0:
        raise ValidationFailed("Quantity must be greater than zero")

    product = _load_product(db, item.product_id)
    if item.variant_id is None:
        line = ResolvedLine(
            product_id=product.id,
            variant_id=None,
            shop_id=product.shop_id,
            title=product.title,
            unit_price=Decimal(product.price),
            quantity=int(item.quantity),
            track_inventory=bool(product.track_inventory),
        )
        return line, int(product.inventory_quantity or 0)

    variant = (
        db.query(ProductVariant)
        .filter(ProductVariant.id == item.variant_id, ProductVariant.product_id == product.id)
        .first()
    )
    if not variant:
        raise ProductNotFound(item.variant_id, variant=True)
    price = variant.price if variant.price is not None else product.price
    line = ResolvedLine(
        product_id=product.id,
        variant_id=variant.id,
        shop_id=product.shop_id,
        title=f"{product.title} - {variant.name}",
        unit_price=Decimal(price),
        quantity=int(item.quantity),
        track_inventory=bool(variant.track_inventory),
    )
    return line, int(variant.inventory_quantity or 0)


def check_availability(db: Session, items: Iterable[LineItem]) -> list[ResolvedLine]:
    """Resolve every line against the catalog and verify tracked stock.

    Read-only: nothing is reserved. Lines hitting the same product or variant
    are checked against their combined quantity.
    """
    resolved: list[ResolvedLine] = []
    requested: dict[tuple[str, int], int] = defaultdict(int)

    for item in items:
        line, in_stock = _resolve_line(db, item)
        resolved.append(line)
        if not line.track_inventory:
            continue
        requested[line.stock_key] += line.quantity
        if requested[line.stock_key] > in_stock:
            raise InsufficientInventory(line.title, in_stock, requested[line.stock_key])

    if not resolved:
        raise ValidationFailed("Cart is empty")
    return resolved


def decrement_inventory(db: Session, line: ResolvedLine) -> bool:
    """Take ``line.quantity`` units out of stock in one conditional UPDATE.

    Returns False for untracked items. A concurrent checkout that already took
    the last units leaves zero matching rows, which raises
    InsufficientInventory instead of driving stock negative.
    """
    if line.variant_id is not None:
        model, key = ProductVariant, ProductVariant.id == line.variant_id
    else:
        model, key = Product, Product.id == line.product_id

    tracked = db.query(model.track_inventory).filter(key).scalar()
    if not tracked:
        return False

    result = db.execute(
        update(model)
        .where(key, model.track_inventory.is_(True), model.inventory_quantity >= line.quantity)
        .values(inventory_quantity=model.inventory_quantity - line.quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        remaining = db.query(model.inventory_quantity).filter(key).scalar() or 0
        raise InsufficientInventory(line.title, int(remaining), line.quantity)
    return True
