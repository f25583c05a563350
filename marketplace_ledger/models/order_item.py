from sqlalchemy import Column, DateTime, ForeignKey, Integer, func
from sqlalchemy.orm import relationship

from marketplace_ledger.core.database import Base
from marketplace_ledger.models.columns import Money, Price


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), index=True, nullable=False)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), index=True, nullable=False)

    quantity = Column(Integer, nullable=False, default=1)
    price_at_purchase = Column(Price, nullable=False)
    subtotal = Column(Money, nullable=False)
    donation_amount = Column(Money, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    order = relationship("Order", back_populates="order_items")
