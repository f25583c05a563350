import sqlalchemy as sa
from sqlalchemy import Column, DateTime, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from marketplace_ledger.core.database import Base
from marketplace_ledger.models.columns import Money


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    order_number = Column(String(40), unique=True, index=True, nullable=False)
    buyer_id = Column(String(64), index=True, nullable=False)

    status = Column(String, default="PROCESSING", nullable=False)  # PROCESSING / SHIPPED / DELIVERED
    payment_status = Column(String, default="PAID", nullable=False)
    payment_intent_id = Column(String, unique=True, nullable=False)

    subtotal = Column(Money, nullable=False, default=0)
    shipping_cost = Column(Money, nullable=False, default=0)
    processing_fee = Column(Money, nullable=False, default=0)
    tax = Column(Money, nullable=False, default=0)
    total = Column(Money, nullable=False, default=0)
    # Sum of every shop's donation, filled after per-shop settlement
    nonprofit_donation = Column(Money, nullable=False, default=0)

    shipping_address_json = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    order_items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    payments = relationship("Payment", back_populates="order", cascade="all, delete-orphan")
