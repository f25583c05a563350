from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func

from marketplace_ledger.core.database import Base
from marketplace_ledger.models.columns import Money


class PayoutTransfer(Base):
    """Outbox row for pushing one shop's share of an order to its payout account."""

    __tablename__ = "payout_transfers"
    __table_args__ = (UniqueConstraint("order_id", "shop_id", name="uq_payout_transfers_order_shop"),)

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=False)
    shop_id = Column(Integer, ForeignKey("shops.id"), index=True, nullable=False)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)

    amount = Column(Money, nullable=False)
    idempotency_key = Column(String(120), unique=True, nullable=False)
    # queued / submitting / accepted / skipped / failed
    status = Column(String, nullable=False, default="queued")
    external_transfer_id = Column(String, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
