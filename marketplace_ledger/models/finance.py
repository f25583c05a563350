from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from marketplace_ledger.core.database import Base
from marketplace_ledger.models.columns import Money


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (UniqueConstraint("order_id", "shop_id", name="uq_payments_order_shop"),)

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=False)
    shop_id = Column(Integer, ForeignKey("shops.id"), index=True, nullable=False)
    payment_intent_id = Column(String, nullable=False)

    amount = Column(Money, nullable=False)
    platform_fee = Column(Money, nullable=False)
    seller_payout = Column(Money, nullable=False)
    nonprofit_donation = Column(Money, nullable=False, default=0)
    status = Column(String, nullable=False, default="PAID")  # PAID / FAILED

    payout_id = Column(Integer, ForeignKey("seller_payouts.id"), index=True, nullable=True)
    # Set when an automatic transfer already moved this payout to the seller
    transfer_reference = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    order = relationship("Order", back_populates="payments")
    payout = relationship("SellerPayout", back_populates="payments")


class Donation(Base):
    __tablename__ = "donations"

    id = Column(Integer, primary_key=True)
    nonprofit_id = Column(Integer, ForeignKey("nonprofits.id"), index=True, nullable=False)
    shop_id = Column(Integer, ForeignKey("shops.id"), index=True, nullable=True)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=True)

    amount = Column(Money, nullable=False)
    # SELLER_CONTRIBUTION / BUYER_DIRECT / PLATFORM_REVENUE
    donor_type = Column(String, nullable=False, default="SELLER_CONTRIBUTION")
    status = Column(String, nullable=False, default="PENDING")  # PENDING / PAID
    nonprofit_payout_id = Column(Integer, ForeignKey("nonprofit_payouts.id"), index=True, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    nonprofit = relationship("Nonprofit")
    shop = relationship("Shop")
    order = relationship("Order")


class SellerBalance(Base):
    __tablename__ = "seller_balances"

    id = Column(Integer, primary_key=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), unique=True, nullable=False)

    available_balance = Column(Money, nullable=False, default=0)
    pending_balance = Column(Money, nullable=False, default=0)
    total_earned = Column(Money, nullable=False, default=0)
    total_paid_out = Column(Money, nullable=False, default=0)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Seller1099Data(Base):
    __tablename__ = "seller_1099_data"
    __table_args__ = (UniqueConstraint("shop_id", "tax_year", name="uq_seller_1099_shop_year"),)

    id = Column(Integer, primary_key=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), index=True, nullable=False)
    tax_year = Column(Integer, nullable=False)

    gross_payments = Column(Money, nullable=False, default=0)
    transaction_count = Column(Integer, nullable=False, default=0)
    reporting_required = Column(Boolean, nullable=False, default=False)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class SellerPayout(Base):
    __tablename__ = "seller_payouts"

    id = Column(Integer, primary_key=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), index=True, nullable=False)

    amount = Column(Money, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending / paid / failed
    transaction_count = Column(Integer, nullable=False, default=0)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)

    external_payout_id = Column(String, unique=True, nullable=True)
    failure_reason = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    payments = relationship("Payment", back_populates="payout")


class NonprofitPayout(Base):
    __tablename__ = "nonprofit_payouts"

    id = Column(Integer, primary_key=True)
    nonprofit_id = Column(Integer, ForeignKey("nonprofits.id"), index=True, nullable=False)

    amount = Column(Money, nullable=False)
    status = Column(String, nullable=False, default="paid")
    donation_count = Column(Integer, nullable=False, default=0)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)
    method = Column(String, nullable=False, default="check")
    notes = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    nonprofit = relationship("Nonprofit")
