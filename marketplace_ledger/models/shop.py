from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.orm import relationship

from marketplace_ledger.core.database import Base


class Shop(Base):
    __tablename__ = "shops"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)

    # Percentage (0-100) of every sale earmarked for the shop's nonprofit
    donation_percentage = Column(Numeric(5, 2, asdecimal=True), nullable=False, default=0)
    nonprofit_id = Column(Integer, ForeignKey("nonprofits.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    nonprofit = relationship("Nonprofit")
    connected_account = relationship("SellerConnectedAccount", back_populates="shop", uselist=False)


class SellerConnectedAccount(Base):
    __tablename__ = "seller_connected_accounts"

    id = Column(Integer, primary_key=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), unique=True, nullable=False)
    external_account_id = Column(String, unique=True, nullable=False)
    account_type = Column(String, nullable=False, default="express")
    payout_schedule = Column(String, nullable=False, default="weekly")
    status = Column(String, nullable=False, default="pending")  # pending / active
    onboarding_completed = Column(Boolean, nullable=False, default=False)
    charges_enabled = Column(Boolean, nullable=False, default=False)
    payouts_enabled = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    shop = relationship("Shop", back_populates="connected_account")
