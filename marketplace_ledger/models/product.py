from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import relationship

from marketplace_ledger.core.database import Base
from marketplace_ledger.models.columns import Price


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), index=True, nullable=False)
    title = Column(String, nullable=False)
    price = Column(Price, nullable=False)

    track_inventory = Column(Boolean, nullable=False, default=True)
    inventory_quantity = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    shop = relationship("Shop")
    variants = relationship("ProductVariant", back_populates="product")


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id"), index=True, nullable=False)
    name = Column(String, nullable=False)
    # Falls back to the product price when empty
    price = Column(Price, nullable=True)

    track_inventory = Column(Boolean, nullable=False, default=True)
    inventory_quantity = Column(Integer, nullable=False, default=0)

    product = relationship("Product", back_populates="variants")
