from sqlalchemy import Boolean, Column, DateTime, Integer, String, func

from marketplace_ledger.core.database import Base


class Nonprofit(Base):
    __tablename__ = "nonprofits"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    ein = Column(String(20), unique=True, nullable=False)
    is_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
