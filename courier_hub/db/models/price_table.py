"""
Price Table Models - delivery fee per neighbourhood

Every table holds one fee per known neighbourhood. Adding a table or a
neighbourhood fills the grid with zero fees that the operator edits later.
"""
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric, UniqueConstraint
from sqlalchemy.orm import relationship

from courier_hub.db.database import Base


class PriceTable(Base):
    """Named fee table (pre_001, pre_002, ...) selectable per establishment"""

    __tablename__ = "price_tables"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), unique=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    fees = relationship(
        "NeighborhoodFee",
        back_populates="price_table",
        order_by="NeighborhoodFee.neighborhood",
        lazy="selectin",
    )


class NeighborhoodFee(Base):
    """Delivery fee charged for one neighbourhood under one table"""

    __tablename__ = "neighborhood_fees"
    __table_args__ = (
        UniqueConstraint("price_table_id", "neighborhood"),
    )

    id = Column(Integer, primary_key=True, index=True)
    price_table_id = Column(Integer, ForeignKey("price_tables.id"), nullable=False, index=True)
    neighborhood = Column(String(100), nullable=False, index=True)
    fee = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    price_table = relationship("PriceTable", back_populates="fees")
