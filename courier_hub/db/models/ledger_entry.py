"""
Ledger Entry Model - append-only manual transactions

Receipts from establishments and payments to couriers. Rows are never updated
or deleted; balances are recomputed from the full history.
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, DateTime, ForeignKey, String, Text, Numeric, Enum as SQLEnum

from courier_hub.db.database import Base


class LedgerEntryKind(str, enum.Enum):
    RECEIPT_FROM_ESTABLISHMENT = "receipt_from_establishment"
    PAYMENT_TO_COURIER = "payment_to_courier"


class LedgerEntry(Base):
    """Immutable manual financial record"""

    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(SQLEnum(LedgerEntryKind), nullable=False, index=True)
    # establishment id for receipts, courier profile id for payments
    entity_id = Column(Integer, nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)  # always positive
    method = Column(String(30), nullable=False, default="PIX")
    note = Column(Text, nullable=True)
    recorded_by_id = Column(Integer, ForeignKey("actor_profiles.id"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
