"""
Delivery Model - courier jobs and their lifecycle status
"""
import enum
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey, Text, JSON, Boolean,
)
from sqlalchemy.orm import relationship

from courier_hub.db.database import Base


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    AWAITING_POOL = "awaiting_pool"  # returned to the pool by a rejection
    ASSIGNED = "assigned"
    EN_ROUTE = "en_route"  # accepted by the courier; accepted and en route are one step
    COLLECTED = "collected"
    COMPLETED = "completed"


# Statuses a dispatcher can assign from
CANDIDATE_STATUSES = (DeliveryStatus.PENDING, DeliveryStatus.AWAITING_POOL)
# Statuses during which the courier is busy with the delivery
ACTIVE_STATUSES = (DeliveryStatus.EN_ROUTE, DeliveryStatus.COLLECTED)


class Delivery(Base):
    """Delivery record - mutated only by the assignment service"""

    __tablename__ = "deliveries"

    id = Column(Integer, primary_key=True, index=True)

    establishment_id = Column(Integer, ForeignKey("establishments.id"), nullable=False, index=True)
    courier_id = Column(Integer, ForeignKey("actor_profiles.id"), nullable=True, index=True)

    # Money - total charged to the establishment, split at assignment time
    total_value = Column(Numeric(10, 2), nullable=False, default=0)
    courier_payout = Column(Numeric(10, 2), nullable=True)
    operator_profit = Column(Numeric(10, 2), nullable=True)
    # the dispatcher fulfils the delivery personally - no split
    operator_fulfilled = Column(Boolean, nullable=False, default=False)

    status = Column(SQLEnum(DeliveryStatus), nullable=False, default=DeliveryStatus.PENDING, index=True)
    # bumped on every status change - orders realtime events per row
    version = Column(Integer, nullable=False, default=0)

    # Addressing
    customer_name = Column(String(150), nullable=True)
    customer_phone = Column(String(30), nullable=True)
    destination_address = Column(JSON, nullable=False, default=list)  # list of address lines
    collection_address = Column(String(500), nullable=True)
    note = Column(Text, nullable=True)

    # Queue slot this delivery was promoted from - a slot is promoted at most once
    intake_slot_id = Column(String(64), unique=True, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    status_changed_at = Column(DateTime, default=datetime.utcnow)
    assigned_at = Column(DateTime, nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    collected_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    establishment = relationship("Establishment", foreign_keys=[establishment_id])
    courier = relationship("ActorProfile", foreign_keys=[courier_id])

    @property
    def is_candidate(self) -> bool:
        return self.status in CANDIDATE_STATUSES
