"""
Actor Profile Model - dispatchers and couriers
"""
import enum
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Boolean, Float, Numeric, Text

from courier_hub.db.database import Base


class ActorRole(str, enum.Enum):
    DISPATCHER = "dispatcher"
    COURIER = "courier"


class ActorProfile(Base):
    """Profile of a dispatcher or courier session owner"""

    __tablename__ = "actor_profiles"

    id = Column(Integer, primary_key=True, index=True)
    role = Column(SQLEnum(ActorRole), nullable=False, default=ActorRole.COURIER, index=True)
    name = Column(String(150), nullable=False)
    email = Column(String(200), unique=True, nullable=True)
    phone = Column(String(30), nullable=True)
    pix_key = Column(String(150), nullable=True)
    vehicle_model = Column(String(100), nullable=True)
    photo_url = Column(Text, nullable=True)
    # serialized web-push subscription (JSON string) - consumed by the push worker
    push_token = Column(Text, nullable=True)

    # Live position - best-effort, most recent write wins
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    position_updated_at = Column(DateTime, nullable=True)

    # Toggled by accept/complete/reject; couriers toggle it only while idle
    available = Column(Boolean, nullable=False, default=False)

    # Operator commission per delivery: percentage of the total plus a fixed fee
    commission_percent = Column(Numeric(5, 2), nullable=False, default=Decimal("20"))
    commission_fixed = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_dispatcher(self) -> bool:
        return self.role == ActorRole.DISPATCHER

    @property
    def is_courier(self) -> bool:
        return self.role == ActorRole.COURIER
