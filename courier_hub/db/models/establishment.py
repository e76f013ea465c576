"""
Establishment Model - stores requesting deliveries, with their intake queue
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Float, JSON

from courier_hub.db.database import Base


class Establishment(Base):
    """Establishment (store) that requests deliveries"""

    __tablename__ = "establishments"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), nullable=False)
    whatsapp_number = Column(String(30), unique=True, nullable=True, index=True)
    phone = Column(String(30), nullable=True)
    collection_address = Column(String(500), nullable=True)
    neighborhood = Column(String(100), nullable=True)
    default_price_table = Column(String(50), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    # Raw requests appended by the ingestion channel, not yet promoted to deliveries.
    # Every mutation bumps queue_version and is conditional on the previous value.
    request_queue = Column(JSON, nullable=False, default=list)
    queue_version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def pickup_address(self) -> str:
        """Address shown to couriers for collection"""
        return self.collection_address or self.name
