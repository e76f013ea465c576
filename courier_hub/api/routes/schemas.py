"""
Response schemas shared by the dispatcher and courier routes
"""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, field_serializer


class DeliveryResponse(BaseModel):
    """Delivery as shown on dispatcher and courier screens"""
    id: int
    establishment_id: int
    courier_id: int | None
    status: str
    version: int
    total_value: Decimal
    courier_payout: Decimal | None
    operator_profit: Decimal | None
    operator_fulfilled: bool
    customer_name: str | None
    customer_phone: str | None
    destination_address: list[str]
    collection_address: str | None
    note: str | None
    created_at: datetime | None
    assigned_at: datetime | None
    accepted_at: datetime | None
    collected_at: datetime | None
    completed_at: datetime | None

    model_config = {"from_attributes": True}

    @field_serializer("status")
    def serialize_status(self, v) -> str:
        return str(getattr(v, "value", v))


class ActorResponse(BaseModel):
    id: int
    role: str
    name: str
    phone: str | None
    vehicle_model: str | None
    available: bool
    latitude: float | None
    longitude: float | None
    position_updated_at: datetime | None

    model_config = {"from_attributes": True}

    @field_serializer("role")
    def serialize_role(self, v) -> str:
        return str(getattr(v, "value", v))
