"""
Courier API Routes - own deliveries, lifecycle actions and live status
"""
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from courier_hub.api.dependencies.actor import get_current_actor
from courier_hub.api.dependencies.services import get_assignment_service
from courier_hub.api.routes.schemas import ActorResponse, DeliveryResponse
from courier_hub.db.models.actor_profile import ActorProfile
from courier_hub.domain.services.assignment_service import AssignmentService

router = APIRouter()


class CourierDeliveriesResponse(BaseModel):
    assigned: List[DeliveryResponse]
    active: List[DeliveryResponse]
    history: List[DeliveryResponse]
    today_earnings: Decimal


class AvailabilityRequest(BaseModel):
    available: bool


class PositionRequest(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


@router.get(
    "/deliveries",
    response_model=CourierDeliveriesResponse,
    summary="Courier dashboard",
    description="Deliveries waiting for acceptance, in progress, recent history and today's earnings.",
)
async def my_deliveries(
    actor: ActorProfile = Depends(get_current_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> CourierDeliveriesResponse:
    result = await service.list_courier_deliveries(actor.id)
    return CourierDeliveriesResponse(
        assigned=[DeliveryResponse.model_validate(d) for d in result.assigned],
        active=[DeliveryResponse.model_validate(d) for d in result.active],
        history=[DeliveryResponse.model_validate(d) for d in result.history],
        today_earnings=result.today_earnings,
    )


@router.post("/deliveries/{delivery_id}/accept", response_model=DeliveryResponse)
async def accept_delivery(
    delivery_id: int,
    actor: ActorProfile = Depends(get_current_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> DeliveryResponse:
    return DeliveryResponse.model_validate(await service.accept(delivery_id, actor.id))


@router.post("/deliveries/{delivery_id}/reject", response_model=DeliveryResponse)
async def reject_delivery(
    delivery_id: int,
    actor: ActorProfile = Depends(get_current_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> DeliveryResponse:
    return DeliveryResponse.model_validate(await service.reject(delivery_id, actor.id))


@router.post("/deliveries/{delivery_id}/collect", response_model=DeliveryResponse)
async def confirm_collection(
    delivery_id: int,
    actor: ActorProfile = Depends(get_current_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> DeliveryResponse:
    return DeliveryResponse.model_validate(await service.confirm_collection(delivery_id, actor.id))


@router.post("/deliveries/{delivery_id}/complete", response_model=DeliveryResponse)
async def confirm_completion(
    delivery_id: int,
    actor: ActorProfile = Depends(get_current_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> DeliveryResponse:
    return DeliveryResponse.model_validate(await service.confirm_completion(delivery_id, actor.id))


@router.put("/availability", response_model=ActorResponse)
async def set_availability(
    request: AvailabilityRequest,
    actor: ActorProfile = Depends(get_current_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> ActorResponse:
    return ActorResponse.model_validate(await service.set_availability(actor.id, request.available))


@router.put("/position", response_model=ActorResponse)
async def update_position(
    request: PositionRequest,
    actor: ActorProfile = Depends(get_current_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> ActorResponse:
    updated = await service.update_position(actor.id, request.latitude, request.longitude)
    return ActorResponse.model_validate(updated)
