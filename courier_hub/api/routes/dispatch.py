"""
Dispatcher API Routes - candidate inbox, assignment and activity feed
"""
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, model_validator

from courier_hub.api.dependencies.actor import get_current_dispatcher
from courier_hub.api.dependencies.services import get_assignment_service, get_intake_service
from courier_hub.api.routes.schemas import ActorResponse, DeliveryResponse
from courier_hub.db.models.actor_profile import ActorProfile
from courier_hub.db.models.delivery import DeliveryStatus
from courier_hub.domain.candidates import (
    Candidate,
    CandidateProvenance,
    PersistedCandidate,
    QueuedCandidate,
)
from courier_hub.domain.services.assignment_service import AssignmentService
from courier_hub.domain.services.intake_service import CandidateView, IntakeService

router = APIRouter()


class CandidateResponse(BaseModel):
    provenance: CandidateProvenance
    delivery_id: int | None = None
    establishment_id: int
    slot_index: int | None = None
    slot_id: str | None = None
    status: str
    customer_name: str
    customer_phone: str | None
    destination_address: list[str]
    total_value: Decimal
    requested_at: datetime | None
    note: str | None

    @classmethod
    def from_view(cls, view: CandidateView) -> "CandidateResponse":
        candidate = view.candidate
        return cls(
            provenance=view.provenance,
            delivery_id=getattr(candidate, "delivery_id", None),
            establishment_id=view.establishment_id,
            slot_index=getattr(candidate, "slot_index", None),
            slot_id=getattr(candidate, "slot_id", None),
            status=view.status,
            customer_name=view.customer_name,
            customer_phone=view.customer_phone,
            destination_address=view.destination_address,
            total_value=view.total_value,
            requested_at=view.requested_at,
            note=view.note,
        )


class EstablishmentCandidatesResponse(BaseModel):
    establishment_id: int
    name: str
    collection_address: str
    neighborhood: str | None
    candidates: List[CandidateResponse]


class AssignRequest(BaseModel):
    """
    Reference to the inbox row being assigned.

    ``courier_id`` omitted or null - the dispatcher fulfils the delivery.
    """
    provenance: CandidateProvenance
    delivery_id: int | None = None
    establishment_id: int | None = None
    slot_index: int | None = None
    slot_id: str | None = None
    courier_id: int | None = None

    @model_validator(mode="after")
    def check_reference(self) -> "AssignRequest":
        if self.provenance == CandidateProvenance.PERSISTED:
            if self.delivery_id is None:
                raise ValueError("delivery_id is required for a persisted candidate")
        elif self.establishment_id is None or self.slot_index is None or not self.slot_id:
            raise ValueError(
                "establishment_id, slot_index and slot_id are required for a queued candidate"
            )
        return self

    def to_candidate(self) -> Candidate:
        if self.provenance == CandidateProvenance.PERSISTED:
            return PersistedCandidate(delivery_id=self.delivery_id)
        return QueuedCandidate(
            establishment_id=self.establishment_id,
            slot_index=self.slot_index,
            slot_id=self.slot_id,
        )


@router.get(
    "/candidates",
    response_model=List[EstablishmentCandidatesResponse],
    summary="Assignable requests per establishment",
    description=(
        "Queued requests in queue order followed by persisted deliveries "
        "that are pending or were returned to the pool."
    ),
)
async def list_candidates(
    establishment_id: int | None = None,
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    intake: IntakeService = Depends(get_intake_service),
) -> List[EstablishmentCandidatesResponse]:
    groups = await intake.list_candidates(establishment_id)
    return [
        EstablishmentCandidatesResponse(
            establishment_id=group.establishment_id,
            name=group.name,
            collection_address=group.collection_address,
            neighborhood=group.neighborhood,
            candidates=[CandidateResponse.from_view(view) for view in group.candidates],
        )
        for group in groups
    ]


@router.post(
    "/assign",
    response_model=DeliveryResponse,
    summary="Assign a candidate",
    description="Assign to an available courier, or to the acting dispatcher when courier_id is null.",
)
async def assign_candidate(
    request: AssignRequest,
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    intake: IntakeService = Depends(get_intake_service),
) -> DeliveryResponse:
    delivery = await intake.assign(request.to_candidate(), request.courier_id, dispatcher.id)
    return DeliveryResponse.model_validate(delivery)


@router.post(
    "/deliveries/{delivery_id}/reject",
    response_model=DeliveryResponse,
    summary="Return a delivery to the pool",
)
async def reject_delivery(
    delivery_id: int,
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    service: AssignmentService = Depends(get_assignment_service),
) -> DeliveryResponse:
    delivery = await service.reject(delivery_id, dispatcher.id)
    return DeliveryResponse.model_validate(delivery)


@router.get(
    "/deliveries",
    response_model=List[DeliveryResponse],
    summary="Activity feed",
)
async def list_deliveries(
    status: DeliveryStatus | None = None,
    courier_id: int | None = None,
    establishment_id: int | None = None,
    search: str | None = Query(None, max_length=100),
    limit: int = Query(20, ge=1, le=200),
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    service: AssignmentService = Depends(get_assignment_service),
) -> List[DeliveryResponse]:
    deliveries = await service.list_deliveries(
        status=status,
        courier_id=courier_id,
        establishment_id=establishment_id,
        search=search,
        limit=limit,
    )
    return [DeliveryResponse.model_validate(d) for d in deliveries]


@router.get(
    "/couriers/available",
    response_model=List[ActorResponse],
    summary="Couriers that can take a delivery now",
)
async def list_available_couriers(
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    service: AssignmentService = Depends(get_assignment_service),
) -> List[ActorResponse]:
    couriers = await service.list_available_couriers()
    return [ActorResponse.model_validate(c) for c in couriers]
