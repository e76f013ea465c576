"""
Intake webhook - requests pushed by the WhatsApp extraction automation.

The body is stored as-is in the establishment's request queue; any JSON
object is accepted and interpreted leniently when shown to dispatchers.
"""
from typing import Any

from fastapi import APIRouter, Body, Depends, status
from pydantic import BaseModel

from courier_hub.api.dependencies.services import get_intake_service
from courier_hub.api.dependencies.webhook_auth import verify_intake_token
from courier_hub.domain.services.intake_service import IntakeService

router = APIRouter()


class IntakeAccepted(BaseModel):
    establishment_id: int
    slot_index: int
    slot_id: str


@router.post(
    "/{establishment_id}",
    response_model=IntakeAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a delivery request for an establishment",
)
async def intake_request(
    establishment_id: int,
    payload: Any = Body(...),
    _: None = Depends(verify_intake_token),
    intake: IntakeService = Depends(get_intake_service),
) -> IntakeAccepted:
    candidate = await intake.enqueue_request(establishment_id, payload)
    return IntakeAccepted(
        establishment_id=candidate.establishment_id,
        slot_index=candidate.slot_index,
        slot_id=candidate.slot_id,
    )
