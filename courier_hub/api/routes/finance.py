"""
Finance API Routes - manual ledger entries and derived balances
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field, field_validator

from courier_hub.api.dependencies.actor import get_current_dispatcher
from courier_hub.api.dependencies.services import get_ledger_service
from courier_hub.core.exceptions import ValidationException
from courier_hub.db.models.actor_profile import ActorProfile
from courier_hub.db.models.ledger_entry import LedgerEntryKind
from courier_hub.db.store import DateRange
from courier_hub.domain.services.ledger_service import LedgerService

router = APIRouter()


class TransactionCreate(BaseModel):
    kind: LedgerEntryKind
    entity_id: int
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    method: str = "PIX"
    note: str | None = Field(None, max_length=500)

    @field_validator("method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return v.strip() or "PIX"


class TransactionResponse(BaseModel):
    id: int
    kind: LedgerEntryKind
    entity_id: int
    amount: Decimal
    method: str
    note: str | None
    recorded_by_id: int | None
    created_at: datetime | None

    model_config = {"from_attributes": True}


class EstablishmentBalanceResponse(BaseModel):
    establishment_id: int
    name: str
    deliveries: int
    billed: Decimal
    received: Decimal
    outstanding: Decimal

    model_config = {"from_attributes": True}


class CourierBalanceResponse(BaseModel):
    courier_id: int
    name: str
    deliveries: int
    earned: Decimal
    paid: Decimal
    outstanding: Decimal

    model_config = {"from_attributes": True}


class BalancesResponse(BaseModel):
    establishments: List[EstablishmentBalanceResponse]
    couriers: List[CourierBalanceResponse]


class OperatorSummaryResponse(BaseModel):
    deliveries: int
    gross_revenue: Decimal
    courier_cost: Decimal
    net_profit: Decimal

    model_config = {"from_attributes": True}


def _naive_utc(value: datetime | None) -> datetime | None:
    # timestamps are stored as naive UTC
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _date_range(start: datetime | None, end: datetime | None) -> DateRange:
    start, end = _naive_utc(start), _naive_utc(end)
    if start is not None and end is not None and end <= start:
        raise ValidationException("end must be after start", field="end")
    return DateRange(start=start, end=end)


@router.post(
    "/transactions",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a receipt or a courier payment",
    description="Ledger entries are append-only; a correction is recorded as a new entry.",
)
async def record_transaction(
    request: TransactionCreate,
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    ledger: LedgerService = Depends(get_ledger_service),
) -> TransactionResponse:
    entry = await ledger.record_transaction(
        kind=request.kind,
        entity_id=request.entity_id,
        amount=request.amount,
        method=request.method,
        note=request.note,
        recorded_by_id=dispatcher.id,
    )
    return TransactionResponse.model_validate(entry)


@router.get(
    "/balances",
    response_model=BalancesResponse,
    summary="Receivables per establishment and payables per courier",
)
async def get_balances(
    start: datetime | None = None,
    end: datetime | None = None,
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    ledger: LedgerService = Depends(get_ledger_service),
) -> BalancesResponse:
    date_range = _date_range(start, end)
    establishments = await ledger.establishment_summaries(date_range)
    couriers = await ledger.courier_summaries(date_range)
    return BalancesResponse(
        establishments=[EstablishmentBalanceResponse.model_validate(e) for e in establishments],
        couriers=[CourierBalanceResponse.model_validate(c) for c in couriers],
    )


@router.get(
    "/summary",
    response_model=OperatorSummaryResponse,
    summary="Operator revenue, courier cost and net profit",
)
async def get_summary(
    start: datetime | None = None,
    end: datetime | None = None,
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    ledger: LedgerService = Depends(get_ledger_service),
) -> OperatorSummaryResponse:
    summary = await ledger.operator_summary(_date_range(start, end))
    return OperatorSummaryResponse.model_validate(summary)
