"""
Management API Routes - courier roster, establishments and price tables

All endpoints are dispatcher-only.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field, field_validator

from courier_hub.api.dependencies.actor import get_current_dispatcher
from courier_hub.api.dependencies.services import get_management_service
from courier_hub.core.validation import TextSanitizer, name_validator, phone_validator
from courier_hub.db.models.actor_profile import ActorProfile
from courier_hub.domain.services.management_service import ManagementService

router = APIRouter()


# ==================== schemas ====================

class CourierFields(BaseModel):
    email: str | None = Field(None, max_length=200)
    phone: str | None = None
    pix_key: str | None = Field(None, max_length=150)
    vehicle_model: str | None = Field(None, max_length=100)
    photo_url: str | None = None
    commission_percent: Decimal | None = Field(None, ge=0, le=100, decimal_places=2)
    commission_fixed: Decimal | None = Field(None, ge=0, max_digits=10, decimal_places=2)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        return phone_validator(v)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip().lower() or None


class CourierCreate(CourierFields):
    name: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return name_validator(v)


class CourierUpdate(CourierFields):
    name: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        return name_validator(v)


class CourierProfileResponse(BaseModel):
    """Courier as shown on the roster screen, commission included"""
    id: int
    name: str
    email: str | None
    phone: str | None
    pix_key: str | None
    vehicle_model: str | None
    photo_url: str | None
    available: bool
    commission_percent: Decimal
    commission_fixed: Decimal
    created_at: datetime | None

    model_config = {"from_attributes": True}


class EstablishmentFields(BaseModel):
    phone: str | None = None
    collection_address: str | None = Field(None, max_length=500)
    neighborhood: str | None = Field(None, max_length=100)
    default_price_table: str | None = Field(None, max_length=20)
    latitude: float | None = Field(None, ge=-90, le=90)
    longitude: float | None = Field(None, ge=-180, le=180)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        return phone_validator(v)

    @field_validator("collection_address", "neighborhood")
    @classmethod
    def sanitize_text(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return TextSanitizer.sanitize(v, max_length=500) or None


class EstablishmentCreate(EstablishmentFields):
    name: str
    whatsapp_number: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return name_validator(v)


class EstablishmentUpdate(EstablishmentFields):
    name: str | None = None
    whatsapp_number: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        return name_validator(v)


class EstablishmentResponse(BaseModel):
    id: int
    name: str
    whatsapp_number: str | None
    phone: str | None
    collection_address: str | None
    neighborhood: str | None
    default_price_table: str | None
    latitude: float | None
    longitude: float | None
    queue_length: int
    created_at: datetime | None

    @classmethod
    def from_model(cls, establishment) -> "EstablishmentResponse":
        return cls(
            id=establishment.id,
            name=establishment.name,
            whatsapp_number=establishment.whatsapp_number,
            phone=establishment.phone,
            collection_address=establishment.collection_address,
            neighborhood=establishment.neighborhood,
            default_price_table=establishment.default_price_table,
            latitude=establishment.latitude,
            longitude=establishment.longitude,
            queue_length=len(establishment.request_queue or []),
            created_at=establishment.created_at,
        )


class PriceTableResponse(BaseModel):
    code: str
    fees: Dict[str, Decimal]

    @classmethod
    def from_model(cls, table) -> "PriceTableResponse":
        return cls(code=table.code, fees={fee.neighborhood: fee.fee for fee in table.fees})


class NeighborhoodCreate(BaseModel):
    neighborhood: str = Field(..., min_length=1, max_length=100)


class FeesUpdate(BaseModel):
    """Neighbourhood name -> fee, only the edited rows"""
    fees: Dict[str, Decimal] = Field(..., min_length=1)


class FeeQuoteResponse(BaseModel):
    code: str
    neighborhood: str
    fee: Decimal


# ==================== couriers ====================

@router.get(
    "/couriers",
    response_model=List[CourierProfileResponse],
    summary="Courier roster",
)
async def list_couriers(
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    service: ManagementService = Depends(get_management_service),
) -> List[CourierProfileResponse]:
    couriers = await service.list_couriers()
    return [CourierProfileResponse.model_validate(c) for c in couriers]


@router.post(
    "/couriers",
    response_model=CourierProfileResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a courier",
    description="New couriers start unavailable. The roster size is capped by MAX_COURIERS.",
)
async def create_courier(
    request: CourierCreate,
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    service: ManagementService = Depends(get_management_service),
) -> CourierProfileResponse:
    courier = await service.create_courier(actor_id=dispatcher.id, **request.model_dump())
    return CourierProfileResponse.model_validate(courier)


@router.patch(
    "/couriers/{courier_id}",
    response_model=CourierProfileResponse,
    summary="Update courier profile or commission",
)
async def update_courier(
    courier_id: int,
    request: CourierUpdate,
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    service: ManagementService = Depends(get_management_service),
) -> CourierProfileResponse:
    courier = await service.update_courier(
        courier_id, request.model_dump(exclude_unset=True), actor_id=dispatcher.id
    )
    return CourierProfileResponse.model_validate(courier)


# ==================== establishments ====================

@router.get(
    "/establishments",
    response_model=List[EstablishmentResponse],
    summary="Registered establishments",
)
async def list_establishments(
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    service: ManagementService = Depends(get_management_service),
) -> List[EstablishmentResponse]:
    establishments = await service.list_establishments()
    return [EstablishmentResponse.from_model(e) for e in establishments]


@router.post(
    "/establishments",
    response_model=EstablishmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register an establishment",
    description="The WhatsApp number is stored as the account id reported by the intake automation.",
)
async def create_establishment(
    request: EstablishmentCreate,
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    service: ManagementService = Depends(get_management_service),
) -> EstablishmentResponse:
    establishment = await service.create_establishment(actor_id=dispatcher.id, **request.model_dump())
    return EstablishmentResponse.from_model(establishment)


@router.patch(
    "/establishments/{establishment_id}",
    response_model=EstablishmentResponse,
    summary="Update establishment profile",
)
async def update_establishment(
    establishment_id: int,
    request: EstablishmentUpdate,
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    service: ManagementService = Depends(get_management_service),
) -> EstablishmentResponse:
    establishment = await service.update_establishment(
        establishment_id, request.model_dump(exclude_unset=True), actor_id=dispatcher.id
    )
    return EstablishmentResponse.from_model(establishment)


# ==================== price tables ====================

@router.get(
    "/price-tables",
    response_model=List[PriceTableResponse],
    summary="Fee per neighbourhood for every price table",
)
async def list_price_tables(
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    service: ManagementService = Depends(get_management_service),
) -> List[PriceTableResponse]:
    return [PriceTableResponse.from_model(t) for t in await service.list_price_tables()]


@router.post(
    "/price-tables",
    response_model=PriceTableResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a price table",
    description="Takes the next free code (pre_001, pre_002, ...) with a zero fee for every neighbourhood.",
)
async def add_price_table(
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    service: ManagementService = Depends(get_management_service),
) -> PriceTableResponse:
    table = await service.add_price_table(actor_id=dispatcher.id)
    return PriceTableResponse.from_model(table)


@router.post(
    "/price-tables/neighborhoods",
    response_model=List[PriceTableResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Add a neighbourhood to every price table",
)
async def add_neighborhood(
    request: NeighborhoodCreate,
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    service: ManagementService = Depends(get_management_service),
) -> List[PriceTableResponse]:
    tables = await service.add_neighborhood(request.neighborhood, actor_id=dispatcher.id)
    return [PriceTableResponse.from_model(t) for t in tables]


@router.put(
    "/price-tables/{code}/fees",
    response_model=PriceTableResponse,
    summary="Save edited fees of one table",
)
async def set_fees(
    code: str,
    request: FeesUpdate,
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    service: ManagementService = Depends(get_management_service),
) -> PriceTableResponse:
    table = await service.set_fees(code, request.fees, actor_id=dispatcher.id)
    return PriceTableResponse.from_model(table)


@router.get(
    "/price-tables/{code}/quote",
    response_model=FeeQuoteResponse,
    summary="Fee for one neighbourhood",
)
async def quote_fee(
    code: str,
    neighborhood: str,
    dispatcher: ActorProfile = Depends(get_current_dispatcher),
    service: ManagementService = Depends(get_management_service),
) -> FeeQuoteResponse:
    fee = await service.quote_fee(code, neighborhood)
    return FeeQuoteResponse(code=code, neighborhood=neighborhood, fee=fee)
