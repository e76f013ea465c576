"""
Management Service - operator-maintained reference data

Courier roster (profile and commission), establishment registry (address and
WhatsApp account) and neighbourhood price tables. Role checks happen in the
API layer; ``actor_id`` is recorded in the logs only.

Establishment edits touch profile columns only. The request queue and its
version are written exclusively through the queue compare-and-swap.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from courier_hub.core.config import settings
from courier_hub.core.exceptions import (
    ActorNotFoundError,
    AlreadyExistsError,
    NotFoundException,
    RosterFull,
    ValidationException,
)
from courier_hub.core.logging import get_logger, log_async_operation
from courier_hub.core.validation import PhoneNumberValidator, TextSanitizer, ValidationPatterns
from courier_hub.db.models.actor_profile import ActorProfile, ActorRole
from courier_hub.db.models.establishment import Establishment
from courier_hub.db.models.price_table import NeighborhoodFee, PriceTable
from courier_hub.db.store import DeliveryStore
from courier_hub.domain.services.ledger_service import ZERO, to_money
from courier_hub.domain.services.realtime_service import (
    NullRealtimeBridge,
    RowChange,
    actor_change,
    queue_change,
)

logger = get_logger(__name__)

COURIER_FIELDS = (
    "name", "email", "phone", "pix_key", "vehicle_model", "photo_url",
    "commission_percent", "commission_fixed",
)
ESTABLISHMENT_FIELDS = (
    "name", "whatsapp_number", "phone", "collection_address", "neighborhood",
    "default_price_table", "latitude", "longitude",
)


def validate_commission(percent: Any = None, fixed: Any = None) -> Dict[str, Decimal]:
    """Commission percent within 0-100 and a non-negative fixed fee"""
    values: Dict[str, Decimal] = {}
    if percent is not None:
        percent = to_money(percent)
        if percent < 0 or percent > 100:
            raise ValidationException(
                "Commission percent must be between 0 and 100",
                field="commission_percent",
                details={"commission_percent": str(percent)},
            )
        values["commission_percent"] = percent
    if fixed is not None:
        fixed = to_money(fixed)
        if fixed < 0:
            raise ValidationException(
                "Fixed commission must not be negative",
                field="commission_fixed",
                details={"commission_fixed": str(fixed)},
            )
        values["commission_fixed"] = fixed
    return values


def next_price_table_code(existing: List[str]) -> str:
    """pre_001, pre_002, ... one past the highest code in use"""
    numbers = [
        int(match.group(1))
        for match in (ValidationPatterns.PRICE_TABLE_CODE.match(code) for code in existing)
        if match
    ]
    return f"pre_{max(numbers, default=0) + 1:03d}"


class ManagementService:
    """Couriers, establishments and price tables maintained by dispatchers"""

    def __init__(self, db: AsyncSession, realtime=None):
        self.db = db
        self.store = DeliveryStore(db)
        self.realtime = realtime if realtime is not None else NullRealtimeBridge()

    async def _publish(self, change: RowChange) -> None:
        try:
            await self.realtime.publish(change)
        except Exception as e:
            logger.error(
                "Failed to publish realtime event",
                extra_data={"table": change.table, "row_id": change.row_id, "error": str(e)},
                exc_info=True,
            )

    async def _commit(self, resource: str, field: str, value: Any) -> None:
        """Commit, mapping a unique-constraint race to AlreadyExistsError"""
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise AlreadyExistsError(resource, field, value)
        except Exception:
            await self.db.rollback()
            raise

    # ==================== couriers ====================

    async def _get_courier(self, courier_id: int) -> ActorProfile:
        courier = await self.store.get_actor(courier_id, refresh=True)
        if courier is None or not courier.is_courier:
            raise ActorNotFoundError(courier_id)
        return courier

    async def _ensure_email_free(self, email: Optional[str], exclude_id: Optional[int] = None) -> None:
        if not email:
            return
        query = select(ActorProfile.id).where(func.lower(ActorProfile.email) == email.lower())
        if exclude_id is not None:
            query = query.where(ActorProfile.id != exclude_id)
        if (await self.db.execute(query)).first() is not None:
            raise AlreadyExistsError("Actor", "email", email)

    async def list_couriers(self) -> List[ActorProfile]:
        return await self.store.list_actors(role=ActorRole.COURIER)

    @log_async_operation("create_courier")
    async def create_courier(self, actor_id: Optional[int] = None, **profile: Any) -> ActorProfile:
        """
        Register a courier. New couriers start unavailable and switch
        themselves on from their own screen.

        Raises:
            RosterFull: the roster already holds MAX_COURIERS couriers
            AlreadyExistsError: the email belongs to another profile
        """
        unknown = set(profile) - set(COURIER_FIELDS)
        if unknown:
            raise ValidationException(f"Unknown courier fields: {sorted(unknown)}")

        count = (await self.db.execute(
            select(func.count(ActorProfile.id)).where(ActorProfile.role == ActorRole.COURIER)
        )).scalar_one()
        if count >= settings.MAX_COURIERS:
            raise RosterFull(settings.MAX_COURIERS)

        fields = {k: v for k, v in profile.items() if v is not None}
        fields.update(validate_commission(
            fields.pop("commission_percent", settings.DEFAULT_COMMISSION_PERCENT),
            fields.pop("commission_fixed", settings.DEFAULT_COMMISSION_FIXED),
        ))
        await self._ensure_email_free(fields.get("email"))

        courier = ActorProfile(role=ActorRole.COURIER, available=False, **fields)
        self.db.add(courier)
        await self._commit("Actor", "email", fields.get("email"))
        await self.db.refresh(courier)

        logger.info(
            "Courier created",
            extra_data={
                "courier_id": courier.id,
                "created_by": actor_id,
                "commission_percent": str(courier.commission_percent),
                "commission_fixed": str(courier.commission_fixed),
            },
        )
        await self._publish(actor_change(courier))
        return courier

    @log_async_operation("update_courier")
    async def update_courier(
        self, courier_id: int, changes: Dict[str, Any], actor_id: Optional[int] = None
    ) -> ActorProfile:
        """
        Partial profile update. A commission change applies to deliveries
        assigned afterwards; splits already written are kept.
        """
        unknown = set(changes) - set(COURIER_FIELDS)
        if unknown:
            raise ValidationException(f"Unknown courier fields: {sorted(unknown)}")
        if "name" in changes and not changes["name"]:
            raise ValidationException("Name is required", field="name")

        courier = await self._get_courier(courier_id)
        fields = dict(changes)
        fields.update(validate_commission(
            fields.pop("commission_percent", None),
            fields.pop("commission_fixed", None),
        ))
        if fields.get("email"):
            await self._ensure_email_free(fields["email"], exclude_id=courier_id)

        for column, value in fields.items():
            setattr(courier, column, value)
        await self._commit("Actor", "email", fields.get("email"))
        courier = await self._get_courier(courier_id)

        logger.info(
            "Courier updated",
            extra_data={"courier_id": courier_id, "updated_by": actor_id, "fields": sorted(fields)},
        )
        await self._publish(actor_change(courier))
        return courier

    # ==================== establishments ====================

    async def _get_establishment(self, establishment_id: int) -> Establishment:
        establishment = await self.store.get_establishment(establishment_id, refresh=True)
        if establishment is None:
            raise NotFoundException("Establishment", establishment_id)
        return establishment

    async def _ensure_whatsapp_free(self, whatsapp_id: str, exclude_id: Optional[int] = None) -> None:
        query = select(Establishment.id).where(Establishment.whatsapp_number == whatsapp_id)
        if exclude_id is not None:
            query = query.where(Establishment.id != exclude_id)
        if (await self.db.execute(query)).first() is not None:
            raise AlreadyExistsError("Establishment", "whatsapp_number", whatsapp_id)

    async def _normalize_establishment_fields(
        self, fields: Dict[str, Any], exclude_id: Optional[int] = None
    ) -> Dict[str, Any]:
        fields = dict(fields)
        if fields.get("whatsapp_number"):
            raw = fields["whatsapp_number"]
            if not PhoneNumberValidator.validate(raw):
                raise ValidationException("Invalid WhatsApp number", field="whatsapp_number")
            fields["whatsapp_number"] = PhoneNumberValidator.to_whatsapp_id(raw)
            await self._ensure_whatsapp_free(fields["whatsapp_number"], exclude_id=exclude_id)
        if fields.get("default_price_table"):
            await self._get_price_table(fields["default_price_table"])
        for column, bound in (("latitude", 90), ("longitude", 180)):
            value = fields.get(column)
            if value is not None and not -bound <= value <= bound:
                raise ValidationException(f"{column.capitalize()} out of range", field=column)
        return fields

    async def list_establishments(self) -> List[Establishment]:
        return await self.store.list_establishments()

    @log_async_operation("create_establishment")
    async def create_establishment(self, actor_id: Optional[int] = None, **profile: Any) -> Establishment:
        """
        Register an establishment with an empty request queue.

        ``whatsapp_number`` is normalized to the account id the intake
        automation reports, e.g. "(11) 99123-4567" -> "551191234567@s.whatsapp.net".
        """
        unknown = set(profile) - set(ESTABLISHMENT_FIELDS)
        if unknown:
            raise ValidationException(f"Unknown establishment fields: {sorted(unknown)}")
        if not profile.get("whatsapp_number"):
            raise ValidationException("WhatsApp number is required", field="whatsapp_number")

        fields = await self._normalize_establishment_fields(
            {k: v for k, v in profile.items() if v is not None}
        )
        establishment = Establishment(request_queue=[], queue_version=0, **fields)
        self.db.add(establishment)
        await self._commit("Establishment", "whatsapp_number", fields["whatsapp_number"])
        await self.db.refresh(establishment)

        logger.info(
            "Establishment created",
            extra_data={
                "establishment_id": establishment.id,
                "created_by": actor_id,
                "whatsapp": PhoneNumberValidator.mask(establishment.whatsapp_number),
            },
        )
        await self._publish(queue_change(establishment))
        return establishment

    @log_async_operation("update_establishment")
    async def update_establishment(
        self, establishment_id: int, changes: Dict[str, Any], actor_id: Optional[int] = None
    ) -> Establishment:
        unknown = set(changes) - set(ESTABLISHMENT_FIELDS)
        if unknown:
            raise ValidationException(f"Unknown establishment fields: {sorted(unknown)}")
        if "name" in changes and not changes["name"]:
            raise ValidationException("Name is required", field="name")
        if "whatsapp_number" in changes and not changes["whatsapp_number"]:
            raise ValidationException("WhatsApp number is required", field="whatsapp_number")

        establishment = await self._get_establishment(establishment_id)
        fields = await self._normalize_establishment_fields(changes, exclude_id=establishment_id)

        for column, value in fields.items():
            setattr(establishment, column, value)
        await self._commit("Establishment", "whatsapp_number", fields.get("whatsapp_number"))

        logger.info(
            "Establishment updated",
            extra_data={
                "establishment_id": establishment_id,
                "updated_by": actor_id,
                "fields": sorted(fields),
            },
        )
        return await self._get_establishment(establishment_id)

    # ==================== price tables ====================

    async def _get_price_table(self, code: str) -> PriceTable:
        result = await self.db.execute(
            select(PriceTable)
            .where(PriceTable.code == code)
            .execution_options(populate_existing=True)
        )
        table = result.scalar_one_or_none()
        if table is None:
            raise NotFoundException("Price table", code)
        return table

    async def _known_neighborhoods(self) -> List[str]:
        result = await self.db.execute(
            select(NeighborhoodFee.neighborhood).distinct().order_by(NeighborhoodFee.neighborhood)
        )
        return list(result.scalars().all())

    async def list_price_tables(self) -> List[PriceTable]:
        result = await self.db.execute(
            select(PriceTable)
            .order_by(PriceTable.code)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    @log_async_operation("add_price_table")
    async def add_price_table(self, actor_id: Optional[int] = None) -> PriceTable:
        """New table with the next code and a zero fee for every known neighbourhood"""
        codes = list((await self.db.execute(select(PriceTable.code))).scalars().all())
        code = next_price_table_code(codes)
        neighborhoods = await self._known_neighborhoods()

        table = PriceTable(
            code=code,
            fees=[NeighborhoodFee(neighborhood=name, fee=ZERO) for name in neighborhoods],
        )
        self.db.add(table)
        await self._commit("Price table", "code", code)

        logger.info(
            "Price table added",
            extra_data={"code": code, "created_by": actor_id, "neighborhoods": len(neighborhoods)},
        )
        return await self._get_price_table(code)

    @log_async_operation("add_neighborhood")
    async def add_neighborhood(self, neighborhood: str, actor_id: Optional[int] = None) -> List[PriceTable]:
        """
        Add a neighbourhood with a zero fee in every table. The first
        neighbourhood also creates the first table.
        """
        name = TextSanitizer.sanitize(neighborhood or "", max_length=100)
        if not name:
            raise ValidationException("Neighborhood name is required", field="neighborhood")
        if name.lower() in (known.lower() for known in await self._known_neighborhoods()):
            raise AlreadyExistsError("Neighborhood", "name", name)

        tables = await self.list_price_tables()
        try:
            if not tables:
                table = PriceTable(code=settings.DEFAULT_PRICE_TABLE_CODE)
                self.db.add(table)
                await self.db.flush()
                tables = [table]
            for table in tables:
                self.db.add(NeighborhoodFee(price_table_id=table.id, neighborhood=name, fee=ZERO))
        except Exception:
            await self.db.rollback()
            raise
        await self._commit("Neighborhood", "name", name)

        logger.info(
            "Neighborhood added",
            extra_data={"neighborhood": name, "created_by": actor_id, "tables": len(tables)},
        )
        return await self.list_price_tables()

    @log_async_operation("set_neighborhood_fees")
    async def set_fees(
        self, code: str, fees: Dict[str, Any], actor_id: Optional[int] = None
    ) -> PriceTable:
        """Save edited fees of one table in a single transaction"""
        table = await self._get_price_table(code)
        by_name = {fee.neighborhood.lower(): fee for fee in table.fees}

        updates = []
        for name, value in fees.items():
            row = by_name.get(name.strip().lower())
            if row is None:
                raise NotFoundException("Neighborhood", name)
            amount = to_money(value)
            if amount < 0:
                raise ValidationException(
                    "Fee must not be negative",
                    field="fee",
                    details={"neighborhood": name, "fee": str(amount)},
                )
            updates.append((row, amount))

        try:
            for row, amount in updates:
                row.fee = amount
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Neighborhood fees updated",
            extra_data={"code": code, "updated_by": actor_id, "changed": len(updates)},
        )
        return await self._get_price_table(code)

    async def quote_fee(self, code: str, neighborhood: str) -> Decimal:
        """Fee for a neighbourhood under a table, case-insensitive on the name"""
        table = await self._get_price_table(code)
        wanted = (neighborhood or "").strip().lower()
        for fee in table.fees:
            if fee.neighborhood.lower() == wanted:
                return to_money(fee.fee)
        raise NotFoundException("Neighborhood", neighborhood)
