"""
Delivery Store - transactional operations with conditional updates.

Every status or queue mutation is an ``UPDATE ... WHERE <expected value>``;
a zero row count means another actor won the race. Nothing here commits:
the calling service owns the transaction and commits status, money fields
and availability together or rolls all of it back.

Note: ORM objects are re-read with ``populate_existing`` after each core
UPDATE, since the identity map is not synchronized by the UPDATE itself.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, List, Optional

from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from courier_hub.db.models.delivery import Delivery, DeliveryStatus, CANDIDATE_STATUSES
from courier_hub.db.models.establishment import Establishment
from courier_hub.db.models.actor_profile import ActorProfile, ActorRole
from courier_hub.db.models.ledger_entry import LedgerEntry, LedgerEntryKind
from courier_hub.core.exceptions import (
    CandidateNotFound,
    ConsistencyViolation,
    DeliveryNotFoundError,
    IllegalTransition,
)
from courier_hub.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DateRange:
    """Half-open range [start, end); either bound may be open."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def conditions(self, column) -> list:
        clauses = []
        if self.start is not None:
            clauses.append(column >= self.start)
        if self.end is not None:
            clauses.append(column < self.end)
        return clauses


class DeliveryStore:
    """Store operations consumed by the assignment, intake and ledger services"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== reads ====================

    async def get_delivery(self, delivery_id: int, *, refresh: bool = False) -> Optional[Delivery]:
        query = select(Delivery).where(Delivery.id == delivery_id)
        if refresh:
            query = query.execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_actor(self, actor_id: int, *, refresh: bool = False) -> Optional[ActorProfile]:
        query = select(ActorProfile).where(ActorProfile.id == actor_id)
        if refresh:
            query = query.execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_establishment(
        self, establishment_id: int, *, refresh: bool = False
    ) -> Optional[Establishment]:
        query = select(Establishment).where(Establishment.id == establishment_id)
        if refresh:
            query = query.execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def list_establishments(self, establishment_id: Optional[int] = None) -> List[Establishment]:
        query = select(Establishment).order_by(Establishment.name, Establishment.id)
        if establishment_id is not None:
            query = query.where(Establishment.id == establishment_id)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def list_actors(self, role: Optional[ActorRole] = None) -> List[ActorProfile]:
        query = select(ActorProfile).order_by(ActorProfile.name, ActorProfile.id)
        if role is not None:
            query = query.where(ActorProfile.role == role)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_available_couriers(self) -> List[ActorProfile]:
        result = await self.db.execute(
            select(ActorProfile)
            .where(ActorProfile.role == ActorRole.COURIER, ActorProfile.available.is_(True))
            .order_by(ActorProfile.name)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_candidate_deliveries(
        self, establishment_id: Optional[int] = None
    ) -> List[Delivery]:
        """Persisted candidates (pending / awaiting_pool), oldest first"""
        query = (
            select(Delivery)
            .where(Delivery.status.in_(CANDIDATE_STATUSES))
            .order_by(Delivery.created_at, Delivery.id)
            .execution_options(populate_existing=True)
        )
        if establishment_id is not None:
            query = query.where(Delivery.establishment_id == establishment_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_courier_deliveries(
        self,
        courier_id: int,
        statuses: Iterable[DeliveryStatus],
        limit: Optional[int] = None,
    ) -> List[Delivery]:
        query = (
            select(Delivery)
            .where(Delivery.courier_id == courier_id, Delivery.status.in_(list(statuses)))
            .order_by(Delivery.created_at.desc(), Delivery.id.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def search_deliveries(
        self,
        *,
        status: Optional[DeliveryStatus] = None,
        courier_id: Optional[int] = None,
        establishment_id: Optional[int] = None,
        search: Optional[str] = None,
        limit: int = 20,
    ) -> List[Delivery]:
        """Dispatcher activity feed - most recent first"""
        query = select(Delivery).order_by(Delivery.created_at.desc(), Delivery.id.desc())
        if status is not None:
            query = query.where(Delivery.status == status)
        if courier_id is not None:
            query = query.where(Delivery.courier_id == courier_id)
        if establishment_id is not None:
            query = query.where(Delivery.establishment_id == establishment_id)
        if search:
            pattern = f"%{search}%"
            query = query.where(
                or_(Delivery.customer_name.ilike(pattern), Delivery.note.ilike(pattern))
            )
        result = await self.db.execute(query.limit(limit).execution_options(populate_existing=True))
        return list(result.scalars().all())

    # ==================== conditional writes ====================

    async def update_delivery_status(
        self,
        delivery_id: int,
        expected_status: DeliveryStatus,
        new_status: DeliveryStatus,
        extra_fields: Optional[dict[str, Any]] = None,
    ) -> Delivery:
        """Compare-and-swap on status. Raises IllegalTransition on mismatch."""
        now = datetime.utcnow()
        values = dict(extra_fields or {})
        values.update(
            status=new_status,
            version=Delivery.version + 1,
            status_changed_at=now,
            updated_at=now,
        )
        result = await self.db.execute(
            update(Delivery)
            .where(Delivery.id == delivery_id, Delivery.status == expected_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = await self.get_delivery(delivery_id, refresh=True)
            if current is None:
                raise DeliveryNotFoundError(delivery_id)
            logger.warning(
                "Conditional status update lost",
                extra_data={
                    "delivery_id": delivery_id,
                    "expected_status": expected_status.value,
                    "current_status": current.status.value,
                    "new_status": new_status.value,
                },
            )
            raise IllegalTransition(
                delivery_id,
                current.status.value,
                f"{expected_status.value}->{new_status.value}",
            )
        return await self.get_delivery(delivery_id, refresh=True)

    async def reassign_existing_delivery(
        self,
        delivery_id: int,
        expected_status: DeliveryStatus,
        courier_id: int,
        money_fields: dict[str, Any],
    ) -> Delivery:
        """Persisted candidate -> assigned. Losing the race means the candidate is gone."""
        fields = dict(money_fields)
        fields.update(courier_id=courier_id, assigned_at=datetime.utcnow())
        try:
            return await self.update_delivery_status(
                delivery_id, expected_status, DeliveryStatus.ASSIGNED, fields
            )
        except IllegalTransition:
            raise CandidateNotFound({"provenance": "persisted", "delivery_id": delivery_id})

    async def replace_queue(
        self,
        establishment_id: int,
        expected_version: int,
        new_queue: list,
    ) -> bool:
        """Compare-and-swap on the establishment's queue version"""
        result = await self.db.execute(
            update(Establishment)
            .where(
                Establishment.id == establishment_id,
                Establishment.queue_version == expected_version,
            )
            .values(
                request_queue=new_queue,
                queue_version=Establishment.queue_version + 1,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def append_queue_slot(self, establishment: Establishment, payload: dict) -> bool:
        """Append one raw request; False when the queue changed since it was read"""
        queue = list(establishment.request_queue or [])
        queue.append(payload)
        return await self.replace_queue(establishment.id, establishment.queue_version, queue)

    async def create_delivery_from_queue_slot(
        self,
        establishment: Establishment,
        expected_version: int,
        slot_index: int,
        slot_id: str,
        fields: dict[str, Any],
    ) -> Optional[Delivery]:
        """
        Remove a queue slot and create its Delivery row in the same transaction.

        The queue CAS guarantees the slot is removed exactly once; the unique
        ``intake_slot_id`` guarantees it is never promoted twice. Returns None
        when the queue changed since ``expected_version`` was read.
        """
        queue = list(establishment.request_queue or [])
        reference = {
            "provenance": "queued",
            "establishment_id": establishment.id,
            "slot_index": slot_index,
            "slot_id": slot_id,
        }
        if not 0 <= slot_index < len(queue):
            raise CandidateNotFound(reference)

        del queue[slot_index]
        if not await self.replace_queue(establishment.id, expected_version, queue):
            return None

        delivery = Delivery(
            establishment_id=establishment.id,
            intake_slot_id=slot_id,
            version=1,
            **fields,
        )
        self.db.add(delivery)
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise ConsistencyViolation(
                "Queue slot promoted twice",
                details={**reference, "error": str(e.orig)},
            )
        return delivery

    async def set_actor_availability(
        self,
        actor_id: int,
        expected_value: Optional[bool],
        new_value: bool,
    ) -> bool:
        """Conditional availability write; ``expected_value=None`` writes unconditionally"""
        query = update(ActorProfile).where(ActorProfile.id == actor_id)
        if expected_value is not None:
            query = query.where(ActorProfile.available.is_(expected_value))
        result = await self.db.execute(
            query.values(available=new_value, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_actor_position(
        self, actor_id: int, latitude: float, longitude: float
    ) -> bool:
        """Most recent write wins"""
        now = datetime.utcnow()
        result = await self.db.execute(
            update(ActorProfile)
            .where(ActorProfile.id == actor_id)
            .values(latitude=latitude, longitude=longitude, position_updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ==================== ledger ====================

    async def append_ledger_entry(
        self,
        kind: LedgerEntryKind,
        entity_id: int,
        amount: Decimal,
        method: str,
        note: Optional[str] = None,
        recorded_by_id: Optional[int] = None,
        created_at: Optional[datetime] = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            kind=kind,
            entity_id=entity_id,
            amount=amount,
            method=method,
            note=note,
            recorded_by_id=recorded_by_id,
        )
        if created_at is not None:
            entry.created_at = created_at
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def query_completed_deliveries(
        self,
        *,
        establishment_id: Optional[int] = None,
        courier_id: Optional[int] = None,
        date_range: DateRange = DateRange(),
    ) -> List[Delivery]:
        query = select(Delivery).where(
            Delivery.status == DeliveryStatus.COMPLETED,
            *date_range.conditions(Delivery.completed_at),
        )
        if establishment_id is not None:
            query = query.where(Delivery.establishment_id == establishment_id)
        if courier_id is not None:
            query = query.where(Delivery.courier_id == courier_id)
        result = await self.db.execute(
            query.order_by(Delivery.completed_at, Delivery.id).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def query_ledger_entries(
        self,
        kind: LedgerEntryKind,
        entity_id: Optional[int] = None,
        date_range: DateRange = DateRange(),
    ) -> List[LedgerEntry]:
        query = select(LedgerEntry).where(
            LedgerEntry.kind == kind,
            *date_range.conditions(LedgerEntry.created_at),
        )
        if entity_id is not None:
            query = query.where(LedgerEntry.entity_id == entity_id)
        result = await self.db.execute(query.order_by(LedgerEntry.created_at, LedgerEntry.id))
        return list(result.scalars().all())
