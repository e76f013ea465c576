"""
Ledger Service - delivery money split and derived balances

Balances are never stored: every figure is recomputed from completed
deliveries and append-only ledger entries, so a receivable or payable is
always consistent with the rows it is derived from.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from courier_hub.db.models.delivery import Delivery
from courier_hub.db.models.ledger_entry import LedgerEntry, LedgerEntryKind
from courier_hub.db.models.actor_profile import ActorRole
from courier_hub.db.store import DateRange, DeliveryStore
from courier_hub.core.exceptions import (
    ActorNotFoundError,
    ConsistencyViolation,
    NotFoundException,
    ValidationException,
)
from courier_hub.core.logging import get_logger

logger = get_logger(__name__)

MONEY_QUANT = Decimal("0.01")
SPLIT_TOLERANCE = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Quantize to cents, half-up"""
    try:
        return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as e:
        raise ValidationException(f"Invalid monetary amount: {value!r}", field="amount") from e


@dataclass(frozen=True)
class Split:
    """Money split of one delivery between courier and operator"""
    total: Decimal
    payout: Decimal
    profit: Decimal
    operator_fulfilled: bool = False

    def as_fields(self) -> dict[str, Any]:
        return {
            "total_value": self.total,
            "courier_payout": self.payout,
            "operator_profit": self.profit,
            "operator_fulfilled": self.operator_fulfilled,
        }


def compute_split(total: Any, commission_percent: Any, commission_fixed: Any = ZERO) -> Split:
    """
    Split a delivery total: the operator keeps ``percent`` of the total plus
    the fixed fee, the courier gets the rest.

    Raises:
        ConsistencyViolation: the commission would make payout or profit negative
    """
    total = to_money(total)
    percent = Decimal(str(commission_percent))
    fixed = Decimal(str(commission_fixed))

    profit = to_money(total * percent / Decimal("100") + fixed)
    payout = total - profit

    if payout < 0 or profit < 0:
        raise ConsistencyViolation(
            "Commission produces a negative split",
            details={
                "total": str(total),
                "commission_percent": str(percent),
                "commission_fixed": str(fixed),
                "payout": str(payout),
                "profit": str(profit),
            },
        )
    return Split(total=total, payout=payout, profit=profit)


def operator_split(total: Any) -> Split:
    """Self-fulfilment: the operator keeps the whole total"""
    total = to_money(total)
    return Split(total=total, payout=ZERO, profit=total, operator_fulfilled=True)


def verify_split(delivery: Delivery) -> None:
    """Raise ConsistencyViolation unless total == payout + profit within a cent"""
    total = delivery.total_value
    payout = delivery.courier_payout
    profit = delivery.operator_profit
    if total is None or payout is None or profit is None:
        raise ConsistencyViolation(
            "Delivery money fields are not set",
            details={"delivery_id": delivery.id},
        )
    if abs(Decimal(total) - (Decimal(payout) + Decimal(profit))) >= SPLIT_TOLERANCE:
        raise ConsistencyViolation(
            "Delivery split does not add up to its total",
            details={
                "delivery_id": delivery.id,
                "total": str(total),
                "payout": str(payout),
                "profit": str(profit),
            },
        )


@dataclass
class EstablishmentBalance:
    establishment_id: int
    name: str
    deliveries: int
    billed: Decimal
    received: Decimal
    outstanding: Decimal


@dataclass
class CourierBalance:
    courier_id: int
    name: str
    deliveries: int
    earned: Decimal
    paid: Decimal
    outstanding: Decimal


@dataclass
class OperatorSummary:
    deliveries: int
    gross_revenue: Decimal
    courier_cost: Decimal
    net_profit: Decimal


def _sum(values) -> Decimal:
    return sum((Decimal(v) for v in values if v is not None), ZERO)


def _operator_share(delivery: Delivery) -> Decimal:
    if delivery.operator_fulfilled:
        return Decimal(delivery.total_value)
    return Decimal(delivery.operator_profit or ZERO)


def _courier_share(delivery: Delivery) -> Decimal:
    if delivery.operator_fulfilled:
        return ZERO
    return Decimal(delivery.courier_payout or ZERO)


class LedgerService:
    """Append-only money records and balances derived from them"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.store = DeliveryStore(db)

    async def record_transaction(
        self,
        kind: LedgerEntryKind,
        entity_id: int,
        amount: Any,
        method: str = "PIX",
        note: Optional[str] = None,
        recorded_by_id: Optional[int] = None,
    ) -> LedgerEntry:
        """
        Record a manual receipt from an establishment or a payment to a courier.

        Entries are never updated or deleted; a correction is a new entry.
        """
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationException(
                "Amount must be positive",
                field="amount",
                details={"amount": str(amount)},
            )
        method = (method or "").strip() or "PIX"

        if kind == LedgerEntryKind.RECEIPT_FROM_ESTABLISHMENT:
            if await self.store.get_establishment(entity_id) is None:
                raise NotFoundException("Establishment", entity_id)
        else:
            courier = await self.store.get_actor(entity_id)
            if courier is None or courier.role != ActorRole.COURIER:
                raise ActorNotFoundError(entity_id)

        try:
            entry = await self.store.append_ledger_entry(
                kind=kind,
                entity_id=entity_id,
                amount=amount,
                method=method,
                note=note,
                recorded_by_id=recorded_by_id,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        await self.db.refresh(entry)

        logger.info(
            "Ledger entry recorded",
            extra_data={
                "entry_id": entry.id,
                "kind": kind.value,
                "entity_id": entity_id,
                "amount": str(amount),
                "method": method,
                "recorded_by_id": recorded_by_id,
            },
        )
        return entry

    async def establishment_receivable(
        self, establishment_id: int, date_range: DateRange = DateRange()
    ) -> Decimal:
        """Σ total of completed deliveries - Σ receipts"""
        deliveries = await self.store.query_completed_deliveries(
            establishment_id=establishment_id, date_range=date_range
        )
        receipts = await self.store.query_ledger_entries(
            LedgerEntryKind.RECEIPT_FROM_ESTABLISHMENT, establishment_id, date_range
        )
        return _sum(d.total_value for d in deliveries) - _sum(e.amount for e in receipts)

    async def courier_payable(
        self, courier_id: int, date_range: DateRange = DateRange()
    ) -> Decimal:
        """Σ payout of completed courier-fulfilled deliveries - Σ payments"""
        deliveries = await self.store.query_completed_deliveries(
            courier_id=courier_id, date_range=date_range
        )
        payments = await self.store.query_ledger_entries(
            LedgerEntryKind.PAYMENT_TO_COURIER, courier_id, date_range
        )
        return _sum(_courier_share(d) for d in deliveries) - _sum(e.amount for e in payments)

    async def operator_profit(self, date_range: DateRange = DateRange()) -> Decimal:
        """Σ profit of courier-fulfilled deliveries + Σ total of self-fulfilled ones"""
        deliveries = await self.store.query_completed_deliveries(date_range=date_range)
        return _sum(_operator_share(d) for d in deliveries)

    async def operator_summary(self, date_range: DateRange = DateRange()) -> OperatorSummary:
        deliveries = await self.store.query_completed_deliveries(date_range=date_range)
        return OperatorSummary(
            deliveries=len(deliveries),
            gross_revenue=_sum(d.total_value for d in deliveries),
            courier_cost=_sum(_courier_share(d) for d in deliveries),
            net_profit=_sum(_operator_share(d) for d in deliveries),
        )

    async def establishment_summaries(
        self, date_range: DateRange = DateRange()
    ) -> List[EstablishmentBalance]:
        deliveries = await self.store.query_completed_deliveries(date_range=date_range)
        receipts = await self.store.query_ledger_entries(
            LedgerEntryKind.RECEIPT_FROM_ESTABLISHMENT, date_range=date_range
        )

        summaries = []
        for establishment in await self.store.list_establishments():
            own = [d for d in deliveries if d.establishment_id == establishment.id]
            billed = _sum(d.total_value for d in own)
            received = _sum(e.amount for e in receipts if e.entity_id == establishment.id)
            summaries.append(EstablishmentBalance(
                establishment_id=establishment.id,
                name=establishment.name,
                deliveries=len(own),
                billed=billed,
                received=received,
                outstanding=billed - received,
            ))
        return summaries

    async def courier_summaries(
        self, date_range: DateRange = DateRange()
    ) -> List[CourierBalance]:
        deliveries = await self.store.query_completed_deliveries(date_range=date_range)
        payments = await self.store.query_ledger_entries(
            LedgerEntryKind.PAYMENT_TO_COURIER, date_range=date_range
        )

        summaries = []
        for courier in await self.store.list_actors(ActorRole.COURIER):
            own = [
                d for d in deliveries
                if d.courier_id == courier.id and not d.operator_fulfilled
            ]
            earned = _sum(_courier_share(d) for d in own)
            paid = _sum(e.amount for e in payments if e.entity_id == courier.id)
            summaries.append(CourierBalance(
                courier_id=courier.id,
                name=courier.name,
                deliveries=len(own),
                earned=earned,
                paid=paid,
                outstanding=earned - paid,
            ))
        return summaries
