"""
Assignment Service - delivery lifecycle state machine

    pending/awaiting_pool --assign--> assigned
    assigned --accept--> en_route
    assigned --reject--> awaiting_pool
    en_route --confirm_collection--> collected
    collected --confirm_completion--> completed
    en_route --reject--> awaiting_pool          (dispatcher only)

Each operation reads the delivery, checks the actor and the current status,
then writes through a conditional update on the status it read. Status, money
fields and courier availability are committed in one transaction; realtime
events and notifications go out only after the commit.
"""
from dataclasses import dataclass, field
from datetime import datetime, time
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from courier_hub.core.config import settings
from courier_hub.core.exceptions import (
    ActorNotFoundError,
    CandidateNotFound,
    CourierUnavailable,
    DeliveryNotFoundError,
    ForbiddenException,
    IllegalTransition,
    QueueContention,
    ValidationException,
)
from courier_hub.core.logging import get_logger, log_async_operation
from courier_hub.db.models.actor_profile import ActorProfile
from courier_hub.db.models.delivery import (
    ACTIVE_STATUSES,
    Delivery,
    DeliveryStatus,
)
from courier_hub.db.store import DateRange, DeliveryStore
from courier_hub.domain.candidates import Candidate, PersistedCandidate, QueuedCandidate
from courier_hub.domain.intake_payload import QueuedRequest, promotion_slot_id, slot_identity
from courier_hub.domain.services.ledger_service import (
    Split,
    compute_split,
    operator_split,
    verify_split,
    ZERO,
)
from courier_hub.domain.services.notification_service import NotificationDispatcher
from courier_hub.domain.services.realtime_service import (
    NullRealtimeBridge,
    RowChange,
    actor_change,
    delivery_change,
    queue_change,
)

logger = get_logger(__name__)


@dataclass
class CourierDeliveries:
    """Courier dashboard: what to accept, what is in progress, recent history"""
    assigned: List[Delivery] = field(default_factory=list)
    active: List[Delivery] = field(default_factory=list)
    history: List[Delivery] = field(default_factory=list)
    today_earnings: Decimal = ZERO


class AssignmentService:
    """The only writer of delivery status"""

    def __init__(
        self,
        db: AsyncSession,
        realtime=None,
        notifications: Optional[NotificationDispatcher] = None,
    ):
        self.db = db
        self.store = DeliveryStore(db)
        self.realtime = realtime if realtime is not None else NullRealtimeBridge()
        self.notifications = notifications if notifications is not None else NotificationDispatcher(db)

    # ==================== helpers ====================

    async def _get_delivery(self, delivery_id: int) -> Delivery:
        delivery = await self.store.get_delivery(delivery_id, refresh=True)
        if not delivery:
            raise DeliveryNotFoundError(delivery_id)
        return delivery

    async def _get_actor(self, actor_id: int) -> ActorProfile:
        actor = await self.store.get_actor(actor_id, refresh=True)
        if not actor:
            raise ActorNotFoundError(actor_id)
        return actor

    async def _require_dispatcher(self, actor_id: int) -> ActorProfile:
        actor = await self._get_actor(actor_id)
        if not actor.is_dispatcher:
            raise ForbiddenException("Only dispatchers can perform this operation", actor_id=actor_id)
        return actor

    @staticmethod
    def _require_status(delivery: Delivery, expected: DeliveryStatus, operation: str) -> None:
        if delivery.status != expected:
            raise IllegalTransition(delivery.id, delivery.status.value, operation)

    @staticmethod
    def _require_assignee(delivery: Delivery, courier_id: int, operation: str) -> None:
        if delivery.courier_id != courier_id:
            raise IllegalTransition(
                delivery.id,
                delivery.status.value,
                operation,
                reason="delivery is assigned to another courier",
            )

    async def _publish(self, change: RowChange) -> None:
        try:
            await self.realtime.publish(change)
        except Exception as e:
            logger.error(
                "Failed to publish realtime event",
                extra_data={"table": change.table, "row_id": change.row_id, "error": str(e)},
                exc_info=True,
            )

    async def _publish_actor(self, actor_id: int) -> None:
        try:
            actor = await self.store.get_actor(actor_id, refresh=True)
        except Exception as e:
            logger.error(
                "Failed to load actor for realtime event",
                extra_data={"actor_id": actor_id, "error": str(e)},
                exc_info=True,
            )
            return
        if actor:
            await self._publish(actor_change(actor))

    async def _release_courier(self, courier_id: int) -> bool:
        """Make the courier available again unless another delivery is still in progress"""
        still_active = await self.store.list_courier_deliveries(courier_id, ACTIVE_STATUSES, limit=1)
        if still_active:
            logger.info(
                "Courier stays unavailable, delivery still in progress",
                extra_data={"courier_id": courier_id, "delivery_id": still_active[0].id},
            )
            return False
        await self.store.set_actor_availability(courier_id, None, True)
        return True

    # ==================== assign ====================

    @log_async_operation("assign_delivery")
    async def assign(
        self,
        candidate: Candidate,
        courier_id: Optional[int],
        dispatcher_id: int,
    ) -> Delivery:
        """
        Assign a candidate to a courier, or to the dispatcher personally when
        ``courier_id`` is None.

        The courier availability check is a read, not a reservation: two
        dispatchers may assign different candidates to the same courier.

        Raises:
            CourierUnavailable: courier is not a courier profile or not available
            CandidateNotFound: the candidate was claimed concurrently
        """
        dispatcher = await self._require_dispatcher(dispatcher_id)

        if courier_id is None:
            assignee_id = dispatcher.id
            split_for = operator_split
        else:
            courier = await self.store.get_actor(courier_id, refresh=True)
            if courier is None:
                raise ActorNotFoundError(courier_id)
            if not courier.is_courier or not courier.available:
                raise CourierUnavailable(courier_id)
            assignee_id = courier.id
            percent = courier.commission_percent
            fixed = courier.commission_fixed

            def split_for(total) -> Split:
                return compute_split(
                    total,
                    settings.DEFAULT_COMMISSION_PERCENT if percent is None else percent,
                    settings.DEFAULT_COMMISSION_FIXED if fixed is None else fixed,
                )

        try:
            if isinstance(candidate, QueuedCandidate):
                delivery = await self._promote_queue_slot(candidate, assignee_id, split_for)
            elif isinstance(candidate, PersistedCandidate):
                delivery = await self._reassign_persisted(candidate, assignee_id, split_for)
            else:
                raise ValidationException(f"Unknown candidate type: {type(candidate).__name__}")
            verify_split(delivery)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Delivery assigned",
            extra_data={
                "delivery_id": delivery.id,
                "courier_id": delivery.courier_id,
                "dispatcher_id": dispatcher_id,
                "operator_fulfilled": delivery.operator_fulfilled,
                "provenance": candidate.provenance.value,
                "total": str(delivery.total_value),
                "payout": str(delivery.courier_payout),
                "profit": str(delivery.operator_profit),
            },
        )

        event = "INSERT" if isinstance(candidate, QueuedCandidate) else "UPDATE"
        await self._publish(delivery_change(delivery, event=event))
        establishment = await self.store.get_establishment(delivery.establishment_id, refresh=True)
        if establishment is not None:
            if isinstance(candidate, QueuedCandidate):
                await self._publish(queue_change(establishment))
            await self.notifications.notify_assigned(delivery, establishment.name)
        return delivery

    @staticmethod
    def _locate_slot(queue: list, slot_index: int, slot_id: str) -> Optional[int]:
        """Index of the slot with this identity; non-dict entries are never candidates"""
        if 0 <= slot_index < len(queue):
            raw = queue[slot_index]
            if isinstance(raw, dict) and slot_identity(raw) == slot_id:
                return slot_index
        # an earlier slot may have been claimed, shifting this one
        return next(
            (i for i, raw in enumerate(queue) if isinstance(raw, dict) and slot_identity(raw) == slot_id),
            None,
        )

    async def _promote_queue_slot(self, candidate: QueuedCandidate, assignee_id: int, split_for) -> Delivery:
        attempts = settings.INTAKE_MAX_ENQUEUE_ATTEMPTS
        for attempt in range(1, attempts + 1):
            establishment = await self.store.get_establishment(candidate.establishment_id, refresh=True)
            if establishment is None:
                raise CandidateNotFound(candidate.reference())

            queue = list(establishment.request_queue or [])
            slot_index = self._locate_slot(queue, candidate.slot_index, candidate.slot_id)
            if slot_index is None:
                raise CandidateNotFound(candidate.reference())

            raw = queue[slot_index]
            request = QueuedRequest.from_raw(raw)
            split = split_for(request.total_value)
            now = datetime.utcnow()
            fields = dict(
                split.as_fields(),
                courier_id=assignee_id,
                status=DeliveryStatus.ASSIGNED,
                customer_name=request.customer_name,
                customer_phone=request.customer_phone,
                destination_address=request.destination_address,
                collection_address=establishment.pickup_address,
                note=request.note,
                status_changed_at=now,
                assigned_at=now,
            )
            delivery = await self.store.create_delivery_from_queue_slot(
                establishment,
                establishment.queue_version,
                slot_index,
                promotion_slot_id(raw),
                fields,
            )
            if delivery is not None:
                return delivery

            # the queue moved (an intake append or another promotion); look again
            logger.info(
                "Queue changed during promotion, retrying",
                extra_data={
                    "establishment_id": candidate.establishment_id,
                    "slot_id": candidate.slot_id,
                    "attempt": attempt,
                },
            )

        raise QueueContention(candidate.establishment_id, attempts)

    async def _reassign_persisted(self, candidate: PersistedCandidate, assignee_id: int, split_for) -> Delivery:
        delivery = await self.store.get_delivery(candidate.delivery_id, refresh=True)
        if delivery is None or not delivery.is_candidate:
            raise CandidateNotFound(candidate.reference())
        split = split_for(delivery.total_value)
        return await self.store.reassign_existing_delivery(
            delivery.id, delivery.status, assignee_id, split.as_fields()
        )

    # ==================== courier transitions ====================

    @log_async_operation("accept_delivery")
    async def accept(self, delivery_id: int, courier_id: int) -> Delivery:
        """assigned -> en_route; the courier becomes unavailable. Idempotent."""
        delivery = await self._get_delivery(delivery_id)
        if delivery.status == DeliveryStatus.EN_ROUTE and delivery.courier_id == courier_id:
            logger.info(
                "Delivery already accepted by this courier",
                extra_data={"delivery_id": delivery_id, "courier_id": courier_id},
            )
            return delivery

        self._require_status(delivery, DeliveryStatus.ASSIGNED, "accept")
        self._require_assignee(delivery, courier_id, "accept")

        try:
            delivery = await self.store.update_delivery_status(
                delivery_id,
                DeliveryStatus.ASSIGNED,
                DeliveryStatus.EN_ROUTE,
                {"accepted_at": datetime.utcnow()},
            )
            if not delivery.operator_fulfilled:
                await self.store.set_actor_availability(courier_id, None, False)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Delivery accepted",
            extra_data={"delivery_id": delivery_id, "courier_id": courier_id},
        )
        await self._publish(delivery_change(delivery))
        if not delivery.operator_fulfilled:
            await self._publish_actor(courier_id)
        return delivery

    @log_async_operation("reject_delivery")
    async def reject(self, delivery_id: int, actor_id: int) -> Delivery:
        """
        Return a delivery to the pool.

        From ``assigned`` the assigned courier or any dispatcher may reject;
        from ``en_route`` only a dispatcher. The split is discarded and is
        recomputed for the next courier.
        """
        delivery = await self._get_delivery(delivery_id)
        actor = await self._get_actor(actor_id)

        if delivery.status == DeliveryStatus.ASSIGNED:
            if not (actor.is_dispatcher or delivery.courier_id == actor.id):
                raise IllegalTransition(
                    delivery.id, delivery.status.value, "reject",
                    reason="delivery is assigned to another courier",
                )
        elif delivery.status == DeliveryStatus.EN_ROUTE:
            if not actor.is_dispatcher:
                raise IllegalTransition(
                    delivery.id, delivery.status.value, "reject",
                    reason="only a dispatcher can return a delivery that is en route",
                )
        else:
            raise IllegalTransition(delivery.id, delivery.status.value, "reject")

        previous_status = delivery.status
        previous_courier_id = delivery.courier_id
        was_operator_fulfilled = delivery.operator_fulfilled
        releases_courier = (
            previous_status == DeliveryStatus.EN_ROUTE
            and previous_courier_id is not None
            and not was_operator_fulfilled
        )
        restored = False

        try:
            delivery = await self.store.update_delivery_status(
                delivery_id,
                previous_status,
                DeliveryStatus.AWAITING_POOL,
                {
                    "courier_id": None,
                    "courier_payout": None,
                    "operator_profit": None,
                    "operator_fulfilled": False,
                    "assigned_at": None,
                    "accepted_at": None,
                },
            )
            if releases_courier:
                restored = await self._release_courier(previous_courier_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Delivery returned to pool",
            extra_data={
                "delivery_id": delivery_id,
                "rejected_by": actor_id,
                "previous_courier_id": previous_courier_id,
                "previous_status": previous_status.value,
            },
        )
        await self._publish(delivery_change(delivery))
        if restored:
            await self._publish_actor(previous_courier_id)
        await self.notifications.notify_rejected(delivery, actor.name)
        return delivery

    @log_async_operation("confirm_collection")
    async def confirm_collection(self, delivery_id: int, courier_id: int) -> Delivery:
        """en_route -> collected"""
        delivery = await self._get_delivery(delivery_id)
        self._require_status(delivery, DeliveryStatus.EN_ROUTE, "confirm_collection")
        self._require_assignee(delivery, courier_id, "confirm_collection")

        try:
            delivery = await self.store.update_delivery_status(
                delivery_id,
                DeliveryStatus.EN_ROUTE,
                DeliveryStatus.COLLECTED,
                {"collected_at": datetime.utcnow()},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Delivery collected",
            extra_data={"delivery_id": delivery_id, "courier_id": courier_id},
        )
        await self._publish(delivery_change(delivery))
        return delivery

    @log_async_operation("confirm_completion")
    async def confirm_completion(self, delivery_id: int, courier_id: int) -> Delivery:
        """collected -> completed (terminal); the courier becomes available once idle"""
        delivery = await self._get_delivery(delivery_id)
        self._require_status(delivery, DeliveryStatus.COLLECTED, "confirm_completion")
        self._require_assignee(delivery, courier_id, "confirm_completion")
        verify_split(delivery)

        try:
            delivery = await self.store.update_delivery_status(
                delivery_id,
                DeliveryStatus.COLLECTED,
                DeliveryStatus.COMPLETED,
                {"completed_at": datetime.utcnow()},
            )
            restored = False
            if not delivery.operator_fulfilled:
                restored = await self._release_courier(courier_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Delivery completed",
            extra_data={
                "delivery_id": delivery_id,
                "courier_id": courier_id,
                "payout": str(delivery.courier_payout),
                "profit": str(delivery.operator_profit),
            },
        )
        await self._publish(delivery_change(delivery))
        if restored:
            await self._publish_actor(courier_id)
        return delivery

    # ==================== courier profile ====================

    @log_async_operation("set_availability")
    async def set_availability(self, courier_id: int, available: bool) -> ActorProfile:
        """Courier toggle - refused while a delivery is en route or collected"""
        courier = await self._get_actor(courier_id)
        if not courier.is_courier:
            raise ForbiddenException("Only couriers have an availability toggle", actor_id=courier_id)

        active = await self.store.list_courier_deliveries(courier_id, ACTIVE_STATUSES, limit=1)
        if active:
            raise IllegalTransition(
                active[0].id,
                active[0].status.value,
                "set_availability",
                reason="courier has a delivery in progress",
            )

        try:
            await self.store.set_actor_availability(courier_id, None, available)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Courier availability changed",
            extra_data={"courier_id": courier_id, "available": available},
        )
        courier = await self._get_actor(courier_id)
        await self._publish(actor_change(courier))
        return courier

    async def update_position(self, actor_id: int, latitude: float, longitude: float) -> ActorProfile:
        """Best-effort live position, most recent write wins"""
        if not -90 <= latitude <= 90:
            raise ValidationException("Latitude out of range", field="latitude")
        if not -180 <= longitude <= 180:
            raise ValidationException("Longitude out of range", field="longitude")

        try:
            updated = await self.store.update_actor_position(actor_id, latitude, longitude)
            if not updated:
                raise ActorNotFoundError(actor_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        actor = await self._get_actor(actor_id)
        await self._publish(actor_change(actor))
        return actor

    # ==================== reads ====================

    async def list_courier_deliveries(self, courier_id: int) -> CourierDeliveries:
        await self._get_actor(courier_id)
        assigned = await self.store.list_courier_deliveries(courier_id, [DeliveryStatus.ASSIGNED])
        active = await self.store.list_courier_deliveries(courier_id, ACTIVE_STATUSES)
        history = await self.store.list_courier_deliveries(
            courier_id, [DeliveryStatus.COMPLETED], limit=settings.COURIER_HISTORY_LIMIT
        )

        midnight = datetime.combine(datetime.utcnow().date(), time.min)
        completed_today = await self.store.query_completed_deliveries(
            courier_id=courier_id, date_range=DateRange(start=midnight)
        )
        today_earnings = sum(
            (d.courier_payout for d in completed_today if d.courier_payout is not None),
            ZERO,
        )
        return CourierDeliveries(
            assigned=assigned,
            active=active,
            history=history,
            today_earnings=today_earnings,
        )

    async def list_deliveries(
        self,
        *,
        status: Optional[DeliveryStatus] = None,
        courier_id: Optional[int] = None,
        establishment_id: Optional[int] = None,
        search: Optional[str] = None,
        limit: int = 20,
    ) -> List[Delivery]:
        return await self.store.search_deliveries(
            status=status,
            courier_id=courier_id,
            establishment_id=establishment_id,
            search=(search or "").strip() or None,
            limit=limit,
        )

    async def list_available_couriers(self) -> List[ActorProfile]:
        return await self.store.list_available_couriers()
