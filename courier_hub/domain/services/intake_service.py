"""
Intake Service - establishment request queues and the candidate list

Requests arrive from the WhatsApp automation as raw JSON and are kept, as
is, in the establishment's ``request_queue`` until a dispatcher assigns
them. The dispatcher's candidate list merges those queued requests with
persisted deliveries waiting for a courier (pending / returned to pool).
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from courier_hub.core.config import settings
from courier_hub.core.exceptions import NotFoundException, QueueContention, ValidationException
from courier_hub.core.logging import get_logger, log_async_operation
from courier_hub.db.models.delivery import Delivery
from courier_hub.db.models.establishment import Establishment
from courier_hub.db.store import DeliveryStore
from courier_hub.domain.candidates import (
    Candidate,
    CandidateProvenance,
    PersistedCandidate,
    QueuedCandidate,
)
from courier_hub.domain.intake_payload import (
    RECEIVED_AT_KEY,
    SLOT_ID_KEY,
    QueuedRequest,
)
from courier_hub.domain.services.assignment_service import AssignmentService
from courier_hub.domain.services.notification_service import NotificationDispatcher
from courier_hub.domain.services.realtime_service import NullRealtimeBridge, queue_change

logger = get_logger(__name__)


@dataclass
class CandidateView:
    """One row of the dispatcher inbox"""
    candidate: Candidate
    establishment_id: int
    customer_name: str
    customer_phone: Optional[str]
    destination_address: List[str]
    total_value: Decimal
    requested_at: Optional[datetime]
    note: Optional[str]
    status: str

    @property
    def provenance(self) -> CandidateProvenance:
        return self.candidate.provenance


@dataclass
class EstablishmentCandidates:
    establishment_id: int
    name: str
    collection_address: str
    neighborhood: Optional[str]
    candidates: List[CandidateView] = field(default_factory=list)


def _queued_view(establishment: Establishment, slot_index: int, raw: dict) -> CandidateView:
    request = QueuedRequest.from_raw(raw)
    return CandidateView(
        candidate=QueuedCandidate(
            establishment_id=establishment.id,
            slot_index=slot_index,
            slot_id=request.slot_id,
            raw_payload=raw,
        ),
        establishment_id=establishment.id,
        customer_name=request.customer_name,
        customer_phone=request.customer_phone,
        destination_address=list(request.destination_address),
        total_value=request.total_value,
        requested_at=request.requested_at,
        note=request.note,
        status="pending",
    )


def _persisted_view(delivery: Delivery) -> CandidateView:
    return CandidateView(
        candidate=PersistedCandidate(delivery_id=delivery.id),
        establishment_id=delivery.establishment_id,
        customer_name=delivery.customer_name or settings.INTAKE_FALLBACK_CUSTOMER_NAME,
        customer_phone=delivery.customer_phone,
        destination_address=list(delivery.destination_address or []),
        total_value=delivery.total_value,
        requested_at=delivery.created_at,
        note=delivery.note,
        status=delivery.status.value,
    )


class IntakeService:
    """Queue intake and the dispatcher's view of assignable requests"""

    def __init__(
        self,
        db: AsyncSession,
        engine: Optional[AssignmentService] = None,
        notifications: Optional[NotificationDispatcher] = None,
        realtime=None,
    ):
        self.db = db
        self.store = DeliveryStore(db)
        self.notifications = notifications if notifications is not None else NotificationDispatcher(db)
        self.realtime = realtime if realtime is not None else NullRealtimeBridge()
        self.engine = engine if engine is not None else AssignmentService(
            db, realtime=self.realtime, notifications=self.notifications
        )

    async def list_candidates(
        self, establishment_id: Optional[int] = None
    ) -> List[EstablishmentCandidates]:
        """
        Candidates grouped per establishment: queued requests in queue order,
        then persisted deliveries oldest first. Establishments with nothing to
        assign are left out.
        """
        establishments = await self.store.list_establishments(establishment_id)
        persisted = await self.store.list_candidate_deliveries(establishment_id)

        groups = []
        for establishment in establishments:
            views = []
            for slot_index, raw in enumerate(establishment.request_queue or []):
                if not isinstance(raw, dict):
                    logger.warning(
                        "Skipping malformed queue slot",
                        extra_data={"establishment_id": establishment.id, "slot_index": slot_index},
                    )
                    continue
                views.append(_queued_view(establishment, slot_index, raw))
            views.extend(
                _persisted_view(d) for d in persisted if d.establishment_id == establishment.id
            )
            if views:
                groups.append(EstablishmentCandidates(
                    establishment_id=establishment.id,
                    name=establishment.name,
                    collection_address=establishment.pickup_address,
                    neighborhood=establishment.neighborhood,
                    candidates=views,
                ))
        return groups

    @log_async_operation("enqueue_request")
    async def enqueue_request(self, establishment_id: int, payload: Any) -> QueuedCandidate:
        """
        Append a raw request to the establishment queue.

        The append is a compare-and-swap on ``queue_version``, retried while
        other writers (assignments, concurrent intake) keep changing the queue.
        """
        if not isinstance(payload, dict):
            raise ValidationException("Request payload must be a JSON object", field="payload")

        stamped = dict(payload)
        stamped[SLOT_ID_KEY] = uuid.uuid4().hex
        stamped[RECEIVED_AT_KEY] = datetime.utcnow().isoformat()
        request = QueuedRequest.from_raw(stamped)

        attempts = settings.INTAKE_MAX_ENQUEUE_ATTEMPTS
        for attempt in range(1, attempts + 1):
            establishment = await self.store.get_establishment(establishment_id, refresh=True)
            if establishment is None:
                raise NotFoundException("Establishment", establishment_id)
            slot_index = len(establishment.request_queue or [])

            try:
                appended = await self.store.append_queue_slot(establishment, stamped)
                if appended:
                    await self.db.commit()
                else:
                    await self.db.rollback()
            except Exception:
                await self.db.rollback()
                raise

            if appended:
                break
            logger.warning(
                "Request queue changed concurrently, retrying",
                extra_data={"establishment_id": establishment_id, "attempt": attempt},
            )
        else:
            raise QueueContention(establishment_id, attempts)

        logger.info(
            "Request queued",
            extra_data={
                "establishment_id": establishment_id,
                "slot_id": request.slot_id,
                "slot_index": slot_index,
                "total": str(request.total_value),
            },
        )

        establishment = await self.store.get_establishment(establishment_id, refresh=True)
        await self.realtime.publish(queue_change(establishment))
        await self.notifications.notify_new_pending(establishment, request.total_value)

        return QueuedCandidate(
            establishment_id=establishment_id,
            slot_index=slot_index,
            slot_id=request.slot_id,
            raw_payload=stamped,
        )

    async def assign(
        self,
        candidate: Candidate,
        courier_id: Optional[int],
        dispatcher_id: int,
    ) -> Delivery:
        """Dispatcher action on an inbox row"""
        return await self.engine.assign(candidate, courier_id, dispatcher_id)
