"""
Notification Service - push notifications to dispatchers and couriers

Notifications are fire-and-forget: they are sent after the triggering
transaction commits and a transport failure is logged, never raised and
never rolled back.
"""
from decimal import Decimal
from typing import Any, Iterable, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from courier_hub.core.config import settings
from courier_hub.core.exceptions import TransportFailure
from courier_hub.core.logging import get_correlation_id, get_logger
from courier_hub.db.models.actor_profile import ActorRole
from courier_hub.db.models.delivery import Delivery
from courier_hub.db.models.establishment import Establishment
from courier_hub.db.store import DeliveryStore

logger = get_logger(__name__)

NEW_PENDING_TITLE = "NOVA ENTREGA DISPONÍVEL"
ASSIGNED_TITLE = "Nova entrega atribuída"
REJECTED_TITLE = "Entrega devolvida"


def format_brl(amount: Any) -> str:
    """Decimal("1234.5") -> "R$ 1.234,50" """
    value = Decimal(str(amount or 0)).quantize(Decimal("0.01"))
    text = f"{value:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"R$ {text}"


class PushTransport(Protocol):
    def send(
        self,
        recipient_ids: list[int],
        title: str,
        body: str,
        deep_link: Optional[str] = None,
    ) -> None:
        ...


class CeleryPushTransport:
    """Enqueues the push worker task; the worker talks to the push gateway"""

    def send(
        self,
        recipient_ids: list[int],
        title: str,
        body: str,
        deep_link: Optional[str] = None,
    ) -> None:
        from courier_hub.workers.tasks import send_push_notification

        send_push_notification.delay(
            list(recipient_ids), title, body, deep_link, correlation_id=get_correlation_id()
        )


class NotificationDispatcher:
    """Builds notification texts and hands them to the push transport"""

    def __init__(self, db: AsyncSession, transport: Optional[PushTransport] = None):
        self.db = db
        self.store = DeliveryStore(db)
        self.transport = transport if transport is not None else CeleryPushTransport()

    async def _dispatcher_ids(self) -> list[int]:
        return [actor.id for actor in await self.store.list_actors(ActorRole.DISPATCHER)]

    def _send(
        self,
        recipient_ids: Iterable[int],
        title: str,
        body: str,
        deep_link: Optional[str],
        context: dict[str, Any],
    ) -> bool:
        recipients = sorted(set(recipient_ids))
        if not recipients:
            logger.debug("Notification skipped - no recipients", extra_data=context)
            return False

        try:
            self.transport.send(recipients, title, body, deep_link)
        except Exception as e:
            failure = TransportFailure("push", str(e))
            logger.error(
                failure.message,
                extra_data={
                    **context,
                    "recipients": recipients,
                    "error_code": failure.error_code.value,
                },
                exc_info=True,
            )
            return False

        logger.info(
            "Notification enqueued",
            extra_data={**context, "recipients": recipients, "title": title},
        )
        return True

    async def notify_new_pending(
        self,
        establishment: Establishment,
        total_value: Any,
    ) -> bool:
        """All dispatchers: a new request entered an establishment queue"""
        context = {"event": "new_pending", "establishment_id": establishment.id}
        try:
            recipients = await self._dispatcher_ids()
        except Exception as e:
            logger.error(
                "Failed to load notification recipients",
                extra_data={**context, "error": str(e)},
                exc_info=True,
            )
            return False
        body = f"{establishment.name} solicitou uma entrega - {format_brl(total_value)}\ntoque para ver"
        return self._send(recipients, NEW_PENDING_TITLE, body, f"{settings.APP_BASE_URL}/admin", context)

    async def notify_assigned(self, delivery: Delivery, establishment_name: str) -> bool:
        """The assigned courier: a delivery is waiting for acceptance"""
        context = {"event": "assigned", "delivery_id": delivery.id, "courier_id": delivery.courier_id}
        if delivery.courier_id is None or delivery.operator_fulfilled:
            return False
        body = (
            f"{establishment_name} - {delivery.customer_name or settings.INTAKE_FALLBACK_CUSTOMER_NAME}"
            f" - {format_brl(delivery.courier_payout)}"
        )
        return self._send(
            [delivery.courier_id],
            ASSIGNED_TITLE,
            body,
            f"{settings.APP_BASE_URL}/driver",
            context,
        )

    async def notify_rejected(self, delivery: Delivery, rejected_by_name: str) -> bool:
        """All dispatchers: a delivery went back to the pool"""
        context = {"event": "rejected", "delivery_id": delivery.id}
        try:
            recipients = await self._dispatcher_ids()
        except Exception as e:
            logger.error(
                "Failed to load notification recipients",
                extra_data={**context, "error": str(e)},
                exc_info=True,
            )
            return False
        body = f"Entrega #{delivery.id} recusada por {rejected_by_name} - aguardando novo entregador"
        return self._send(recipients, REJECTED_TITLE, body, f"{settings.APP_BASE_URL}/admin", context)
