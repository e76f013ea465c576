"""
Realtime Service - row change events over Redis Pub/Sub

Every committed mutation of a delivery, establishment queue or actor
profile is published on ``<prefix>:<table>``. Dispatcher and courier
screens subscribe per table with a filter and refresh on each event.

Events carry the row ``version``; subscribers drop events older than the
last one seen for that row, so each row is observed in commit order.
Publishing happens after commit and never raises: a lost event only delays
a screen refresh.
"""
import json
from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Optional

from courier_hub.core import redis_client
from courier_hub.core.config import settings
from courier_hub.core.exceptions import TransportFailure
from courier_hub.core.logging import get_logger
from courier_hub.db.models.delivery import Delivery
from courier_hub.db.models.establishment import Establishment
from courier_hub.db.models.actor_profile import ActorProfile

logger = get_logger(__name__)

DELIVERIES_TABLE = "deliveries"
ESTABLISHMENTS_TABLE = "establishments"
ACTORS_TABLE = "actor_profiles"


def channel_name(table: str) -> str:
    return f"{settings.REALTIME_CHANNEL_PREFIX}:{table}"


def _json_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):  # enums
        return value.value
    return value


@dataclass(frozen=True)
class RowChange:
    """One committed row mutation"""
    table: str
    row_id: int
    event: str = "UPDATE"
    version: Optional[int] = None  # None - unordered row, every event is delivered
    row: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, data: str | bytes) -> "RowChange":
        payload = json.loads(data)
        return cls(
            table=payload["table"],
            row_id=int(payload["row_id"]),
            event=payload.get("event", "UPDATE"),
            version=payload.get("version"),
            row=payload.get("row") or {},
        )


def delivery_change(delivery: Delivery, event: str = "UPDATE") -> RowChange:
    row = {
        column: _json_value(getattr(delivery, column))
        for column in (
            "id", "establishment_id", "courier_id", "status", "total_value",
            "courier_payout", "operator_profit", "operator_fulfilled",
            "customer_name", "status_changed_at",
        )
    }
    return RowChange(
        table=DELIVERIES_TABLE,
        row_id=delivery.id,
        event=event,
        version=delivery.version,
        row=row,
    )


def queue_change(establishment: Establishment) -> RowChange:
    return RowChange(
        table=ESTABLISHMENTS_TABLE,
        row_id=establishment.id,
        version=establishment.queue_version,
        row={
            "id": establishment.id,
            "name": establishment.name,
            "queue_length": len(establishment.request_queue or []),
            "queue_version": establishment.queue_version,
        },
    )


def actor_change(actor: ActorProfile) -> RowChange:
    # position and availability writes are last-write-wins, not versioned
    return RowChange(
        table=ACTORS_TABLE,
        row_id=actor.id,
        row={
            column: _json_value(getattr(actor, column))
            for column in (
                "id", "role", "name", "available", "latitude", "longitude",
                "position_updated_at",
            )
        },
    )


class RowVersionTracker:
    """Drops events older than the last one seen for the same row"""

    def __init__(self):
        self._seen: dict[tuple[str, int], int] = {}

    def accept(self, change: RowChange) -> bool:
        if change.version is None:
            return True
        key = (change.table, change.row_id)
        last = self._seen.get(key)
        if last is not None and change.version <= last:
            return False
        self._seen[key] = change.version
        return True


class NullRealtimeBridge:
    """No transport - used where no screen listens (workers, some tests)"""

    async def publish(self, change: RowChange) -> None:
        logger.debug(
            "Realtime event dropped (no transport)",
            extra_data={"table": change.table, "row_id": change.row_id},
        )


class RedisRealtimeBridge:
    """Publishes row changes on Redis Pub/Sub channels"""

    async def publish(self, change: RowChange) -> None:
        channel = channel_name(change.table)
        try:
            redis = await redis_client.get_redis()
            await redis.publish(channel, change.to_json())
        except Exception as e:
            failure = TransportFailure("realtime", str(e), details={"channel": channel})
            logger.error(
                failure.message,
                extra_data={
                    "channel": channel,
                    "row_id": change.row_id,
                    "version": change.version,
                    "error_code": failure.error_code.value,
                },
                exc_info=True,
            )
            return

        logger.debug(
            "Realtime event published",
            extra_data={"channel": channel, "row_id": change.row_id, "version": change.version},
        )

    async def subscribe(
        self,
        table: str,
        predicate: Optional[Callable[[RowChange], bool]] = None,
    ) -> AsyncIterator[RowChange]:
        """Yield changes on ``table`` in row commit order, filtered by ``predicate``"""
        redis = await redis_client.get_redis()
        pubsub = redis.pubsub()
        channel = channel_name(table)
        tracker = RowVersionTracker()
        await pubsub.subscribe(channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    change = RowChange.from_json(message["data"])
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(
                        "Malformed realtime event skipped",
                        extra_data={"channel": channel, "error": str(e)},
                    )
                    continue
                if not tracker.accept(change):
                    continue
                if predicate is None or predicate(change):
                    yield change
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
