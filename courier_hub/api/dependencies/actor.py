"""
Acting profile resolution.

Session bootstrapping happens upstream; every request carries the id of the
acting dispatcher or courier profile in ``X-Actor-Id``.

Usage:
    @router.post("/deliveries/{delivery_id}/accept")
    async def accept(..., actor: ActorProfile = Depends(get_current_actor)):
        ...
"""
from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from courier_hub.core.exceptions import ActorNotFoundError, ForbiddenException
from courier_hub.core.logging import get_logger
from courier_hub.db.database import get_db
from courier_hub.db.models.actor_profile import ActorProfile
from courier_hub.db.store import DeliveryStore

logger = get_logger(__name__)


async def get_current_actor(
    x_actor_id: int = Header(..., alias="X-Actor-Id"),
    db: AsyncSession = Depends(get_db),
) -> ActorProfile:
    actor = await DeliveryStore(db).get_actor(x_actor_id)
    if actor is None:
        logger.warning("Unknown acting profile", extra_data={"actor_id": x_actor_id})
        raise ActorNotFoundError(x_actor_id)
    return actor


async def get_current_dispatcher(
    actor: ActorProfile = Depends(get_current_actor),
) -> ActorProfile:
    if not actor.is_dispatcher:
        raise ForbiddenException("Dispatcher role required", actor_id=actor.id)
    return actor
