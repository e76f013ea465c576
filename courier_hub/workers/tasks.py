"""
Celery Tasks - push notification delivery

The API process only enqueues; this worker loads each recipient's web-push
subscription and hands it to the push gateway. Delivery is best-effort:
a failed push is logged and never retried.
"""
from __future__ import annotations

import asyncio
import json
from contextlib import contextmanager
from typing import Any, Optional

import httpx
from sqlalchemy import select

from courier_hub.workers.celery_app import celery_app
from courier_hub.db.database import get_task_session
from courier_hub.db.models.actor_profile import ActorProfile
from courier_hub.core.config import settings
from courier_hub.core.exceptions import TransportFailure
from courier_hub.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro, correlation_id: Optional[str] = None):
    """Run a coroutine on a fresh loop, logging under the enqueuing request's correlation ID"""
    set_correlation_id(correlation_id)

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


def parse_subscription(push_token: Optional[str]) -> Optional[dict[str, Any]]:
    """Stored token is a serialized web-push subscription; it needs an endpoint"""
    if not push_token:
        return None
    try:
        subscription = json.loads(push_token)
    except (TypeError, ValueError):
        return None
    if not isinstance(subscription, dict) or not subscription.get("endpoint"):
        return None
    return subscription


async def _post_push(
    client: httpx.AsyncClient,
    subscription: dict[str, Any],
    notification: dict[str, Any],
) -> None:
    headers = {}
    if settings.PUSH_GATEWAY_TOKEN:
        headers["Authorization"] = f"Bearer {settings.PUSH_GATEWAY_TOKEN}"
    response = await client.post(
        settings.PUSH_GATEWAY_URL,
        json={"subscription": subscription, "notification": notification},
        headers=headers,
    )
    if response.status_code >= 400:
        raise TransportFailure.from_response("push_gateway", response)


async def deliver_push_notification(
    recipient_ids: list[int],
    title: str,
    body: str,
    deep_link: Optional[str] = None,
) -> dict[str, int]:
    """Send one notification to every recipient with a usable subscription"""
    async with get_task_session() as db:
        result = await db.execute(
            select(ActorProfile.id, ActorProfile.push_token)
            .where(ActorProfile.id.in_(recipient_ids))
        )
        rows = result.all()

    notification = {"title": title, "body": body, "url": deep_link}
    sent = failed = skipped = 0

    async with httpx.AsyncClient(timeout=settings.PUSH_TIMEOUT_SECONDS) as client:
        for actor_id, push_token in rows:
            subscription = parse_subscription(push_token)
            if subscription is None:
                skipped += 1
                continue
            try:
                await _post_push(client, subscription, notification)
                sent += 1
            except (httpx.HTTPError, TransportFailure) as e:
                failed += 1
                logger.error(
                    "Push delivery failed",
                    extra_data={"actor_id": actor_id, "title": title, "error": str(e)},
                    exc_info=True,
                )

    skipped += len(set(recipient_ids) - {actor_id for actor_id, _ in rows})
    logger.info(
        "Push notification processed",
        extra_data={"title": title, "sent": sent, "failed": failed, "skipped": skipped},
    )
    return {"sent": sent, "failed": failed, "skipped": skipped}


@celery_app.task(name="courier_hub.workers.tasks.send_push_notification", max_retries=0)
def send_push_notification(
    recipient_ids: list[int],
    title: str,
    body: str,
    deep_link: Optional[str] = None,
    correlation_id: Optional[str] = None,
):
    """Fire-and-forget push to a list of actor profiles"""
    return run_async(
        deliver_push_notification(recipient_ids, title, body, deep_link),
        correlation_id=correlation_id,
    )
