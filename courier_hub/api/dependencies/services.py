"""
Service wiring for the API layer.

Transports are separate dependencies so tests can replace them through
``app.dependency_overrides``.
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from courier_hub.db.database import get_db
from courier_hub.domain.services.assignment_service import AssignmentService
from courier_hub.domain.services.intake_service import IntakeService
from courier_hub.domain.services.ledger_service import LedgerService
from courier_hub.domain.services.management_service import ManagementService
from courier_hub.domain.services.notification_service import (
    CeleryPushTransport,
    NotificationDispatcher,
    PushTransport,
)
from courier_hub.domain.services.realtime_service import RedisRealtimeBridge


def get_realtime_bridge():
    return RedisRealtimeBridge()


def get_push_transport() -> PushTransport:
    return CeleryPushTransport()


def get_notification_dispatcher(
    db: AsyncSession = Depends(get_db),
    transport: PushTransport = Depends(get_push_transport),
) -> NotificationDispatcher:
    return NotificationDispatcher(db, transport=transport)


def get_assignment_service(
    db: AsyncSession = Depends(get_db),
    realtime=Depends(get_realtime_bridge),
    notifications: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> AssignmentService:
    return AssignmentService(db, realtime=realtime, notifications=notifications)


def get_intake_service(
    db: AsyncSession = Depends(get_db),
    realtime=Depends(get_realtime_bridge),
    notifications: NotificationDispatcher = Depends(get_notification_dispatcher),
    engine: AssignmentService = Depends(get_assignment_service),
) -> IntakeService:
    return IntakeService(db, engine=engine, notifications=notifications, realtime=realtime)


def get_ledger_service(db: AsyncSession = Depends(get_db)) -> LedgerService:
    return LedgerService(db)


def get_management_service(
    db: AsyncSession = Depends(get_db),
    realtime=Depends(get_realtime_bridge),
) -> ManagementService:
    return ManagementService(db, realtime=realtime)
