"""
Domain Services
"""
from courier_hub.domain.services.assignment_service import AssignmentService
from courier_hub.domain.services.intake_service import IntakeService
from courier_hub.domain.services.ledger_service import LedgerService
from courier_hub.domain.services.notification_service import NotificationDispatcher
from courier_hub.domain.services.realtime_service import RedisRealtimeBridge, NullRealtimeBridge

__all__ = [
    "AssignmentService",
    "IntakeService",
    "LedgerService",
    "NotificationDispatcher",
    "RedisRealtimeBridge",
    "NullRealtimeBridge",
]
