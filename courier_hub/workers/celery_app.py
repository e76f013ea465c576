"""
Celery application for push notifications
"""
from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from courier_hub.core.config import settings
from courier_hub.core.logging import setup_logging

NOTIFICATIONS_QUEUE = "notifications"

celery_app = Celery(
    "courier_hub",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["courier_hub.workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="America/Sao_Paulo",
    enable_utc=True,
    task_default_queue=NOTIFICATIONS_QUEUE,
    task_routes={"courier_hub.workers.tasks.*": {"queue": NOTIFICATIONS_QUEUE}},
    # a push older than this is no longer worth delivering
    task_time_limit=60,
    task_soft_time_limit=45,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # fire-and-forget; nothing reads the results
    task_ignore_result=True,
)


@celery_setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    """Workers log in the same structured format as the API"""
    setup_logging(
        level="DEBUG" if settings.DEBUG else "INFO",
        json_format=not settings.DEBUG,
        app_name=f"{settings.APP_NAME} worker",
    )
