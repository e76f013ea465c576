"""
Shared-secret check for the intake webhook.

The WhatsApp automation sends ``X-Intake-Token`` with every request when
``INTAKE_WEBHOOK_TOKEN`` is configured.
"""
import hmac

from fastapi import Header, HTTPException, status

from courier_hub.core.config import settings
from courier_hub.core.logging import get_logger

logger = get_logger(__name__)


async def verify_intake_token(
    x_intake_token: str | None = Header(None),
) -> None:
    """
    - ``INTAKE_WEBHOOK_TOKEN`` not configured - no check (warned at startup).
    - header missing or different - 403 Forbidden.
    """
    expected = settings.INTAKE_WEBHOOK_TOKEN
    if not expected:
        return

    if not x_intake_token:
        logger.warning("Intake webhook request without X-Intake-Token")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing intake token",
        )

    if not hmac.compare_digest(x_intake_token, expected):
        logger.warning("Intake webhook request with an invalid token")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid intake token",
        )
