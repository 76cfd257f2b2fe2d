"""Notification collaborator: POST the completed-scan summary to an internal webhook."""

import asyncio
import logging
from typing import TYPE_CHECKING

import httpx

from vibetrace.schemas.scan import ScanCompleteSummary

if TYPE_CHECKING:
    from vibetrace.core.config import Settings

logger = logging.getLogger(__name__)

SHARED_SECRET_HEADER = "X-Internal-Secret"


class NotificationError(Exception):
    """Raised when the completion webhook cannot be delivered."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


async def notify_scan_complete(summary: ScanCompleteSummary, settings: "Settings") -> bool:
    """
    Deliver summary to NOTIFY_WEBHOOK_URL. Returns False when no webhook is configured.

    Raises NotificationError on transport failure or a non-2xx response.
    """
    if not settings.NOTIFY_WEBHOOK_URL:
        logger.info("No notification webhook configured", extra={"scan_id": summary.scan_id})
        return False

    headers = {}
    if settings.NOTIFY_SHARED_SECRET is not None:
        headers[SHARED_SECRET_HEADER] = settings.NOTIFY_SHARED_SECRET.get_secret_value()
    payload = summary.model_dump(by_alias=True, mode="json")
    timeout = httpx.Timeout(settings.NOTIFY_TIMEOUT_SEC)
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            async with asyncio.timeout(settings.NOTIFY_TIMEOUT_SEC):
                response = await client.post(settings.NOTIFY_WEBHOOK_URL, json=payload, headers=headers)
    except TimeoutError as e:
        raise NotificationError("Notification webhook timed out.", cause=e) from e
    except httpx.HTTPError as e:
        raise NotificationError("Notification webhook is unreachable.", cause=e) from e
    if not response.is_success:
        raise NotificationError(f"Notification webhook returned status {response.status_code}.")

    logger.info("Scan completion notified", extra={"scan_id": summary.scan_id})
    return True
