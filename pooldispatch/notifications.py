"""
Best-effort notification side channel.
Messages are written to an outbox table and delivered on detached tasks so a
slow or failing sender never affects the transition that produced them.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from .models import NotificationRecord
from .repo import DatabaseRepository
from .schemas import AppConfig


logger = logging.getLogger(__name__)


class LoggingSender:
    """Default sender: logs the message. Swap for SMS/push/billing adapters."""

    async def send(self, record: NotificationRecord) -> None:
        logger.info(
            f"Notification {record.event} -> {record.recipient_type}"
            f"{'#' + str(record.recipient_id) if record.recipient_id else ''}: {record.payload}"
        )


class NotificationDispatcher:
    """Outbox writer plus detached delivery."""

    def __init__(self, config: AppConfig, repo: DatabaseRepository, sender: Optional[Any] = None):
        self.config = config
        self.repo = repo
        self.sender = sender or LoggingSender()
        self._tasks: Set[asyncio.Task] = set()

    def publish(
        self,
        org_id: int,
        event: str,
        recipient_type: str,
        recipient_id: Optional[int] = None,
        job_id: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None
    ) -> Optional[NotificationRecord]:
        """Record a message and schedule its delivery. Never raises."""
        if not self.config.notifications.enabled:
            return None
        try:
            record = self.repo.add(NotificationRecord(
                org_id=org_id,
                event=event,
                recipient_type=recipient_type,
                recipient_id=recipient_id,
                job_id=job_id,
                payload=payload or {},
            ))
        except Exception as e:
            logger.error(f"Failed to queue {event} notification for job {job_id}: {e}")
            return None

        try:
            task = asyncio.get_running_loop().create_task(self._deliver(record))
        except RuntimeError:
            logger.warning(f"No event loop; notification {record.id} left pending")
            return record
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return record

    async def _deliver(self, record: NotificationRecord) -> None:
        try:
            await self.sender.send(record)
        except Exception as e:
            logger.error(f"Notification {record.id} ({record.event}) failed: {e}")
            self._mark(record.id, "failed", str(e))
            return
        self._mark(record.id, "sent")

    def _mark(self, record_id: int, status: str, error: Optional[str] = None) -> None:
        try:
            self.repo.mark_notification(record_id, status, error)
        except Exception as e:
            logger.error(f"Could not update notification {record_id}: {e}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for outstanding deliveries."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
