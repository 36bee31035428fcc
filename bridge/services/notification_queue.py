"""
Bounded background queue for temporary password notifications.

Migrations hand notifications to the queue and move on; delivery happens in
worker tasks with their own retry policy, so a slow or failing mail service
never affects a migration outcome.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, List, Optional

from bridge.core.config import settings
from bridge.core.logging import get_logger
from bridge.core.metrics import get_metrics_collector
from bridge.services import email_service as email_module

logger = get_logger(__name__)


@dataclass
class NotificationJob:
    email: str
    password: str
    user_id: Optional[int] = None


class NotificationQueue:
    """Bounded asyncio queue drained by a fixed pool of workers."""

    def __init__(
        self,
        sender: Optional[Any] = None,
        maxsize: Optional[int] = None,
        workers: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_base_seconds: Optional[float] = None,
    ):
        self._sender = sender
        self.maxsize = settings.NOTIFICATION_QUEUE_SIZE if maxsize is None else maxsize
        self.worker_count = (
            settings.NOTIFICATION_WORKERS if workers is None else workers
        )
        self.max_attempts = (
            settings.NOTIFICATION_MAX_ATTEMPTS if max_attempts is None else max_attempts
        )
        self.retry_base_seconds = (
            settings.NOTIFICATION_RETRY_BASE_SECONDS
            if retry_base_seconds is None
            else retry_base_seconds
        )
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []

    @property
    def sender(self):
        return self._sender or email_module.email_service

    @property
    def running(self) -> bool:
        return self._queue is not None and bool(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def _ensure_started(self) -> None:
        """Create the queue and workers on the running event loop."""
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self.maxsize)
        self._workers = [
            loop.create_task(self._worker(i), name=f"notification-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(
            "Notification queue started",
            extra={"workers": self.worker_count, "maxsize": self.maxsize},
        )

    async def start(self) -> None:
        self._ensure_started()

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """
        Stop the workers, giving queued jobs ``drain_timeout`` seconds to finish.
        """
        if self._queue is None:
            return
        if self._workers and not self._queue.empty():
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Notification queue stopped with pending jobs",
                    extra={"pending": self._queue.qsize()},
                )
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
        logger.info("Notification queue stopped")

    def submit(self, email: str, password: str, user_id: Optional[int] = None) -> bool:
        """
        Enqueue a temporary password notification.

        Never blocks and never raises.

        Returns:
            True if queued, False if dropped
        """
        metrics = get_metrics_collector()
        try:
            self._ensure_started()
        except RuntimeError:
            logger.warning(
                "Notification dropped, no running event loop",
                extra={"user_id": user_id},
            )
            metrics.record_notification("dropped")
            return False

        try:
            self._queue.put_nowait(  # type: ignore[union-attr]
                NotificationJob(email=email, password=password, user_id=user_id)
            )
        except asyncio.QueueFull:
            logger.warning(
                json.dumps(
                    {
                        "event": "notification_dropped",
                        "reason": "queue_full",
                        "user_id": user_id,
                        "maxsize": self.maxsize,
                    }
                )
            )
            metrics.record_notification("dropped")
            return False
        return True

    async def _worker(self, index: int) -> None:
        queue = self._queue
        assert queue is not None
        while True:
            job = await queue.get()
            try:
                await self._deliver(job)
            finally:
                queue.task_done()

    async def _deliver(self, job: NotificationJob) -> bool:
        metrics = get_metrics_collector()
        for attempt in range(1, self.max_attempts + 1):
            try:
                sent = await asyncio.to_thread(
                    self.sender.send_temporary_password_email, job.email, job.password
                )
            except Exception as e:
                # A broken sender must not kill the worker
                logger.error(
                    "Notification sender raised",
                    extra={"user_id": job.user_id, "attempt": attempt, "error": str(e)},
                )
                sent = False

            if sent:
                metrics.record_notification("sent")
                return True

            if attempt < self.max_attempts:
                metrics.record_notification("retried")
                await asyncio.sleep(self.retry_base_seconds * (2 ** (attempt - 1)))

        metrics.record_notification("failed")
        logger.error(
            json.dumps(
                {
                    "event": "notification_failed",
                    "user_id": job.user_id,
                    "attempts": self.max_attempts,
                }
            )
        )
        return False


notification_queue = NotificationQueue()
