"""Background delivery of outbound email.

Request handlers enqueue an ``OutboundEmail`` and return immediately. The
``NotificationWorker`` drains the queue, hands each message to the blocking
SMTP transport in a thread and retries with exponential backoff. Delivery
failures are logged and recorded in the mail log, never raised to callers.
"""

from __future__ import annotations

import asyncio
import time
from typing import List, Optional

from sakalsense.logging import get_logger
from sakalsense.service.email import (
    EmailResult,
    EmailService,
    MailLog,
    MailStatus,
    OutboundEmail,
    redact_email,
)

logger = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 1000
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY_SECONDS = 1.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_DRAIN_TIMEOUT_SECONDS = 5.0


class NotificationQueue:
    """Bounded in-process queue of emails awaiting delivery."""

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue: asyncio.Queue[OutboundEmail] = asyncio.Queue(maxsize=maxsize)

    def enqueue(self, email: OutboundEmail) -> bool:
        try:
            self._queue.put_nowait(email)
        except asyncio.QueueFull:
            logger.error(
                "notification_queue_full",
                to=redact_email(email.to),
                email_type=email.email_type.value,
                size=self._queue.qsize(),
            )
            return False
        logger.debug("notification_enqueued", email_type=email.email_type.value, size=self._queue.qsize())
        return True

    def qsize(self) -> int:
        return self._queue.qsize()

    def drain_nowait(self) -> List[OutboundEmail]:
        """Remove and return everything currently queued."""
        items = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return items
            self._queue.task_done()

    async def get(self) -> OutboundEmail:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()


class NotificationWorker:
    """Delivers queued email with retry and exponential backoff."""

    def __init__(
        self,
        queue: NotificationQueue,
        email_service: EmailService,
        mail_log: Optional[MailLog] = None,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS,
        backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    ) -> None:
        self.queue = queue
        self.email_service = email_service
        self.mail_log = mail_log
        self.max_attempts = max(1, max_attempts)
        self.initial_delay = initial_delay
        self.backoff_multiplier = backoff_multiplier
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("notification_worker_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("notification_worker_started", max_attempts=self.max_attempts)

    async def stop(self, *, drain_timeout: float = DEFAULT_DRAIN_TIMEOUT_SECONDS) -> None:
        """Deliver what is already queued within ``drain_timeout``, then stop."""
        if self._task is not None:
            try:
                await asyncio.wait_for(self.queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("notification_worker_drain_timeout", pending=self.queue.qsize())
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("notification_worker_stopped", pending=self.queue.qsize())

    async def _run_loop(self) -> None:
        """Main worker loop."""
        while self._running:
            email = await self.queue.get()
            try:
                await self.deliver(email)
            except Exception as exc:
                logger.error(
                    "notification_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    to=redact_email(email.to),
                )
            finally:
                self.queue.task_done()

    async def deliver(self, email: OutboundEmail) -> EmailResult:
        """Send with retries. Returns the last transport result."""
        delay = self.initial_delay
        started = time.monotonic()
        result = EmailResult(success=False, error="not attempted")
        for attempt in range(1, self.max_attempts + 1):
            result = await asyncio.to_thread(self.email_service.send, email)
            if result.success:
                await self._record(email, MailStatus.SENT, started, result, retry_count=attempt - 1)
                return result
            if attempt < self.max_attempts:
                logger.warning(
                    "email_retry_scheduled",
                    to=redact_email(email.to),
                    attempt=attempt,
                    delay_seconds=delay,
                    error=result.error,
                )
                await asyncio.sleep(delay)
                delay *= self.backoff_multiplier

        logger.error(
            "email_delivery_failed",
            to=redact_email(email.to),
            email_type=email.email_type.value,
            attempts=self.max_attempts,
            error=result.error,
        )
        await self._record(email, MailStatus.FAILED, started, result, retry_count=self.max_attempts - 1)
        return result

    async def send_now(self, email: OutboundEmail) -> EmailResult:
        """Single attempt, bypassing the queue. Used for administrator test mail."""
        started = time.monotonic()
        result = await asyncio.to_thread(self.email_service.send, email)
        status = MailStatus.SENT if result.success else MailStatus.FAILED
        await self._record(email, status, started, result)
        return result

    async def _record(
        self,
        email: OutboundEmail,
        status: MailStatus,
        started: float,
        result: EmailResult,
        *,
        retry_count: int = 0,
    ) -> None:
        if self.mail_log is None:
            return
        try:
            await self.mail_log.record(
                email,
                status,
                duration_ms=int((time.monotonic() - started) * 1000),
                message_id=result.message_id,
                error_message=result.error,
                retry_count=retry_count,
            )
        except Exception as exc:
            # the email outcome stands even if the log write fails
            logger.warning("mail_log_write_failed", error=str(exc), status=status.value)
