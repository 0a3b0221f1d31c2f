"""Webhook delivery worker."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.config import get_settings
from hookrelay.valkey import get_valkey
from hookrelay.webhooks.dispatcher import DeliveryDispatcher
from hookrelay.webhooks.emitter import WEBHOOK_PROCESSING_KEY, WEBHOOK_QUEUE_KEY
from hookrelay.webhooks.event import WebhookEvent
from hookrelay.webhooks.models import utcnow

logger = logging.getLogger(__name__)

# Seconds to wait after an unexpected loop error
ERROR_BACKOFF_SECONDS = 1


class WebhookWorker:
    """Processes webhook events from the queue and drives due retries.

    Runs four kinds of loops on the event loop:

    - event consumers moving messages from ``webhook:events`` to
      ``webhook:events:processing`` and accepting each event
    - retry pollers claiming due jobs from the retry queue
    - a stale-job sweeper returning abandoned ``running`` jobs to the queue
    - a health-check loop pinging endpoints whose check interval elapsed

    A message leaves the processing list only after its deliveries are
    committed, so a crash in between leaves it there for ``requeue_unacked``.
    """

    def __init__(
        self,
        db_session_factory: async_sessionmaker[AsyncSession],
        dispatcher: DeliveryDispatcher | None = None,
        workers: int | None = None,
    ):
        """
        Initialize the worker.

        Args:
            db_session_factory: Async session factory for database operations
            dispatcher: Dispatcher to use; built from the factory if omitted
            workers: Number of event consumers and retry pollers
        """
        settings = get_settings()
        self.dispatcher = dispatcher or DeliveryDispatcher(db_session_factory)
        self._workers = workers or settings.WEBHOOK_WORKERS
        self._poll_interval = settings.WEBHOOK_POLL_INTERVAL_SECONDS
        self._batch_size = settings.WEBHOOK_BATCH_SIZE
        self._stale_after = timedelta(seconds=settings.WEBHOOK_STALE_AFTER_SECONDS)
        self._stale_scan = settings.WEBHOOK_STALE_SCAN_SECONDS
        self._health_scan = settings.WEBHOOK_HEALTH_SCAN_SECONDS
        self._running = False
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start processing events."""
        if self._running:
            logger.warning("WebhookWorker is already running")
            return

        self._running = True
        try:
            await self.requeue_unacked()
        except Exception as e:
            logger.error("Failed to requeue unacknowledged webhook events: %s", e)

        for i in range(self._workers):
            self._tasks.append(asyncio.create_task(self._event_loop(), name=f"webhook-events-{i}"))
            self._tasks.append(asyncio.create_task(self._retry_loop(), name=f"webhook-retries-{i}"))
        self._tasks.append(asyncio.create_task(self._stale_loop(), name="webhook-stale"))
        self._tasks.append(asyncio.create_task(self._health_loop(), name="webhook-health"))
        logger.info("WebhookWorker started with %d worker(s)", self._workers)

    async def stop(self) -> None:
        """Stop processing events."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("WebhookWorker stopped")

    async def _event_loop(self) -> None:
        while self._running:
            try:
                await self.process_next_event()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in webhook event loop: %s", e)
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    async def _retry_loop(self) -> None:
        while self._running:
            try:
                processed = await self.process_due_retries()
                if not processed:
                    await asyncio.sleep(self._poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in webhook retry loop: %s", e)
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    async def _stale_loop(self) -> None:
        while self._running:
            try:
                await self.recover_stale()
                await asyncio.sleep(self._stale_scan)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in webhook stale-job sweep: %s", e)
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    async def _health_loop(self) -> None:
        while self._running:
            try:
                await self.run_health_checks()
                await asyncio.sleep(self._health_scan)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in webhook health-check loop: %s", e)
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    async def process_next_event(self, timeout: int = 1) -> WebhookEvent | None:
        """
        Take one event from the queue and accept it.

        The message is moved to the processing list first and removed from
        it once the event's deliveries are committed. First attempts run
        after that; if they fail the retry queue already holds them.
        """
        client = await get_valkey()

        # Blocking move with timeout
        event_json = await client.blmove(
            WEBHOOK_QUEUE_KEY, WEBHOOK_PROCESSING_KEY, timeout, "LEFT", "RIGHT"
        )
        if event_json is None:
            return None

        try:
            payload = json.loads(event_json)
            event = WebhookEvent.from_payload(payload)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error("Failed to parse webhook event: %s", e)
            await client.lrem(WEBHOOK_PROCESSING_KEY, 1, event_json)
            return None

        deliveries = await self.dispatcher.accept(event)
        await client.lrem(WEBHOOK_PROCESSING_KEY, 1, event_json)

        if deliveries:
            await self.dispatcher.run_first_attempts(deliveries)
            logger.info(
                "Dispatched event %s (type: %s) to %d endpoint(s)",
                event.event_id,
                event.event_type,
                len(deliveries),
            )
        return event

    async def requeue_unacked(self) -> int:
        """Move messages left on the processing list back to the head of the queue."""
        client = await get_valkey()
        moved = 0
        while await client.lmove(WEBHOOK_PROCESSING_KEY, WEBHOOK_QUEUE_KEY, "RIGHT", "LEFT"):
            moved += 1
        if moved:
            logger.warning("Requeued %d unacknowledged webhook event(s)", moved)
        return moved

    async def process_due_retries(self) -> int:
        """Claim and run due retry jobs. Returns the number claimed."""
        jobs = await self.dispatcher.queue.dequeue_due(utcnow(), limit=self._batch_size)
        if not jobs:
            return 0

        results = await asyncio.gather(
            *(self.dispatcher.run_job(job) for job in jobs),
            return_exceptions=True,
        )
        for job, result in zip(jobs, results):
            if isinstance(result, Exception):
                # Job stays running; the stale sweep hands it back later
                logger.error("Retry job %s failed: %s", job.id, result)
        return len(jobs)

    async def recover_stale(self) -> int:
        return await self.dispatcher.queue.recover_stale(utcnow(), self._stale_after)

    async def run_health_checks(self) -> int:
        """Check every endpoint whose health check is due. Returns the number checked."""
        endpoints = await self.dispatcher.registry.due_health_checks(utcnow())
        if not endpoints:
            return 0

        results = await asyncio.gather(
            *(self.dispatcher.check_health(ep.id) for ep in endpoints),
            return_exceptions=True,
        )
        for endpoint, result in zip(endpoints, results):
            if isinstance(result, Exception):
                logger.error("Health check of endpoint %s failed: %s", endpoint.id, result)
        return len(endpoints)
