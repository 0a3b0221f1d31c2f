"""Backoff scheduler: turns a retryable failure into a retry job."""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.webhooks.backoff import compute_delay
from hookrelay.webhooks.models import RetryJob, RetryJobStatus, WebhookDelivery
from hookrelay.webhooks.queue import RetryQueue

logger = logging.getLogger(__name__)


class BackoffScheduler:
    """Creates exactly one retry job per retryable failure."""

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng

    def delay_for(self, delivery: WebhookDelivery) -> int:
        """Delay in milliseconds after the delivery's latest attempt."""
        policy = delivery.retry_policy
        return compute_delay(
            policy.backoff_strategy,
            max(delivery.attempts, 1),
            policy.initial_delay_ms,
            policy.max_delay_ms,
            jitter=policy.jitter,
            rng=self._rng,
        )

    async def schedule(
        self,
        session: AsyncSession,
        delivery: WebhookDelivery,
        now: datetime,
    ) -> RetryJob:
        """
        Set ``next_retry_at`` on the delivery and enqueue its retry job.

        If the delivery already has an open job it is returned unchanged.
        The caller commits.
        """
        existing = await RetryQueue.open_job(session, delivery.id)
        if existing is not None:
            logger.debug("Delivery %s already has retry job %s", delivery.id, existing.id)
            return existing

        delay_ms = self.delay_for(delivery)
        # Keep next_retry_at strictly after the attempt that just failed
        next_retry_at = now + timedelta(milliseconds=max(delay_ms, 1))
        delivery.next_retry_at = next_retry_at

        job = RetryJob(
            delivery_id=delivery.id,
            endpoint_id=delivery.endpoint_id,
            attempt=delivery.attempts + 1,
            next_retry_at=next_retry_at,
            delay_ms=delay_ms,
            status=RetryJobStatus.SCHEDULED.value,
        )
        await RetryQueue.enqueue(session, job)

        logger.info(
            "Scheduled retry of delivery %s (attempt %d/%d) in %dms",
            delivery.id,
            job.attempt,
            delivery.max_attempts,
            delay_ms,
        )
        return job
