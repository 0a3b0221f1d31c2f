"""Durable retry queue.

Jobs live in the ``webhook_retry_jobs`` table, ordered by ``next_retry_at``.
A job is claimed by flipping ``scheduled`` to ``running`` with a conditional
UPDATE, so exactly one worker wins each job. Claimed jobs stay in the table
until the resulting attempt is recorded; jobs left ``running`` by a crashed
worker are returned to ``scheduled`` by ``recover_stale``. A delivery's first
attempt is queued here too, in the transaction that creates the delivery.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.webhooks.models import RetryJob, RetryJobStatus, WebhookDelivery, utcnow

logger = logging.getLogger(__name__)

OPEN_STATUSES = (RetryJobStatus.SCHEDULED.value, RetryJobStatus.RUNNING.value)


def first_attempt_job(delivery: WebhookDelivery, now: datetime) -> RetryJob:
    """Job for a new delivery's first attempt, due immediately."""
    return RetryJob(
        id=uuid.uuid4(),
        delivery_id=delivery.id,
        endpoint_id=delivery.endpoint_id,
        attempt=1,
        next_retry_at=now,
        delay_ms=0,
        status=RetryJobStatus.SCHEDULED.value,
    )


class RetryQueue:
    """Time-ordered queue of retry jobs.

    ``enqueue``, ``complete`` and the ``cancel_*`` methods take the caller's
    session and do not commit, so they join the transaction that records the
    delivery outcome. The claim and recovery methods run in their own
    transactions.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Transactional helpers (caller commits)
    # ------------------------------------------------------------------

    @staticmethod
    async def enqueue(session: AsyncSession, job: RetryJob) -> RetryJob:
        session.add(job)
        await session.flush()
        return job

    @staticmethod
    async def open_job(session: AsyncSession, delivery_id: uuid.UUID) -> RetryJob | None:
        """The scheduled or running job for a delivery, if any."""
        result = await session.execute(
            select(RetryJob).where(
                RetryJob.delivery_id == delivery_id,
                RetryJob.status.in_(OPEN_STATUSES),
            )
        )
        return result.scalars().first()

    @staticmethod
    async def complete(
        session: AsyncSession,
        job_id: uuid.UUID,
        status: RetryJobStatus = RetryJobStatus.COMPLETED,
    ) -> None:
        await session.execute(
            update(RetryJob)
            .where(RetryJob.id == job_id, RetryJob.status.in_(OPEN_STATUSES))
            .values(status=status.value, completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def complete_claimed(session: AsyncSession, job: RetryJob) -> bool:
        """
        Complete a job only while it is still held by this claim.

        A job that went stale and was claimed again carries a newer
        ``claimed_at``; the earlier holder gets False and must not record.
        """
        result = await session.execute(
            update(RetryJob)
            .where(
                RetryJob.id == job.id,
                RetryJob.status == RetryJobStatus.RUNNING.value,
                RetryJob.claimed_at == job.claimed_at,
            )
            .values(status=RetryJobStatus.COMPLETED.value, completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def reschedule(
        session: AsyncSession,
        job_id: uuid.UUID,
        next_retry_at: datetime | None = None,
    ) -> bool:
        """Return a running job to ``scheduled``, optionally pushing its due time."""
        values: dict = {"status": RetryJobStatus.SCHEDULED.value, "claimed_at": None}
        if next_retry_at is not None:
            values["next_retry_at"] = next_retry_at
        result = await session.execute(
            update(RetryJob)
            .where(
                RetryJob.id == job_id,
                RetryJob.status == RetryJobStatus.RUNNING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def cancel_for_delivery(session: AsyncSession, delivery_id: uuid.UUID) -> int:
        """Drop open jobs of a delivery. Returns the number of jobs cancelled."""
        result = await session.execute(
            update(RetryJob)
            .where(
                RetryJob.delivery_id == delivery_id,
                RetryJob.status.in_(OPEN_STATUSES),
            )
            .values(status=RetryJobStatus.FAILED.value, completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Claiming and recovery
    # ------------------------------------------------------------------

    async def dequeue_due(
        self,
        now: datetime | None = None,
        limit: int = 10,
    ) -> list[RetryJob]:
        """
        Claim every job due at ``now`` (up to ``limit``).

        Each returned job is already marked ``running``; a job claimed by
        another worker in the meantime is silently skipped.
        """
        now = now or utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                select(RetryJob.id)
                .where(
                    RetryJob.status == RetryJobStatus.SCHEDULED.value,
                    RetryJob.next_retry_at <= now,
                )
                .order_by(RetryJob.next_retry_at)
                .limit(limit)
            )
            candidate_ids = list(result.scalars().all())

            claimed_ids = []
            for job_id in candidate_ids:
                if await self._claim(session, job_id, now):
                    claimed_ids.append(job_id)

            await session.commit()

            if not claimed_ids:
                return []

            result = await session.execute(
                select(RetryJob)
                .where(RetryJob.id.in_(claimed_ids))
                .order_by(RetryJob.next_retry_at)
            )
            jobs = list(result.scalars().all())

        logger.debug("Claimed %d due retry job(s)", len(jobs))
        return jobs

    async def claim_for_delivery(
        self,
        delivery_id: uuid.UUID,
        now: datetime | None = None,
    ) -> tuple[RetryJob | None, bool]:
        """
        Claim a delivery's scheduled job ahead of its due time.

        Returns:
            Tuple of (job, conflict). ``job`` is the claimed job or None when
            the delivery has no scheduled job; ``conflict`` is True when a
            worker is already running it.
        """
        now = now or utcnow()
        async with self._session_factory() as session:
            job = await self.open_job(session, delivery_id)
            if job is None:
                return None, False
            if job.status == RetryJobStatus.RUNNING.value:
                return None, True

            claimed = await self._claim(session, job.id, now)
            await session.commit()
            if not claimed:
                return None, True

            await session.refresh(job)
            return job, False

    async def release(
        self,
        job_id: uuid.UUID,
        next_retry_at: datetime | None = None,
    ) -> None:
        """Return a claimed job to ``scheduled``, optionally pushing its due time."""
        async with self._session_factory() as session:
            await self.reschedule(session, job_id, next_retry_at)
            await session.commit()

    async def recover_stale(
        self,
        now: datetime | None = None,
        stale_after: timedelta = timedelta(minutes=5),
    ) -> int:
        """Return jobs stuck in ``running`` longer than ``stale_after`` to the queue."""
        now = now or utcnow()
        cutoff = now - stale_after
        async with self._session_factory() as session:
            result = await session.execute(
                update(RetryJob)
                .where(
                    RetryJob.status == RetryJobStatus.RUNNING.value,
                    RetryJob.claimed_at < cutoff,
                )
                .values(status=RetryJobStatus.SCHEDULED.value, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        recovered = result.rowcount or 0
        if recovered:
            logger.warning("Recovered %d stale retry job(s) claimed before %s", recovered, cutoff)
        return recovered

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def count(self, status: RetryJobStatus) -> int:
        async with self._session_factory() as session:
            return await session.scalar(
                select(func.count()).select_from(RetryJob).where(RetryJob.status == status.value)
            )

    async def next_due(self) -> datetime | None:
        async with self._session_factory() as session:
            return await session.scalar(
                select(func.min(RetryJob.next_retry_at)).where(
                    RetryJob.status == RetryJobStatus.SCHEDULED.value
                )
            )

    async def jobs_for_delivery(self, delivery_id: uuid.UUID) -> list[RetryJob]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RetryJob)
                .where(RetryJob.delivery_id == delivery_id)
                .order_by(RetryJob.created_at)
            )
            return list(result.scalars().all())

    @staticmethod
    async def _claim(session: AsyncSession, job_id: uuid.UUID, now: datetime) -> bool:
        result = await session.execute(
            update(RetryJob)
            .where(
                RetryJob.id == job_id,
                RetryJob.status == RetryJobStatus.SCHEDULED.value,
            )
            .values(status=RetryJobStatus.RUNNING.value, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
