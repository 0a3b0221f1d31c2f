"""Dead-letter store for deliveries that will not be retried automatically."""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.webhooks.exceptions import AlreadyResolvedError, InvalidStateError, NotFoundError
from hookrelay.webhooks.models import (
    DeadLetterEntry,
    DeliveryAttempt,
    WebhookDelivery,
    WebhookEndpoint,
    utcnow,
)
from hookrelay.webhooks.queue import first_attempt_job

logger = logging.getLogger(__name__)


class DeadLetterStore:
    """Quarantine for failed deliveries.

    An entry is terminal for its delivery. Retrying an entry creates a new
    delivery and links it through ``superseded_by``; the entry itself is
    kept as history.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    async def add(
        session: AsyncSession,
        delivery: WebhookDelivery,
        reason: str,
    ) -> DeadLetterEntry:
        """
        Record a failed delivery. Re-adding the same delivery is a no-op.

        Runs in the caller's transaction; the caller commits. A concurrent
        insert for the same delivery is absorbed by a savepoint and the
        winning entry is returned.
        """
        existing = await DeadLetterStore._existing(session, delivery.id)
        if existing is not None:
            return existing

        first_failed_at = await session.scalar(
            select(func.min(DeliveryAttempt.created_at)).where(
                DeliveryAttempt.delivery_id == delivery.id,
                DeliveryAttempt.success.is_(False),
            )
        )
        last_failed_at = delivery.last_attempt_at or utcnow()

        entry = DeadLetterEntry(
            id=uuid.uuid4(),
            delivery_id=delivery.id,
            endpoint_id=delivery.endpoint_id,
            event_id=delivery.event_id,
            event_type=delivery.event_type,
            payload=delivery.payload,
            failure_reason=reason,
            attempts=delivery.attempts,
            first_failed_at=first_failed_at or last_failed_at,
            last_failed_at=last_failed_at,
            resolved=False,
        )
        try:
            async with session.begin_nested():
                session.add(entry)
        except IntegrityError:
            logger.info("Delivery %s was dead-lettered concurrently", delivery.id)
            return await DeadLetterStore._existing(session, delivery.id)

        logger.warning(
            "Delivery %s to endpoint %s dead-lettered after %d attempt(s): %s",
            delivery.id,
            delivery.endpoint_id,
            delivery.attempts,
            reason,
        )
        return entry

    async def get(self, entry_id: uuid.UUID) -> DeadLetterEntry:
        async with self._session_factory() as session:
            return await self._load(session, entry_id)

    async def get_for_delivery(self, delivery_id: uuid.UUID) -> DeadLetterEntry | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DeadLetterEntry).where(DeadLetterEntry.delivery_id == delivery_id)
            )
            return result.scalars().first()

    async def list_entries(
        self,
        resolved: bool | None = None,
        endpoint_id: uuid.UUID | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DeadLetterEntry]:
        query = select(DeadLetterEntry).order_by(DeadLetterEntry.created_at.desc())
        if resolved is not None:
            query = query.where(DeadLetterEntry.resolved.is_(resolved))
        if endpoint_id is not None:
            query = query.where(DeadLetterEntry.endpoint_id == endpoint_id)
        query = query.limit(limit).offset(offset)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def count(self, resolved: bool | None = None) -> int:
        query = select(func.count()).select_from(DeadLetterEntry)
        if resolved is not None:
            query = query.where(DeadLetterEntry.resolved.is_(resolved))
        async with self._session_factory() as session:
            return await session.scalar(query)

    async def resolve(
        self,
        entry_id: uuid.UUID,
        resolved_by: str,
        notes: str | None = None,
    ) -> DeadLetterEntry:
        """Mark an entry as handled by an operator."""
        async with self._session_factory() as session:
            entry = await self._load(session, entry_id)
            if entry.resolved:
                raise AlreadyResolvedError(
                    f"Dead-letter entry {entry_id} was already resolved by {entry.resolved_by}"
                )
            entry.resolved = True
            entry.resolved_at = utcnow()
            entry.resolved_by = resolved_by
            entry.resolution_notes = notes
            await session.commit()

        logger.info("Dead-letter entry %s resolved by %s", entry_id, resolved_by)
        return entry

    async def retry(self, entry_id: uuid.UUID) -> WebhookDelivery:
        """
        Create a fresh delivery from an entry's stored event and payload.

        The new delivery uses the endpoint's current settings and gets a due
        job for its first attempt. The entry is only touched to record
        ``superseded_by``; an entry that was already retried is rejected.

        Returns:
            The new pending delivery (attempts=0)
        """
        async with self._session_factory() as session:
            entry = await self._load(session, entry_id)
            if entry.superseded_by is not None:
                raise InvalidStateError(
                    f"Dead-letter entry {entry_id} was already retried as delivery {entry.superseded_by}"
                )
            endpoint = await session.get(WebhookEndpoint, entry.endpoint_id)
            if endpoint is None:
                raise NotFoundError("Webhook endpoint", entry.endpoint_id)
            if endpoint.is_archived or not endpoint.enabled:
                raise InvalidStateError(
                    f"Endpoint {endpoint.id} is disabled; enable it before retrying"
                )

            delivery = WebhookDelivery.from_endpoint(
                endpoint,
                event_id=entry.event_id,
                event_type=entry.event_type,
                payload=entry.payload,
            )
            session.add(delivery)
            await session.flush()
            session.add(first_attempt_job(delivery, utcnow()))
            entry.superseded_by = delivery.id
            await session.commit()

        logger.info("Dead-letter entry %s re-queued as delivery %s", entry_id, delivery.id)
        return delivery

    @staticmethod
    async def _existing(session: AsyncSession, delivery_id: uuid.UUID) -> DeadLetterEntry | None:
        result = await session.execute(
            select(DeadLetterEntry).where(DeadLetterEntry.delivery_id == delivery_id)
        )
        return result.scalars().first()

    @staticmethod
    async def _load(session: AsyncSession, entry_id: uuid.UUID) -> DeadLetterEntry:
        entry = await session.get(DeadLetterEntry, entry_id)
        if entry is None:
            raise NotFoundError("Dead-letter entry", entry_id)
        return entry
