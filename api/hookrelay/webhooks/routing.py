"""Event routing: which endpoints receive an event."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.webhooks.event import WebhookEvent
from hookrelay.webhooks.models import EndpointStatus, WebhookEndpoint
from hookrelay.webhooks.registry import EndpointSnapshot

logger = logging.getLogger(__name__)

# Statuses that stop new events from being routed to an endpoint
EXCLUDED_STATUSES = (EndpointStatus.DISABLED.value, EndpointStatus.PAUSED.value)


class EventRouter:
    """Matches events to subscribed endpoints.

    Endpoint state is read fresh on every call so that operator edits take
    effect for the very next event.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def route(self, event: WebhookEvent) -> list[EndpointSnapshot]:
        """Get snapshots of all enabled endpoints subscribed to the event type."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookEndpoint)
                .where(
                    WebhookEndpoint.enabled.is_(True),
                    WebhookEndpoint.archived_at.is_(None),
                    WebhookEndpoint.status.not_in(EXCLUDED_STATUSES),
                )
                .order_by(WebhookEndpoint.created_at)
            )
            endpoints = result.scalars().all()

        matched = [EndpointSnapshot.of(ep) for ep in endpoints if ep.subscribes_to(event.event_type)]
        logger.debug("Event %s (%s) matched %d endpoint(s)", event.event_id, event.event_type, len(matched))
        return matched
