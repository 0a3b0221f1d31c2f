"""Webhook event emitter."""

from __future__ import annotations

import json
import logging
import os
import uuid
from typing import Any

from hookrelay.valkey import get_valkey
from hookrelay.webhooks.event import WebhookEvent

logger = logging.getLogger(__name__)

# Queue key for webhook events
WEBHOOK_QUEUE_KEY = "webhook:events"

# Events a worker has taken but not yet persisted as deliveries
WEBHOOK_PROCESSING_KEY = "webhook:events:processing"


def _is_testing() -> bool:
    """Check if running in test environment."""
    return os.environ.get("TESTING") == "1"


class WebhookEmitter:
    """Emits business events to the queue for async delivery.

    Emission is fire-and-forget: failures are logged and swallowed so the
    calling business operation never fails because of webhooks.
    """

    @staticmethod
    async def emit(event_type: str, data: dict[str, Any]) -> WebhookEvent | None:
        """
        Queue a webhook event for delivery.

        Args:
            event_type: The event type (e.g., "subscription.created")
            data: The event data payload

        Returns:
            The queued WebhookEvent, or None if it was not queued
        """
        if _is_testing():
            logger.debug("Skipping webhook emission in test environment")
            return None

        if not event_type:
            logger.warning("Refusing to emit webhook event without a type")
            return None

        try:
            event = WebhookEvent(event_type=event_type, data=data)
            message = json.dumps(event.to_payload(), default=str)
        except (TypeError, ValueError) as e:
            logger.error("Webhook event %s is not JSON-serializable: %s", event_type, e)
            return None

        try:
            client = await get_valkey()
            await client.rpush(WEBHOOK_QUEUE_KEY, message)
            logger.info("Queued webhook event %s (type: %s)", event.event_id, event_type)
        except Exception as e:
            logger.error("Failed to queue webhook event: %s", e)
            return None

        return event

    @staticmethod
    async def emit_resource_event(
        event_type: str,
        resource_type: str,
        resource_id: uuid.UUID | str,
        extra_data: dict[str, Any] | None = None,
    ) -> WebhookEvent | None:
        """
        Convenience method for events about a billing record.

        Args:
            event_type: The event type (e.g., "payment.completed")
            resource_type: Kind of record (subscription, transaction, contract, ...)
            resource_id: The record's identifier
            extra_data: Additional data to include in the payload

        Returns:
            The queued WebhookEvent, or None if skipped
        """
        data: dict[str, Any] = {
            "resource_type": resource_type,
            "resource_id": str(resource_id),
        }
        if extra_data:
            data.update(extra_data)

        return await WebhookEmitter.emit(event_type, data)
