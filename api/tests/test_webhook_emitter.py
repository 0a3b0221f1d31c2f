"""Tests for WebhookEmitter."""

import json
import uuid
from unittest.mock import AsyncMock, patch

import pytest

from hookrelay.webhooks.emitter import WEBHOOK_QUEUE_KEY, WebhookEmitter


@pytest.fixture
def mock_valkey():
    """Mock Valkey client."""
    mock = AsyncMock()
    mock.rpush = AsyncMock(return_value=1)
    return mock


class TestWebhookEmitter:
    """Tests for WebhookEmitter."""

    @pytest.mark.asyncio
    async def test_emit_queues_event(self, mock_valkey):
        """emit() pushes the serialized event onto the queue."""
        invoice_id = str(uuid.uuid4())

        with (
            patch("hookrelay.webhooks.emitter._is_testing", return_value=False),
            patch("hookrelay.webhooks.emitter.get_valkey", return_value=mock_valkey),
        ):
            event = await WebhookEmitter.emit("invoice.paid", {"invoice_id": invoice_id})

        assert event is not None
        assert event.event_type == "invoice.paid"
        mock_valkey.rpush.assert_called_once()
        key, message = mock_valkey.rpush.call_args.args
        assert key == WEBHOOK_QUEUE_KEY
        payload = json.loads(message)
        assert payload["event_id"] == str(event.event_id)
        assert payload["data"] == {"invoice_id": invoice_id}

    @pytest.mark.asyncio
    async def test_emit_skipped_in_test_environment(self, mock_valkey):
        with patch("hookrelay.webhooks.emitter.get_valkey", return_value=mock_valkey):
            event = await WebhookEmitter.emit("invoice.paid", {})

        assert event is None
        mock_valkey.rpush.assert_not_called()

    @pytest.mark.asyncio
    async def test_emit_without_type_is_refused(self, mock_valkey):
        with (
            patch("hookrelay.webhooks.emitter._is_testing", return_value=False),
            patch("hookrelay.webhooks.emitter.get_valkey", return_value=mock_valkey),
        ):
            event = await WebhookEmitter.emit("", {"invoice_id": "inv_1"})

        assert event is None
        mock_valkey.rpush.assert_not_called()

    @pytest.mark.asyncio
    async def test_emit_resource_event_includes_resource(self, mock_valkey):
        subscription_id = uuid.uuid4()

        with (
            patch("hookrelay.webhooks.emitter._is_testing", return_value=False),
            patch("hookrelay.webhooks.emitter.get_valkey", return_value=mock_valkey),
        ):
            event = await WebhookEmitter.emit_resource_event(
                "subscription.created",
                "subscription",
                subscription_id,
                extra_data={"plan": "pro"},
            )

        assert event is not None
        assert event.data["resource_type"] == "subscription"
        assert event.data["resource_id"] == str(subscription_id)
        assert event.data["plan"] == "pro"

    @pytest.mark.asyncio
    async def test_emit_handles_valkey_error(self, mock_valkey):
        """emit() never raises when the queue is unavailable."""
        mock_valkey.rpush = AsyncMock(side_effect=Exception("Connection failed"))

        with (
            patch("hookrelay.webhooks.emitter._is_testing", return_value=False),
            patch("hookrelay.webhooks.emitter.get_valkey", return_value=mock_valkey),
        ):
            event = await WebhookEmitter.emit("invoice.paid", {"invoice_id": "inv_1"})

        assert event is None
