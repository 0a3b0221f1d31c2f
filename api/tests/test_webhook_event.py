"""Property-based tests for WebhookEvent."""

import json

from hypothesis import given, settings
from hypothesis import strategies as st

from hookrelay.webhooks.event import WebhookEvent

# Strategies for generating test data
event_types = st.sampled_from(
    [
        "invoice.paid",
        "invoice.voided",
        "subscription.created",
        "subscription.cancelled",
        "payment.refunded",
    ]
)

billing_data = st.fixed_dictionaries(
    {
        "invoice_id": st.uuids().map(str),
        "amount_cents": st.integers(min_value=0, max_value=10_000_000),
        "currency": st.sampled_from(["USD", "EUR", "JPY"]),
    }
).map(dict)


class TestWebhookEventSerialization:
    """Tests for WebhookEvent serialization."""

    @settings(max_examples=100)
    @given(event_type=event_types, data=billing_data)
    def test_queue_message_survives_json(self, event_type: str, data: dict):
        """An event pushed through the queue as JSON comes back unchanged."""
        original = WebhookEvent(event_type=event_type, data=data)

        restored = WebhookEvent.from_payload(json.loads(json.dumps(original.to_payload())))

        assert restored.event_id == original.event_id
        assert restored.event_type == original.event_type
        assert restored.timestamp == original.timestamp
        assert restored.data == original.data

    def test_payload_fields(self):
        event = WebhookEvent(event_type="invoice.paid", data={"invoice_id": "inv_1"})
        payload = event.to_payload()

        assert set(payload) == {"event_id", "event_type", "timestamp", "data"}
        assert payload["event_id"] == str(event.event_id)
        assert payload["timestamp"].endswith("+00:00")

    def test_snapshot_is_detached_from_caller_data(self):
        data = {"lines": [{"sku": "pro", "qty": 1}]}
        event = WebhookEvent(event_type="invoice.paid", data=data)

        snapshot = event.snapshot()
        data["lines"][0]["qty"] = 99

        assert snapshot == {"lines": [{"sku": "pro", "qty": 1}]}

    def test_event_ids_are_unique(self):
        first = WebhookEvent(event_type="invoice.paid", data={})
        second = WebhookEvent(event_type="invoice.paid", data={})

        assert first.event_id != second.event_id
