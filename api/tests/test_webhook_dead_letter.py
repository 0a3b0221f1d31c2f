"""Tests for the dead-letter store."""

import uuid

import pytest
import pytest_asyncio

from conftest import Receiver
from hookrelay.webhooks.event import WebhookEvent
from hookrelay.webhooks.exceptions import AlreadyResolvedError, InvalidStateError, NotFoundError
from hookrelay.webhooks.dead_letter import DeadLetterStore
from hookrelay.webhooks.models import DeliveryStatus, RetryJobStatus, WebhookDelivery


@pytest_asyncio.fixture
async def dead_lettered(make_endpoint, make_dispatcher, dead_letters):
    """An endpoint and the dead-letter entry of a rejected delivery."""
    endpoint = await make_endpoint()
    dispatcher = make_dispatcher(Receiver(422))
    event = WebhookEvent(event_type="invoice.paid", data={"invoice_id": "inv_9"})

    (delivery,) = await dispatcher.dispatch(event)
    entry = await dead_letters.get_for_delivery(delivery.id)
    return endpoint, entry


class TestDeadLetterStore:
    """Tests for DeadLetterStore."""

    @pytest.mark.asyncio
    async def test_entry_captures_failure(self, dead_lettered):
        endpoint, entry = dead_lettered

        assert entry.endpoint_id == endpoint.id
        assert entry.event_type == "invoice.paid"
        assert entry.payload == {"invoice_id": "inv_9"}
        assert entry.attempts == 1
        assert "422" in entry.failure_reason
        assert entry.first_failed_at == entry.last_failed_at
        assert entry.resolved is False

    @pytest.mark.asyncio
    async def test_add_is_idempotent(self, session_factory, dead_letters, dead_lettered):
        _, entry = dead_lettered

        async with session_factory() as session:
            delivery = await session.get(WebhookDelivery, entry.delivery_id)
            again = await dead_letters.add(session, delivery, "second reason")
            await session.commit()

        assert again.id == entry.id
        assert await dead_letters.count() == 1
        assert (await dead_letters.get(entry.id)).failure_reason == entry.failure_reason

    @pytest.mark.asyncio
    async def test_add_absorbs_concurrent_insert(
        self, session_factory, dead_letters, dead_lettered, monkeypatch
    ):
        _, entry = dead_lettered
        lookup = DeadLetterStore._existing
        calls = []

        async def lookup_misses_once(session, delivery_id):
            calls.append(delivery_id)
            # First check runs before the other worker's insert is visible
            if len(calls) == 1:
                return None
            return await lookup(session, delivery_id)

        monkeypatch.setattr(DeadLetterStore, "_existing", staticmethod(lookup_misses_once))

        async with session_factory() as session:
            delivery = await session.get(WebhookDelivery, entry.delivery_id)
            again = await dead_letters.add(session, delivery, "raced")
            await session.commit()

        assert again.id == entry.id
        assert len(calls) == 2
        assert await dead_letters.count() == 1

    @pytest.mark.asyncio
    async def test_resolve_twice(self, dead_letters, dead_lettered):
        _, entry = dead_lettered

        resolved = await dead_letters.resolve(entry.id, "ops@example.com", "customer notified")
        assert resolved.resolved is True
        assert resolved.resolved_by == "ops@example.com"

        with pytest.raises(AlreadyResolvedError):
            await dead_letters.resolve(entry.id, "someone-else", "again")

        stored = await dead_letters.get(entry.id)
        assert stored.resolved_by == "ops@example.com"
        assert stored.resolution_notes == "customer notified"
        assert stored.resolved_at == resolved.resolved_at

    @pytest.mark.asyncio
    async def test_resolve_missing_entry(self, dead_letters):
        with pytest.raises(NotFoundError):
            await dead_letters.resolve(uuid.uuid4(), "ops")

    @pytest.mark.asyncio
    async def test_retry_uses_current_policy(self, registry, dead_letters, dead_lettered):
        endpoint, entry = dead_lettered
        await registry.update(
            endpoint.id,
            {"retry_policy": {"max_attempts": 7, "backoff_strategy": "fixed"}},
        )

        delivery = await dead_letters.retry(entry.id)

        assert delivery.id != entry.delivery_id
        assert delivery.status == DeliveryStatus.PENDING.value
        assert delivery.attempts == 0
        assert delivery.max_attempts == 7
        assert delivery.backoff_strategy == "fixed"
        assert delivery.payload == entry.payload

        stored = await dead_letters.get(entry.id)
        assert stored.superseded_by == delivery.id
        assert stored.resolved is False

    @pytest.mark.asyncio
    async def test_retry_queues_first_attempt(self, queue, dead_letters, dead_lettered):
        _, entry = dead_lettered

        delivery = await dead_letters.retry(entry.id)

        (job,) = await queue.jobs_for_delivery(delivery.id)
        assert job.attempt == 1
        assert job.status == RetryJobStatus.SCHEDULED.value

    @pytest.mark.asyncio
    async def test_entry_can_only_be_retried_once(self, dead_letters, dead_lettered):
        _, entry = dead_lettered
        first = await dead_letters.retry(entry.id)

        with pytest.raises(InvalidStateError):
            await dead_letters.retry(entry.id)

        assert (await dead_letters.get(entry.id)).superseded_by == first.id

    @pytest.mark.asyncio
    async def test_retry_rejected_for_disabled_endpoint(
        self, registry, dead_letters, dead_lettered
    ):
        endpoint, entry = dead_lettered
        await registry.toggle(endpoint.id, enabled=False)

        with pytest.raises(InvalidStateError):
            await dead_letters.retry(entry.id)

    @pytest.mark.asyncio
    async def test_redeliver_attempts_immediately(self, make_dispatcher, queue, dead_lettered):
        _, entry = dead_lettered
        dispatcher = make_dispatcher(Receiver(200))

        delivery = await dispatcher.redeliver_dead_letter(entry.id)

        assert delivery.status == DeliveryStatus.DELIVERED.value
        assert delivery.attempts == 1
        (job,) = await queue.jobs_for_delivery(delivery.id)
        assert job.status == RetryJobStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_list_filters(self, dead_letters, dead_lettered):
        endpoint, entry = dead_lettered

        assert [e.id for e in await dead_letters.list_entries(resolved=False)] == [entry.id]
        assert await dead_letters.list_entries(endpoint_id=uuid.uuid4()) == []

        await dead_letters.resolve(entry.id, "ops")

        assert await dead_letters.list_entries(resolved=False) == []
        assert await dead_letters.count(resolved=True) == 1
