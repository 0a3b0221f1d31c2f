"""Tests for event routing."""

import pytest

from hookrelay.webhooks.event import WebhookEvent
from hookrelay.webhooks.routing import EventRouter


def _event(event_type: str = "invoice.paid") -> WebhookEvent:
    return WebhookEvent(event_type=event_type, data={"invoice_id": "inv_1"})


class TestEventRouter:
    """Tests for EventRouter.route."""

    @pytest.mark.asyncio
    async def test_routes_to_subscribed_endpoints_only(self, session_factory, make_endpoint):
        paid = await make_endpoint(name="paid", events=["invoice.paid"])
        await make_endpoint(name="voided", events=["invoice.voided"])
        everything = await make_endpoint(name="all", events=["*"])

        matched = await EventRouter(session_factory).route(_event())

        assert {e.id for e in matched} == {paid.id, everything.id}

    @pytest.mark.asyncio
    async def test_no_subscribers(self, session_factory, make_endpoint):
        await make_endpoint(events=["invoice.voided"])

        assert await EventRouter(session_factory).route(_event("payment.refunded")) == []

    @pytest.mark.asyncio
    async def test_disabled_endpoint_is_excluded(self, session_factory, registry, make_endpoint):
        endpoint = await make_endpoint()
        router = EventRouter(session_factory)
        assert len(await router.route(_event())) == 1

        await registry.toggle(endpoint.id, enabled=False)

        assert await router.route(_event()) == []

    @pytest.mark.asyncio
    async def test_paused_endpoint_is_excluded(self, session_factory, registry, make_endpoint):
        endpoint = await make_endpoint()
        router = EventRouter(session_factory)

        await registry.pause(endpoint.id)
        assert await router.route(_event()) == []

        await registry.resume(endpoint.id)
        assert len(await router.route(_event())) == 1

    @pytest.mark.asyncio
    async def test_routing_reflects_edits_immediately(
        self, session_factory, registry, make_endpoint
    ):
        endpoint = await make_endpoint(events=["invoice.voided"])
        router = EventRouter(session_factory)
        assert await router.route(_event()) == []

        await registry.update(endpoint.id, {"events": ["invoice.paid"]})

        assert [e.id for e in await router.route(_event())] == [endpoint.id]

    @pytest.mark.asyncio
    async def test_snapshot_is_detached(self, session_factory, registry, make_endpoint):
        endpoint = await make_endpoint(timeout_seconds=5)
        (snapshot,) = await EventRouter(session_factory).route(_event())

        await registry.update(endpoint.id, {"timeout_seconds": 20})

        assert snapshot.timeout_seconds == 5
        assert snapshot.retry_policy.max_attempts == 3
