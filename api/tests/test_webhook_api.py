"""Tests for the webhook operator API."""

import uuid

import pytest
from httpx import AsyncClient

from hookrelay.webhooks.dispatcher import DeliveryDispatcher
from hookrelay.webhooks.worker import WebhookWorker

API = "/api/v1/webhooks"

ENDPOINT = {
    "name": "billing-sink",
    "url": "https://hooks.example.com/billing",
    "events": ["invoice.paid"],
    "secret": "test-secret",
    "retry_policy": {
        "max_attempts": 3,
        "backoff_strategy": "exponential",
        "initial_delay_ms": 1000,
        "max_delay_ms": 60000,
    },
}


async def create_endpoint(client: AsyncClient, **overrides) -> dict:
    response = await client.post(f"{API}/endpoints", json={**ENDPOINT, **overrides})
    assert response.status_code == 201, response.text
    return response.json()


async def emit(client: AsyncClient, event_type: str = "invoice.paid", data=None) -> dict:
    response = await client.post(
        f"{API}/events", json={"event_type": event_type, "data": data or {"invoice_id": "inv_1"}}
    )
    assert response.status_code == 202, response.text
    return response.json()


@pytest.fixture
def deliver(client: AsyncClient, session_factory, receiver):
    """Run due delivery jobs the way the worker's retry pollers do."""
    worker = WebhookWorker(
        session_factory,
        dispatcher=DeliveryDispatcher(session_factory, transport=receiver.transport),
        workers=1,
    )

    async def _deliver(result: dict) -> list[dict]:
        await worker.process_due_retries()
        deliveries = []
        for delivery in result["deliveries"]:
            response = await client.get(f"{API}/deliveries/{delivery['id']}")
            deliveries.append(response.json())
        return deliveries

    return _deliver


class TestEndpointRoutes:
    """CRUD and lifecycle routes for endpoints."""

    @pytest.mark.asyncio
    async def test_create_masks_secret(self, client: AsyncClient):
        endpoint = await create_endpoint(client)

        assert endpoint["name"] == "billing-sink"
        assert endpoint["has_secret"] is True
        assert "secret" not in endpoint
        assert endpoint["status"] == "active"
        assert endpoint["retry_policy"]["max_attempts"] == 3

    @pytest.mark.asyncio
    async def test_create_rejects_invalid_config(self, client: AsyncClient):
        response = await client.post(
            f"{API}/endpoints",
            json={**ENDPOINT, "url": "http://insecure.example.com", "events": []},
        )

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert any("HTTPS" in e for e in detail)
        assert any("event type" in e for e in detail)

    @pytest.mark.asyncio
    async def test_list_get_and_filters(self, client: AsyncClient):
        first = await create_endpoint(client)
        await create_endpoint(client, name="crm", url="https://crm.example.com", events=["*"])

        response = await client.get(f"{API}/endpoints")
        assert len(response.json()) == 2

        response = await client.get(f"{API}/endpoints", params={"search": "crm"})
        assert [e["name"] for e in response.json()] == ["crm"]

        response = await client.get(f"{API}/endpoints", params={"event_type": "user.created"})
        assert [e["name"] for e in response.json()] == ["crm"]

        response = await client.get(f"{API}/endpoints/{first['id']}")
        assert response.status_code == 200
        assert response.json()["id"] == first["id"]

    @pytest.mark.asyncio
    async def test_get_unknown_endpoint(self, client: AsyncClient):
        response = await client.get(f"{API}/endpoints/{uuid.uuid4()}")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_update_merges_retry_policy(self, client: AsyncClient):
        endpoint = await create_endpoint(client)

        response = await client.patch(
            f"{API}/endpoints/{endpoint['id']}",
            json={"description": "Billing events", "retry_policy": {"max_attempts": 6}},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["description"] == "Billing events"
        assert data["retry_policy"]["max_attempts"] == 6
        assert data["retry_policy"]["initial_delay_ms"] == 1000
        assert data["url"] == ENDPOINT["url"]

    @pytest.mark.asyncio
    async def test_update_can_clear_secret(self, client: AsyncClient):
        endpoint = await create_endpoint(client)

        response = await client.patch(f"{API}/endpoints/{endpoint['id']}", json={"secret": None})

        assert response.json()["has_secret"] is False

    @pytest.mark.asyncio
    async def test_update_rejects_inconsistent_policy(self, client: AsyncClient):
        endpoint = await create_endpoint(client)

        response = await client.patch(
            f"{API}/endpoints/{endpoint['id']}",
            json={"retry_policy": {"initial_delay_ms": 120000}},
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_toggle_pause_resume(self, client: AsyncClient):
        endpoint = await create_endpoint(client)
        path = f"{API}/endpoints/{endpoint['id']}"

        response = await client.post(f"{path}/pause")
        assert response.json()["status"] == "paused"

        response = await client.post(f"{path}/resume")
        assert response.json()["status"] == "active"

        response = await client.post(f"{path}/toggle")
        assert response.json()["enabled"] is False
        assert response.json()["status"] == "disabled"

        response = await client.post(f"{path}/pause")
        assert response.status_code == 422

        response = await client.post(f"{path}/toggle", json={"enabled": True})
        assert response.json()["enabled"] is True

    @pytest.mark.asyncio
    async def test_regenerate_secret(self, client: AsyncClient):
        endpoint = await create_endpoint(client, secret=None)
        assert endpoint["has_secret"] is False

        response = await client.post(f"{API}/endpoints/{endpoint['id']}/regenerate-secret")

        assert response.status_code == 200
        assert response.json()["endpoint_id"] == endpoint["id"]
        assert len(response.json()["secret"]) >= 32

        response = await client.get(f"{API}/endpoints/{endpoint['id']}")
        assert response.json()["has_secret"] is True

    @pytest.mark.asyncio
    async def test_delete_unused_endpoint(self, client: AsyncClient):
        endpoint = await create_endpoint(client)

        response = await client.delete(f"{API}/endpoints/{endpoint['id']}")
        assert response.json() == {"deleted": True}

        response = await client.get(f"{API}/endpoints/{endpoint['id']}")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_with_history_archives(self, client: AsyncClient):
        endpoint = await create_endpoint(client)
        await emit(client)

        response = await client.delete(f"{API}/endpoints/{endpoint['id']}")
        assert response.json() == {"deleted": False}

        response = await client.get(f"{API}/endpoints")
        assert response.json() == []
        response = await client.get(f"{API}/endpoints", params={"include_archived": True})
        assert response.json()[0]["archived_at"] is not None

    @pytest.mark.asyncio
    async def test_send_test_event(self, client: AsyncClient, receiver):
        endpoint = await create_endpoint(client)

        response = await client.post(
            f"{API}/endpoints/{endpoint['id']}/test", json={"payload": {"ping": 1}}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["event_type"] == "webhook.test"
        assert data["status"] == "delivered"
        assert data["payload"] == {"ping": 1}
        assert len(receiver.requests) == 1

    @pytest.mark.asyncio
    async def test_cancel_pending_unknown_endpoint(self, client: AsyncClient):
        response = await client.post(f"{API}/endpoints/{uuid.uuid4()}/cancel-pending")
        assert response.status_code == 404


class TestEventAndDeliveryRoutes:
    """Emitting events and inspecting deliveries."""

    @pytest.mark.asyncio
    async def test_emit_accepts_without_sending(self, client: AsyncClient, receiver, deliver):
        endpoint = await create_endpoint(client)
        await create_endpoint(client, name="other", events=["invoice.voided"])

        result = await emit(client)

        assert result["event_type"] == "invoice.paid"
        (accepted,) = result["deliveries"]
        assert accepted["endpoint_id"] == endpoint["id"]
        assert accepted["status"] == "pending"
        assert accepted["attempts"] == 0
        assert receiver.requests == []

        (delivery,) = await deliver(result)
        assert delivery["status"] == "delivered"
        assert delivery["attempts"] == 1
        assert len(receiver.requests) == 1
        assert "X-Webhook-Signature" in receiver.requests[0].headers

    @pytest.mark.asyncio
    async def test_emit_without_subscribers(self, client: AsyncClient):
        result = await emit(client, "nobody.listens")
        assert result["deliveries"] == []

    @pytest.mark.asyncio
    async def test_delivery_detail_and_attempts(self, client: AsyncClient, deliver):
        await create_endpoint(client)
        (delivery,) = await deliver(await emit(client))

        response = await client.get(f"{API}/deliveries/{delivery['id']}")
        assert response.json()["status"] == "delivered"

        response = await client.get(f"{API}/deliveries/{delivery['id']}/attempts")
        (attempt,) = response.json()
        assert attempt["attempt_number"] == 1
        assert attempt["success"] is True
        assert attempt["status_code"] == 200

        response = await client.get(f"{API}/deliveries", params={"status": "delivered"})
        assert [d["id"] for d in response.json()] == [delivery["id"]]
        response = await client.get(f"{API}/deliveries", params={"status": "failed"})
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_unknown_delivery(self, client: AsyncClient):
        response = await client.get(f"{API}/deliveries/{uuid.uuid4()}")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_retry_final_delivery_conflicts(self, client: AsyncClient, deliver):
        await create_endpoint(client)
        (delivery,) = await deliver(await emit(client))

        response = await client.post(f"{API}/deliveries/{delivery['id']}/retry")
        assert response.status_code == 409

        response = await client.post(f"{API}/deliveries/{delivery['id']}/cancel")
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_retry_retrying_delivery(self, client: AsyncClient, receiver, deliver):
        await create_endpoint(client)
        receiver.responses = [503, 200]
        (delivery,) = await deliver(await emit(client))
        assert delivery["status"] == "retrying"
        assert delivery["next_retry_at"] is not None

        response = await client.post(f"{API}/deliveries/{delivery['id']}/retry")
        assert response.status_code == 200
        assert response.json()["status"] == "delivered"
        assert response.json()["attempts"] == 2

    @pytest.mark.asyncio
    async def test_cancel_retrying_delivery(self, client: AsyncClient, receiver, deliver):
        await create_endpoint(client)
        receiver.responses = [503]
        (delivery,) = await deliver(await emit(client))
        assert delivery["status"] == "retrying"

        response = await client.post(
            f"{API}/deliveries/{delivery['id']}/cancel", json={"reason": "customer churned"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "failed"

        response = await client.get(f"{API}/dead-letters")
        (entry,) = response.json()
        assert entry["failure_reason"] == "customer churned"


class TestDeadLetterRoutes:
    """Dead-letter inspection, resolution and re-delivery."""

    @pytest.mark.asyncio
    async def test_resolve_twice_conflicts(self, client: AsyncClient, receiver, deliver):
        await create_endpoint(client)
        receiver.responses = [400]
        await deliver(await emit(client))

        (entry,) = (await client.get(f"{API}/dead-letters", params={"resolved": False})).json()
        path = f"{API}/dead-letters/{entry['id']}/resolve"

        response = await client.post(path, json={"resolved_by": "ops", "notes": "handled"})
        assert response.status_code == 200
        assert response.json()["resolved"] is True

        response = await client.post(path, json={"resolved_by": "someone-else"})
        assert response.status_code == 409

        response = await client.get(f"{API}/dead-letters/{entry['id']}")
        assert response.json()["resolved_by"] == "ops"

    @pytest.mark.asyncio
    async def test_unknown_dead_letter(self, client: AsyncClient):
        response = await client.post(
            f"{API}/dead-letters/{uuid.uuid4()}/resolve", json={"resolved_by": "ops"}
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_retry_dead_letter(self, client: AsyncClient, receiver, deliver):
        await create_endpoint(client)
        receiver.responses = [400, 200]
        (failed,) = await deliver(await emit(client))
        (entry,) = (await client.get(f"{API}/dead-letters")).json()

        response = await client.post(f"{API}/dead-letters/{entry['id']}/retry")

        assert response.status_code == 200
        delivery = response.json()
        assert delivery["id"] != failed["id"]
        assert delivery["status"] == "delivered"

        response = await client.get(f"{API}/dead-letters/{entry['id']}")
        assert response.json()["superseded_by"] == delivery["id"]

        response = await client.post(f"{API}/dead-letters/{entry['id']}/retry")
        assert response.status_code == 409
        assert len(receiver.requests) == 2

    @pytest.mark.asyncio
    async def test_retry_dead_letter_for_disabled_endpoint(
        self, client: AsyncClient, receiver, deliver
    ):
        endpoint = await create_endpoint(client)
        receiver.responses = [400]
        await deliver(await emit(client))
        (entry,) = (await client.get(f"{API}/dead-letters")).json()
        await client.post(f"{API}/endpoints/{endpoint['id']}/toggle", json={"enabled": False})

        response = await client.post(f"{API}/dead-letters/{entry['id']}/retry")
        assert response.status_code == 409


class TestStatsRoutes:
    """Stats routes."""

    @pytest.mark.asyncio
    async def test_global_and_endpoint_stats(self, client: AsyncClient, deliver):
        endpoint = await create_endpoint(client)
        await deliver(await emit(client))
        await deliver(await emit(client))

        response = await client.get(f"{API}/stats")
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["delivered"] == 2
        assert data["success_rate"] == 1.0
        assert data["event_distribution"] == {"invoice.paid": 2}
        assert data["deliveries_today"] == 2
        assert data["deliveries_this_week"] == 2
        assert data["fastest_response_ms"] <= data["slowest_response_ms"]

        response = await client.get(f"{API}/stats/endpoints/{endpoint['id']}")
        data = response.json()
        assert data["total"] == 2
        assert data["success_rate"] == 1.0
        assert data["failure_rate"] == 0.0
        assert data["fastest_response_ms"] is not None

        response = await client.get(f"{API}/stats/endpoints")
        assert [s["endpoint_id"] for s in response.json()] == [endpoint["id"]]

    @pytest.mark.asyncio
    async def test_stats_for_unknown_endpoint(self, client: AsyncClient):
        response = await client.get(f"{API}/stats/endpoints/{uuid.uuid4()}")
        assert response.status_code == 404


class TestHealthCheckRoutes:
    """On-demand health checks and their settings."""

    @pytest.mark.asyncio
    async def test_check_stores_result(self, client: AsyncClient, receiver):
        endpoint = await create_endpoint(client)
        receiver.responses = [503]

        response = await client.post(f"{API}/endpoints/{endpoint['id']}/health-check")

        assert response.status_code == 200
        data = response.json()
        assert data["endpoint_id"] == endpoint["id"]
        assert data["status"] == "failure"
        assert data["success"] is False
        assert data["status_code"] == 503

        response = await client.get(f"{API}/endpoints/{endpoint['id']}")
        stored = response.json()
        assert stored["last_health_check_status"] == "failure"
        assert stored["last_health_check_at"] is not None
        # Health checks are informational only
        assert stored["status"] == "active"

        response = await client.get(f"{API}/deliveries")
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_update_settings_keeps_omitted_fields(self, client: AsyncClient):
        endpoint = await create_endpoint(client)
        path = f"{API}/endpoints/{endpoint['id']}/health-check"

        response = await client.patch(path, json={"enabled": True, "interval_seconds": 120})

        assert response.status_code == 200
        health = response.json()["health_check"]
        assert health["enabled"] is True
        assert health["interval_seconds"] == 120
        assert health["timeout_seconds"] == 5.0
        assert health["expected_status"] == [200]

        response = await client.patch(path, json={"timeout_seconds": 600})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_check_unknown_endpoint(self, client: AsyncClient):
        response = await client.post(f"{API}/endpoints/{uuid.uuid4()}/health-check")
        assert response.status_code == 404


class TestEventTypeRoutes:
    """Event type catalogue."""

    @pytest.mark.asyncio
    async def test_lists_subscribed_and_delivered_types(self, client: AsyncClient, deliver):
        await create_endpoint(client, events=["invoice.paid", "invoice.voided"])
        await create_endpoint(client, name="audit", url="https://audit.example.com", events=["*"])
        await deliver(await emit(client))
        await deliver(await emit(client, "user.created"))

        response = await client.get(f"{API}/event-types")

        assert response.status_code == 200
        by_type = {t["event_type"]: t for t in response.json()}
        assert sorted(by_type) == ["invoice.paid", "invoice.voided", "user.created"]
        assert by_type["invoice.paid"]["subscribers"] == 2
        assert by_type["invoice.paid"]["deliveries"] == 2
        assert by_type["invoice.voided"]["deliveries"] == 0
        assert by_type["invoice.voided"]["last_delivery_at"] is None
        assert by_type["user.created"]["subscribers"] == 1
        assert by_type["user.created"]["deliveries"] == 1
