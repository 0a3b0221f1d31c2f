"""Endpoint health checks.

A health check is a signed ping sent outside the delivery pipeline: it never
creates a delivery, never retries and never touches the failing indicator.
Its result is stored on the endpoint for operators to look at.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import httpx

from hookrelay.webhooks.signer import WebhookSigner

logger = logging.getLogger(__name__)

HEALTH_CHECK_EVENT_TYPE = "webhook.health_check"

MAX_ERROR_LENGTH = 500


class HealthCheckStatus(str, Enum):
    """Outcome of the latest health check."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class HealthCheckConfig:
    """Health check settings embedded in a webhook endpoint."""

    enabled: bool = False
    interval_seconds: int = 300
    timeout_seconds: float = 5.0
    expected_status: frozenset[int] = field(default_factory=lambda: frozenset({200}))

    def validate(self) -> list[str]:
        errors = []
        if self.interval_seconds < 1:
            errors.append("health_check.interval_seconds must be at least 1")
        if self.timeout_seconds <= 0:
            errors.append("health_check.timeout_seconds must be positive")
        elif self.timeout_seconds >= self.interval_seconds:
            errors.append("health_check.timeout_seconds must be shorter than interval_seconds")
        if not self.expected_status:
            errors.append("health_check.expected_status needs at least one code")
        bad_codes = sorted(code for code in self.expected_status if not 100 <= code <= 599)
        if bad_codes:
            errors.append(f"health_check.expected_status has invalid HTTP codes: {bad_codes}")
        return errors


def health_check_from_dict(data: dict[str, Any]) -> HealthCheckConfig:
    """Build a HealthCheckConfig from plain data; raises TypeError/ValueError."""
    statuses = data.get("expected_status")
    return HealthCheckConfig(
        enabled=bool(data.get("enabled", False)),
        interval_seconds=int(data.get("interval_seconds", 300)),
        timeout_seconds=float(data.get("timeout_seconds", 5.0)),
        expected_status=(
            frozenset(int(s) for s in statuses) if statuses is not None else frozenset({200})
        ),
    )


@dataclass
class HealthCheckResult:
    """Result of one health check."""

    status: HealthCheckStatus
    checked_at: datetime
    status_code: int | None = None
    response_time_ms: int | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == HealthCheckStatus.SUCCESS


async def ping_endpoint(
    endpoint: Any,
    now: datetime,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HealthCheckResult:
    """
    Send a ``webhook.health_check`` ping to an endpoint. Never raises.

    ``endpoint`` is a WebhookEndpoint; its method, headers and signing
    settings are used as for a delivery.
    """
    config: HealthCheckConfig = endpoint.health_check
    body = json.dumps(
        {
            "event_type": HEALTH_CHECK_EVENT_TYPE,
            "endpoint_id": str(endpoint.id),
            "timestamp": now.isoformat(),
        }
    )
    headers = dict(endpoint.headers or {})
    headers.update(
        WebhookSigner.get_headers(
            body,
            endpoint.secret,
            HEALTH_CHECK_EVENT_TYPE,
            delivery_id="",
            endpoint_id=str(endpoint.id),
            method=endpoint.signature_method,
            signature_header=endpoint.signature_header,
            timestamp_header=endpoint.timestamp_header,
        )
    )

    start_time = time.monotonic()
    try:
        async with httpx.AsyncClient(timeout=config.timeout_seconds, transport=transport) as client:
            response = await client.request(endpoint.method, endpoint.url, content=body, headers=headers)
    except httpx.TimeoutException:
        return HealthCheckResult(
            status=HealthCheckStatus.TIMEOUT,
            checked_at=now,
            error="Request timeout",
            response_time_ms=int((time.monotonic() - start_time) * 1000),
        )
    except httpx.RequestError as e:
        return HealthCheckResult(
            status=HealthCheckStatus.FAILURE,
            checked_at=now,
            error=str(e)[:MAX_ERROR_LENGTH] or e.__class__.__name__,
            response_time_ms=int((time.monotonic() - start_time) * 1000),
        )

    latency_ms = int((time.monotonic() - start_time) * 1000)
    if response.status_code in config.expected_status:
        return HealthCheckResult(
            status=HealthCheckStatus.SUCCESS,
            checked_at=now,
            status_code=response.status_code,
            response_time_ms=latency_ms,
        )
    return HealthCheckResult(
        status=HealthCheckStatus.FAILURE,
        checked_at=now,
        status_code=response.status_code,
        response_time_ms=latency_ms,
        error=f"Unexpected status {response.status_code}",
    )
