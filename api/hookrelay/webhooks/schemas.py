"""Webhook Pydantic schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from hookrelay.webhooks.backoff import BackoffStrategy
from hookrelay.webhooks.models import WebhookEndpoint


class RetryPolicySchema(BaseModel):
    """Retry behaviour for an endpoint."""

    enabled: bool = Field(True, description="Retry retryable failures")
    max_attempts: int = Field(5, description="Total attempts including the first")
    backoff_strategy: BackoffStrategy = Field(
        BackoffStrategy.EXPONENTIAL, description="fixed, linear or exponential"
    )
    initial_delay_ms: int = Field(1000, description="Delay after the first failure")
    max_delay_ms: int = Field(60000, description="Upper bound for any delay")
    retry_on_status: list[int] = Field(
        default_factory=lambda: [408, 429, 500, 502, 503, 504],
        description="HTTP status codes treated as retryable",
    )
    jitter: bool = Field(False, description="Spread delays by up to 10%")


class RetryPolicyUpdate(BaseModel):
    """Partial retry policy; omitted fields keep their value."""

    enabled: bool | None = None
    max_attempts: int | None = None
    backoff_strategy: BackoffStrategy | None = None
    initial_delay_ms: int | None = None
    max_delay_ms: int | None = None
    retry_on_status: list[int] | None = None
    jitter: bool | None = None


class HealthCheckSchema(BaseModel):
    """Periodic health check settings for an endpoint."""

    enabled: bool = Field(False, description="Ping the endpoint on a schedule")
    interval_seconds: int = Field(300, description="Seconds between checks")
    timeout_seconds: float = Field(5.0, description="Per-check timeout")
    expected_status: list[int] = Field(
        default_factory=lambda: [200], description="Status codes counted as healthy"
    )


class HealthCheckUpdate(BaseModel):
    """Partial health check settings; omitted fields keep their value."""

    enabled: bool | None = None
    interval_seconds: int | None = None
    timeout_seconds: float | None = None
    expected_status: list[int] | None = None


class HealthCheckResultResponse(BaseModel):
    """Result of one health check."""

    endpoint_id: UUID
    status: str = Field(..., description="success, failure or timeout")
    success: bool
    status_code: int | None = None
    response_time_ms: int | None = None
    error: str | None = None
    checked_at: datetime


class WebhookEndpointCreate(BaseModel):
    """Register a webhook endpoint."""

    name: str = Field(..., max_length=100, description="Human-readable name")
    url: str = Field(..., max_length=500, description="Receiver URL (HTTPS)")
    events: list[str] = Field(..., description="Subscribed event types; '*' for all")
    method: str = Field("POST", description="POST, PUT or PATCH")
    description: str = Field("", description="Endpoint description")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra request headers")
    secret: str | None = Field(None, description="Signing secret; unsigned when omitted")
    signature_method: str = Field("sha256", description="HMAC digest: sha256 or sha1")
    signature_header: str = Field("X-Webhook-Signature", description="Signature header name")
    timestamp_header: str = Field("X-Webhook-Timestamp", description="Timestamp header name")
    timeout_seconds: float | None = Field(None, description="Per-attempt timeout")
    max_concurrency: int | None = Field(None, description="In-flight attempt cap")
    enabled: bool = Field(True, description="Whether endpoint receives events")
    retry_policy: RetryPolicySchema = Field(default_factory=RetryPolicySchema)
    health_check: HealthCheckSchema = Field(default_factory=HealthCheckSchema)


class WebhookEndpointUpdate(BaseModel):
    """Partial endpoint update. Only provided fields change."""

    name: str | None = Field(None, max_length=100)
    url: str | None = Field(None, max_length=500)
    events: list[str] | None = None
    method: str | None = None
    description: str | None = None
    headers: dict[str, str] | None = None
    secret: str | None = None
    signature_method: str | None = None
    signature_header: str | None = None
    timestamp_header: str | None = None
    timeout_seconds: float | None = None
    max_concurrency: int | None = None
    enabled: bool | None = None
    retry_policy: RetryPolicyUpdate | None = None
    health_check: HealthCheckUpdate | None = None


class WebhookEndpointResponse(BaseModel):
    """Webhook endpoint configuration response (secret masked)."""

    id: UUID = Field(..., description="Unique endpoint identifier")
    name: str
    description: str = ""
    url: str = Field(..., description="Webhook URL (HTTPS)")
    method: str
    events: list[str] = Field(..., description="Subscribed event types")
    headers: dict[str, str] = Field(default_factory=dict)
    has_secret: bool = Field(..., description="Whether requests are signed")
    signature_method: str
    signature_header: str
    timestamp_header: str
    timeout_seconds: float
    max_concurrency: int | None = None
    retry_policy: RetryPolicySchema
    health_check: HealthCheckSchema
    last_health_check_at: datetime | None = None
    last_health_check_status: str | None = None
    last_health_check_response_ms: int | None = None
    enabled: bool = Field(..., description="Whether endpoint is active")
    status: str = Field(..., description="active, paused, failing or disabled")
    archived_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_endpoint(cls, endpoint: WebhookEndpoint) -> WebhookEndpointResponse:
        policy = endpoint.retry_policy
        health = endpoint.health_check
        return cls(
            id=endpoint.id,
            name=endpoint.name,
            description=endpoint.description,
            url=endpoint.url,
            method=endpoint.method,
            events=list(endpoint.events),
            headers=dict(endpoint.headers or {}),
            has_secret=bool(endpoint.secret),
            signature_method=endpoint.signature_method,
            signature_header=endpoint.signature_header,
            timestamp_header=endpoint.timestamp_header,
            timeout_seconds=endpoint.timeout_seconds,
            max_concurrency=endpoint.max_concurrency,
            retry_policy=RetryPolicySchema(
                enabled=policy.enabled,
                max_attempts=policy.max_attempts,
                backoff_strategy=policy.backoff_strategy,
                initial_delay_ms=policy.initial_delay_ms,
                max_delay_ms=policy.max_delay_ms,
                retry_on_status=sorted(policy.retry_on_status),
                jitter=policy.jitter,
            ),
            health_check=HealthCheckSchema(
                enabled=health.enabled,
                interval_seconds=health.interval_seconds,
                timeout_seconds=health.timeout_seconds,
                expected_status=sorted(health.expected_status),
            ),
            last_health_check_at=endpoint.last_health_check_at,
            last_health_check_status=endpoint.last_health_check_status,
            last_health_check_response_ms=endpoint.last_health_check_response_ms,
            enabled=endpoint.enabled,
            status=endpoint.status,
            archived_at=endpoint.archived_at,
            created_at=endpoint.created_at,
            updated_at=endpoint.updated_at,
        )


class WebhookSecretResponse(BaseModel):
    """Newly issued signing secret. Shown once."""

    endpoint_id: UUID
    secret: str


class WebhookToggleRequest(BaseModel):
    enabled: bool | None = Field(None, description="Target state; flips when omitted")


class WebhookDeleteResponse(BaseModel):
    deleted: bool = Field(..., description="True if removed, False if archived")


class WebhookCancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=500, description="Dead-letter reason")


class WebhookCancelResponse(BaseModel):
    cancelled: int = Field(..., description="Number of deliveries cancelled")


class WebhookTestRequest(BaseModel):
    payload: dict[str, Any] | None = Field(None, description="Test event data")


class WebhookDeliveryResponse(BaseModel):
    """Webhook delivery state."""

    id: UUID = Field(..., description="Delivery record ID")
    event_id: UUID = Field(..., description="Event ID")
    event_type: str = Field(..., description="Event type (e.g., invoice.paid)")
    endpoint_id: UUID = Field(..., description="Target endpoint ID")
    endpoint_url: str = Field(..., description="Target URL at delivery time")
    payload: dict[str, Any]
    status: str = Field(..., description="pending, retrying, delivered or failed")
    attempts: int = Field(..., description="Attempts made so far")
    max_attempts: int
    last_status_code: int | None = Field(None, description="Last HTTP response status code")
    last_response_time_ms: int | None = None
    last_error: str | None = Field(None, description="Last error message")
    created_at: datetime = Field(..., description="When delivery was created")
    last_attempt_at: datetime | None = None
    delivered_at: datetime | None = None
    next_retry_at: datetime | None = None

    model_config = {"from_attributes": True}


class DeliveryAttemptResponse(BaseModel):
    """One recorded HTTP attempt."""

    id: UUID
    delivery_id: UUID
    attempt_number: int
    success: bool
    status_code: int | None = None
    response_time_ms: int | None = None
    response_body: str | None = None
    error: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class DeadLetterResponse(BaseModel):
    """Dead-letter entry."""

    id: UUID
    delivery_id: UUID
    endpoint_id: UUID
    event_id: UUID
    event_type: str
    payload: dict[str, Any]
    failure_reason: str
    attempts: int
    first_failed_at: datetime | None = None
    last_failed_at: datetime | None = None
    resolved: bool
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_notes: str | None = None
    superseded_by: UUID | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class DeadLetterResolveRequest(BaseModel):
    resolved_by: str = Field(..., max_length=255, description="Operator identity")
    notes: str | None = Field(None, description="Resolution notes")


class EndpointStatsResponse(BaseModel):
    """Delivery counters for one endpoint."""

    endpoint_id: UUID
    name: str | None = None
    total: int
    delivered: int
    failed: int
    in_flight: int
    success_rate: float | None = None
    failure_rate: float | None = None
    avg_response_time_ms: float | None = None
    fastest_response_ms: int | None = None
    slowest_response_ms: int | None = None

    model_config = {"from_attributes": True}


class RecentFailure(BaseModel):
    delivery_id: UUID
    endpoint_id: UUID
    event_type: str
    error: str | None = None
    timestamp: datetime | None = None


class GlobalStatsResponse(BaseModel):
    """System-wide delivery snapshot."""

    total_endpoints: int
    active_endpoints: int
    total: int
    delivered: int
    failed: int
    in_flight: int
    success_rate: float | None = None
    avg_response_time_ms: float | None = None
    fastest_response_ms: int | None = None
    slowest_response_ms: int | None = None
    deliveries_today: int = 0
    deliveries_this_week: int = 0
    scheduled_retries: int
    running_retries: int
    dead_letters_unresolved: int
    event_distribution: dict[str, int] = Field(default_factory=dict)
    recent_failures: list[RecentFailure] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class EventTypeResponse(BaseModel):
    """An event type with its subscriber and delivery counts."""

    event_type: str
    subscribers: int = Field(..., description="Live endpoints that would receive it")
    deliveries: int = Field(..., description="Deliveries created for it so far")
    last_delivery_at: datetime | None = None

    model_config = {"from_attributes": True}


class EmitEventRequest(BaseModel):
    """Event submitted by an operator or a trusted producer."""

    event_type: str = Field(..., min_length=1, max_length=100)
    data: dict[str, Any] = Field(default_factory=dict)


class EmitEventResponse(BaseModel):
    """Accepted event; its deliveries are pending until a worker attempts them."""

    event_id: UUID
    event_type: str
    deliveries: list[WebhookDeliveryResponse]


class WebhookReloadResponse(BaseModel):
    """Response for seed configuration reload."""

    success: bool = Field(..., description="Whether reload succeeded")
    message: str = Field(..., description="Status message")
    created: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
