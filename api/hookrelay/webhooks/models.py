"""Webhook SQLAlchemy models."""

from __future__ import annotations

import copy
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Boolean, Float, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from hookrelay.db.base import Base, UTCDateTime
from hookrelay.webhooks.backoff import BackoffStrategy, RetryPolicy
from hookrelay.webhooks.health import HealthCheckConfig


def utcnow() -> datetime:
    return datetime.now(UTC)


class EndpointStatus(str, Enum):
    """Endpoint lifecycle status."""

    ACTIVE = "active"
    PAUSED = "paused"
    FAILING = "failing"
    DISABLED = "disabled"


class DeliveryStatus(str, Enum):
    """Webhook delivery status."""

    PENDING = "pending"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    FAILED = "failed"


class RetryJobStatus(str, Enum):
    """Retry job status."""

    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookEndpoint(Base):
    """Registered webhook receiver and its delivery configuration."""

    __tablename__ = "webhook_endpoints"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    url: Mapped[str] = mapped_column(String(500), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False, default="POST")
    events: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    headers: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)

    # Signing
    secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    signature_method: Mapped[str] = mapped_column(String(10), nullable=False, default="sha256")
    signature_header: Mapped[str] = mapped_column(
        String(100), nullable=False, default="X-Webhook-Signature"
    )
    timestamp_header: Mapped[str] = mapped_column(
        String(100), nullable=False, default="X-Webhook-Timestamp"
    )

    timeout_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=30)
    max_concurrency: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Retry policy
    retry_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    backoff_strategy: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BackoffStrategy.EXPONENTIAL.value
    )
    initial_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=1000)
    max_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=60000)
    retry_on_status: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    retry_jitter: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Health check
    health_check_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    health_check_interval_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=300)
    health_check_timeout_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=5)
    health_check_expected_status: Mapped[list[int]] = mapped_column(
        JSON, nullable=False, default=lambda: [200]
    )
    last_health_check_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_health_check_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_health_check_response_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Lifecycle
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EndpointStatus.ACTIVE.value
    )
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            enabled=self.retry_enabled,
            max_attempts=self.max_attempts,
            backoff_strategy=BackoffStrategy(self.backoff_strategy),
            initial_delay_ms=self.initial_delay_ms,
            max_delay_ms=self.max_delay_ms,
            retry_on_status=frozenset(self.retry_on_status or []),
            jitter=self.retry_jitter,
        )

    @property
    def health_check(self) -> HealthCheckConfig:
        return HealthCheckConfig(
            enabled=self.health_check_enabled,
            interval_seconds=self.health_check_interval_seconds,
            timeout_seconds=self.health_check_timeout_seconds,
            expected_status=frozenset(self.health_check_expected_status or [200]),
        )

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    def subscribes_to(self, event_type: str) -> bool:
        """Check if this endpoint subscribes to the given event type."""
        return "*" in self.events or event_type in self.events


class WebhookDelivery(Base):
    """One obligation to deliver one event to one endpoint.

    Endpoint settings that influence an attempt are copied here when the
    delivery is created, so later edits never change in-flight behaviour.
    """

    __tablename__ = "webhook_deliveries"
    __table_args__ = (Index("ix_webhook_deliveries_endpoint_created", "endpoint_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    endpoint_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("webhook_endpoints.id"), nullable=False, index=True
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    # Delivery status
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeliveryStatus.PENDING.value, index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    last_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Endpoint snapshot
    endpoint_url: Mapped[str] = mapped_column(String(500), nullable=False)
    http_method: Mapped[str] = mapped_column(String(10), nullable=False)
    request_headers: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    timeout_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    signature_method: Mapped[str] = mapped_column(String(10), nullable=False)
    signature_header: Mapped[str] = mapped_column(String(100), nullable=False)
    timestamp_header: Mapped[str] = mapped_column(String(100), nullable=False)
    backoff_strategy: Mapped[str] = mapped_column(String(20), nullable=False)
    initial_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    max_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    retry_on_status: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    retry_jitter: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Timing
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, index=True
    )
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    @classmethod
    def from_endpoint(
        cls,
        endpoint: Any,
        event_id: uuid.UUID,
        event_type: str,
        payload: dict[str, Any],
    ) -> WebhookDelivery:
        """New pending delivery carrying a copy of the endpoint's current settings.

        ``endpoint`` is a WebhookEndpoint or an EndpointSnapshot.
        """
        policy = endpoint.retry_policy
        return cls(
            id=uuid.uuid4(),
            event_id=event_id,
            event_type=event_type,
            endpoint_id=endpoint.id,
            payload=copy.deepcopy(payload),
            status=DeliveryStatus.PENDING.value,
            attempts=0,
            max_attempts=policy.effective_max_attempts,
            endpoint_url=endpoint.url,
            http_method=endpoint.method,
            request_headers=dict(endpoint.headers or {}),
            timeout_seconds=endpoint.timeout_seconds,
            secret=endpoint.secret,
            signature_method=endpoint.signature_method,
            signature_header=endpoint.signature_header,
            timestamp_header=endpoint.timestamp_header,
            backoff_strategy=policy.backoff_strategy.value,
            initial_delay_ms=policy.initial_delay_ms,
            max_delay_ms=policy.max_delay_ms,
            retry_on_status=sorted(policy.retry_on_status),
            retry_jitter=policy.jitter,
            created_at=utcnow(),
        )

    @property
    def retry_policy(self) -> RetryPolicy:
        """Policy snapshot taken when the delivery was created."""
        return RetryPolicy(
            enabled=self.max_attempts > 1,
            max_attempts=self.max_attempts,
            backoff_strategy=BackoffStrategy(self.backoff_strategy),
            initial_delay_ms=self.initial_delay_ms,
            max_delay_ms=self.max_delay_ms,
            retry_on_status=frozenset(self.retry_on_status or []),
            jitter=self.retry_jitter,
        )

    @property
    def is_final(self) -> bool:
        return self.status in (DeliveryStatus.DELIVERED.value, DeliveryStatus.FAILED.value)

    @property
    def remaining_attempts(self) -> int:
        return max(self.max_attempts - self.attempts, 0)


class DeliveryAttempt(Base):
    """History row for a single HTTP attempt of a delivery."""

    __tablename__ = "webhook_delivery_attempts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    delivery_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("webhook_deliveries.id"), nullable=False, index=True
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class RetryJob(Base):
    """A scheduled re-attempt of a delivery."""

    __tablename__ = "webhook_retry_jobs"
    __table_args__ = (Index("ix_webhook_retry_jobs_status_due", "status", "next_retry_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    delivery_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("webhook_deliveries.id"), nullable=False, index=True
    )
    endpoint_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    next_retry_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    delay_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RetryJobStatus.SCHEDULED.value
    )
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class DeadLetterEntry(Base):
    """Delivery that will not be retried automatically."""

    __tablename__ = "webhook_dead_letters"
    __table_args__ = (Index("ix_webhook_dead_letters_endpoint_resolved", "endpoint_id", "resolved"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    delivery_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("webhook_deliveries.id"), nullable=False, unique=True
    )
    endpoint_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    failure_reason: Mapped[str] = mapped_column(Text, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    first_failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Resolution
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    superseded_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
