"""Webhook endpoint registry."""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlsplit

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.config import get_settings
from hookrelay.webhooks.backoff import DEFAULT_RETRY_STATUSES, BackoffStrategy, RetryPolicy
from hookrelay.webhooks.exceptions import NotFoundError, ValidationError
from hookrelay.webhooks.health import HealthCheckConfig, HealthCheckResult, health_check_from_dict
from hookrelay.webhooks.models import (
    DeliveryStatus,
    EndpointStatus,
    WebhookDelivery,
    WebhookEndpoint,
    utcnow,
)
from hookrelay.webhooks.signer import SIGNATURE_ALGORITHMS

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ("POST", "PUT", "PATCH")


@dataclass
class EndpointConfig:
    """Operator-supplied endpoint configuration."""

    name: str
    url: str
    events: list[str]
    method: str = "POST"
    description: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    secret: str | None = None
    signature_method: str = "sha256"
    signature_header: str = "X-Webhook-Signature"
    timestamp_header: str = "X-Webhook-Timestamp"
    timeout_seconds: float = field(
        default_factory=lambda: float(get_settings().WEBHOOK_DEFAULT_TIMEOUT_SECONDS)
    )
    max_concurrency: int | None = None
    enabled: bool = True
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    health_check: HealthCheckConfig = field(default_factory=HealthCheckConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EndpointConfig:
        """Build a config from plain data (API bodies, YAML)."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known and v is not None}
        policy = values.pop("retry_policy", None)
        if isinstance(policy, dict):
            values["retry_policy"] = _policy_from_dict(policy)
        elif isinstance(policy, RetryPolicy):
            values["retry_policy"] = policy
        health = values.pop("health_check", None)
        if isinstance(health, dict):
            values["health_check"] = _health_check_from_dict(health)
        elif isinstance(health, HealthCheckConfig):
            values["health_check"] = health
        try:
            return cls(**values)
        except TypeError as e:
            raise ValidationError([f"endpoint config is incomplete: {e}"]) from e

    @classmethod
    def from_endpoint(cls, endpoint: WebhookEndpoint) -> EndpointConfig:
        return cls(
            name=endpoint.name,
            url=endpoint.url,
            events=list(endpoint.events),
            method=endpoint.method,
            description=endpoint.description,
            headers=dict(endpoint.headers or {}),
            secret=endpoint.secret,
            signature_method=endpoint.signature_method,
            signature_header=endpoint.signature_header,
            timestamp_header=endpoint.timestamp_header,
            timeout_seconds=endpoint.timeout_seconds,
            max_concurrency=endpoint.max_concurrency,
            enabled=endpoint.enabled,
            retry_policy=endpoint.retry_policy,
            health_check=endpoint.health_check,
        )

    def merge(self, partial: dict[str, Any]) -> EndpointConfig:
        """Return a copy with ``partial`` applied; nested policies merge per field."""
        updates = {k: v for k, v in partial.items() if k in {f.name for f in fields(self)}}
        policy = updates.pop("retry_policy", None)
        health = updates.pop("health_check", None)
        merged = replace(self, **updates)
        if isinstance(policy, dict):
            base = asdict(self.retry_policy)
            base.update({k: v for k, v in policy.items() if v is not None})
            merged = replace(merged, retry_policy=_policy_from_dict(base))
        elif isinstance(policy, RetryPolicy):
            merged = replace(merged, retry_policy=policy)
        if isinstance(health, dict):
            base = asdict(self.health_check)
            base.update({k: v for k, v in health.items() if v is not None})
            merged = replace(merged, health_check=_health_check_from_dict(base))
        elif isinstance(health, HealthCheckConfig):
            merged = replace(merged, health_check=health)
        return merged

    def validate(self) -> None:
        """Raise ValidationError listing every problem found."""
        errors = []

        if not self.name or not self.name.strip():
            errors.append("name is required")

        parts = urlsplit(self.url or "")
        if parts.scheme != "https":
            errors.append(f"url must use HTTPS: {self.url}")
        elif not parts.hostname or any(c.isspace() for c in self.url):
            errors.append(f"url is not well-formed: {self.url}")

        if self.method.upper() not in ALLOWED_METHODS:
            errors.append(f"method must be one of {', '.join(ALLOWED_METHODS)}")

        if not self.events or not all(isinstance(e, str) and e.strip() for e in self.events):
            errors.append("at least one subscribed event type is required")

        stale_after = get_settings().WEBHOOK_STALE_AFTER_SECONDS
        if self.timeout_seconds <= 0:
            errors.append("timeout_seconds must be positive")
        elif self.timeout_seconds >= stale_after:
            # A claimed job must not be recovered while its request can still be running
            errors.append(f"timeout_seconds must be below {stale_after} (stale job recovery)")

        if self.max_concurrency is not None and self.max_concurrency < 1:
            errors.append("max_concurrency must be at least 1")

        if self.signature_method not in SIGNATURE_ALGORITHMS:
            errors.append(f"signature_method must be one of {', '.join(SIGNATURE_ALGORITHMS)}")

        errors.extend(self.retry_policy.validate())
        errors.extend(self.health_check.validate())

        if errors:
            raise ValidationError(errors)


@dataclass(frozen=True)
class EndpointSnapshot:
    """Read-only view of an endpoint taken at routing time."""

    id: uuid.UUID
    name: str
    url: str
    method: str
    events: tuple[str, ...]
    headers: dict[str, str]
    secret: str | None
    signature_method: str
    signature_header: str
    timestamp_header: str
    timeout_seconds: float
    max_concurrency: int | None
    status: str
    retry_policy: RetryPolicy

    @classmethod
    def of(cls, endpoint: WebhookEndpoint) -> EndpointSnapshot:
        return cls(
            id=endpoint.id,
            name=endpoint.name,
            url=endpoint.url,
            method=endpoint.method,
            events=tuple(endpoint.events),
            headers=dict(endpoint.headers or {}),
            secret=endpoint.secret,
            signature_method=endpoint.signature_method,
            signature_header=endpoint.signature_header,
            timestamp_header=endpoint.timestamp_header,
            timeout_seconds=endpoint.timeout_seconds,
            max_concurrency=endpoint.max_concurrency,
            status=endpoint.status,
            retry_policy=endpoint.retry_policy,
        )


def _policy_from_dict(data: dict[str, Any]) -> RetryPolicy:
    statuses = data.get("retry_on_status")
    try:
        return RetryPolicy(
            enabled=bool(data.get("enabled", True)),
            max_attempts=int(data.get("max_attempts", 5)),
            backoff_strategy=BackoffStrategy(data.get("backoff_strategy", "exponential")),
            initial_delay_ms=int(data.get("initial_delay_ms", 1000)),
            max_delay_ms=int(data.get("max_delay_ms", 60000)),
            retry_on_status=(
                frozenset(int(s) for s in statuses)
                if statuses is not None
                else DEFAULT_RETRY_STATUSES
            ),
            jitter=bool(data.get("jitter", False)),
        )
    except (TypeError, ValueError) as e:
        raise ValidationError([f"retry_policy is invalid: {e}"]) from e


def _health_check_from_dict(data: dict[str, Any]) -> HealthCheckConfig:
    try:
        return health_check_from_dict(data)
    except (TypeError, ValueError) as e:
        raise ValidationError([f"health_check is invalid: {e}"]) from e


def _apply_config(endpoint: WebhookEndpoint, config: EndpointConfig) -> None:
    policy = config.retry_policy
    endpoint.name = config.name.strip()
    endpoint.description = config.description
    endpoint.url = config.url
    endpoint.method = config.method.upper()
    endpoint.events = sorted(set(config.events))
    endpoint.headers = dict(config.headers)
    endpoint.secret = config.secret
    endpoint.signature_method = config.signature_method
    endpoint.signature_header = config.signature_header
    endpoint.timestamp_header = config.timestamp_header
    endpoint.timeout_seconds = config.timeout_seconds
    endpoint.max_concurrency = config.max_concurrency
    endpoint.retry_enabled = policy.enabled
    endpoint.max_attempts = policy.max_attempts
    endpoint.backoff_strategy = policy.backoff_strategy.value
    endpoint.initial_delay_ms = policy.initial_delay_ms
    endpoint.max_delay_ms = policy.max_delay_ms
    endpoint.retry_on_status = sorted(policy.retry_on_status)
    endpoint.retry_jitter = policy.jitter
    health = config.health_check
    endpoint.health_check_enabled = health.enabled
    endpoint.health_check_interval_seconds = health.interval_seconds
    endpoint.health_check_timeout_seconds = health.timeout_seconds
    endpoint.health_check_expected_status = sorted(health.expected_status)
    _set_enabled(endpoint, config.enabled)


def _set_enabled(endpoint: WebhookEndpoint, enabled: bool) -> None:
    endpoint.enabled = enabled
    if not enabled:
        endpoint.status = EndpointStatus.DISABLED.value
    elif endpoint.status == EndpointStatus.DISABLED.value or not endpoint.status:
        endpoint.status = EndpointStatus.ACTIVE.value


class EndpointRegistry:
    """Owns registered endpoints and their retry/timeout configuration.

    Changes here never touch deliveries that are already in flight; those
    carry their own copy of the settings.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def register(self, config: EndpointConfig) -> WebhookEndpoint:
        """Validate and persist a new endpoint."""
        config.validate()

        endpoint = WebhookEndpoint(id=uuid.uuid4())
        _apply_config(endpoint, config)

        async with self._session_factory() as session:
            session.add(endpoint)
            await session.commit()

        logger.info("Registered webhook endpoint %s (%s)", endpoint.id, endpoint.name)
        return endpoint

    async def update(self, endpoint_id: uuid.UUID, partial: dict[str, Any]) -> WebhookEndpoint:
        """Merge ``partial`` onto the stored config and re-validate the result."""
        async with self._session_factory() as session:
            endpoint = await self._load(session, endpoint_id)
            merged = EndpointConfig.from_endpoint(endpoint).merge(partial)
            merged.validate()
            _apply_config(endpoint, merged)
            await session.commit()

        logger.info("Updated webhook endpoint %s", endpoint_id)
        return endpoint

    async def toggle(self, endpoint_id: uuid.UUID, enabled: bool | None = None) -> WebhookEndpoint:
        """Flip enabled, or set it explicitly when ``enabled`` is given."""
        async with self._session_factory() as session:
            endpoint = await self._load(session, endpoint_id)
            target = (not endpoint.enabled) if enabled is None else enabled
            if target and endpoint.is_archived:
                raise ValidationError(["archived endpoints cannot be enabled"])
            _set_enabled(endpoint, target)
            await session.commit()

        logger.info(
            "Webhook endpoint %s %s", endpoint_id, "enabled" if endpoint.enabled else "disabled"
        )
        return endpoint

    async def pause(self, endpoint_id: uuid.UUID) -> WebhookEndpoint:
        """Stop routing new events; in-flight retries continue."""
        return await self._set_status(endpoint_id, EndpointStatus.PAUSED)

    async def resume(self, endpoint_id: uuid.UUID) -> WebhookEndpoint:
        return await self._set_status(endpoint_id, EndpointStatus.ACTIVE)

    async def get(self, endpoint_id: uuid.UUID) -> WebhookEndpoint:
        async with self._session_factory() as session:
            return await self._load(session, endpoint_id)

    async def list_endpoints(
        self,
        enabled: bool | None = None,
        search: str | None = None,
        event_type: str | None = None,
        include_archived: bool = False,
    ) -> list[WebhookEndpoint]:
        query = select(WebhookEndpoint).order_by(WebhookEndpoint.created_at)
        if enabled is not None:
            query = query.where(WebhookEndpoint.enabled == enabled)
        if not include_archived:
            query = query.where(WebhookEndpoint.archived_at.is_(None))
        if search:
            pattern = f"%{search.lower()}%"
            query = query.where(
                or_(
                    func.lower(WebhookEndpoint.name).like(pattern),
                    func.lower(WebhookEndpoint.url).like(pattern),
                )
            )

        async with self._session_factory() as session:
            result = await session.execute(query)
            endpoints = list(result.scalars().all())

        if event_type:
            endpoints = [ep for ep in endpoints if ep.subscribes_to(event_type)]
        return endpoints

    async def find_by_name(self, name: str) -> WebhookEndpoint | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookEndpoint).where(
                    WebhookEndpoint.name == name,
                    WebhookEndpoint.archived_at.is_(None),
                )
            )
            return result.scalars().first()

    async def delete(self, endpoint_id: uuid.UUID) -> bool:
        """
        Remove an endpoint, or archive it when deliveries reference it.

        Returns:
            True if the row was removed, False if it was archived
        """
        async with self._session_factory() as session:
            endpoint = await self._load(session, endpoint_id)
            referenced = await session.scalar(
                select(func.count())
                .select_from(WebhookDelivery)
                .where(WebhookDelivery.endpoint_id == endpoint_id)
            )
            if referenced:
                _set_enabled(endpoint, False)
                endpoint.archived_at = endpoint.archived_at or utcnow()
                await session.commit()
                logger.info(
                    "Archived webhook endpoint %s (%d deliveries reference it)",
                    endpoint_id,
                    referenced,
                )
                return False

            await session.execute(delete(WebhookEndpoint).where(WebhookEndpoint.id == endpoint_id))
            await session.commit()

        logger.info("Deleted webhook endpoint %s", endpoint_id)
        return True

    async def regenerate_secret(self, endpoint_id: uuid.UUID) -> tuple[WebhookEndpoint, str]:
        """Issue a fresh signing secret. Existing deliveries keep the old one."""
        secret = f"whsec_{secrets.token_urlsafe(32)}"
        async with self._session_factory() as session:
            endpoint = await self._load(session, endpoint_id)
            endpoint.secret = secret
            await session.commit()

        logger.info("Regenerated signing secret for webhook endpoint %s", endpoint_id)
        return endpoint, secret

    async def refresh_health(
        self,
        endpoint_id: uuid.UUID,
        window: int | None = None,
        threshold: float | None = None,
    ) -> WebhookEndpoint:
        """
        Recompute the derived ``failing`` indicator from recent deliveries.

        Only switches between active and failing; paused or disabled
        endpoints keep their status.
        """
        settings = get_settings()
        window = window or settings.WEBHOOK_HEALTH_WINDOW
        threshold = settings.WEBHOOK_FAILING_THRESHOLD if threshold is None else threshold

        async with self._session_factory() as session:
            endpoint = await self._load(session, endpoint_id)
            result = await session.execute(
                select(WebhookDelivery.status)
                .where(
                    WebhookDelivery.endpoint_id == endpoint_id,
                    WebhookDelivery.status.in_(
                        [DeliveryStatus.DELIVERED.value, DeliveryStatus.FAILED.value]
                    ),
                )
                .order_by(WebhookDelivery.created_at.desc())
                .limit(window)
            )
            statuses = list(result.scalars().all())

            if endpoint.status in (EndpointStatus.ACTIVE.value, EndpointStatus.FAILING.value):
                if statuses:
                    delivered = sum(1 for s in statuses if s == DeliveryStatus.DELIVERED.value)
                    failing = delivered / len(statuses) < threshold
                else:
                    failing = False
                new_status = EndpointStatus.FAILING if failing else EndpointStatus.ACTIVE
                if endpoint.status != new_status.value:
                    logger.info(
                        "Webhook endpoint %s health changed: %s -> %s",
                        endpoint_id,
                        endpoint.status,
                        new_status.value,
                    )
                    endpoint.status = new_status.value
                    await session.commit()

        return endpoint

    async def record_health_check(self, endpoint_id: uuid.UUID, result: HealthCheckResult) -> WebhookEndpoint:
        """Store the latest health check result on the endpoint."""
        async with self._session_factory() as session:
            endpoint = await self._load(session, endpoint_id)
            previous = endpoint.last_health_check_status
            endpoint.last_health_check_at = result.checked_at
            endpoint.last_health_check_status = result.status.value
            endpoint.last_health_check_response_ms = result.response_time_ms
            await session.commit()

        if previous != result.status.value:
            logger.info(
                "Webhook endpoint %s health check: %s -> %s",
                endpoint_id,
                previous or "unchecked",
                result.status.value,
            )
        return endpoint

    async def due_health_checks(self, now: datetime) -> list[WebhookEndpoint]:
        """Enabled endpoints whose health check interval has elapsed."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookEndpoint).where(
                    WebhookEndpoint.health_check_enabled.is_(True),
                    WebhookEndpoint.enabled.is_(True),
                    WebhookEndpoint.archived_at.is_(None),
                )
            )
            endpoints = list(result.scalars().all())

        return [
            ep
            for ep in endpoints
            if ep.last_health_check_at is None
            or ep.last_health_check_at + timedelta(seconds=ep.health_check_interval_seconds) <= now
        ]

    async def _set_status(self, endpoint_id: uuid.UUID, status: EndpointStatus) -> WebhookEndpoint:
        async with self._session_factory() as session:
            endpoint = await self._load(session, endpoint_id)
            if not endpoint.enabled:
                raise ValidationError(["disabled endpoints cannot be paused or resumed"])
            endpoint.status = status.value
            await session.commit()

        logger.info("Webhook endpoint %s status set to %s", endpoint_id, status.value)
        return endpoint

    @staticmethod
    async def _load(session: AsyncSession, endpoint_id: uuid.UUID) -> WebhookEndpoint:
        endpoint = await session.get(WebhookEndpoint, endpoint_id)
        if endpoint is None:
            raise NotFoundError("Webhook endpoint", endpoint_id)
        return endpoint
