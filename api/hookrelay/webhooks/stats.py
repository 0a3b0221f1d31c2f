"""Delivery metrics derived from delivery history."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.webhooks.models import (
    DeadLetterEntry,
    DeliveryStatus,
    EndpointStatus,
    RetryJob,
    RetryJobStatus,
    WebhookDelivery,
    WebhookEndpoint,
    utcnow,
)


@dataclass
class EndpointStats:
    """Delivery counters for one endpoint."""

    endpoint_id: uuid.UUID
    total: int = 0
    delivered: int = 0
    failed: int = 0
    in_flight: int = 0
    avg_response_time_ms: float | None = None
    fastest_response_ms: int | None = None
    slowest_response_ms: int | None = None
    name: str | None = None

    @property
    def success_rate(self) -> float | None:
        """delivered / (delivered + failed); None until something finished."""
        finished = self.delivered + self.failed
        return self.delivered / finished if finished else None

    @property
    def failure_rate(self) -> float | None:
        rate = self.success_rate
        return None if rate is None else 1 - rate


@dataclass
class GlobalStats:
    """System-wide snapshot for the dashboard."""

    total_endpoints: int
    active_endpoints: int
    total: int
    delivered: int
    failed: int
    in_flight: int
    avg_response_time_ms: float | None
    scheduled_retries: int
    running_retries: int
    dead_letters_unresolved: int
    fastest_response_ms: int | None = None
    slowest_response_ms: int | None = None
    deliveries_today: int = 0
    deliveries_this_week: int = 0
    event_distribution: dict[str, int] = field(default_factory=dict)
    recent_failures: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success_rate(self) -> float | None:
        finished = self.delivered + self.failed
        return self.delivered / finished if finished else None


@dataclass
class EventTypeStats:
    """An event type known to the system: subscribed to, delivered, or both."""

    event_type: str
    subscribers: int = 0
    deliveries: int = 0
    last_delivery_at: datetime | None = None


def _windowed(query, start: datetime | None, end: datetime | None):
    if start is not None:
        query = query.where(WebhookDelivery.created_at >= start)
    if end is not None:
        query = query.where(WebhookDelivery.created_at < end)
    return query


def _counters():
    """total, delivered, failed, then avg/min/max latency of delivered deliveries."""
    delivered = DeliveryStatus.DELIVERED.value
    failed = DeliveryStatus.FAILED.value
    latency = case(
        (WebhookDelivery.status == delivered, WebhookDelivery.last_response_time_ms),
        else_=None,
    )
    return (
        func.count(WebhookDelivery.id),
        func.sum(case((WebhookDelivery.status == delivered, 1), else_=0)),
        func.sum(case((WebhookDelivery.status == failed, 1), else_=0)),
        func.avg(latency),
        func.min(latency),
        func.max(latency),
    )


class MetricsAggregator:
    """Read-only metrics recomputed from the deliveries table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def endpoint_stats(
        self,
        endpoint_id: uuid.UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> EndpointStats:
        async with self._session_factory() as session:
            query = _windowed(
                select(*_counters()).where(WebhookDelivery.endpoint_id == endpoint_id),
                start,
                end,
            )
            counters = (await session.execute(query)).one()
            name = await session.scalar(
                select(WebhookEndpoint.name).where(WebhookEndpoint.id == endpoint_id)
            )

        return _make_stats(endpoint_id, name, counters)

    async def all_endpoint_stats(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[EndpointStats]:
        async with self._session_factory() as session:
            query = _windowed(
                select(WebhookDelivery.endpoint_id, *_counters()).group_by(
                    WebhookDelivery.endpoint_id
                ),
                start,
                end,
            )
            rows = (await session.execute(query)).all()
            names = dict(
                (await session.execute(select(WebhookEndpoint.id, WebhookEndpoint.name))).all()
            )

        return [_make_stats(row[0], names.get(row[0]), row[1:]) for row in rows]

    async def ranked_by_failure_rate(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[EndpointStats]:
        """Endpoints with finished deliveries, worst failure rate first."""
        stats = [s for s in await self.all_endpoint_stats(start, end) if s.failure_rate is not None]
        return sorted(stats, key=lambda s: (-s.failure_rate, -s.failed, str(s.endpoint_id)))

    async def global_snapshot(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        recent_failures: int = 10,
        now: datetime | None = None,
    ) -> GlobalStats:
        """
        Snapshot of the whole system.

        ``deliveries_today`` and ``deliveries_this_week`` count deliveries
        created since UTC midnight and since Monday 00:00 UTC relative to
        ``now``; they ignore ``start`` and ``end``.
        """
        now = now or utcnow()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week = today - timedelta(days=today.weekday())

        async with self._session_factory() as session:
            total, delivered, failed, avg_ms, min_ms, max_ms = (
                await session.execute(_windowed(select(*_counters()), start, end))
            ).one()

            since_today, since_week = (
                await session.execute(
                    select(
                        func.sum(case((WebhookDelivery.created_at >= today, 1), else_=0)),
                        func.count(WebhookDelivery.id),
                    ).where(WebhookDelivery.created_at >= week)
                )
            ).one()

            distribution = dict(
                (
                    await session.execute(
                        _windowed(
                            select(WebhookDelivery.event_type, func.count(WebhookDelivery.id))
                            .group_by(WebhookDelivery.event_type),
                            start,
                            end,
                        )
                    )
                ).all()
            )

            failures = (
                await session.execute(
                    _windowed(
                        select(WebhookDelivery)
                        .where(WebhookDelivery.status == DeliveryStatus.FAILED.value)
                        .order_by(WebhookDelivery.last_attempt_at.desc())
                        .limit(recent_failures),
                        start,
                        end,
                    )
                )
            ).scalars().all()

            endpoint_rows = (
                await session.execute(
                    select(WebhookEndpoint.status, func.count(WebhookEndpoint.id))
                    .where(WebhookEndpoint.archived_at.is_(None))
                    .group_by(WebhookEndpoint.status)
                )
            ).all()

            job_rows = dict(
                (
                    await session.execute(
                        select(RetryJob.status, func.count(RetryJob.id)).group_by(RetryJob.status)
                    )
                ).all()
            )

            unresolved = await session.scalar(
                select(func.count())
                .select_from(DeadLetterEntry)
                .where(DeadLetterEntry.resolved.is_(False))
            )

        by_status = dict(endpoint_rows)
        total_delivered = int(delivered or 0)
        total_failed = int(failed or 0)
        total = int(total or 0)

        return GlobalStats(
            total_endpoints=sum(by_status.values()),
            active_endpoints=by_status.get(EndpointStatus.ACTIVE.value, 0)
            + by_status.get(EndpointStatus.FAILING.value, 0),
            total=total,
            delivered=total_delivered,
            failed=total_failed,
            in_flight=total - total_delivered - total_failed,
            avg_response_time_ms=float(avg_ms) if avg_ms is not None else None,
            fastest_response_ms=min_ms,
            slowest_response_ms=max_ms,
            deliveries_today=int(since_today or 0),
            deliveries_this_week=int(since_week or 0),
            scheduled_retries=job_rows.get(RetryJobStatus.SCHEDULED.value, 0),
            running_retries=job_rows.get(RetryJobStatus.RUNNING.value, 0),
            dead_letters_unresolved=unresolved or 0,
            event_distribution=distribution,
            recent_failures=[
                {
                    "delivery_id": d.id,
                    "endpoint_id": d.endpoint_id,
                    "event_type": d.event_type,
                    "error": d.last_error,
                    "timestamp": d.last_attempt_at,
                }
                for d in failures
            ],
        )

    async def event_types(self) -> list[EventTypeStats]:
        """
        Every event type that live endpoints subscribe to or that was delivered.

        ``subscribers`` counts enabled, unarchived endpoints that would
        receive the type, wildcard subscriptions included.
        """
        async with self._session_factory() as session:
            endpoints = (
                await session.execute(
                    select(WebhookEndpoint.events).where(
                        WebhookEndpoint.enabled.is_(True),
                        WebhookEndpoint.archived_at.is_(None),
                    )
                )
            ).scalars().all()
            delivered = (
                await session.execute(
                    select(
                        WebhookDelivery.event_type,
                        func.count(WebhookDelivery.id),
                        func.max(WebhookDelivery.created_at),
                    ).group_by(WebhookDelivery.event_type)
                )
            ).all()

        catalog: dict[str, EventTypeStats] = {}
        for event_type, count, last_at in delivered:
            catalog[event_type] = EventTypeStats(
                event_type=event_type, deliveries=count, last_delivery_at=last_at
            )
        for events in endpoints:
            for event_type in events or []:
                if event_type != "*":
                    catalog.setdefault(event_type, EventTypeStats(event_type=event_type))

        for stats in catalog.values():
            stats.subscribers = sum(
                1 for events in endpoints if "*" in events or stats.event_type in events
            )
        return sorted(catalog.values(), key=lambda s: s.event_type)


def _make_stats(endpoint_id, name, counters) -> EndpointStats:
    total, delivered, failed, avg_ms, min_ms, max_ms = counters
    total = int(total or 0)
    delivered = int(delivered or 0)
    failed = int(failed or 0)
    return EndpointStats(
        endpoint_id=endpoint_id,
        name=name,
        total=total,
        delivered=delivered,
        failed=failed,
        in_flight=total - delivered - failed,
        avg_response_time_ms=float(avg_ms) if avg_ms is not None else None,
        fastest_response_ms=min_ms,
        slowest_response_ms=max_ms,
    )
