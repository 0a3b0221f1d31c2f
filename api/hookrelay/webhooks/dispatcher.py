"""Delivery dispatcher: creates deliveries and performs HTTP attempts."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.webhooks.dead_letter import DeadLetterStore
from hookrelay.webhooks.event import TEST_EVENT_TYPE, WebhookEvent
from hookrelay.webhooks.exceptions import (
    DeliveryError,
    ExhaustionError,
    InvalidStateError,
    NotFoundError,
    PermanentDeliveryError,
    RetryConflictError,
    TransientDeliveryError,
)
from hookrelay.webhooks.health import HealthCheckResult, ping_endpoint
from hookrelay.webhooks.models import (
    DeliveryAttempt,
    DeliveryStatus,
    RetryJob,
    RetryJobStatus,
    WebhookDelivery,
    WebhookEndpoint,
    utcnow,
)
from hookrelay.webhooks.queue import RetryQueue, first_attempt_job
from hookrelay.webhooks.registry import EndpointRegistry, EndpointSnapshot
from hookrelay.webhooks.routing import EventRouter
from hookrelay.webhooks.scheduler import BackoffScheduler
from hookrelay.webhooks.signer import WebhookSigner

logger = logging.getLogger(__name__)

MAX_BODY_LENGTH = 500

# Delay before a job put back at the concurrency cap is due again
DEFER_DELAY_MS = 1000

ACTIVE_STATUSES = (DeliveryStatus.PENDING.value, DeliveryStatus.RETRYING.value)


@dataclass
class AttemptOutcome:
    """Result of a single HTTP attempt."""

    success: bool
    status_code: int | None = None
    error: str | None = None
    response_time_ms: int | None = None
    response_body: str | None = None


class EndpointLimiter:
    """Caps in-flight attempts per endpoint.

    All bookkeeping happens between awaits, so a plain dict is enough on a
    single event loop.
    """

    def __init__(self, default_cap: int = 0):
        self.default_cap = default_cap
        self._in_flight: dict[uuid.UUID, int] = {}

    def try_acquire(self, endpoint_id: uuid.UUID, cap: int | None = None) -> bool:
        cap = cap or self.default_cap
        current = self._in_flight.get(endpoint_id, 0)
        if cap and current >= cap:
            return False
        self._in_flight[endpoint_id] = current + 1
        return True

    def release(self, endpoint_id: uuid.UUID) -> None:
        current = self._in_flight.get(endpoint_id, 0)
        if current <= 1:
            self._in_flight.pop(endpoint_id, None)
        else:
            self._in_flight[endpoint_id] = current - 1

    def in_flight(self, endpoint_id: uuid.UUID) -> int:
        return self._in_flight.get(endpoint_id, 0)


def build_body(delivery: WebhookDelivery, attempt_number: int) -> str:
    """Serialize the JSON envelope sent to the receiver."""
    return json.dumps(
        {
            "event_id": str(delivery.event_id),
            "event_type": delivery.event_type,
            "delivery_id": str(delivery.id),
            "attempt": attempt_number,
            "timestamp": delivery.created_at.isoformat(),
            "data": delivery.payload,
        },
        default=str,
    )


def classify(delivery: WebhookDelivery, outcome: AttemptOutcome) -> DeliveryError | None:
    """
    Map an attempt outcome onto the delivery error taxonomy.

    ``delivery.attempts`` must already count the attempt being classified.

    Returns:
        None on success, otherwise the error describing the failure
    """
    if outcome.success:
        return None

    if outcome.status_code is not None:
        detail = f"HTTP {outcome.status_code}"
        if outcome.error:
            detail = f"{detail}: {outcome.error}"
        retryable = delivery.retry_policy.is_retryable_status(outcome.status_code)
    else:
        detail = outcome.error or "Unknown delivery error"
        retryable = True

    if not retryable:
        return PermanentDeliveryError(
            f"Non-retryable response {detail}",
            status_code=outcome.status_code,
            attempts=delivery.attempts,
        )

    if delivery.attempts >= delivery.max_attempts:
        return ExhaustionError(
            f"Exhausted {delivery.attempts} attempt(s); last error: {detail}",
            status_code=outcome.status_code,
            attempts=delivery.attempts,
        )

    return TransientDeliveryError(detail, status_code=outcome.status_code, attempts=delivery.attempts)


class DeliveryDispatcher:
    """Owns every delivery state transition.

    Attempt errors are recorded on the delivery and never raised to the
    caller of ``dispatch``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        router: EventRouter | None = None,
        scheduler: BackoffScheduler | None = None,
        queue: RetryQueue | None = None,
        dead_letters: DeadLetterStore | None = None,
        registry: EndpointRegistry | None = None,
        limiter: EndpointLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.router = router or EventRouter(session_factory)
        self.scheduler = scheduler or BackoffScheduler()
        self.queue = queue or RetryQueue(session_factory)
        self.dead_letters = dead_letters or DeadLetterStore(session_factory)
        self.registry = registry or EndpointRegistry(session_factory)
        self.limiter = limiter or EndpointLimiter()
        self._transport = transport
        self._clock = clock

    # ------------------------------------------------------------------
    # Event fan-out
    # ------------------------------------------------------------------

    async def accept(self, event: WebhookEvent) -> list[WebhookDelivery]:
        """
        Route an event and persist its deliveries with attempt #1 queued.

        Nothing is sent here. Once this returns, the retry pollers deliver
        the event even if this process dies.
        """
        endpoints = await self.router.route(event)
        if not endpoints:
            logger.debug("No endpoints for event %s", event.event_id)
            return []
        return await self.create_deliveries(event, endpoints)

    async def dispatch(self, event: WebhookEvent) -> list[WebhookDelivery]:
        """Accept an event and run attempt #1 for each new delivery."""
        deliveries = await self.accept(event)
        if not deliveries:
            return []

        results = await self.run_first_attempts(deliveries)
        logger.info(
            "Dispatched event %s (type: %s) to %d endpoint(s)",
            event.event_id,
            event.event_type,
            len(deliveries),
        )
        return results

    async def run_first_attempts(self, deliveries: Iterable[WebhookDelivery]) -> list[WebhookDelivery]:
        return list(await asyncio.gather(*(self._first_attempt(d) for d in deliveries)))

    async def create_deliveries(
        self,
        event: WebhookEvent,
        endpoints: Iterable[EndpointSnapshot | WebhookEndpoint],
    ) -> list[WebhookDelivery]:
        """
        Persist one pending delivery per endpoint, each with a due job for
        attempt #1, in a single transaction.

        Endpoints that already have a delivery for ``event.event_id`` are
        skipped, so accepting a redelivered queue message is harmless.
        """
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookDelivery.endpoint_id).where(WebhookDelivery.event_id == event.event_id)
            )
            seen = set(result.scalars().all())
            if seen:
                logger.info("Event %s already accepted for %d endpoint(s)", event.event_id, len(seen))

            deliveries = [
                WebhookDelivery.from_endpoint(
                    endpoint,
                    event_id=event.event_id,
                    event_type=event.event_type,
                    payload=event.data,
                )
                for endpoint in endpoints
                if endpoint.id not in seen
            ]
            session.add_all(deliveries)
            await session.flush()
            session.add_all([first_attempt_job(delivery, now) for delivery in deliveries])
            await session.commit()
        return deliveries

    async def send_test(
        self,
        endpoint_id: uuid.UUID,
        payload: dict[str, Any] | None = None,
    ) -> WebhookDelivery:
        """Deliver a ``webhook.test`` event to one endpoint, ignoring subscriptions."""
        endpoint = await self.registry.get(endpoint_id)
        if not endpoint.enabled or endpoint.is_archived:
            raise InvalidStateError(f"Endpoint {endpoint_id} is disabled")

        event = WebhookEvent(event_type=TEST_EVENT_TYPE, data=payload or {"test": True})
        (delivery,) = await self.create_deliveries(event, [EndpointSnapshot.of(endpoint)])
        return await self._first_attempt(delivery)

    async def check_health(self, endpoint_id: uuid.UUID) -> HealthCheckResult:
        """Ping an endpoint now and store the result, whether or not periodic checks are on."""
        endpoint = await self.registry.get(endpoint_id)
        if endpoint.is_archived:
            raise InvalidStateError(f"Endpoint {endpoint_id} is archived")

        result = await ping_endpoint(endpoint, self._clock(), transport=self._transport)
        await self.registry.record_health_check(endpoint_id, result)
        return result

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    async def attempt(
        self,
        delivery_id: uuid.UUID,
        job: RetryJob | None = None,
    ) -> WebhookDelivery:
        """
        Perform one HTTP attempt and record its outcome.

        When ``job`` is given it is the claimed retry job driving this
        attempt; it is completed in the same transaction that records the
        outcome.
        """
        async with self._session_factory() as session:
            delivery = await self._load(session, delivery_id)

        if delivery.is_final or delivery.attempts >= delivery.max_attempts:
            logger.info(
                "Skipping attempt for delivery %s (status: %s, attempts: %d/%d)",
                delivery_id,
                delivery.status,
                delivery.attempts,
                delivery.max_attempts,
            )
            if job is not None:
                async with self._session_factory() as session:
                    await RetryQueue.complete(session, job.id, RetryJobStatus.FAILED)
                    await session.commit()
            return delivery

        attempt_number = delivery.attempts + 1
        outcome = await self._send(delivery, attempt_number)
        return await self._record(delivery_id, attempt_number, outcome, job)

    async def retry_now(self, delivery_id: uuid.UUID) -> WebhookDelivery:
        """Manual re-attempt outside the backoff schedule."""
        async with self._session_factory() as session:
            delivery = await self._load(session, delivery_id)

        if delivery.is_final:
            raise InvalidStateError(f"Delivery {delivery_id} is already {delivery.status}")
        if delivery.attempts >= delivery.max_attempts:
            raise ExhaustionError(
                f"Delivery {delivery_id} has no attempts left",
                attempts=delivery.attempts,
            )

        job, conflict = await self.queue.claim_for_delivery(delivery_id, self._clock())
        if conflict:
            raise RetryConflictError(f"Delivery {delivery_id} is being attempted right now")

        logger.info("Manual retry of delivery %s requested", delivery_id)
        return await self.attempt(delivery_id, job=job)

    async def redeliver_dead_letter(self, entry_id: uuid.UUID) -> WebhookDelivery:
        """Retry a dead-letter entry as a new delivery and attempt it right away."""
        delivery = await self.dead_letters.retry(entry_id)
        return await self._first_attempt(delivery)

    async def run_job(self, job: RetryJob) -> WebhookDelivery | None:
        """
        Execute a claimed retry job, honouring the per-endpoint cap.

        Returns:
            The delivery after the attempt, or None when the job was put back
            because the endpoint is at its concurrency cap
        """
        async with self._session_factory() as session:
            endpoint = await session.get(WebhookEndpoint, job.endpoint_id)
        cap = endpoint.max_concurrency if endpoint is not None else None

        if not self.limiter.try_acquire(job.endpoint_id, cap):
            await self._put_back(job)
            logger.debug("Endpoint %s at concurrency cap; job %s put back", job.endpoint_id, job.id)
            return None

        try:
            return await self.attempt(job.delivery_id, job=job)
        finally:
            self.limiter.release(job.endpoint_id)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(self, delivery_id: uuid.UUID, reason: str = "cancelled by operator") -> WebhookDelivery:
        """Fail one active delivery and move it to the dead-letter store."""
        async with self._session_factory() as session:
            delivery = await self._load(session, delivery_id)
            if delivery.is_final:
                raise InvalidStateError(f"Delivery {delivery_id} is already {delivery.status}")
            await self._fail(session, delivery, reason)
            await session.commit()

        logger.info("Cancelled delivery %s: %s", delivery_id, reason)
        return delivery

    async def cancel_pending_for_endpoint(
        self,
        endpoint_id: uuid.UUID,
        reason: str = "endpoint disabled",
    ) -> int:
        """
        Abort every pending or retrying delivery of an endpoint.

        Each affected delivery is marked failed and dead-lettered with
        ``reason``; their retry jobs are dropped.

        Returns:
            Number of deliveries cancelled
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookDelivery).where(
                    WebhookDelivery.endpoint_id == endpoint_id,
                    WebhookDelivery.status.in_(ACTIVE_STATUSES),
                )
            )
            deliveries = list(result.scalars().all())
            for delivery in deliveries:
                await self._fail(session, delivery, reason)
            await session.commit()

        if deliveries:
            logger.warning(
                "Cancelled %d in-flight deliveries for endpoint %s: %s",
                len(deliveries),
                endpoint_id,
                reason,
            )
        return len(deliveries)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_delivery(self, delivery_id: uuid.UUID) -> WebhookDelivery:
        async with self._session_factory() as session:
            return await self._load(session, delivery_id)

    async def list_deliveries(
        self,
        endpoint_id: uuid.UUID | None = None,
        status: DeliveryStatus | str | None = None,
        event_type: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[WebhookDelivery]:
        query = select(WebhookDelivery).order_by(WebhookDelivery.created_at.desc())
        if endpoint_id is not None:
            query = query.where(WebhookDelivery.endpoint_id == endpoint_id)
        if status is not None:
            query = query.where(WebhookDelivery.status == DeliveryStatus(status).value)
        if event_type:
            query = query.where(WebhookDelivery.event_type == event_type)
        if start is not None:
            query = query.where(WebhookDelivery.created_at >= start)
        if end is not None:
            query = query.where(WebhookDelivery.created_at < end)
        query = query.limit(limit).offset(offset)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_attempts(self, delivery_id: uuid.UUID) -> list[DeliveryAttempt]:
        async with self._session_factory() as session:
            await self._load(session, delivery_id)
            result = await session.execute(
                select(DeliveryAttempt)
                .where(DeliveryAttempt.delivery_id == delivery_id)
                .order_by(DeliveryAttempt.attempt_number)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _first_attempt(self, delivery: WebhookDelivery) -> WebhookDelivery:
        """Claim a new delivery's queued first attempt and run it now."""
        job, _ = await self.queue.claim_for_delivery(delivery.id, self._clock())
        if job is None:
            # A retry poller got there first
            return await self.get_delivery(delivery.id)

        result = await self.run_job(job)
        if result is None:
            return await self.get_delivery(delivery.id)
        return result

    async def _put_back(self, job: RetryJob) -> None:
        """Requeue a claimed job after ``DEFER_DELAY_MS`` without attempting it."""
        next_retry_at = self._clock() + timedelta(milliseconds=DEFER_DELAY_MS)
        async with self._session_factory() as session:
            if await RetryQueue.reschedule(session, job.id, next_retry_at):
                delivery = await session.get(WebhookDelivery, job.delivery_id)
                if delivery is not None and not delivery.is_final:
                    delivery.next_retry_at = next_retry_at
            await session.commit()

    async def _send(self, delivery: WebhookDelivery, attempt_number: int) -> AttemptOutcome:
        """Issue the HTTP request. Never raises."""
        body = build_body(delivery, attempt_number)
        headers = dict(delivery.request_headers or {})
        headers.update(
            WebhookSigner.get_headers(
                body,
                delivery.secret,
                delivery.event_type,
                delivery_id=str(delivery.id),
                endpoint_id=str(delivery.endpoint_id),
                method=delivery.signature_method,
                signature_header=delivery.signature_header,
                timestamp_header=delivery.timestamp_header,
            )
        )

        start_time = time.monotonic()

        try:
            async with httpx.AsyncClient(
                timeout=delivery.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    delivery.http_method,
                    delivery.endpoint_url,
                    content=body,
                    headers=headers,
                )

            latency_ms = int((time.monotonic() - start_time) * 1000)
            text = response.text[:MAX_BODY_LENGTH] if response.text else None

            if 200 <= response.status_code < 300:
                return AttemptOutcome(
                    success=True,
                    status_code=response.status_code,
                    response_time_ms=latency_ms,
                    response_body=text,
                )
            return AttemptOutcome(
                success=False,
                status_code=response.status_code,
                error=text,
                response_time_ms=latency_ms,
                response_body=text,
            )

        except httpx.TimeoutException:
            return AttemptOutcome(
                success=False,
                error="Request timeout",
                response_time_ms=int((time.monotonic() - start_time) * 1000),
            )
        except httpx.RequestError as e:
            return AttemptOutcome(
                success=False,
                error=str(e)[:MAX_BODY_LENGTH] or e.__class__.__name__,
                response_time_ms=int((time.monotonic() - start_time) * 1000),
            )
        except Exception as e:
            logger.exception("Unexpected error delivering %s", delivery.id)
            return AttemptOutcome(
                success=False,
                error=f"{e.__class__.__name__}: {e}"[:MAX_BODY_LENGTH],
                response_time_ms=int((time.monotonic() - start_time) * 1000),
            )

    async def _record(
        self,
        delivery_id: uuid.UUID,
        attempt_number: int,
        outcome: AttemptOutcome,
        job: RetryJob | None,
    ) -> WebhookDelivery:
        """Persist an attempt and apply the resulting state transition."""
        now = self._clock()
        terminal = False

        async with self._session_factory() as session:
            delivery = await self._load(session, delivery_id)

            if delivery.attempts != attempt_number - 1:
                logger.warning(
                    "Discarding attempt %d of delivery %s; attempt %d was already recorded",
                    attempt_number,
                    delivery_id,
                    delivery.attempts,
                )
                return delivery
            if job is not None and not await RetryQueue.complete_claimed(session, job):
                logger.warning(
                    "Discarding attempt %d of delivery %s; job %s was claimed by another worker",
                    attempt_number,
                    delivery_id,
                    job.id,
                )
                return delivery

            delivery.attempts += 1
            delivery.last_attempt_at = now
            delivery.last_status_code = outcome.status_code
            delivery.last_response_time_ms = outcome.response_time_ms
            delivery.last_error = None if outcome.success else outcome.error

            session.add(
                DeliveryAttempt(
                    delivery_id=delivery.id,
                    attempt_number=delivery.attempts,
                    success=outcome.success,
                    status_code=outcome.status_code,
                    response_time_ms=outcome.response_time_ms,
                    response_body=outcome.response_body,
                    error=outcome.error,
                    created_at=now,
                )
            )

            if delivery.is_final:
                # Cancelled while the request was in flight
                logger.info(
                    "Delivery %s finished attempt %d after being %s",
                    delivery.id,
                    delivery.attempts,
                    delivery.status,
                )
            else:
                error = classify(delivery, outcome)
                if error is None:
                    delivery.status = DeliveryStatus.DELIVERED.value
                    delivery.delivered_at = now
                    delivery.next_retry_at = None
                    terminal = True
                    logger.info(
                        "Webhook delivered to %s (delivery: %s, attempt: %d, latency: %dms)",
                        delivery.endpoint_id,
                        delivery.id,
                        delivery.attempts,
                        outcome.response_time_ms or 0,
                    )
                elif isinstance(error, TransientDeliveryError):
                    delivery.status = DeliveryStatus.RETRYING.value
                    delivery.last_error = str(error)
                    await self.scheduler.schedule(session, delivery, now)
                else:
                    delivery.last_error = str(error)
                    await self._fail(session, delivery, str(error))
                    terminal = True

            await session.commit()

        if terminal:
            await self._refresh_health(delivery.endpoint_id)
        return delivery

    async def _fail(self, session: AsyncSession, delivery: WebhookDelivery, reason: str) -> None:
        await RetryQueue.cancel_for_delivery(session, delivery.id)
        delivery.status = DeliveryStatus.FAILED.value
        delivery.next_retry_at = None
        if delivery.last_error is None:
            delivery.last_error = reason
        await self.dead_letters.add(session, delivery, reason)

    async def _refresh_health(self, endpoint_id: uuid.UUID) -> None:
        try:
            await self.registry.refresh_health(endpoint_id)
        except NotFoundError:
            pass
        except Exception:
            logger.exception("Failed to refresh health of endpoint %s", endpoint_id)

    @staticmethod
    async def _load(session: AsyncSession, delivery_id: uuid.UUID) -> WebhookDelivery:
        delivery = await session.get(WebhookDelivery, delivery_id)
        if delivery is None:
            raise NotFoundError("Webhook delivery", delivery_id)
        return delivery
