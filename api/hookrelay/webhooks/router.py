"""Webhook operator API router."""

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.config import get_settings
from hookrelay.db.session import get_session_factory
from hookrelay.webhooks.config import WebhookConfigLoader
from hookrelay.webhooks.dead_letter import DeadLetterStore
from hookrelay.webhooks.dispatcher import DeliveryDispatcher, EndpointLimiter
from hookrelay.webhooks.event import WebhookEvent
from hookrelay.webhooks.exceptions import (
    AlreadyResolvedError,
    ExhaustionError,
    InvalidStateError,
    NotFoundError,
    RetryConflictError,
    ValidationError,
    WebhookError,
)
from hookrelay.webhooks.models import DeliveryStatus
from hookrelay.webhooks.registry import EndpointConfig, EndpointRegistry
from hookrelay.webhooks.schemas import (
    DeadLetterResolveRequest,
    DeadLetterResponse,
    DeliveryAttemptResponse,
    EmitEventRequest,
    EmitEventResponse,
    EndpointStatsResponse,
    EventTypeResponse,
    GlobalStatsResponse,
    HealthCheckResultResponse,
    HealthCheckUpdate,
    WebhookCancelRequest,
    WebhookCancelResponse,
    WebhookDeleteResponse,
    WebhookDeliveryResponse,
    WebhookEndpointCreate,
    WebhookEndpointResponse,
    WebhookEndpointUpdate,
    WebhookReloadResponse,
    WebhookSecretResponse,
    WebhookTestRequest,
    WebhookToggleRequest,
)
from hookrelay.webhooks.stats import MetricsAggregator

settings = get_settings()
router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# Shared by every dispatcher built in this process
endpoint_limiter = EndpointLimiter(settings.WEBHOOK_ENDPOINT_CONCURRENCY)

SessionFactory = async_sessionmaker[AsyncSession]

# Fields an update may explicitly clear
NULLABLE_FIELDS = {"secret", "max_concurrency"}


def get_registry(factory: SessionFactory = Depends(get_session_factory)) -> EndpointRegistry:
    return EndpointRegistry(factory)


def get_dead_letters(factory: SessionFactory = Depends(get_session_factory)) -> DeadLetterStore:
    return DeadLetterStore(factory)


def get_metrics(factory: SessionFactory = Depends(get_session_factory)) -> MetricsAggregator:
    return MetricsAggregator(factory)


def get_dispatcher(factory: SessionFactory = Depends(get_session_factory)) -> DeliveryDispatcher:
    return DeliveryDispatcher(factory, limiter=endpoint_limiter)


def _http_error(e: WebhookError) -> HTTPException:
    """Map a webhook error onto an HTTP response."""
    if isinstance(e, ValidationError):
        return HTTPException(status_code=422, detail=e.errors)
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(
        e, (AlreadyResolvedError, InvalidStateError, RetryConflictError, ExhaustionError)
    ):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


# ----------------------------------------------------------------------
# Endpoints
# ----------------------------------------------------------------------


@router.post(
    "/endpoints",
    response_model=WebhookEndpointResponse,
    status_code=201,
)
async def create_endpoint(
    body: WebhookEndpointCreate,
    registry: EndpointRegistry = Depends(get_registry),
):
    """Register a webhook endpoint."""
    data = body.model_dump(mode="json")
    try:
        endpoint = await registry.register(EndpointConfig.from_dict(data))
    except WebhookError as e:
        raise _http_error(e) from e
    return WebhookEndpointResponse.from_endpoint(endpoint)


@router.get("/endpoints", response_model=list[WebhookEndpointResponse])
async def list_endpoints(
    enabled: bool | None = Query(None, description="Filter by enabled flag"),
    search: str | None = Query(None, description="Match name or URL"),
    event_type: str | None = Query(None, description="Only endpoints receiving this event"),
    include_archived: bool = Query(False),
    registry: EndpointRegistry = Depends(get_registry),
):
    """List webhook endpoints (secrets are masked)."""
    endpoints = await registry.list_endpoints(
        enabled=enabled,
        search=search,
        event_type=event_type,
        include_archived=include_archived,
    )
    return [WebhookEndpointResponse.from_endpoint(ep) for ep in endpoints]


@router.get("/endpoints/{endpoint_id}", response_model=WebhookEndpointResponse)
async def get_endpoint(
    endpoint_id: uuid.UUID,
    registry: EndpointRegistry = Depends(get_registry),
):
    try:
        endpoint = await registry.get(endpoint_id)
    except WebhookError as e:
        raise _http_error(e) from e
    return WebhookEndpointResponse.from_endpoint(endpoint)


@router.patch("/endpoints/{endpoint_id}", response_model=WebhookEndpointResponse)
async def update_endpoint(
    endpoint_id: uuid.UUID,
    body: WebhookEndpointUpdate,
    registry: EndpointRegistry = Depends(get_registry),
):
    """Update an endpoint. In-flight deliveries keep their settings."""
    partial = {
        k: v
        for k, v in body.model_dump(mode="json", exclude_unset=True).items()
        if v is not None or k in NULLABLE_FIELDS
    }
    try:
        endpoint = await registry.update(endpoint_id, partial)
    except WebhookError as e:
        raise _http_error(e) from e
    return WebhookEndpointResponse.from_endpoint(endpoint)


@router.delete("/endpoints/{endpoint_id}", response_model=WebhookDeleteResponse)
async def delete_endpoint(
    endpoint_id: uuid.UUID,
    registry: EndpointRegistry = Depends(get_registry),
):
    """Delete an endpoint, or archive it when deliveries reference it."""
    try:
        deleted = await registry.delete(endpoint_id)
    except WebhookError as e:
        raise _http_error(e) from e
    return WebhookDeleteResponse(deleted=deleted)


@router.post("/endpoints/{endpoint_id}/toggle", response_model=WebhookEndpointResponse)
async def toggle_endpoint(
    endpoint_id: uuid.UUID,
    body: WebhookToggleRequest | None = None,
    registry: EndpointRegistry = Depends(get_registry),
):
    """Enable or disable an endpoint. Scheduled retries are not cancelled."""
    try:
        endpoint = await registry.toggle(endpoint_id, body.enabled if body else None)
    except WebhookError as e:
        raise _http_error(e) from e
    return WebhookEndpointResponse.from_endpoint(endpoint)


@router.post("/endpoints/{endpoint_id}/pause", response_model=WebhookEndpointResponse)
async def pause_endpoint(
    endpoint_id: uuid.UUID,
    registry: EndpointRegistry = Depends(get_registry),
):
    try:
        endpoint = await registry.pause(endpoint_id)
    except WebhookError as e:
        raise _http_error(e) from e
    return WebhookEndpointResponse.from_endpoint(endpoint)


@router.post("/endpoints/{endpoint_id}/resume", response_model=WebhookEndpointResponse)
async def resume_endpoint(
    endpoint_id: uuid.UUID,
    registry: EndpointRegistry = Depends(get_registry),
):
    try:
        endpoint = await registry.resume(endpoint_id)
    except WebhookError as e:
        raise _http_error(e) from e
    return WebhookEndpointResponse.from_endpoint(endpoint)


@router.post("/endpoints/{endpoint_id}/regenerate-secret", response_model=WebhookSecretResponse)
async def regenerate_secret(
    endpoint_id: uuid.UUID,
    registry: EndpointRegistry = Depends(get_registry),
):
    """Issue a new signing secret. It is only returned here."""
    try:
        endpoint, secret = await registry.regenerate_secret(endpoint_id)
    except WebhookError as e:
        raise _http_error(e) from e
    return WebhookSecretResponse(endpoint_id=endpoint.id, secret=secret)


@router.post("/endpoints/{endpoint_id}/test", response_model=WebhookDeliveryResponse)
async def test_endpoint(
    endpoint_id: uuid.UUID,
    body: WebhookTestRequest | None = None,
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
):
    """Send a test event to one endpoint and return the delivery."""
    try:
        delivery = await dispatcher.send_test(endpoint_id, body.payload if body else None)
    except WebhookError as e:
        raise _http_error(e) from e
    return delivery


@router.post("/endpoints/{endpoint_id}/cancel-pending", response_model=WebhookCancelResponse)
async def cancel_pending(
    endpoint_id: uuid.UUID,
    body: WebhookCancelRequest | None = None,
    registry: EndpointRegistry = Depends(get_registry),
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
):
    """Abort every pending or retrying delivery of an endpoint."""
    try:
        await registry.get(endpoint_id)
    except WebhookError as e:
        raise _http_error(e) from e
    reason = (body.reason if body else None) or "endpoint disabled"
    cancelled = await dispatcher.cancel_pending_for_endpoint(endpoint_id, reason)
    return WebhookCancelResponse(cancelled=cancelled)


@router.post("/endpoints/{endpoint_id}/health-check", response_model=HealthCheckResultResponse)
async def check_endpoint_health(
    endpoint_id: uuid.UUID,
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
):
    """Ping an endpoint now and store the result on it."""
    try:
        result = await dispatcher.check_health(endpoint_id)
    except WebhookError as e:
        raise _http_error(e) from e
    return HealthCheckResultResponse(
        endpoint_id=endpoint_id,
        status=result.status.value,
        success=result.success,
        status_code=result.status_code,
        response_time_ms=result.response_time_ms,
        error=result.error,
        checked_at=result.checked_at,
    )


@router.patch("/endpoints/{endpoint_id}/health-check", response_model=WebhookEndpointResponse)
async def update_endpoint_health_check(
    endpoint_id: uuid.UUID,
    body: HealthCheckUpdate,
    registry: EndpointRegistry = Depends(get_registry),
):
    """Change an endpoint's health check settings; omitted fields keep their value."""
    try:
        endpoint = await registry.update(
            endpoint_id, {"health_check": body.model_dump(exclude_unset=True)}
        )
    except WebhookError as e:
        raise _http_error(e) from e
    return WebhookEndpointResponse.from_endpoint(endpoint)


# ----------------------------------------------------------------------
# Deliveries
# ----------------------------------------------------------------------


@router.get("/deliveries", response_model=list[WebhookDeliveryResponse])
async def list_deliveries(
    endpoint_id: uuid.UUID | None = Query(None, description="Filter by endpoint ID"),
    delivery_status: DeliveryStatus | None = Query(None, alias="status"),
    event_type: str | None = Query(None, description="Filter by event type"),
    start: datetime | None = Query(None, description="Created at or after"),
    end: datetime | None = Query(None, description="Created before"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(0, ge=0),
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
):
    """List recent webhook deliveries, newest first."""
    return await dispatcher.list_deliveries(
        endpoint_id=endpoint_id,
        status=delivery_status,
        event_type=event_type,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )


@router.get("/deliveries/{delivery_id}", response_model=WebhookDeliveryResponse)
async def get_delivery(
    delivery_id: uuid.UUID,
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
):
    try:
        return await dispatcher.get_delivery(delivery_id)
    except WebhookError as e:
        raise _http_error(e) from e


@router.get("/deliveries/{delivery_id}/attempts", response_model=list[DeliveryAttemptResponse])
async def list_attempts(
    delivery_id: uuid.UUID,
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
):
    try:
        return await dispatcher.list_attempts(delivery_id)
    except WebhookError as e:
        raise _http_error(e) from e


@router.post("/deliveries/{delivery_id}/retry", response_model=WebhookDeliveryResponse)
async def retry_delivery(
    delivery_id: uuid.UUID,
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
):
    """Attempt a retrying delivery now instead of waiting for its backoff."""
    try:
        return await dispatcher.retry_now(delivery_id)
    except WebhookError as e:
        raise _http_error(e) from e


@router.post("/deliveries/{delivery_id}/cancel", response_model=WebhookDeliveryResponse)
async def cancel_delivery(
    delivery_id: uuid.UUID,
    body: WebhookCancelRequest | None = None,
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
):
    reason = (body.reason if body else None) or "cancelled by operator"
    try:
        return await dispatcher.cancel(delivery_id, reason)
    except WebhookError as e:
        raise _http_error(e) from e


# ----------------------------------------------------------------------
# Dead letters
# ----------------------------------------------------------------------


@router.get("/dead-letters", response_model=list[DeadLetterResponse])
async def list_dead_letters(
    resolved: bool | None = Query(None),
    endpoint_id: uuid.UUID | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    dead_letters: DeadLetterStore = Depends(get_dead_letters),
):
    return await dead_letters.list_entries(
        resolved=resolved,
        endpoint_id=endpoint_id,
        limit=limit,
        offset=offset,
    )


@router.get("/dead-letters/{entry_id}", response_model=DeadLetterResponse)
async def get_dead_letter(
    entry_id: uuid.UUID,
    dead_letters: DeadLetterStore = Depends(get_dead_letters),
):
    try:
        return await dead_letters.get(entry_id)
    except WebhookError as e:
        raise _http_error(e) from e


@router.post("/dead-letters/{entry_id}/resolve", response_model=DeadLetterResponse)
async def resolve_dead_letter(
    entry_id: uuid.UUID,
    body: DeadLetterResolveRequest,
    dead_letters: DeadLetterStore = Depends(get_dead_letters),
):
    try:
        return await dead_letters.resolve(entry_id, body.resolved_by, body.notes)
    except WebhookError as e:
        raise _http_error(e) from e


@router.post("/dead-letters/{entry_id}/retry", response_model=WebhookDeliveryResponse)
async def retry_dead_letter(
    entry_id: uuid.UUID,
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
):
    """Re-deliver the entry's event as a new delivery with the current policy."""
    try:
        return await dispatcher.redeliver_dead_letter(entry_id)
    except WebhookError as e:
        raise _http_error(e) from e


# ----------------------------------------------------------------------
# Stats
# ----------------------------------------------------------------------


@router.get("/stats", response_model=GlobalStatsResponse)
async def global_stats(
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    metrics: MetricsAggregator = Depends(get_metrics),
):
    return GlobalStatsResponse.model_validate(await metrics.global_snapshot(start, end))


@router.get("/stats/endpoints", response_model=list[EndpointStatsResponse])
async def ranked_endpoint_stats(
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    metrics: MetricsAggregator = Depends(get_metrics),
):
    """Endpoints ordered by failure rate, worst first."""
    ranked = await metrics.ranked_by_failure_rate(start, end)
    return [EndpointStatsResponse.model_validate(s) for s in ranked]


@router.get("/stats/endpoints/{endpoint_id}", response_model=EndpointStatsResponse)
async def endpoint_stats(
    endpoint_id: uuid.UUID,
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    registry: EndpointRegistry = Depends(get_registry),
    metrics: MetricsAggregator = Depends(get_metrics),
):
    try:
        await registry.get(endpoint_id)
    except WebhookError as e:
        raise _http_error(e) from e
    stats = await metrics.endpoint_stats(endpoint_id, start, end)
    return EndpointStatsResponse.model_validate(stats)


# ----------------------------------------------------------------------
# Events and configuration
# ----------------------------------------------------------------------


@router.get("/event-types", response_model=list[EventTypeResponse])
async def list_event_types(metrics: MetricsAggregator = Depends(get_metrics)):
    """Event types that endpoints subscribe to or that were delivered."""
    return [EventTypeResponse.model_validate(s) for s in await metrics.event_types()]


@router.post("/events", response_model=EmitEventResponse, status_code=202)
async def emit_event(
    body: EmitEventRequest,
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
):
    """Accept an event for delivery.

    Deliveries and their first-attempt jobs are committed before this
    returns; the worker's retry pollers send them.
    """
    event = WebhookEvent(event_type=body.event_type, data=body.data)
    deliveries = await dispatcher.accept(event)
    return EmitEventResponse(
        event_id=event.event_id,
        event_type=event.event_type,
        deliveries=[WebhookDeliveryResponse.model_validate(d) for d in deliveries],
    )


@router.post("/reload", response_model=WebhookReloadResponse)
async def reload_webhooks(registry: EndpointRegistry = Depends(get_registry)):
    """Re-apply the seed configuration file.

    Endpoints are matched by name; invalid entries are skipped.
    """
    result = await WebhookConfigLoader.sync(registry)
    return WebhookReloadResponse(
        success=True,
        message=(
            f"Created {len(result.created)}, updated {len(result.updated)}, "
            f"skipped {len(result.skipped)} endpoint(s)"
        ),
        created=result.created,
        updated=result.updated,
        skipped=result.skipped,
    )
