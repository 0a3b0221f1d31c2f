"""Prometheus metrics endpoint."""

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.db.session import get_session_factory
from hookrelay.webhooks.stats import MetricsAggregator

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Prometheus-compatible metrics endpoint."""
    aggregator = MetricsAggregator(session_factory)
    snapshot = await aggregator.global_snapshot(recent_failures=0)

    metrics_output = []

    # Endpoints
    metrics_output.append(f"hookrelay_endpoints_total {snapshot.total_endpoints}")
    metrics_output.append(f"hookrelay_endpoints_active {snapshot.active_endpoints}")

    # Deliveries by outcome
    metrics_output.append(f'hookrelay_deliveries_total{{status="delivered"}} {snapshot.delivered}')
    metrics_output.append(f'hookrelay_deliveries_total{{status="failed"}} {snapshot.failed}')
    metrics_output.append(f'hookrelay_deliveries_total{{status="in_flight"}} {snapshot.in_flight}')

    if snapshot.avg_response_time_ms is not None:
        metrics_output.append(
            f"hookrelay_delivery_response_time_ms_avg {snapshot.avg_response_time_ms:.1f}"
        )

    # Retry queue depth
    metrics_output.append(f'hookrelay_retry_jobs{{status="scheduled"}} {snapshot.scheduled_retries}')
    metrics_output.append(f'hookrelay_retry_jobs{{status="running"}} {snapshot.running_retries}')

    # Dead letters awaiting an operator
    metrics_output.append(f"hookrelay_dead_letters_unresolved {snapshot.dead_letters_unresolved}")

    # Events by type
    for event_type, count in sorted(snapshot.event_distribution.items()):
        metrics_output.append(f'hookrelay_deliveries_by_event{{event_type="{event_type}"}} {count}')

    # Per-endpoint success rate
    for stats in await aggregator.all_endpoint_stats():
        if stats.success_rate is not None:
            metrics_output.append(
                f'hookrelay_endpoint_success_rate{{endpoint_id="{stats.endpoint_id}"}} '
                f"{stats.success_rate:.4f}"
            )

    return "\n".join(metrics_output) + "\n"
