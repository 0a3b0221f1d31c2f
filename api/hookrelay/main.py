"""HookRelay - Main application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hookrelay.config import get_settings
from hookrelay.db.session import async_session_maker
from hookrelay.metrics import router as metrics_router
from hookrelay.valkey import close_valkey, ping_valkey
from hookrelay.webhooks.config import WebhookConfigLoader
from hookrelay.webhooks.dispatcher import DeliveryDispatcher
from hookrelay.webhooks.registry import EndpointRegistry
from hookrelay.webhooks.router import endpoint_limiter
from hookrelay.webhooks.router import router as webhooks_router
from hookrelay.webhooks.worker import WebhookWorker

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    worker: WebhookWorker | None = None

    if not settings.TESTING:
        await WebhookConfigLoader.sync(EndpointRegistry(async_session_maker))
        worker = WebhookWorker(
            async_session_maker,
            dispatcher=DeliveryDispatcher(async_session_maker, limiter=endpoint_limiter),
        )
        await worker.start()

    app.state.webhook_worker = worker
    yield

    # Cleanup on shutdown
    if worker is not None:
        await worker.stop()
    await close_valkey()


app = FastAPI(
    title="HookRelay",
    description="""
## Webhook Delivery API

HookRelay delivers business events to registered HTTP endpoints with
signing, retries and a dead-letter store.

### Features

- **Endpoints** - Register receivers, subscribe them to event types, pause or disable them
- **Retries** - Fixed, linear or exponential backoff per endpoint
- **Dead letters** - Inspect, resolve and re-deliver failed deliveries
- **Stats** - Success rates, latency and failure ranking per endpoint
- **Health checks** - Signed pings on a schedule or on demand

### Delivery Flow

1. Producers queue events with `WebhookEmitter.emit()` (or `POST /api/v1/webhooks/events`)
2. Each event is routed to subscribed endpoints; deliveries are stored with a due first attempt
3. Workers pick up due attempts and send them
4. Retryable failures are scheduled with backoff until the attempt budget runs out
5. Exhausted or rejected deliveries land in the dead-letter store
    """,
    version="1.0.0",
    lifespan=lifespan,
    license_info={
        "name": "MIT",
        "url": "https://opensource.org/licenses/MIT",
    },
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes - all under /api/v1
API_PREFIX = "/api/v1"
app.include_router(webhooks_router, prefix=API_PREFIX)

# Metrics at root level (for Prometheus scraping)
app.include_router(metrics_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "HookRelay",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    valkey_ok = await ping_valkey()
    return {
        "status": "healthy" if valkey_ok else "degraded",
        "valkey": "up" if valkey_ok else "down",
    }
