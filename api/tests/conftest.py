"""Pytest configuration and fixtures."""

import os
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment before importing app
os.environ["TESTING"] = "1"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from hookrelay.db.base import Base
from hookrelay.db.session import get_session_factory
from hookrelay.main import app
from hookrelay.webhooks.dead_letter import DeadLetterStore
from hookrelay.webhooks.dispatcher import DeliveryDispatcher, EndpointLimiter
from hookrelay.webhooks.queue import RetryQueue
from hookrelay.webhooks.registry import EndpointConfig, EndpointRegistry
from hookrelay.webhooks.router import get_dispatcher

# Test database URL (in-memory SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeClock:
    """Controllable clock for dispatcher and queue tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class Receiver:
    """Scripted webhook receiver backed by httpx.MockTransport.

    ``responses`` is consumed in order; the last entry repeats. An entry is
    a status code or an exception instance to raise.
    """

    def __init__(self, *responses: int | Exception):
        self.responses = list(responses) or [200]
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.responses) - 1)
        outcome = self.responses[index]
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, text="ok" if outcome < 300 else "error")

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest_asyncio.fixture
async def db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def receiver() -> Receiver:
    return Receiver(200)


@pytest.fixture
def registry(session_factory) -> EndpointRegistry:
    return EndpointRegistry(session_factory)


@pytest.fixture
def dead_letters(session_factory) -> DeadLetterStore:
    return DeadLetterStore(session_factory)


@pytest.fixture
def queue(session_factory) -> RetryQueue:
    return RetryQueue(session_factory)


@pytest.fixture
def make_dispatcher(session_factory, registry, dead_letters, queue, clock):
    """Build a dispatcher whose outbound HTTP goes to a Receiver."""

    def _make(receiver: Receiver, cap: int = 0) -> DeliveryDispatcher:
        return DeliveryDispatcher(
            session_factory,
            registry=registry,
            dead_letters=dead_letters,
            queue=queue,
            limiter=EndpointLimiter(cap),
            transport=receiver.transport,
            clock=clock,
        )

    return _make


@pytest.fixture
def make_endpoint(registry) -> Callable[..., Any]:
    """Register an endpoint with fast, deterministic retries."""

    async def _make(**overrides):
        data: dict[str, Any] = {
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
        data.update(overrides)
        return await registry.register(EndpointConfig.from_dict(data))

    return _make


@pytest_asyncio.fixture
async def client(session_factory, receiver: Receiver) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with mocked dependencies."""

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_dispatcher] = lambda: DeliveryDispatcher(
        session_factory,
        transport=receiver.transport,
    )

    # Mock Valkey client
    mock_redis = AsyncMock()
    mock_redis.ping.return_value = True
    mock_redis.rpush.return_value = 1

    async def mock_get_valkey():
        return mock_redis

    with patch("hookrelay.valkey.get_valkey", mock_get_valkey):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac

    app.dependency_overrides.clear()
