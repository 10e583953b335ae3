"""
Pytest Configuration and Fixtures - Fraud & Risk Assessment Engine

Provides shared fixtures: isolated settings, an in-memory store, a
started engine, signal bundles, and an API client.
"""

from typing import AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio
import redis.asyncio as redis
from httpx import AsyncClient, ASGITransport

from fraud_engine import FraudEngine
from fraud_engine.api.main import app
from fraud_engine.config import Settings, settings
from fraud_engine.metrics import telemetry
from fraud_engine.schemas import DeviceSignals, PaymentSignals, RequestContext
from fraud_engine.storage import MemoryStore, PostgresStore, RedisStore


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: unit tests (no infrastructure)")
    config.addinivalue_line("markers", "integration: integration tests (requires Redis or PostgreSQL)")


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment and .env files."""
    return Settings(
        _env_file=None,
        app_env="development",
        store_backend="memory",
        fingerprint_hash_key="test-fingerprint-key",
        rules_path=None,
    )


@pytest_asyncio.fixture
async def store() -> AsyncGenerator[MemoryStore, None]:
    memory_store = MemoryStore()
    await memory_store.initialize()
    yield memory_store
    await memory_store.close()


@pytest_asyncio.fixture
async def engine(store: MemoryStore, test_settings: Settings) -> AsyncGenerator[FraudEngine, None]:
    """Started engine with the default rule set on an in-memory store."""
    fraud_engine = FraudEngine(store=store, settings=test_settings)
    await fraud_engine.start()
    yield fraud_engine
    await fraud_engine.close()


@pytest.fixture
def registry(engine: FraudEngine):
    return engine.registry


@pytest.fixture
def ledger(engine: FraudEngine):
    return engine.ledger


@pytest_asyncio.fixture
async def redis_store() -> AsyncGenerator[RedisStore, None]:
    """
    Redis store for backend tests.

    Uses a test-specific key prefix; skipped when Redis is not reachable.
    """
    client = redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        password=settings.redis_password,
        decode_responses=True,
    )
    prefix = f"test:{uuid4().hex[:8]}:"

    try:
        await client.ping()
    except Exception:
        await client.aclose()
        pytest.skip("Redis not available")

    yield RedisStore(client, key_prefix=prefix)

    keys = await client.keys(f"{prefix}*")
    if keys:
        await client.delete(*keys)
    await client.aclose()


@pytest_asyncio.fixture
async def postgres_store() -> AsyncGenerator[PostgresStore, None]:
    """PostgreSQL store for backend tests; skipped when unreachable."""
    pg_store = PostgresStore(settings.postgres_url)
    try:
        await pg_store.initialize()
    except Exception:
        await pg_store.close()
        pytest.skip("PostgreSQL not available")

    yield pg_store
    await pg_store.close()


@pytest_asyncio.fixture
async def api_client() -> AsyncGenerator[AsyncClient, None]:
    """
    Get async HTTP client for API tests.

    Uses lifespan context manager to properly initialize app resources.
    """
    from fraud_engine.api.main import lifespan

    telemetry.clear()
    async with lifespan(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client


# =============================================================================
# Signal bundles
# =============================================================================

@pytest.fixture
def card() -> PaymentSignals:
    return PaymentSignals(
        card_number="4111 1111 1111 1111",
        expiry_month="12",
        expiry_year="2027",
        cardholder_name="Kari Nordmann",
    )


@pytest.fixture
def other_card() -> PaymentSignals:
    return PaymentSignals(
        card_number="5500-0000-0000-0004",
        expiry_month="03",
        expiry_year="28",
        cardholder_name="Ola Nordmann",
    )


@pytest.fixture
def device() -> DeviceSignals:
    return DeviceSignals(
        user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15",
        screen_resolution="2560x1440x24",
        timezone="Europe/Oslo",
        language="nb-NO",
        platform="MacIntel",
        canvas_fingerprint="canvas-7f3a",
        webgl_fingerprint="webgl-apple-m2",
    )


@pytest.fixture
def clean_context() -> RequestContext:
    """A request that should not trigger any default rule."""
    return RequestContext(
        email="kari.nordmann@example.no",
        ip="84.210.10.20",
        amount=10000,
        currency="NOK",
        account_age_hours=24 * 90,
    )
