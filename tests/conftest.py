import os

# before any delisting_hub import: settings are read once at import time
os.environ.setdefault("TELEMETRY_ENABLED", "false")
os.environ.setdefault("SUPERVISOR_ENABLED", "false")
os.environ.setdefault("INTERNAL_ADMIN_KEY", "test-internal")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base + all models so metadata is complete
from delisting_hub.models import Base

from delisting_hub.api.deps import get_gateway, get_job_enqueuer, get_rate_limiter, get_sale_event_queue
from delisting_hub.core.db import get_db
from delisting_hub.main import app
from delisting_hub.services.pipeline import build_sale_event_queue

from fakes import FakeMarketplaceGateway, FakeRateLimiter


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    # file-backed so every session sees the same database
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'delisting.db'}")
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway() -> FakeMarketplaceGateway:
    return FakeMarketplaceGateway()


@pytest.fixture
def rate_limiter() -> FakeRateLimiter:
    return FakeRateLimiter()


@pytest.fixture
def enqueued() -> list[str]:
    return []


@pytest_asyncio.fixture
async def client(session_factory, gateway, rate_limiter, enqueued):
    """
    HTTP client wired to the sqlite database and fake collaborators via dependency overrides.
    """
    queue = build_sale_event_queue(session_factory, gateway)

    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_sale_event_queue] = lambda: queue
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter
    app.dependency_overrides[get_job_enqueuer] = lambda: enqueued.append

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Internal-Admin-Key": os.environ["INTERNAL_ADMIN_KEY"]}
