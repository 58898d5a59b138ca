import fakeredis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from segmentflow.database import Base
from segmentflow.models import Tenant
from segmentflow.services.cache_service import CacheService
from segmentflow.services.progress_store import ProgressStore
from segmentflow.services.queue.job_queue import JobQueue
from segmentflow.services.queue.queues import QUEUE_OPTIONS

from factories import FakeClock

# In-memory SQLite, one connection shared by every session of a test
TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest_asyncio.fixture
async def engine():
    """Create test database and tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def job_queue(redis_client, clock):
    return JobQueue(redis_client=redis_client, options=QUEUE_OPTIONS, clock=clock)


@pytest.fixture
def progress_store(redis_client, clock):
    return ProgressStore(redis_client=redis_client, clock=clock)


@pytest.fixture
def cache(redis_client):
    return CacheService(redis_client=redis_client)


@pytest_asyncio.fixture
async def tenant(db):
    """Create an active tenant."""
    tenant = Tenant(
        shop_domain="test-store.myshopify.com",
        name="Test Store",
        access_token="shpat_test",
    )
    db.add(tenant)
    await db.commit()
    await db.refresh(tenant)
    return tenant
