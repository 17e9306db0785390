import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import Settings
from app.models.base import Base
from app.models.brand import Brand
from app.models.conversion import ConversionEvent  # noqa: F401 - registers table
from app.models.sync_account import SyncAccountConfig
from app.schemas.conversion import ConversionEventCreate
from app.services.conversion_store import ConversionEventStore
from app.services.upload_client import FullSuccess, UploadResult


@pytest.fixture
def test_settings():
    return Settings(
        sync_max_attempts=3,
        sync_retry_base_seconds=60,
        sync_retry_max_seconds=600,
        sync_queued_lease_seconds=900,
        google_ads_developer_token="dev-token",
        google_ads_timeout_seconds=5.0
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'conversions.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def make_brand(session_factory):
    async def _make(name: str = "Acme Coffee") -> Brand:
        async with session_factory() as session:
            brand = Brand(id=uuid.uuid4(), name=name)
            session.add(brand)
            await session.commit()
            return brand
    return _make


@pytest_asyncio.fixture
async def make_account(session_factory):
    async def _make(brand: Brand, **overrides) -> SyncAccountConfig:
        now = datetime.now(timezone.utc)
        values = {
            "id": uuid.uuid4(),
            "brand_id": brand.id,
            "customer_id": "1234567890",
            "conversion_action_id": "987654",
            "access_token": "ya29.token",
            "is_active": True,
            "batch_size": 100,
            "sync_interval_minutes": 60,
            "last_sync_count": 0,
            "created_at": now,
            "updated_at": now,
        }
        values.update(overrides)
        async with session_factory() as session:
            config = SyncAccountConfig(**values)
            session.add(config)
            await session.commit()
            return config
    return _make


@pytest_asyncio.fixture
async def add_events(session_factory, test_settings):
    """Insert pending purchase events for a brand, one minute apart, oldest first"""
    async def _add(brand: Brand, count: int, start: datetime | None = None, **fields) -> list[ConversionEvent]:
        start = start or datetime(2024, 1, 15, 14, 0, tzinfo=timezone.utc)
        events = []
        async with session_factory() as session:
            store = ConversionEventStore(session, test_settings)
            for i in range(count):
                payload = ConversionEventCreate(
                    event_name="purchase",
                    event_id=f"order-{uuid.uuid4().hex[:8]}",
                    brand_id=brand.id,
                    event_time=start + timedelta(minutes=i),
                    **fields
                )
                event, _ = await store.insert(payload)
                events.append(event)
        return events
    return _add


class FakeUploadClient:
    """Records calls and answers with a fixed outcome"""

    def __init__(self, outcome=None, error: Exception | None = None):
        self.outcome = outcome
        self.error = error
        self.calls = []

    async def upload(self, account, events):
        self.calls.append((account, list(events)))
        if self.error is not None:
            raise self.error
        return UploadResult.from_outcome(self.outcome or FullSuccess(), len(events))


@pytest.fixture
def fake_upload_client():
    return FakeUploadClient()
