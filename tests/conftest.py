from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from vidstream.app.config import Settings
from vidstream.app.models import Base
from vidstream.app.services.events import RecordingEventSink
from vidstream.app.services.job_repository import JobRepository
from vidstream.app.services.quality_profile_service import QualityProfileCatalog
from vidstream.app.services.redis_client import RedisClient
from vidstream.app.services.transcoding_scheduler import TranscodingScheduler
from tests.fixtures.video_test_fixtures import metadata_1080p
from tests.mocks import MockRedis, MockStorageBackend, create_mock_extractor


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture(scope="function")
async def session_factory(tmp_path):
    """
    File-backed database shared by every session the code under test opens;
    each session gets its own connection. The schema is created from scratch
    for each test.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/db.sqlite")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    yield factory

    await engine.dispose()


@pytest.fixture
def repository(session_factory) -> JobRepository:
    return JobRepository(session_factory)


@pytest.fixture
def mock_redis() -> MockRedis:
    return MockRedis()


@pytest.fixture
def redis_client(mock_redis) -> RedisClient:
    return RedisClient(client=mock_redis)


@pytest.fixture
def catalog() -> QualityProfileCatalog:
    return QualityProfileCatalog()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def event_sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def extractor():
    return create_mock_extractor(metadata_1080p())


@pytest.fixture
def scheduler(repository, redis_client, extractor, catalog, event_sink, clock, storage) -> TranscodingScheduler:
    return TranscodingScheduler(
        repository,
        redis_client,
        extractor,
        catalog,
        max_concurrent_jobs=2,
        max_attempts=3,
        event_sink=event_sink,
        clock=clock,
        storage=storage,
    )


@pytest.fixture
def storage() -> MockStorageBackend:
    return MockStorageBackend()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        STORAGE_BACKEND="local",
        LOCAL_STORAGE_ROOT=str(tmp_path / "media"),
        TRANSCODING_TEMP_DIR=str(tmp_path / "work"),
        JWT_SECRET_KEY="test-secret",
        MAX_CONCURRENT_JOBS=2,
        WORKER_POLL_INTERVAL=0.01,
        EXTRACT_SUBTITLES=True,
        ENCODER_KILL_GRACE_SECONDS=0.05,
    )
