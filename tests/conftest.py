"""Pytest configuration and shared fixtures.

The backing stores are replaced by in-process equivalents:
    - S3: moto (mock_aws)
    - Redis: fakeredis, one FakeServer per test
    - PostgreSQL: a file-backed SQLite database through aiosqlite
"""

from collections.abc import AsyncGenerator, Generator

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis, FakeServer
from httpx import ASGITransport, AsyncClient
from moto import mock_aws

from loanintake.api import AppServices, create_app
from loanintake.core.config import DatabaseSettings, SubmissionSettings
from loanintake.core.settings import clear_settings_cache
from loanintake.db import create_engine_from_settings, create_schema, create_session_factory
from loanintake.services.event_publisher import EventPublisher
from loanintake.services.metadata_store import MetadataStore
from loanintake.services.object_stager import ObjectStager
from loanintake.services.status_cache import StatusCache, StatusLookupService
from loanintake.services.storage import ObjectStoreClient
from loanintake.services.submission import SubmissionCoordinator
from tests.factories import TEST_BUCKET, TEST_STREAM


@pytest.fixture(autouse=True)
def clean_settings_cache() -> Generator[None, None, None]:
    """Clear settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


# ---------------------------------------------------------------------------
# Object store fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def object_store() -> Generator[ObjectStoreClient, None, None]:
    """Object store client backed by moto with the test bucket created.

    endpoint_url is None so moto intercepts every request.
    """
    with mock_aws():
        client = ObjectStoreClient(
            endpoint_url=None,
            access_key="test_access_key",
            secret_key="test_secret_key",  # noqa: S106
            region="us-east-1",
        )
        client.ensure_bucket(TEST_BUCKET)
        yield client


@pytest.fixture
def stager(object_store: ObjectStoreClient) -> ObjectStager:
    return ObjectStager(object_store, TEST_BUCKET)


# ---------------------------------------------------------------------------
# Redis fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def redis_server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def redis_factory(redis_server: FakeServer):
    """Factory returning a fresh client bound to the test server."""
    return lambda: FakeAsyncRedis(server=redis_server)


@pytest.fixture
def publisher(redis_factory) -> EventPublisher:
    return EventPublisher(redis_factory, TEST_STREAM, timeout=2.0)


@pytest.fixture
def status_cache(redis_factory) -> StatusCache:
    return StatusCache(redis_factory, ttl_seconds=300)


# ---------------------------------------------------------------------------
# Relational store fixtures
# ---------------------------------------------------------------------------
@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """SQLite engine with the schema created."""
    settings = DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'loans.db'}")
    engine = create_engine_from_settings(settings)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def metadata_store(session_factory) -> MetadataStore:
    return MetadataStore(session_factory)


# ---------------------------------------------------------------------------
# Coordinator and API fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def submission_settings() -> SubmissionSettings:
    return SubmissionSettings()


@pytest.fixture
def coordinator(
    stager: ObjectStager,
    metadata_store: MetadataStore,
    publisher: EventPublisher,
    submission_settings: SubmissionSettings,
) -> SubmissionCoordinator:
    return SubmissionCoordinator(stager, metadata_store, publisher, submission_settings)


@pytest.fixture
def status_lookup(status_cache: StatusCache, metadata_store: MetadataStore) -> StatusLookupService:
    return StatusLookupService(status_cache, metadata_store)


@pytest.fixture
def app_services(
    coordinator: SubmissionCoordinator,
    metadata_store: MetadataStore,
    status_lookup: StatusLookupService,
) -> AppServices:
    return AppServices(coordinator, metadata_store, status_lookup)


@pytest_asyncio.fixture
async def api_client(app_services: AppServices) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to an app wired to the in-process stores."""
    app = create_app(services=app_services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
