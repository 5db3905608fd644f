from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator, Iterator

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from notifypipe.apps.api.main import create_app
from notifypipe.core.config import Settings
from notifypipe.domain.models import Base
from notifypipe.persistence.db import build_engine, build_session_factory
from notifypipe.services.job_store import SqlJobStore
from notifypipe.services.recipients import SqlRecipientDirectory
from notifypipe.services.telemetry import reset_telemetry


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    # Explicit values so tests never depend on a developer's .env file.
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'notifypipe.db'}",
        redis_url="",
        queue_backend="memory",
        environment="test",
        sendgrid_api_key="SG.test-key",
        sendgrid_from_email="updates@example.com",
        twilio_account_sid="AC123",
        twilio_auth_token="twilio-token",
        twilio_phone_number="+15550001111",
    )


@pytest.fixture
async def engine(settings: Settings) -> AsyncIterator[AsyncEngine]:
    # One sqlite file per test, with the schema built straight from the ORM metadata.
    engine = build_engine(settings.database_url, settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
def job_store(session_factory: async_sessionmaker[AsyncSession]) -> SqlJobStore:
    return SqlJobStore(session_factory)


@pytest.fixture
def recipients(session_factory: async_sessionmaker[AsyncSession]) -> SqlRecipientDirectory:
    return SqlRecipientDirectory(session_factory)


@pytest.fixture(autouse=True)
def clear_telemetry() -> Iterator[None]:
    # Counters are process-global; keep each test's view isolated.
    reset_telemetry()
    yield
    reset_telemetry()


@pytest.fixture
async def api_client(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[httpx.AsyncClient]:
    # In-process ASGI client; the app reuses the test session factory instead of building its own engine.
    app = create_app(settings=settings, session_factory=session_factory)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
