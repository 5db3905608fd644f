from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from notifypipe.core.config import Settings, get_settings
from notifypipe.core.errors import ConfigurationError


_default_engine: AsyncEngine | None = None
_default_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(database_url: str, settings: Settings | None = None) -> AsyncEngine:
    # Configure bounded asyncpg pools for predictable latency under load.
    if not database_url:
        raise ConfigurationError("DATABASE_URL is not configured")
    settings = settings or get_settings()
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if not database_url.startswith("sqlite"):
        engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_recycle"] = 1800
        if settings.db_statement_timeout_ms > 0:
            engine_kwargs["connect_args"] = {
                "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
            }
    return create_async_engine(database_url, **engine_kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    # Lazily build the process-wide factory so importing the API never opens connections.
    global _default_engine, _default_session_factory
    if _default_session_factory is None:
        settings = get_settings()
        _default_engine = build_engine(settings.database_url, settings)
        _default_session_factory = build_session_factory(_default_engine)
    return _default_session_factory


async def dispose_default_engine() -> None:
    global _default_engine, _default_session_factory
    if _default_engine is not None:
        await _default_engine.dispose()
    _default_engine = None
    _default_session_factory = None


@asynccontextmanager
async def get_session(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    factory = session_factory or get_session_factory()
    async with factory() as session:
        yield session


async def ping(engine: AsyncEngine) -> None:
    # Round-trip a trivial statement to prove the store is reachable at startup.
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
