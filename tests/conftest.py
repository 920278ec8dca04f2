import os

# app.db.session and the Celery app read settings at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("ENVIRONMENT", "test")

import httpx
import pytest
from fakeredis import aioredis as fakeredis
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.core.deps import get_db_session, get_redis, get_settings_dep
from app.core.security import create_access_token
from app.models.base import Base
from app.models import integration, subscription, user, webhook  # noqa: F401  registers tables

from payloads import DOPPUS_SECRET, HOTTOK


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="redis://localhost:6379/0",
        environment="test",
        jwt_secret_key="test-jwt-secret",
        jwt_algorithm="HS256",
        jwt_issuer="https://designauto.test",
        jwt_audience="designauto-admin",
        jwt_clock_skew_seconds=30,
        hotmart_hottok=HOTTOK,
        doppus_secret_key=DOPPUS_SECRET,
        webhook_max_attempts=3,
        webhook_rate_limit_max=5,
        webhook_rate_limit_window=60,
    )


@pytest.fixture()
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture()
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture()
async def redis():
    client = fakeredis.FakeRedis(decode_responses=True)
    try:
        yield client
    finally:
        await client.flushall()
        await client.aclose()


@pytest.fixture()
def enqueued(monkeypatch):
    calls: list[int] = []
    monkeypatch.setattr("app.api.v1.webhooks.enqueue_webhook_event", calls.append)
    return calls


@pytest.fixture()
async def client(settings, session_factory, redis, enqueued):
    from app.main import app

    async def _session():
        async with session_factory() as session:
            yield session

    async def _redis():
        yield redis

    app.dependency_overrides[get_db_session] = _session
    app.dependency_overrides[get_redis] = _redis
    app.dependency_overrides[get_settings_dep] = lambda: settings
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def admin_headers(settings) -> dict[str, str]:
    token = create_access_token("1", "admin", settings)
    return {"Authorization": f"Bearer {token}"}
