"""Pytest configuration and fixtures for FarmGrid tests.

The API runs against an in-memory SQLite database (aiosqlite) unless
TEST_DATABASE_URL points somewhere else.  Redis caching is switched off
for the whole run; test_cache.py exercises it against an in-memory double.
"""

import os

os.environ.setdefault("CACHE_ENABLED", "false")
os.environ.setdefault("DEBUG", "false")

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from farmgrid.auth.jwt import create_access_token
from farmgrid.database import Base, discard_commit_hooks, get_db, run_commit_hooks
from farmgrid.main import app
from farmgrid.models import User

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite://")


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine():
    """Fresh schema per test."""
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_async_engine(
            TEST_DATABASE_URL,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_async_engine(TEST_DATABASE_URL)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Test client; each request gets its own committing session like get_db."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                discard_commit_hooks(session)
                raise
            await run_commit_hooks(session)

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ── Test Data Fixtures ───────────────────────────────────────────

async def _make_user(session_factory, email: str, full_name: str) -> User:
    async with session_factory() as session:
        user = User(email=email, full_name=full_name, is_active=True)
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


@pytest_asyncio.fixture
async def test_user(session_factory) -> User:
    return await _make_user(session_factory, "owner@example.com", "Farm Owner")


@pytest_asyncio.fixture
async def other_user(session_factory) -> User:
    return await _make_user(session_factory, "neighbour@example.com", "Neighbour")


@pytest.fixture
def auth_headers(test_user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(test_user.id)}"}


@pytest.fixture
def other_headers(other_user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(other_user.id)}"}


def _farm_payload(**overrides) -> dict:
    payload = {
        "name": "Riverside Farm",
        "total_size": 2.5,
        "location": {
            "address": "12 Canal Road",
            "state": "Uttarakhand",
            "district": "Udham Singh Nagar",
        },
        "soil_type": "alluvial",
        "irrigation_type": "drip",
        "description": "Wheat and mustard rotation",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def farm_payload():
    """Builder for valid create-farm bodies."""
    return _farm_payload


@pytest_asyncio.fixture
async def test_farm(client: AsyncClient, auth_headers: dict) -> dict:
    """A 2.5 acre farm on the default 4x4 grid."""
    response = await client.post("/api/farms/", json=_farm_payload(), headers=auth_headers)
    assert response.status_code == 201, response.text
    return response.json()


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "api: HTTP API tests")
    config.addinivalue_line("markers", "cache: Redis cache tests")
