"""Shared pytest fixtures for the queue desk.

- in-memory SQLite database (aiosqlite, one shared connection)
- recording publisher / recorder for post-commit side effects
- JWT helpers and an httpx client bound to the FastAPI app
"""

import os

# settings are read at import time, point them at test values first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REALTIME_ENABLED", "false")
os.environ.setdefault("ANALYTICS_MODE", "off")
os.environ.setdefault("JWT_SECRET", "test-secret")

from collections.abc import AsyncGenerator
from typing import Any, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from queuedesk.core.config import settings
from queuedesk.core.security import create_access_token
from queuedesk.db.base import Base
from queuedesk.db.models import QueueEntry
from queuedesk.services.events import StatusTransition
from queuedesk.services.queue import QueueStatusService


# ===========================================
# DATABASE FIXTURES
# ===========================================


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_entry(session_factory):
    """Insert a queue entry through the ORM and return it."""

    async def _make(token_number: int = 1, status: str = "waiting", **kwargs: Any) -> QueueEntry:
        async with session_factory() as session:
            entry = QueueEntry(token_number=token_number, status=status, **kwargs)
            session.add(entry)
            await session.commit()
            return entry

    return _make


@pytest.fixture
def plant_status(session_factory):
    """Write a raw status with a Core UPDATE, bypassing the ORM safety net."""

    async def _plant(entry_id: int, raw: Optional[str]) -> None:
        async with session_factory() as session:
            await session.execute(
                update(QueueEntry.__table__).where(QueueEntry.__table__.c.id == entry_id).values(status=raw)
            )
            await session.commit()

    return _plant


@pytest.fixture
def load_entry(session_factory):
    """Read an entry in a fresh session, as another request would see it."""

    async def _load(entry_id: int) -> Optional[QueueEntry]:
        async with session_factory() as session:
            return await session.get(QueueEntry, entry_id)

    return _load


# ===========================================
# SIDE EFFECT DOUBLES
# ===========================================


class RecordingPublisher:
    def __init__(self) -> None:
        self.published: list[StatusTransition] = []

    async def publish(self, transition: StatusTransition) -> None:
        self.published.append(transition)


class RecordingRecorder:
    def __init__(self) -> None:
        self.recorded: list[StatusTransition] = []

    async def record(self, transition: StatusTransition) -> None:
        self.recorded.append(transition)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def recorder() -> RecordingRecorder:
    return RecordingRecorder()


@pytest_asyncio.fixture
async def service(publisher, recorder) -> AsyncGenerator[QueueStatusService, None]:
    service = QueueStatusService(publisher, recorder)
    yield service
    await service.drain()


# ===========================================
# HTTP FIXTURES
# ===========================================


def _bearer(role: str, actor_id: int = 1) -> dict[str, str]:
    token = create_access_token(
        subject=str(actor_id), role=role, secret=settings.jwt_secret, expires_minutes=settings.jwt_expires_min
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    """auth_headers("cashier", actor_id=7) -> Authorization header for that actor."""
    return _bearer


@pytest_asyncio.fixture
async def client(session_factory, service) -> AsyncGenerator[AsyncClient, None]:
    from queuedesk.db.session import get_session
    from queuedesk.main import app

    async def _override_session():
        async with session_factory() as session:
            yield session

    # ASGITransport does not run the lifespan, wire the executor by hand
    app.state.queue_service = service
    app.dependency_overrides[get_session] = _override_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
