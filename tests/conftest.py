import os
from datetime import datetime, timedelta
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-memory ledger; no MongoDB needed
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")


class FrozenClock:
    """Stands in for the ledger clock; tests move time explicitly."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock(monkeypatch) -> FrozenClock:
    c = FrozenClock(datetime(2026, 3, 2, 12, 0, 0))
    monkeypatch.setattr("app.services.credits.utcnow", c)
    return c


@pytest.fixture
def storage():
    from app.storage.memory import MemoryStorage
    return MemoryStorage()


@pytest_asyncio.fixture
async def user(storage):
    from app.services import users as user_service
    return await user_service.create_user(storage, "buyer@example.com", "Buyer")


@pytest_asyncio.fixture
async def admin(storage):
    from app.services import users as user_service
    return await user_service.create_user(storage, "ops@example.com", "Ops", role="admin")


def session_cookie_for(account) -> str:
    from app.core.security import create_session_cookie
    from app.services.users import session_payload_for_user
    return create_session_cookie(session_payload_for_user(account))


@pytest_asyncio.fixture
async def client(storage) -> AsyncGenerator[AsyncClient, None]:
    from app.main import app
    from app.storage.base import get_storage
    app.dependency_overrides[get_storage] = lambda: storage
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def login(client):
    """Put a session cookie for the given account on the test client."""
    from app.deps import SESSION_COOKIE_NAME

    def _login(account) -> AsyncClient:
        client.cookies.set(SESSION_COOKIE_NAME, session_cookie_for(account))
        return client

    return _login


@pytest_asyncio.fixture
async def admin_client(login, admin) -> AsyncClient:
    return login(admin)
