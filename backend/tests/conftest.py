# tests/conftest.py — Shared test fixtures
import os

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("REDIS_URL", None)
os.environ.pop("RESEND_API_KEY", None)

import auth as auth_module
import database
from models import Base, User
from auth import AuthService
from database import get_db_session
from realtime import hub
from main import app

TEST_PASSWORD = "password123"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory):
    """HTTP test client with overridden DB dependency"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    # health check uses the app engine directly; drop its pooled connections
    await database.engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state():
    """Rooms and login-attempt counters are process globals"""
    hub.reset()
    auth_module._login_attempts.clear()
    yield
    hub.reset()


async def _make_user(db_session, name: str, email: str) -> User:
    user = User(
        name=name,
        email=email,
        password_hash=AuthService.hash_password(TEST_PASSWORD),
        avatar="",
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def owner(db_session):
    """Board owner"""
    return await _make_user(db_session, "Alice Owner", "alice@example.com")


@pytest_asyncio.fixture
async def bob(db_session):
    """Will be invited as a collaborator"""
    return await _make_user(db_session, "Bob Builder", "bob@example.com")


@pytest_asyncio.fixture
async def outsider(db_session):
    """Has no access to anyone's boards"""
    return await _make_user(db_session, "Carol Outsider", "carol@example.com")


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token(user.id)
    return {"Authorization": f"Bearer {token}"}


async def create_board(client: AsyncClient, user: User, title: str = "Sprint", color: str = "#3B82F6") -> dict:
    resp = await client.post("/api/boards", json={"title": title, "color": color}, headers=get_auth_headers(user))
    assert resp.status_code == 201, resp.text
    return resp.json()


async def create_list(client: AsyncClient, user: User, board_id: str, title: str, position: int = None) -> dict:
    body = {"title": title}
    if position is not None:
        body["position"] = position
    resp = await client.post(f"/api/boards/{board_id}/lists", json=body, headers=get_auth_headers(user))
    assert resp.status_code == 201, resp.text
    return resp.json()


async def create_card(client: AsyncClient, user: User, board_id: str, list_id: str, title: str, position: int = None, **extra) -> dict:
    body = {"title": title, "listId": list_id, **extra}
    if position is not None:
        body["position"] = position
    resp = await client.post(f"/api/boards/{board_id}/cards", json=body, headers=get_auth_headers(user))
    assert resp.status_code == 201, resp.text
    return resp.json()


async def add_collaborator(db_session, board_id: str, user: User) -> None:
    from models import BoardCollaborator
    db_session.add(BoardCollaborator(board_id=board_id, user_id=user.id))
    await db_session.commit()
