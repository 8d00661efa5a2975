"""
Pytest fixtures for the reference verification platform tests.

The application's engine is module-level, so the database URL has to point at
a temp SQLite file before anything from ``refverify`` is imported.
"""

import os
import tempfile
import uuid
from typing import AsyncGenerator, List, Optional

# File-based SQLite so every connection sees the same database
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
_tmp.close()
TEST_DB_PATH = _tmp.name
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DB_PATH}"
os.environ["SECRET_KEY"] = "test-secret-key-for-testing-only-0123456789"
os.environ["DEBUG"] = "false"

from refverify.config import get_settings  # noqa: E402

get_settings.cache_clear()

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from refverify.database import async_session_maker, engine  # noqa: E402
from refverify.kernel.identity.jwt import JWTManager  # noqa: E402
from refverify.kernel.identity.password import PasswordHasher, hash_password  # noqa: E402
from refverify.kernel.models import Base, User, UserRole, enum_value  # noqa: E402
from refverify.orchestration.transition_engine import Actor  # noqa: E402

# Keep hashing fast in tests
PasswordHasher.rounds = 4

TEST_PASSWORD = "TestPassword123"


def pytest_sessionfinish(session, exitstatus):
    """Clean up temp DB file after test run."""
    for path in (TEST_DB_PATH, TEST_DB_PATH + "-wal", TEST_DB_PATH + "-shm"):
        if os.path.exists(path):
            os.unlink(path)


class FakeTransport:
    """In-memory stand-in for a WebSocket."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[dict] = []
        self.closed_with: Optional[int] = None

    async def send_json(self, data: dict) -> None:
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.closed_with = code

    def events(self) -> List[str]:
        return [frame["event"] for frame in self.sent]


def make_actor(role: UserRole = UserRole.VERIFIER, country: str = "GH") -> Actor:
    return Actor(user_id=uuid.uuid4(), role=role, country=country)


@pytest.fixture
def fake_transport_factory():
    return FakeTransport


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[None, None]:
    """Fresh schema for one test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db_session(db) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with async_session_maker() as session:
        yield session
        await session.rollback()


async def create_user(
    role: UserRole,
    country: str,
    name: Optional[str] = None,
    is_active: bool = True,
) -> User:
    name = name or f"{role.value}-{uuid.uuid4().hex[:8]}"
    async with async_session_maker() as session:
        user = User(
            id=uuid.uuid4(),
            email=f"{name}@example.com",
            username=name[:30],
            password_hash=hash_password(TEST_PASSWORD),
            role=role,
            country=country,
            is_active=is_active,
        )
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


@pytest_asyncio.fixture
async def contributor(db) -> User:
    return await create_user(UserRole.CONTRIBUTOR, "GH", "ama")


@pytest_asyncio.fixture
async def gh_verifier(db) -> User:
    return await create_user(UserRole.VERIFIER, "GH", "kofi")


@pytest_asyncio.fixture
async def fr_verifier(db) -> User:
    return await create_user(UserRole.VERIFIER, "FR", "claire")


@pytest_asyncio.fixture
async def admin(db) -> User:
    return await create_user(UserRole.ADMIN, "US", "root")


@pytest.fixture
def jwt_manager() -> JWTManager:
    """Create a JWT manager for tests."""
    return JWTManager(
        secret_key="test-secret-key-for-testing-only-0123456789",
        algorithm="HS256",
        access_token_expire_minutes=30,
    )


def auth_headers(user: User, jwt_manager: JWTManager) -> dict:
    token = jwt_manager.create_access_token(user.id, enum_value(user.role))
    return {"Authorization": f"Bearer {token.access_token}"}
