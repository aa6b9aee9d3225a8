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

from models import Base, User, UserRole, Project, ProjectMember, ProjectStatus, utcnow
from auth import AuthService, principal_from_user
from database import get_db_session
from delivery_channel import topic_hub, notification_stream
from main import app

TEST_PASSWORD = "Passw0rd!"
_PASSWORD_HASH = AuthService.hash_password(TEST_PASSWORD)


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependency"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_channels():
    """Live subscribers never leak between tests"""
    yield
    topic_hub.clear()
    notification_stream.clear()


async def make_user(db, name: str, role: UserRole = UserRole.USER) -> User:
    user = User(
        name=name,
        email=f"{name.lower()}@collab.dev",
        password_hash=_PASSWORD_HASH,
        role=role,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def make_project(db, name: str, *members: User, status: ProjectStatus = ProjectStatus.ACTIVE) -> Project:
    """Insert a project and its memberships directly, without notifications"""
    project = Project(name=name, description=f"{name} description", status=status, created_at=utcnow())
    db.add(project)
    await db.flush()
    for member in members:
        db.add(ProjectMember(project_id=project.id, user_id=member.id))
    await db.commit()
    await db.refresh(project)
    return project


@pytest_asyncio.fixture
async def alice(db_session):
    return await make_user(db_session, "Alice")


@pytest_asyncio.fixture
async def bob(db_session):
    return await make_user(db_session, "Bob")


@pytest_asyncio.fixture
async def carol(db_session):
    return await make_user(db_session, "Carol")


@pytest_asyncio.fixture
async def admin_user(db_session):
    return await make_user(db_session, "Admin", role=UserRole.ADMIN)


@pytest_asyncio.fixture
async def alpha(db_session, alice, bob):
    """Project Alpha with members Alice and Bob"""
    return await make_project(db_session, "Alpha", alice, bob)


def principal(user: User):
    return principal_from_user(user)


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token(AuthService.token_claims(user))
    return {"Authorization": f"Bearer {token}"}
