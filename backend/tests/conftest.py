# tests/conftest.py — Shared test fixtures
import os
import tempfile

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENCRYPTION_KEY"] = "test-encryption-key-for-unit-tests"
os.environ["STORAGE_TYPE"] = "local"
os.environ.setdefault("LOCAL_STORAGE_PATH", tempfile.mkdtemp(prefix="teamspace-uploads-"))
os.environ["ENVIRONMENT"] = "test"

import auth as auth_module
from models import (
    Base, User, Organization, OrganizationMember, OrgRole,
    Group, GroupMember, GroupRole,
)
from auth import AuthService
from database import get_db_session, enable_sqlite_foreign_keys
from storage import LocalStorageProvider, get_storage
from main import app

TEST_PASSWORD = "TestPassword123!"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    enable_sqlite_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
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


@pytest.fixture
def storage(tmp_path):
    return LocalStorageProvider(str(tmp_path / "objects"), signing_key="test-signing-key")


@pytest_asyncio.fixture(scope="function")
async def client(db_engine, storage):
    """HTTP test client with overridden DB and storage dependencies"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_storage] = lambda: storage
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_login_attempts():
    auth_module._login_attempts.clear()
    yield
    auth_module._login_attempts.clear()


# ============================================================
# FACTORIES
# ============================================================

@pytest_asyncio.fixture
async def make_user(db_session):
    """Factory: await make_user("alice") -> User with TEST_PASSWORD"""
    async def _make(username: str, email: str = None) -> User:
        user = User(
            username=username,
            email=email or f"{username}@teamspace.dev",
            display_name=username.capitalize(),
            password_hash=AuthService.hash_password(TEST_PASSWORD),
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user
    return _make


@pytest_asyncio.fixture
async def alice(make_user):
    return await make_user("alice")


@pytest_asyncio.fixture
async def bob(make_user):
    return await make_user("bob")


@pytest_asyncio.fixture
async def carol(make_user):
    return await make_user("carol")


@pytest_asyncio.fixture
async def org(db_session, alice):
    """Organization owned by alice"""
    organization = Organization(name="Acme", slug="acme", created_by=alice.id)
    db_session.add(organization)
    await db_session.flush()
    db_session.add(OrganizationMember(organization_id=organization.id, user_id=alice.id, role=OrgRole.OWNER))
    await db_session.commit()
    await db_session.refresh(organization)
    return organization


async def add_org_member(db_session, org_id: str, user: User, role: OrgRole = OrgRole.MEMBER):
    db_session.add(OrganizationMember(organization_id=org_id, user_id=user.id, role=role))
    await db_session.commit()


async def make_group(db_session, org_id: str, admin: User, name: str = "Engineering", members=()) -> Group:
    """Group with ``admin`` as group admin and ``members`` as plain members"""
    group = Group(organization_id=org_id, name=name, created_by=admin.id)
    db_session.add(group)
    await db_session.flush()
    db_session.add(GroupMember(group_id=group.id, user_id=admin.id, role=GroupRole.ADMIN))
    for member in members:
        db_session.add(GroupMember(group_id=group.id, user_id=member.id, role=GroupRole.MEMBER))
    await db_session.commit()
    await db_session.refresh(group)
    return group


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token({"sub": user.id, "username": user.username})
    return {"Authorization": f"Bearer {token}"}


async def create_board(client, org, user, key="ENG", **extra) -> dict:
    res = await client.post("/api/v1/boards", headers=get_auth_headers(user), json={
        "organization_id": org.id, "name": "Engineering", "key": key, **extra,
    })
    assert res.status_code == 201, res.text
    return res.json()


async def create_project(client, org, user, group, name="Apollo") -> dict:
    res = await client.post("/api/v1/projects", headers=get_auth_headers(user), json={
        "organization_id": org.id, "group_id": group.id, "name": name,
    })
    assert res.status_code == 201, res.text
    return res.json()
