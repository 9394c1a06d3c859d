# tests/conftest.py — Shared test fixtures
import os
import uuid
from datetime import datetime
from typing import Optional

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ["SYSADMIN_EMAIL"] = "founder@taskwise.dev"

from models import (
    Base, Department, Task, TaskHistory, TaskStatus, HistoryField,
    User, UserRole, UserStatus,
)
from auth import AuthService
from database import get_db_session
from main import app

PASSWORD = "TestPassword123!"


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


# ============================================================
# DEPARTMENTS & USERS
# ============================================================

@pytest_asyncio.fixture
async def engineering(db_session):
    dept = Department(name="Engineering", depcolor="#3b82f6")
    db_session.add(dept)
    await db_session.commit()
    await db_session.refresh(dept)
    return dept


@pytest_asyncio.fixture
async def marketing(db_session):
    dept = Department(name="Marketing", depcolor="#22c55e")
    db_session.add(dept)
    await db_session.commit()
    await db_session.refresh(dept)
    return dept


async def make_user(
    db,
    email: str,
    role: UserRole = UserRole.USER,
    status: UserStatus = UserStatus.APPROVED,
    department: Optional[str] = None,
    display_name: str = "",
) -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        display_name=display_name or email.split("@")[0].title(),
        password_hash=AuthService.hash_password(PASSWORD),
        role=role,
        status=status,
        department=department,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session, engineering):
    """Approved regular user in Engineering"""
    return await make_user(db_session, "testuser@taskwise.dev", department=engineering.name)


@pytest_asyncio.fixture
async def other_user(db_session, marketing):
    """Approved regular user in Marketing"""
    return await make_user(db_session, "other@taskwise.dev", department=marketing.name)


@pytest_asyncio.fixture
async def depadmin(db_session, engineering):
    """Department admin of Engineering"""
    return await make_user(db_session, "lead@taskwise.dev", role=UserRole.DEPADMIN, department=engineering.name)


@pytest_asyncio.fixture
async def sysadmin(db_session):
    return await make_user(db_session, "root@taskwise.dev", role=UserRole.SYSADMIN)


@pytest_asyncio.fixture
async def pending_user(db_session):
    return await make_user(db_session, "newbie@taskwise.dev", status=UserStatus.PENDING)


# ============================================================
# TASKS
# ============================================================

async def make_task(
    db,
    owner: User,
    name: str,
    status: TaskStatus = TaskStatus.IN_PROGRESS,
    order: int = 0,
    department: Optional[str] = None,
    done_at: Optional[datetime] = None,
) -> Task:
    """Insert a task row directly, with its creation history entry"""
    task = Task(
        id=str(uuid.uuid4()),
        name=name,
        department=department if department is not None else owner.department,
        status=status,
        user_id=owner.id,
        order=order,
        done_at=done_at,
        history=[TaskHistory(
            sequence=0,
            field=HistoryField.STATUS,
            old_value=None,
            new_value=status.value,
            changed_by=owner.id,
        )],
    )
    db.add(task)
    await db.commit()
    await db.refresh(task)
    return task


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token(AuthService.token_payload(user))
    return {"Authorization": f"Bearer {token}"}
