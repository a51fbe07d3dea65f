import os

# --- SETUP: Set testing flags before importing app components ---
os.environ["TESTING"] = "True"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

import pytest
import pytest_asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncGenerator

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from app.database.connection import get_db
from app.database.models import Base, Team, User, Task
from app.models.user import UserRole
from app.utils.security import create_access_token

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# --- Pytest Fixtures ---

@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    TestingSessionLocal = async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    async with TestingSessionLocal() as session:
        yield session
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    del app.dependency_overrides[get_db]


@pytest_asyncio.fixture(scope="function")
async def patched_db_session(db_session: AsyncSession, mocker):
    """Points the deadline service's own session factory at the test session."""
    @asynccontextmanager
    async def fake_get_db_session():
        yield db_session

    mocker.patch("app.services.deadline_service.get_db_session", fake_get_db_session)
    return db_session


@pytest_asyncio.fixture(scope="function")
async def org(db_session: AsyncSession) -> dict:
    """
    Two superadmins, a sales user, a team lead with one writer on the lead's
    team, a writer outside any team and a proofreader.
    """
    team = Team(name="Alpha")
    db_session.add(team)
    await db_session.flush()

    users = {
        "admin": User(username="admin", full_name="Ada Admin", email="admin@test.com", role=UserRole.SUPERADMIN.value),
        "admin2": User(username="admin2", full_name="Bo Admin", email="admin2@test.com", role=UserRole.SUPERADMIN.value),
        "sales": User(username="sales", full_name="Sam Sales", email="sales@test.com", role=UserRole.SALES.value),
        "lead": User(username="lead", full_name="Lee Lead", email="lead@test.com", role=UserRole.TEAM_LEAD.value,
                     team_id=team.id),
        "writer": User(username="writer", full_name="Wren Writer", email="writer@test.com", role=UserRole.WRITER.value,
                       team_id=team.id),
        "writer2": User(username="writer2", full_name="Wim Writer", email="writer2@test.com",
                        role=UserRole.WRITER.value),
        "proof": User(username="proof", full_name="Pat Proof", email="proof@test.com",
                      role=UserRole.PROOFREADER.value),
    }
    db_session.add_all(users.values())
    await db_session.flush()

    team.team_lead_id = users["lead"].id
    await db_session.commit()
    return {"team": team, **users}


@pytest_asyncio.fixture(scope="function")
async def task(db_session: AsyncSession, org: dict) -> Task:
    task = Task(
        title="Essay on Kant",
        assigned_by_id=org["sales"].id,
        assigned_to_id=org["writer"].id,
        status="IN_PROGRESS",
        deadline=datetime.utcnow() + timedelta(days=5),
    )
    db_session.add(task)
    await db_session.commit()
    await db_session.refresh(task)
    return task


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict:
        token = create_access_token(data={"sub": str(user.id)})
        return {"Authorization": f"Bearer {token}"}
    return _headers
