import os
import uuid
from datetime import date
from decimal import Decimal

# Settings are read at import time, so the test environment goes first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./finance_test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key-with-enough-length-for-hs256")
os.environ.setdefault("ALGORITHM", "HS256")
os.environ.setdefault("ACCESS_TOKEN_EXPIRE_MINUTES", "30")

import pytest_asyncio  # noqa: E402
from httpx import AsyncClient, ASGITransport  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker  # noqa: E402

from app.core.security import create_access_token  # noqa: E402
from app.main import app  # noqa: E402
from app.core import models  # noqa: E402
from app.core.database import Base, get_db, get_engine  # noqa: E402


# Fresh SQLite file per test; the SQL gate gets its own pooled connections from it
@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'finance_test.db'}", echo=False
    )
    async with engine.begin() as conn:
        # Create all tables
        await conn.run_sync(Base.metadata.create_all)
    yield engine  # Tests happens here
    await engine.dispose()


# Create session and rollback once it is done
@pytest_asyncio.fixture(scope="function")
async def db_session(test_engine):
    TestingSessionLocal = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False
    )
    async with TestingSessionLocal() as session:
        yield session
        await session.rollback()
        await session.close()


# Client
@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, test_engine):
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_engine] = lambda: test_engine

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


async def _make_user(db_session: AsyncSession, prefix: str) -> models.User:
    # Generate unique email for each test to avoid duplicates
    unique_email = f"{prefix}_{uuid.uuid4().hex[:8]}@example.com"
    user = models.User(email=unique_email, name=prefix)
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


# User
@pytest_asyncio.fixture(scope="function")
async def test_user(db_session: AsyncSession):
    return await _make_user(db_session, "test")


# Someone else, whose rows must never leak
@pytest_asyncio.fixture(scope="function")
async def other_user(db_session: AsyncSession):
    return await _make_user(db_session, "other")


# Token for user
@pytest_asyncio.fixture(scope="function")
async def auth_headers_user(test_user):
    token = create_access_token({"user_id": test_user.id})
    return {"Authorization": f"Bearer {token}"}


# Entries for both users
@pytest_asyncio.fixture(scope="function")
async def test_entries(db_session: AsyncSession, test_user, other_user):
    entries = [
        models.Entry(
            user_id=test_user.id,
            description="Groceries",
            amount=Decimal("42.50"),
            date=date(2025, 3, 1),
            type="EXPENSE",
        ),
        models.Entry(
            user_id=test_user.id,
            description="Salary",
            amount=Decimal("3000.00"),
            date=date(2025, 3, 5),
            type="INCOME",
        ),
        models.Entry(
            user_id=other_user.id,
            description="Rent",
            amount=Decimal("900.00"),
            date=date(2025, 3, 3),
            type="EXPENSE",
        ),
    ]
    db_session.add_all(entries)
    await db_session.commit()
    return entries
