"""Shared fixtures: in-memory database, seeded users, upload root, HTTP client."""
import os
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("UPLOAD_PATH", tempfile.mkdtemp(prefix="intranet-uploads-"))

import jwt
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from intranet.core.config import settings
from intranet.core.database import get_db
from intranet.core.init_db import create_tables, drop_tables
from intranet.main import app
from intranet.modules.directory import User
from intranet.modules.expenses.services import ExpenseService
from intranet.modules.expenses.storage import ReceiptStorage, get_receipt_storage
from intranet.modules.settings import SystemSetting

TEST_DB_URL = "sqlite+aiosqlite://"


@pytest.fixture
async def engine():
    engine = create_async_engine(
        TEST_DB_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(engine)
    yield engine
    await drop_tables(engine)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def users(db):
    """admin, manager, employee (reports to manager), other (no manager), inactive."""
    admin = User(email="admin@example.com", first_name="Ada", last_name="Admin", role="admin")
    manager = User(email="manager@example.com", first_name="Max", last_name="Manager", role="manager")
    other_manager = User(
        email="other.manager@example.com", first_name="Olive", last_name="Other", role="manager"
    )
    db.add_all([admin, manager, other_manager])
    await db.flush()

    employee = User(
        email="employee@example.com",
        first_name="Eve",
        last_name="Employee",
        role="employee",
        manager_id=manager.id,
    )
    other = User(email="other@example.com", first_name="Otto", last_name="Loner", role="employee")
    inactive = User(
        email="gone@example.com",
        first_name="Gone",
        last_name="User",
        role="employee",
        is_active=False,
    )
    db.add_all([employee, other, inactive])
    await db.commit()

    return SimpleNamespace(
        admin=admin,
        manager=manager,
        other_manager=other_manager,
        employee=employee,
        other=other,
        inactive=inactive,
    )


@pytest.fixture
def storage(tmp_path):
    return ReceiptStorage(root=tmp_path / "uploads")


@pytest.fixture
def service(storage):
    return ExpenseService(storage)


@pytest.fixture
def set_categories(db):
    """Store the expense category setting."""
    async def _set(value):
        db.add(SystemSetting(key=settings.EXPENSE_CATEGORIES_KEY, value=value))
        await db.commit()
    return _set


def make_token(user_id, expires_in: int = 3600, claim: str = "userId", secret: str | None = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {claim: str(user_id), "iat": now, "exp": now + timedelta(seconds=expires_in)}
    return jwt.encode(payload, secret or settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {make_token(user.id)}"}


@pytest.fixture
async def client(session_factory, storage):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_receipt_storage] = lambda: storage

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
