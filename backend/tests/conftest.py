"""Shared fixtures: in-memory SQLite store, account/loan factories, API client."""

import itertools
import os

# Settings are read at import time
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("INTERNAL_API_TOKEN", "test-internal-token")
os.environ.setdefault("IDENTITY_FINGERPRINT_KEY", "test-fingerprint-key")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")

from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import lendtrust.models  # noqa: F401
from lendtrust.auth_utils import create_access_token
from lendtrust.database import Base, get_db
from lendtrust.models.loan import Loan, LoanStatus
from lendtrust.models.user import User, UserRole, RiskState

INTERNAL_HEADERS = {"X-Internal-Token": "test-internal-token"}


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest correctly
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine, monkeypatch):
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    # Standalone error logging opens its own sessions
    monkeypatch.setattr("lendtrust.database.async_session", factory)
    return factory


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


def _new_user(n: int, role: UserRole, **fields) -> User:
    return User(
        email=fields.pop("email", f"{role.value}{n}@lendtrust-test.com"),
        first_name=fields.pop("first_name", role.value.title()),
        last_name=fields.pop("last_name", str(n)),
        phone=fields.pop("phone", None),
        national_id=fields.pop("national_id", None),
        company_name=fields.pop("company_name", None),
        role=role,
        is_active=fields.pop("is_active", True),
        risk_state=RiskState.NORMAL,
        reputation_score=100,
        total_loans=0,
        loans_repaid=0,
        loans_defaulted=0,
        **fields,
    )


@pytest.fixture
def make_user(db):
    """Flush a new account into the test session."""
    counter = itertools.count(1)

    async def _make(role: UserRole = UserRole.BORROWER, **fields) -> User:
        user = _new_user(next(counter), role, **fields)
        db.add(user)
        await db.flush()
        return user

    return _make


@pytest.fixture
def make_loan(db):
    async def _make(
        borrower: User,
        lender: User | None = None,
        *,
        status: LoanStatus = LoanStatus.ACTIVE,
        principal: Decimal = Decimal("1000"),
        outstanding: Decimal | None = None,
    ) -> Loan:
        loan = Loan(
            borrower_id=borrower.id,
            lender_id=lender.id if lender else None,
            principal=principal,
            amount_outstanding=principal if outstanding is None else outstanding,
            status=status,
            repaid_at=None,
        )
        db.add(loan)
        await db.flush()
        return loan

    return _make


# ── API ──────────────────────────────────────────────


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}

    return _headers


@pytest.fixture
def internal_headers() -> dict[str, str]:
    return dict(INTERNAL_HEADERS)


@pytest.fixture
def seed_users(session_factory):
    """Create accounts in a committed session so API requests can see them."""
    counter = itertools.count(100)

    async def _seed(*specs: tuple[UserRole, dict]) -> list[User]:
        async with session_factory() as session:
            users = [_new_user(next(counter), role, **dict(fields)) for role, fields in specs]
            session.add_all(users)
            await session.commit()
            return users

    return _seed


@pytest_asyncio.fixture
async def client(session_factory):
    from lendtrust.main import app

    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
