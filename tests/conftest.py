import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-with-enough-length-1234")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("SIGNUP_EMAIL_CHECK_DELIVERABILITY", "false")

import pytest
from typing import AsyncGenerator
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import NullPool

import ems.models  # noqa: F401
from ems.auth.security import create_access_token, get_password_hash
from ems.database import Base, Database, get_db
from ems.main import app
from ems.models.audit import AuditLog
from ems.models.enums import Role
from ems.models.user import User
from ems.core.rate_limit import reset_rate_limiter_state
from ems.services.audit_service import AuditTrail


def _enable_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    del connection_record
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


@pytest.fixture(scope="function")
async def database(tmp_path) -> AsyncGenerator[Database, None]:
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'ems-test.db'}", poolclass=NullPool)
    event.listen(db.engine.sync_engine, "connect", _enable_sqlite_pragmas)
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db
    await db.dispose()


@pytest.fixture(scope="function")
async def db_session(database) -> AsyncGenerator[AsyncSession, None]:
    async with database.session_factory() as session:
        yield session


@pytest.fixture(scope="function")
async def audit_trail(database) -> AsyncGenerator[AuditTrail, None]:
    trail = AuditTrail(database.session_factory)
    yield trail
    await trail.stop()


@pytest.fixture(scope="function")
async def client(database, audit_trail) -> AsyncGenerator[AsyncClient, None]:
    await reset_rate_limiter_state()

    async def override_get_db():
        async with database.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    app.state.database = database
    app.state.audit_trail = audit_trail
    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
    await reset_rate_limiter_state()


async def create_user(
    session: AsyncSession,
    *,
    email: str,
    role: Role = Role.USER,
    password: str = "password123",
    name: str | None = None,
) -> User:
    user = User(
        email=email,
        name=name or email.split("@")[0].title(),
        hashed_password=get_password_hash(password),
        role=role,
        email_verified=True,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(subject=user.id)}"}


async def audit_entries(database: Database, **filters) -> list[AuditLog]:
    async with database.session_factory() as session:
        stmt = select(AuditLog).filter_by(**filters).order_by(AuditLog.created_at)
        return list((await session.execute(stmt)).scalars().all())


async def count_rows(database: Database, model) -> int:
    async with database.session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.fixture
async def admin_user(db_session) -> User:
    return await create_user(db_session, email="admin@example.com", role=Role.ADMIN, name="Admin User")


@pytest.fixture
async def super_user(db_session) -> User:
    return await create_user(db_session, email="super@example.com", role=Role.SUPER_USER, name="Super User")


@pytest.fixture
async def regular_user(db_session) -> User:
    return await create_user(db_session, email="user@example.com", role=Role.USER, name="Regular User")


@pytest.fixture
def admin_headers(admin_user) -> dict[str, str]:
    return auth_headers(admin_user)


@pytest.fixture
def super_user_headers(super_user) -> dict[str, str]:
    return auth_headers(super_user)


@pytest.fixture
def user_headers(regular_user) -> dict[str, str]:
    return auth_headers(regular_user)
