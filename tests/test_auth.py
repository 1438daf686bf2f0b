import pytest
from datetime import datetime, timedelta, timezone
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from email_validator import EmailNotValidError, EmailUndeliverableError

from ems.auth import email_checks, security
from ems.auth import router as auth_router
from ems.config import settings
from ems.models.enums import AuditAction, Role
from ems.models.user import User

from conftest import audit_entries, auth_headers, count_rows, create_user

AUTH = f"{settings.API_V1_STR}/auth"


@pytest.mark.asyncio
async def test_login_success(client: AsyncClient, db_session: AsyncSession, audit_trail, database):
    user = await create_user(db_session, email="test@example.com", password="password123")

    response = await client.post(f"{AUTH}/login", json={"email": "test@example.com", "password": "password123"})
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert "access_token" in data["data"]
    assert "refresh_token" in data["data"]
    assert data["data"]["token_type"] == "bearer"

    await audit_trail.drain()
    logins = await audit_entries(database, action=AuditAction.LOGIN.value)
    assert [entry.user_id for entry in logins] == [user.id]


@pytest.mark.asyncio
async def test_login_invalid_credentials_is_audited(client: AsyncClient, audit_trail, database):
    response = await client.post(f"{AUTH}/login", json={"email": "wrong@example.com", "password": "wrongpassword"})
    assert response.status_code == 401

    await audit_trail.drain()
    failed = await audit_entries(database, action=AuditAction.LOGIN_FAILED.value)
    assert len(failed) == 1
    assert failed[0].user_id is None


@pytest.mark.asyncio
async def test_banned_user_cannot_login(client: AsyncClient, db_session: AsyncSession):
    user = await create_user(db_session, email="banned@example.com")
    user.banned = True
    await db_session.commit()

    response = await client.post(f"{AUTH}/login", json={"email": "banned@example.com", "password": "password123"})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_expired_ban_allows_login(client: AsyncClient, db_session: AsyncSession):
    user = await create_user(db_session, email="paroled@example.com")
    user.banned = True
    user.ban_expires = datetime.now(timezone.utc) - timedelta(minutes=1)
    await db_session.commit()

    response = await client.post(f"{AUTH}/login", json={"email": "paroled@example.com", "password": "password123"})
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_refresh_token_rotation_revokes_old_token(client: AsyncClient, db_session: AsyncSession):
    await create_user(db_session, email="rotation@example.com")

    login_response = await client.post(f"{AUTH}/login", json={"email": "rotation@example.com", "password": "password123"})
    assert login_response.status_code == 200
    first_refresh = login_response.json()["data"]["refresh_token"]

    rotate_response = await client.post(f"{AUTH}/refresh", headers={"Authorization": f"Bearer {first_refresh}"})
    assert rotate_response.status_code == 200
    second_refresh = rotate_response.json()["data"]["refresh_token"]
    assert second_refresh != first_refresh

    reuse_old_response = await client.post(f"{AUTH}/refresh", headers={"Authorization": f"Bearer {first_refresh}"})
    assert reuse_old_response.status_code == 401


@pytest.mark.asyncio
async def test_refresh_token_invalid(client: AsyncClient):
    response = await client.post(f"{AUTH}/refresh", headers={"Authorization": "Bearer invalid_token"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_access_token_cannot_refresh(client: AsyncClient, regular_user: User):
    response = await client.post(f"{AUTH}/refresh", headers=auth_headers(regular_user))
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_logout_revokes_refresh_tokens(client: AsyncClient, db_session: AsyncSession):
    await create_user(db_session, email="leaving@example.com")
    login_response = await client.post(f"{AUTH}/login", json={"email": "leaving@example.com", "password": "password123"})
    tokens = login_response.json()["data"]

    logout = await client.post(f"{AUTH}/logout", headers={"Authorization": f"Bearer {tokens['access_token']}"})
    assert logout.status_code == 200

    refresh = await client.post(f"{AUTH}/refresh", headers={"Authorization": f"Bearer {tokens['refresh_token']}"})
    assert refresh.status_code == 401


@pytest.mark.asyncio
async def test_me_returns_session_user(client: AsyncClient, super_user: User, super_user_headers):
    response = await client.get(f"{AUTH}/me", headers=super_user_headers)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["id"] == str(super_user.id)
    assert data["role"] == "super_user"
    assert "hashed_password" not in data


@pytest.mark.asyncio
async def test_me_without_token_is_unauthorized(client: AsyncClient):
    response = await client.get(f"{AUTH}/me")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_token_for_deleted_user_is_unauthorized(client: AsyncClient):
    headers = {"Authorization": f"Bearer {security.create_access_token(subject='0b7d1c0e-8a53-4c39-9a52-0d3f1b6f4f11')}"}
    response = await client.get(f"{AUTH}/me", headers=headers)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_change_password(client: AsyncClient, db_session: AsyncSession):
    user = await create_user(db_session, email="changer@example.com")
    headers = auth_headers(user)

    wrong = await client.put(
        f"{AUTH}/me/password",
        headers=headers,
        json={"current_password": "nope-nope", "new_password": "newpassword1"},
    )
    assert wrong.status_code == 400

    too_short = await client.put(
        f"{AUTH}/me/password",
        headers=headers,
        json={"current_password": "password123", "new_password": "short"},
    )
    assert too_short.status_code == 400

    ok = await client.put(
        f"{AUTH}/me/password",
        headers=headers,
        json={"current_password": "password123", "new_password": "newpassword1"},
    )
    assert ok.status_code == 200

    login = await client.post(f"{AUTH}/login", json={"email": "changer@example.com", "password": "newpassword1"})
    assert login.status_code == 200


@pytest.mark.asyncio
async def test_setup_status_reports_empty_system(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "FIRST_ADMIN_BOOTSTRAP_TOKEN", "s3cret")
    response = await client.get(f"{AUTH}/setup-status")
    assert response.status_code == 200
    assert response.json()["data"] == {"is_empty": True, "requires_token": True}


@pytest.mark.asyncio
async def test_first_admin_bootstrap_succeeds_exactly_once(client: AsyncClient, audit_trail, database, monkeypatch):
    monkeypatch.setattr(settings, "FIRST_ADMIN_BOOTSTRAP_TOKEN", "s3cret")
    payload = {"email": "root@example.com", "name": "Root", "password": "rootpassword", "bootstrapToken": "s3cret"}

    first = await client.post(f"{AUTH}/signup-first-admin", json=payload)
    assert first.status_code == 201
    created = first.json()["data"]
    assert created["role"] == "admin"
    assert created["email_verified"] is True

    second = await client.post(
        f"{AUTH}/signup-first-admin",
        json={**payload, "email": "root2@example.com"},
    )
    assert second.status_code == 409
    assert await count_rows(database, User) == 1

    await audit_trail.drain()
    entries = await audit_entries(database, action=AuditAction.FIRST_ADMIN_CREATED.value)
    assert len(entries) == 1
    assert entries[0].resource_id == created["id"]

    status_response = await client.get(f"{AUTH}/setup-status")
    assert status_response.json()["data"] == {"is_empty": False, "requires_token": False}


@pytest.mark.asyncio
async def test_first_admin_requires_configured_token(client: AsyncClient, database, monkeypatch):
    monkeypatch.setattr(settings, "FIRST_ADMIN_BOOTSTRAP_TOKEN", "s3cret")
    payload = {"email": "root@example.com", "name": "Root", "password": "rootpassword"}

    missing = await client.post(f"{AUTH}/signup-first-admin", json=payload)
    assert missing.status_code == 400

    wrong = await client.post(f"{AUTH}/signup-first-admin", json={**payload, "bootstrap_token": "S3CRET"})
    assert wrong.status_code == 403

    assert await count_rows(database, User) == 0


@pytest.mark.asyncio
async def test_first_admin_without_configured_token(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "FIRST_ADMIN_BOOTSTRAP_TOKEN", None)
    response = await client.post(
        f"{AUTH}/signup-first-admin",
        json={"email": "root@example.com", "name": "Root", "password": "rootpassword"},
    )
    assert response.status_code == 201


@pytest.mark.asyncio
async def test_bootstrap_rejected_once_users_exist(client: AsyncClient, regular_user: User, monkeypatch):
    monkeypatch.setattr(settings, "FIRST_ADMIN_BOOTSTRAP_TOKEN", "s3cret")
    response = await client.post(
        f"{AUTH}/signup-first-admin",
        json={"email": "late@example.com", "name": "Late", "password": "latepassword", "bootstrapToken": "s3cret"},
    )
    assert response.status_code == 409
    assert response.json()["detail"] == "First admin already exists"


@pytest.mark.asyncio
async def test_signup_creates_plain_user(client: AsyncClient, admin_user: User):
    response = await client.post(
        f"{AUTH}/signup",
        json={"email": "new@example.com", "name": "New Person", "password": "password123"},
    )
    assert response.status_code == 201
    assert response.json()["data"]["role"] == Role.USER.value

    duplicate = await client.post(
        f"{AUTH}/signup",
        json={"email": "new@example.com", "name": "New Person", "password": "password123"},
    )
    assert duplicate.status_code == 409


@pytest.mark.asyncio
async def test_signup_refused_on_empty_system(client: AsyncClient, database):
    response = await client.post(
        f"{AUTH}/signup",
        json={"email": "first@example.com", "name": "First", "password": "password123"},
    )
    assert response.status_code == 409
    assert await count_rows(database, User) == 0


@pytest.mark.asyncio
async def test_signup_password_too_short(client: AsyncClient, admin_user: User):
    response = await client.post(
        f"{AUTH}/signup",
        json={"email": "short@example.com", "name": "Short", "password": "1234567"},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_login_rate_limit_triggers(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_AUTH_MAX", 3)
    for _ in range(3):
        response = await client.post(f"{AUTH}/login", json={"email": "wrong@example.com", "password": "wrongpassword"})
        assert response.status_code == 401

    blocked = await client.post(f"{AUTH}/login", json={"email": "wrong@example.com", "password": "wrongpassword"})
    assert blocked.status_code == 429
    assert "Retry-After" in blocked.headers


@pytest.mark.asyncio
async def test_signup_rejects_disposable_email(client: AsyncClient, admin_user: User, database):
    response = await client.post(
        f"{AUTH}/signup",
        json={"email": "someone@mx.mailinator.com", "name": "Throwaway", "password": "password123"},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Disposable email addresses are not allowed."
    assert await count_rows(database, User) == 1


@pytest.mark.asyncio
async def test_signup_rejects_domain_without_mail(client: AsyncClient, admin_user: User, monkeypatch):
    def undeliverable(email, **kwargs):
        assert kwargs["check_deliverability"] is True
        raise EmailUndeliverableError("The domain name nomail.example does not accept email.")

    monkeypatch.setattr(settings, "SIGNUP_EMAIL_CHECK_DELIVERABILITY", True)
    monkeypatch.setattr(email_checks, "validate_email", undeliverable)

    response = await client.post(
        f"{AUTH}/signup",
        json={"email": "someone@nomail.example", "name": "No Mail", "password": "password123"},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Email domain is not valid."


@pytest.mark.asyncio
async def test_first_admin_rejects_invalid_email(client: AsyncClient, database, monkeypatch):
    def invalid(email, **kwargs):
        raise EmailNotValidError("bad address")

    monkeypatch.setattr(settings, "FIRST_ADMIN_BOOTSTRAP_TOKEN", None)
    monkeypatch.setattr(settings, "SIGNUP_EMAIL_CHECK_DELIVERABILITY", True)
    monkeypatch.setattr(email_checks, "validate_email", invalid)

    response = await client.post(
        f"{AUTH}/signup-first-admin",
        json={"email": "root@example.com", "name": "Root", "password": "rootpassword"},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Email address format is invalid."
    assert await count_rows(database, User) == 0


@pytest.mark.asyncio
async def test_deliverable_email_passes_screening(client: AsyncClient, admin_user: User, monkeypatch):
    checked = []

    def deliverable(email, **kwargs):
        checked.append(email)

    monkeypatch.setattr(settings, "SIGNUP_EMAIL_CHECK_DELIVERABILITY", True)
    monkeypatch.setattr(email_checks, "validate_email", deliverable)

    response = await client.post(
        f"{AUTH}/signup",
        json={"email": "real@example.com", "name": "Real", "password": "password123"},
    )
    assert response.status_code == 201
    assert checked == ["real@example.com"]


@pytest.mark.asyncio
async def test_bootstrap_takes_advisory_lock_on_postgres():
    class FakeDialect:
        name = "postgresql"

    class FakeBind:
        dialect = FakeDialect()

    class FakeSession:
        def __init__(self):
            self.statements = []

        def get_bind(self):
            return FakeBind()

        async def execute(self, statement, params=None):
            self.statements.append((str(statement), params))

    session = FakeSession()
    await auth_router._lock_bootstrap(session)
    assert session.statements == [
        ("SELECT pg_advisory_xact_lock(:key)", {"key": auth_router.BOOTSTRAP_LOCK_KEY})
    ]


@pytest.mark.asyncio
async def test_bootstrap_lock_is_skipped_on_sqlite(db_session: AsyncSession):
    await auth_router._lock_bootstrap(db_session)
    assert not db_session.in_transaction()
