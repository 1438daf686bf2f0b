import pytest
from httpx import AsyncClient

from ems.config import settings
from ems.core.rate_limit import SlidingWindowRateLimiter, edge_protection, is_bot

EMPLOYEES = f"{settings.API_V1_STR}/employees"
LOGIN = f"{settings.API_V1_STR}/auth/login"


@pytest.mark.parametrize(
    "user_agent,expected",
    [
        (None, True),
        ("", True),
        ("   ", True),
        ("Googlebot/2.1 (+http://www.google.com/bot.html)", True),
        ("curl/8.4.0", True),
        ("Mozilla/5.0 HeadlessChrome/120.0", True),
        ("Mozilla/5.0 (X11; Linux x86_64) Firefox/131.0", False),
        ("python-httpx/0.27.0", False),
    ],
)
def test_is_bot(user_agent, expected):
    assert is_bot(user_agent) is expected


def test_unknown_route_class_is_rejected():
    with pytest.raises(ValueError):
        edge_protection("uploads")


@pytest.mark.asyncio
async def test_sliding_window_limiter():
    limiter = SlidingWindowRateLimiter()
    assert await limiter.allow("k", limit=2, window_seconds=60) == (True, 0)
    assert await limiter.allow("k", limit=2, window_seconds=60) == (True, 0)
    allowed, retry_after = await limiter.allow("k", limit=2, window_seconds=60)
    assert allowed is False
    assert 1 <= retry_after <= 61
    assert (await limiter.allow("other", limit=2, window_seconds=60))[0] is True

    await limiter.reset()
    assert (await limiter.allow("k", limit=2, window_seconds=60))[0] is True


@pytest.mark.asyncio
async def test_bot_user_agent_is_forbidden_before_auth(client: AsyncClient, user_headers):
    response = await client.get(EMPLOYEES, headers={**user_headers, "User-Agent": "curl/8.4.0"})
    assert response.status_code == 403
    assert response.json()["detail"] == "Access forbidden."

    anonymous = await client.post(LOGIN, json={"email": "a@example.com", "password": "password123"}, headers={"User-Agent": ""})
    assert anonymous.status_code == 403


@pytest.mark.asyncio
async def test_dry_run_only_logs(client: AsyncClient, user_headers, monkeypatch, caplog):
    monkeypatch.setattr(settings, "EDGE_PROTECTION_MODE", "DRY_RUN")
    monkeypatch.setattr(settings, "RATE_LIMIT_EMPLOYEE_READ_MAX", 1)

    for _ in range(3):
        response = await client.get(EMPLOYEES, headers={**user_headers, "User-Agent": "scrapy/2.11"})
        assert response.status_code == 200

    assert "would block bot request" in caplog.text
    assert "would rate limit" in caplog.text


@pytest.mark.asyncio
async def test_off_mode_skips_protection(client: AsyncClient, user_headers, monkeypatch):
    monkeypatch.setattr(settings, "EDGE_PROTECTION_MODE", "OFF")
    monkeypatch.setattr(settings, "RATE_LIMIT_EMPLOYEE_READ_MAX", 1)

    for _ in range(3):
        response = await client.get(EMPLOYEES, headers={**user_headers, "User-Agent": "curl/8.4.0"})
        assert response.status_code == 200


@pytest.mark.asyncio
async def test_limits_are_tracked_per_user(client: AsyncClient, user_headers, admin_headers, monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_EMPLOYEE_READ_MAX", 1)

    assert (await client.get(EMPLOYEES, headers=user_headers)).status_code == 200
    assert (await client.get(EMPLOYEES, headers=user_headers)).status_code == 429
    assert (await client.get(EMPLOYEES, headers=admin_headers)).status_code == 200


@pytest.mark.asyncio
async def test_anonymous_limits_follow_forwarded_ip(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_EMPLOYEE_READ_MAX", 1)

    assert (await client.get(EMPLOYEES, headers={"X-Forwarded-For": "203.0.113.5"})).status_code == 401
    assert (await client.get(EMPLOYEES, headers={"X-Forwarded-For": "203.0.113.5"})).status_code == 429
    assert (await client.get(EMPLOYEES, headers={"X-Forwarded-For": "198.51.100.7, 10.0.0.1"})).status_code == 401
