from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, Request
from jose import JWTError, jwt

from ems.config import settings
from ems.core.exceptions import AccessDenied, RateLimited

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int
    message: str


def _rule(route_class: str) -> RateLimitRule:
    # Read on every request so limits follow the live settings object.
    rules = {
        "auth": RateLimitRule(
            settings.RATE_LIMIT_AUTH_MAX,
            settings.RATE_LIMIT_AUTH_WINDOW_SECONDS,
            "Rate limit reached. Too many authentication attempts. Please try again later.",
        ),
        "employee_create": RateLimitRule(
            settings.RATE_LIMIT_EMPLOYEE_CREATE_MAX,
            settings.RATE_LIMIT_EMPLOYEE_CREATE_WINDOW_SECONDS,
            "Rate limit reached. Too many employees created. Please try again later.",
        ),
        "employee_read": RateLimitRule(
            settings.RATE_LIMIT_EMPLOYEE_READ_MAX,
            settings.RATE_LIMIT_EMPLOYEE_READ_WINDOW_SECONDS,
            "Too many requests. Please slow down.",
        ),
        "employee_write": RateLimitRule(
            settings.RATE_LIMIT_EMPLOYEE_WRITE_MAX,
            settings.RATE_LIMIT_EMPLOYEE_WRITE_WINDOW_SECONDS,
            "Too many requests. Please try again later.",
        ),
        "default": RateLimitRule(
            settings.RATE_LIMIT_DEFAULT_MAX,
            settings.RATE_LIMIT_DEFAULT_WINDOW_SECONDS,
            "Too many requests. Please try again later.",
        ),
    }
    return rules[route_class]


ROUTE_CLASSES = ("auth", "employee_create", "employee_read", "employee_write", "default")


class SlidingWindowRateLimiter:
    def __init__(self) -> None:
        self._entries: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()

    async def allow(self, key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
        now = time.monotonic()
        async with self._lock:
            bucket = self._entries.setdefault(key, deque())
            boundary = now - window_seconds
            while bucket and bucket[0] <= boundary:
                bucket.popleft()
            if len(bucket) >= limit:
                retry_after = max(int(window_seconds - (now - bucket[0])) + 1, 1)
                return False, retry_after
            bucket.append(now)
            return True, 0

    async def reset(self) -> None:
        async with self._lock:
            self._entries.clear()


_rate_limiter = SlidingWindowRateLimiter()


async def reset_rate_limiter_state() -> None:
    await _rate_limiter.reset()


def client_ip(request: Request, forwarded_for: str | None = None) -> str:
    forwarded = (forwarded_for or request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
    client_host = request.client.host if request.client else None
    return forwarded or client_host or "127.0.0.1"


def _actor_key(request: Request, forwarded_for: str | None) -> str:
    authorization = request.headers.get("authorization") or ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        except JWTError:
            payload = {}
        subject = payload.get("sub")
        if subject:
            return f"user:{subject}"
    return f"ip:{client_ip(request, forwarded_for)}"


def is_bot(user_agent: str | None) -> bool:
    if not user_agent or not user_agent.strip():
        return True
    lowered = user_agent.lower()
    return any(marker.lower() in lowered for marker in settings.EDGE_BLOCKED_USER_AGENTS)


def edge_protection(route_class: str = "default"):
    """Bot detection plus a sliding-window rate limit, run before authentication."""
    if route_class not in ROUTE_CLASSES:
        raise ValueError(f"Unknown rate limit route class: {route_class}")

    async def dependency(
        request: Request,
        x_forwarded_for: Annotated[str | None, Header(alias="X-Forwarded-For")] = None,
    ) -> None:
        mode = settings.EDGE_PROTECTION_MODE
        if mode == "OFF":
            return

        actor = _actor_key(request, x_forwarded_for)
        if is_bot(request.headers.get("user-agent")):
            if mode == "DRY_RUN":
                logger.warning("Edge protection (dry run) would block bot request from %s", actor)
            else:
                logger.info("Edge protection blocked bot request from %s on %s", actor, request.url.path)
                raise AccessDenied("Access forbidden.")

        rule = _rule(route_class)
        allowed, retry_after = await _rate_limiter.allow(
            f"{route_class}:{actor}",
            limit=rule.limit,
            window_seconds=rule.window_seconds,
        )
        if not allowed:
            if mode == "DRY_RUN":
                logger.warning("Edge protection (dry run) would rate limit %s on %s", actor, route_class)
                return
            logger.info("Edge protection rate limited %s on %s", actor, route_class)
            raise RateLimited(rule.message, retry_after)

    return Depends(dependency)
