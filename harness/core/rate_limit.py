from __future__ import annotations

from dataclasses import dataclass
from time import time
from typing import Any, Awaitable, Callable

from fastapi import HTTPException, Request, status

from .config import RateLimitRule, Settings, get_settings
from .identity import identity_from_headers
from .logging import get_logger

logger = get_logger(name=__name__)


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int | None = None


def window_key(namespace: str, rule_name: str, identifier: str, rule: RateLimitRule, now: float) -> str:
    """Fixed-window counter key; every window gets a fresh counter."""
    window = int(now // rule.window_seconds)
    return f"{namespace}:{rule_name}:{identifier}:{window}"


async def consume(redis: Any, key: str, rule: RateLimitRule) -> RateLimitDecision:
    try:
        count = await redis.incr(key)
        if count == 1:
            await redis.expire(key, rule.window_seconds)
        if count <= rule.capacity:
            return RateLimitDecision(allowed=True)
        ttl = await redis.ttl(key)
    except Exception as exc:  # pragma: no cover
        logger.warning("rate_limit_redis_error", error=str(exc), key=key)
        return RateLimitDecision(allowed=True)
    return RateLimitDecision(allowed=False, retry_after=ttl if ttl and ttl > 0 else rule.window_seconds)


def client_identifier(request: Request) -> str:
    """Gateway-asserted user first, then the forwarded or direct client address."""
    identity = identity_from_headers(request.headers)
    if identity.subject:
        return identity.subject
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",", 1)[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "anonymous"


def _settings_for(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    return settings if isinstance(settings, Settings) else get_settings()


def rate_limit_dependency(rule_name: str) -> Callable[[Request], Awaitable[None]]:
    """FastAPI dependency enforcing the named rule from ``settings.rate_limit``."""

    async def _dependency(request: Request) -> None:
        config = _settings_for(request).rate_limit
        rule: RateLimitRule | None = getattr(config, rule_name, None)
        if not config.enabled or rule is None:
            return
        redis = getattr(request.app.state, "redis", None)
        if redis is None:
            logger.warning("rate_limit_store_missing", rule=rule_name)
            return

        identifier = client_identifier(request)
        decision = await consume(redis, window_key(config.namespace, rule_name, identifier, rule, time()), rule)
        if decision.allowed:
            return
        retry_after = str(max(1, decision.retry_after or rule.window_seconds))
        logger.warning("rate_limit_exceeded", rule=rule_name, identifier=identifier, retry_after=retry_after)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests",
            headers={"Retry-After": retry_after},
        )

    return _dependency


__all__ = ["RateLimitDecision", "client_identifier", "consume", "rate_limit_dependency", "window_key"]
