"""
Per-identity, per-route-category rate limiting.

Fixed windows keyed by ``ratelimit:{category}:{identity}``. The Redis backend
uses INCR + EXPIRE (nx) + TTL inside one MULTI/EXEC pipeline; the memory
backend does increment-and-check under a lock. Neither does a read-then-write.
"""
from __future__ import annotations

import enum
import ipaddress
import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

from app.config import Settings
from app.services.redaction import mask_token

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"


class RouteCategory(str, enum.Enum):
    signup = "signup"
    verification = "verification"
    general = "general"
    admin = "admin"


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds
    retry_after_seconds: int
    bypassed: bool = False

    @property
    def reset(self) -> datetime:
        return datetime.fromtimestamp(self.reset_at, tz=timezone.utc)

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if not self.success:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


def rules_from_settings(settings: Settings) -> dict[RouteCategory, RateLimitRule]:
    return {
        RouteCategory.signup: RateLimitRule(settings.rate_limit_signup, settings.rate_limit_signup_window_seconds),
        RouteCategory.verification: RateLimitRule(
            settings.rate_limit_verification, settings.rate_limit_verification_window_seconds
        ),
        RouteCategory.general: RateLimitRule(settings.rate_limit_general, settings.rate_limit_general_window_seconds),
        RouteCategory.admin: RateLimitRule(settings.rate_limit_admin, settings.rate_limit_admin_window_seconds),
    }


def resolve_client_identity(headers: Mapping[str, str], trusted_ip: str | None = None) -> str:
    """Trusted-proxy IP, then first X-Forwarded-For hop, then X-Real-IP, then 'unknown'."""
    if trusted_ip:
        return trusted_ip
    forwarded = (headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return UNKNOWN_CLIENT


def client_ip_address(identity: str) -> str | None:
    """The identity as a normalised IP address, or None when it is not one."""
    try:
        return str(ipaddress.ip_address(identity.strip()))
    except ValueError:
        return None


class MemoryRateLimitBackend:
    """In-process fixed-window counters. Single process only."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[int, float]] = {}

    async def hit(self, key: str, window_seconds: int) -> tuple[int, float]:
        """Increment the counter for key and return (count, reset_at)."""
        now = self._clock()
        with self._lock:
            count, reset_at = self._windows.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, reset_at)
        return count, reset_at

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, reset_at) in self._windows.items() if now >= reset_at]
            for k in expired:
                del self._windows[k]
        return len(expired)

    async def close(self) -> None:
        return None


class RedisRateLimitBackend:
    """Shared counters in Redis, safe across processes."""

    def __init__(self, client, clock: Callable[[], float] = time.time):
        self._client = client
        self._clock = clock

    @classmethod
    def from_url(cls, url: str) -> "RedisRateLimitBackend":
        from redis.asyncio import ConnectionPool, Redis

        pool = ConnectionPool.from_url(url, decode_responses=True)
        return cls(Redis(connection_pool=pool))

    async def hit(self, key: str, window_seconds: int) -> tuple[int, float]:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(key, 1)
            pipe.expire(key, window_seconds, nx=True)
            pipe.ttl(key)
            count, _, ttl = await pipe.execute()
        ttl_int = int(ttl) if ttl is not None and int(ttl) > 0 else window_seconds
        return int(count), self._clock() + ttl_int

    async def close(self) -> None:
        await self._client.aclose()


class RateLimiter:
    def __init__(self, backend, rules: Mapping[RouteCategory, RateLimitRule], clock: Callable[[], float] = time.time):
        self.backend = backend
        self.rules = dict(rules)
        self._clock = clock

    async def check(self, identity: str, category: RouteCategory, *, bypass: bool = False) -> RateLimitResult:
        rule = self.rules[category]
        if bypass:
            # Explicit opt-in only; always leaves a trace.
            logger.info("Rate limit bypassed: category=%s identity=%s", category.value, mask_token(identity))
            return RateLimitResult(
                success=True,
                limit=rule.limit,
                remaining=rule.limit,
                reset_at=self._clock() + rule.window_seconds,
                retry_after_seconds=0,
                bypassed=True,
            )
        key = f"ratelimit:{category.value}:{identity or UNKNOWN_CLIENT}"
        count, reset_at = await self.backend.hit(key, rule.window_seconds)
        success = count <= rule.limit
        retry_after = 0 if success else max(1, math.ceil(reset_at - self._clock()))
        return RateLimitResult(
            success=success,
            limit=rule.limit,
            remaining=max(0, rule.limit - count),
            reset_at=reset_at,
            retry_after_seconds=retry_after,
        )

    @property
    def is_distributed(self) -> bool:
        return isinstance(self.backend, RedisRateLimitBackend)

    async def close(self) -> None:
        await self.backend.close()


def build_rate_limiter(settings: Settings) -> RateLimiter:
    if settings.redis_url:
        backend = RedisRateLimitBackend.from_url(settings.redis_url)
    else:
        logger.warning("REDIS_URL not set; rate limiting uses in-process counters")
        backend = MemoryRateLimitBackend()
    return RateLimiter(backend, rules_from_settings(settings))


def purge_memory_limiter(limiter: Optional[RateLimiter]) -> None:
    """Scheduler job: drop expired windows from the in-process backend."""
    if limiter is None or not isinstance(limiter.backend, MemoryRateLimitBackend):
        return
    removed = limiter.backend.purge_expired()
    if removed:
        logger.debug("Rate limit cleanup removed %d expired window(s)", removed)
