from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from authcore.logging import get_logger
from authcore.service.errors import RateLimitedError
from authcore.storage.cache import KeyedCache
from authcore.storage.cache_keys import CacheKeys

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitSubject:
    """Who is being counted.

    ``user_id`` and ``role`` come only from a verified access token; an
    unverified bearer leaves both unset.
    """

    ip: str
    user_id: Optional[str] = None
    role: Optional[str] = None
    path: str = ""


@dataclass(frozen=True)
class RateLimitConfig:
    window_seconds: int
    max_requests: int
    prefix: str
    message: str = "Too many requests. Please try again later."
    skip_successful: bool = False
    skip_failed: bool = False
    skip: Optional[Callable[[RateLimitSubject], bool]] = None


@dataclass
class RateLimitDecision:
    """Outcome of one admission check."""

    key: str
    limit: int
    remaining: int
    reset_seconds: int
    counted: bool = True

    def apply_headers(self, headers) -> None:
        headers["X-RateLimit-Limit"] = str(self.limit)
        headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def fixed_window_hit(
    cache: KeyedCache, key: str, window_seconds: int
) -> tuple[Optional[int], int]:
    """Count one hit in a fixed window.

    Returns ``(count, seconds_left)``; ``count`` is ``None`` when the cache
    cannot count, in which case callers admit the request.
    """
    count = await cache.increment(key)
    if count is None:
        return None, window_seconds
    if count == 1:
        await cache.expire(key, window_seconds)
        return count, window_seconds
    remaining_ttl = await cache.ttl(key)
    if remaining_ttl < 0:
        # counter lost its expiry; start the window over
        await cache.expire(key, window_seconds)
        remaining_ttl = window_seconds
    return count, remaining_ttl


class RateLimiter:
    """Fixed-window counter keyed by prefix, client IP and user id."""

    def __init__(self, cache: KeyedCache, config: RateLimitConfig) -> None:
        self.cache = cache
        self.config = config

    def key_for(self, ip: str, user_id: Optional[str]) -> str:
        return CacheKeys.rate_limit(self.config.prefix, ip, user_id)

    async def hit(self, subject: RateLimitSubject) -> RateLimitDecision:
        """Admit or reject one request; raises :class:`RateLimitedError` when over."""
        cfg = self.config
        key = self.key_for(subject.ip, subject.user_id)
        if cfg.skip is not None and cfg.skip(subject):
            return RateLimitDecision(key, cfg.max_requests, cfg.max_requests, 0, counted=False)

        count, seconds_left = await fixed_window_hit(self.cache, key, cfg.window_seconds)
        if count is None:
            logger.warning("rate_limit_unavailable_fail_open", prefix=cfg.prefix, key=key)
            return RateLimitDecision(
                key, cfg.max_requests, cfg.max_requests, cfg.window_seconds, counted=False
            )
        if count > cfg.max_requests:
            # Rejected requests do not consume the window
            await self.cache.decrement(key)
            logger.warning(
                "rate_limit_exceeded",
                prefix=cfg.prefix,
                ip=subject.ip,
                user_id=subject.user_id or "anonymous",
                path=subject.path,
                limit=cfg.max_requests,
            )
            raise RateLimitedError(
                cfg.message,
                retry_after=seconds_left,
                detail={"limit": cfg.max_requests, "remaining": 0},
            )
        return RateLimitDecision(key, cfg.max_requests, cfg.max_requests - count, seconds_left)

    async def settle(self, decision: RateLimitDecision, *, succeeded: bool) -> None:
        """Give the hit back when the outcome is configured not to count."""
        if not decision.counted:
            return
        if (succeeded and self.config.skip_successful) or (
            not succeeded and self.config.skip_failed
        ):
            await self.cache.decrement(decision.key)

    async def clear(self, ip: str, user_id: Optional[str]) -> bool:
        return await self.cache.delete(self.key_for(ip, user_id))

    async def status(self, ip: str, user_id: Optional[str]) -> dict:
        key = self.key_for(ip, user_id)
        current = await self.cache.get(key)
        remaining_ttl = await self.cache.ttl(key)
        return {
            "key": key,
            "current": int(current or 0),
            "ttl": max(0, remaining_ttl),
            "limit": self.config.max_requests,
        }


def _is_health_probe(subject: RateLimitSubject) -> bool:
    return subject.path in {"/healthz", "/health"}


GENERAL = RateLimitConfig(
    window_seconds=15 * 60,
    max_requests=100,
    prefix="general",
    message="Too many requests from this IP. Please try again after 15 minutes.",
    skip=_is_health_probe,
)

AUTH = RateLimitConfig(
    window_seconds=15 * 60,
    max_requests=10,
    prefix="auth",
    message="Too many authentication attempts. Please try again after 15 minutes.",
    skip_successful=True,
)

OTP = RateLimitConfig(
    window_seconds=15 * 60,
    max_requests=5,
    prefix="otp",
    message="Too many OTP requests. Please try again after 15 minutes.",
)


def _is_super_admin(subject: RateLimitSubject) -> bool:
    return subject.role == "SUPER_ADMIN"


ADMIN = RateLimitConfig(
    window_seconds=15 * 60,
    max_requests=200,
    prefix="admin",
    message="Too many admin requests. Please try again later.",
    skip=_is_super_admin,
)

PRESETS: dict[str, RateLimitConfig] = {
    GENERAL.prefix: GENERAL,
    AUTH.prefix: AUTH,
    OTP.prefix: OTP,
    ADMIN.prefix: ADMIN,
}
