import pytest

from authcore.service.errors import RateLimitedError
from authcore.service.rate_limit import (
    ADMIN,
    AUTH,
    GENERAL,
    OTP,
    PRESETS,
    RateLimitConfig,
    RateLimitDecision,
    RateLimiter,
    RateLimitSubject,
    fixed_window_hit,
)
from authcore.storage.cache import KeyedCache


@pytest.fixture
def cache(fake_redis):
    return KeyedCache(client=fake_redis)


def _limiter(cache, **overrides):
    params = {"window_seconds": 60, "max_requests": 3, "prefix": "test"}
    params.update(overrides)
    return RateLimiter(cache, RateLimitConfig(**params))


async def test_admits_up_to_limit_then_rejects(cache):
    limiter = _limiter(cache)
    subject = RateLimitSubject(ip="10.0.0.1")
    remaining = [(await limiter.hit(subject)).remaining for _ in range(3)]
    assert remaining == [2, 1, 0]

    with pytest.raises(RateLimitedError) as excinfo:
        await limiter.hit(subject)
    assert 0 < excinfo.value.retry_after <= 60
    assert excinfo.value.detail["limit"] == 3
    # Rejections do not push the counter further
    assert (await limiter.status("10.0.0.1", None))["current"] == 3


async def test_window_resets(cache, fake_redis):
    limiter = _limiter(cache, max_requests=1)
    subject = RateLimitSubject(ip="10.0.0.1")
    await limiter.hit(subject)
    with pytest.raises(RateLimitedError):
        await limiter.hit(subject)
    fake_redis.advance(61)
    assert (await limiter.hit(subject)).remaining == 0


async def test_keys_separate_ips_and_users(cache):
    limiter = _limiter(cache, max_requests=1)
    await limiter.hit(RateLimitSubject(ip="10.0.0.1"))
    await limiter.hit(RateLimitSubject(ip="10.0.0.2"))
    await limiter.hit(RateLimitSubject(ip="10.0.0.1", user_id="user-1"))
    assert limiter.key_for("10.0.0.1", None) == "ratelimit:test:10.0.0.1:anonymous"
    assert limiter.key_for("10.0.0.1", "user-1") == "ratelimit:test:10.0.0.1:user-1"


async def test_skip_successful_returns_the_hit(cache):
    limiter = _limiter(cache, max_requests=2, skip_successful=True)
    subject = RateLimitSubject(ip="10.0.0.1")
    for _ in range(5):
        decision = await limiter.hit(subject)
        await limiter.settle(decision, succeeded=True)
    decision = await limiter.hit(subject)
    await limiter.settle(decision, succeeded=False)
    assert (await limiter.status("10.0.0.1", None))["current"] == 1


async def test_skip_failed_returns_the_hit(cache):
    limiter = _limiter(cache, max_requests=2, skip_failed=True)
    subject = RateLimitSubject(ip="10.0.0.1")
    decision = await limiter.hit(subject)
    await limiter.settle(decision, succeeded=False)
    assert (await limiter.status("10.0.0.1", None))["current"] == 0


async def test_skip_predicate_bypasses_counting(cache):
    limiter = RateLimiter(cache, GENERAL)
    decision = await limiter.hit(RateLimitSubject(ip="10.0.0.1", path="/healthz"))
    assert decision.counted is False
    assert (await limiter.status("10.0.0.1", None))["current"] == 0


async def test_clear_and_status(cache):
    limiter = _limiter(cache)
    await limiter.hit(RateLimitSubject(ip="10.0.0.1", user_id="u"))
    status = await limiter.status("10.0.0.1", "u")
    assert status["current"] == 1
    assert 0 < status["ttl"] <= 60
    assert status["limit"] == 3
    assert await limiter.clear("10.0.0.1", "u")
    assert (await limiter.status("10.0.0.1", "u"))["current"] == 0


async def test_unavailable_cache_admits(cache, fake_redis):
    limiter = _limiter(cache, max_requests=1)
    fake_redis.fail = True
    for _ in range(5):
        decision = await limiter.hit(RateLimitSubject(ip="10.0.0.1"))
        assert decision.counted is False


async def test_disabled_cache_admits():
    limiter = _limiter(KeyedCache(), max_requests=1)
    for _ in range(3):
        await limiter.hit(RateLimitSubject(ip="10.0.0.1"))


async def test_fixed_window_hit_repairs_missing_expiry(cache, fake_redis):
    await fake_redis.set("counter", "4")
    count, seconds_left = await fixed_window_hit(cache, "counter", 30)
    assert count == 5
    assert seconds_left == 30
    assert await cache.ttl("counter") == 30


def test_decision_headers():
    limiter_headers = {}
    RateLimitDecision("k", limit=10, remaining=-1, reset_seconds=42).apply_headers(limiter_headers)
    assert limiter_headers == {
        "X-RateLimit-Limit": "10",
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": "42",
    }


def test_presets():
    assert PRESETS == {"general": GENERAL, "auth": AUTH, "otp": OTP, "admin": ADMIN}
    assert (GENERAL.max_requests, GENERAL.window_seconds) == (100, 900)
    assert (AUTH.max_requests, AUTH.skip_successful) == (10, True)
    assert OTP.max_requests == 5
    assert (ADMIN.max_requests, ADMIN.window_seconds) == (200, 900)


async def test_admin_preset_skips_super_admins(cache):
    limiter = RateLimiter(cache, ADMIN)
    super_admin = RateLimitSubject(ip="10.0.0.9", user_id="u-1", role="SUPER_ADMIN")
    admin = RateLimitSubject(ip="10.0.0.9", user_id="u-2", role="ADMIN")

    skipped = await limiter.hit(super_admin)
    assert skipped.counted is False
    assert (await limiter.status("10.0.0.9", "u-1"))["current"] == 0

    counted = await limiter.hit(admin)
    assert counted.counted is True
    assert counted.remaining == 199
