import pytest

from authcore.service.revocation import RevocationRegistry
from authcore.storage.cache import KeyedCache
from authcore.storage.cache_keys import CacheKeys


@pytest.fixture
def cache(fake_redis):
    return KeyedCache(client=fake_redis)


async def test_blacklist_outlives_short_tokens(cache, fake_redis):
    registry = RevocationRegistry(cache, blacklist_ttl=3600)
    assert await registry.blacklist("h1", ttl=30)
    assert await registry.is_blacklisted("h1")
    ttl = await cache.ttl(CacheKeys.token_blacklist("h1"))
    assert 3500 < ttl <= 3600

    fake_redis.advance(60)
    assert await registry.is_blacklisted("h1")


async def test_blacklist_keeps_longer_requested_ttl(cache):
    registry = RevocationRegistry(cache, blacklist_ttl=60)
    await registry.blacklist("h2", ttl=7200)
    assert await cache.ttl(CacheKeys.token_blacklist("h2")) > 3600


async def test_blacklist_drops_decoded_entry(cache):
    registry = RevocationRegistry(cache)
    await registry.cache_decoded("h3", {"sub": "user-1"})
    assert await registry.get_cached("h3") == {"sub": "user-1"}

    await registry.blacklist("h3")
    assert await registry.get_cached("h3") is None


async def test_get_cached_ignores_non_dict_values(cache):
    registry = RevocationRegistry(cache)
    await cache.set(CacheKeys.token_decoded("h4"), "garbage")
    assert await registry.get_cached("h4") is None


async def test_unavailable_cache_fails_open_by_default(cache, fake_redis):
    registry = RevocationRegistry(cache)
    await registry.blacklist("h5")
    fake_redis.fail = True
    assert await registry.is_blacklisted("h5") is False


async def test_unavailable_cache_fails_closed_when_configured(cache, fake_redis):
    registry = RevocationRegistry(cache, fail_closed=True)
    fake_redis.fail = True
    assert await registry.is_blacklisted("never-seen") is True


async def test_disabled_cache():
    registry = RevocationRegistry(KeyedCache())
    assert await registry.blacklist("h6") is False
    assert await registry.is_blacklisted("h6") is False
    assert await RevocationRegistry(KeyedCache(), fail_closed=True).is_blacklisted("h6") is True
