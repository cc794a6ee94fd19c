from __future__ import annotations

from typing import Any, Optional

from authcore.logging import get_logger
from authcore.storage.cache import KeyedCache
from authcore.storage.cache_keys import CacheKeys, CacheTTL

logger = get_logger(__name__)


class RevocationRegistry:
    """Blacklist of revoked access tokens plus a decoded-claims cache.

    Both are keyed by ``token_hash``. Blacklist lookups fail open: when the
    cache is disabled or erroring, a token reads as not revoked. A deployment
    that prefers denial over availability sets ``fail_closed=True``, which
    treats an unavailable cache as "revoked".
    """

    def __init__(
        self,
        cache: KeyedCache,
        *,
        decoded_ttl: int = CacheTTL.TOKEN_DECODED,
        blacklist_ttl: int = CacheTTL.TOKEN_BLACKLIST,
        fail_closed: bool = False,
    ) -> None:
        self.cache = cache
        self.decoded_ttl = decoded_ttl
        self.blacklist_ttl = blacklist_ttl
        self.fail_closed = fail_closed

    async def is_blacklisted(self, token_hash: str) -> bool:
        if not self.cache.enabled and not self.fail_closed:
            logger.debug("blacklist_check_skipped_cache_disabled", token_hash=token_hash)
        return await self.cache.exists(
            CacheKeys.token_blacklist(token_hash), default=self.fail_closed
        )

    async def blacklist(self, token_hash: str, ttl: Optional[int] = None) -> bool:
        """Mark a token revoked.

        The marker must outlive the token, so ``ttl`` is raised to the
        configured blacklist lifetime when shorter.
        """
        effective_ttl = max(int(ttl or 0), self.blacklist_ttl)
        stored = await self.cache.set(
            CacheKeys.token_blacklist(token_hash), "revoked", effective_ttl
        )
        if not stored:
            logger.warning("token_blacklist_write_failed", token_hash=token_hash)
        await self.invalidate_cached_token(token_hash)
        return stored

    async def cache_decoded(
        self, token_hash: str, claims: dict[str, Any], ttl: Optional[int] = None
    ) -> bool:
        return await self.cache.set(
            CacheKeys.token_decoded(token_hash), claims, ttl or self.decoded_ttl
        )

    async def get_cached(self, token_hash: str) -> Optional[dict[str, Any]]:
        cached = await self.cache.get(CacheKeys.token_decoded(token_hash))
        return cached if isinstance(cached, dict) else None

    async def invalidate_cached_token(self, token_hash: str) -> bool:
        return await self.cache.delete(CacheKeys.token_decoded(token_hash))
