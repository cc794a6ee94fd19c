from __future__ import annotations

from datetime import timedelta
from typing import List, Optional

from authcore.service.tokens import token_hash
from authcore.storage.cache import KeyedCache
from authcore.storage.cache_keys import CacheKeys, CacheTTL
from authcore.storage.common import AuthStore, UnitOfWork
from authcore.storage.models import Session


class SessionTracker:
    """Durable record of each issued access token's validity window.

    A missing or inactive session row does not by itself invalidate a
    token; revocation of bearer tokens is enforced by the blacklist.
    Active-session lists are cached under ``session:user:{id}``; callers
    invalidate that entry once the transaction that changed it commits.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[KeyedCache] = None,
        *,
        ttl_days: int = 7,
        cache_ttl: int = CacheTTL.SESSION,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl = timedelta(days=ttl_days)
        self.cache_ttl = cache_ttl

    async def create(
        self, user_id: str, access_token: str, *, uow: Optional[UnitOfWork] = None
    ) -> Session:
        session = Session.new(user_id, token_hash(access_token), self.ttl)
        return await self.store.insert_session(session, uow=uow)

    async def revoke_all_for_user(self, user_id: str, *, uow: Optional[UnitOfWork] = None) -> int:
        return await self.store.revoke_user_sessions(user_id, uow=uow)

    async def active_for_user(self, user_id: str) -> List[Session]:
        if self.cache is None:
            return await self.store.list_user_sessions(user_id, active_only=True)

        async def _fetch() -> List[dict]:
            sessions = await self.store.list_user_sessions(user_id, active_only=True)
            return [session.to_cache() for session in sessions]

        rows = await self.cache.get_or_set(
            CacheKeys.sessions_by_user(user_id), _fetch, ttl=self.cache_ttl
        )
        return [Session.from_cache(row) for row in rows or []]

    async def invalidate(self, user_id: str) -> bool:
        if self.cache is None:
            return False
        return await self.cache.delete(CacheKeys.sessions_by_user(user_id))
